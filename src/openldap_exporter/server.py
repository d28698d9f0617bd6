"""HTTP exposition of the metric registry.

Serves the Prometheus text format on the metrics path and the exporter
version on /version.
"""

from __future__ import annotations

import logging
import os
import ssl

from aiohttp import BasicAuth, web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from openldap_exporter import __version__
from openldap_exporter.registry import MetricRegistry
from openldap_exporter.webconfig import WebSecurity

logger = logging.getLogger(__name__)

DEFAULT_LISTEN_ADDRESS = ":9330"
DEFAULT_METRICS_PATH = "/metrics"
AUTH_REALM = "openldap-exporter"


def get_version() -> str:
    """Version string, with the build commit when one was baked in."""
    commit = os.environ.get("OPENLDAP_EXPORTER_COMMIT", "unknown")
    return f"{__version__} ({commit})"


def split_listen_address(address: str) -> tuple[str | None, int]:
    """Split ``[host]:port`` into host and port. An empty host means all interfaces."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {address!r}")
    host = host.strip("[]")
    return (host or None), int(port)


class MetricsServer:
    """aiohttp server exposing a MetricRegistry.

    With a WebSecurity, the endpoint is served over TLS and/or behind
    basic auth.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        listen_address: str = DEFAULT_LISTEN_ADDRESS,
        metrics_path: str = DEFAULT_METRICS_PATH,
        web_security: WebSecurity | None = None,
    ):
        """Initialize the server.

        Raises:
            ConfigurationError: If the TLS certificate or key cannot be loaded.
        """
        self.registry = registry
        self.listen_address = listen_address
        self.metrics_path = metrics_path
        self.web_security = web_security
        self.ssl_context: ssl.SSLContext | None = None
        if web_security is not None and web_security.tls_enabled:
            self.ssl_context = web_security.ssl_context()
        self.app = self.create_app()
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        """Build the aiohttp application."""
        middlewares = []
        if self.web_security is not None and self.web_security.auth_enabled:
            middlewares.append(self.basic_auth_middleware)
        app = web.Application(middlewares=middlewares)
        app.router.add_get(self.metrics_path, self.handle_metrics)
        app.router.add_route("*", "/version", self.handle_version)
        return app

    @web.middleware
    async def basic_auth_middleware(self, request: web.Request, handler):
        header = request.headers.get("Authorization", "")
        try:
            auth = BasicAuth.decode(header)
        except ValueError:
            auth = None
        if auth is None or not self.web_security.check_credentials(auth.login, auth.password):
            logger.debug(f"Rejected unauthenticated request for {request.path}")
            return web.Response(
                status=401,
                headers={"WWW-Authenticate": f'Basic realm="{AUTH_REALM}"'},
            )
        return await handler(request)

    async def handle_metrics(self, request: web.Request) -> web.Response:
        body = generate_latest(self.registry.registry)
        return web.Response(body=body, headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def handle_version(self, request: web.Request) -> web.Response:
        if request.method != "GET":
            return web.Response(status=405)
        return web.Response(text=get_version() + "\n", content_type="text/plain")

    async def start(self) -> None:
        """Start listening."""
        host, port = split_listen_address(self.listen_address)
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port, ssl_context=self.ssl_context)
        await site.start()
        scheme = "https" if self.ssl_context is not None else "http"
        logger.info(
            f"Serving metrics on {scheme}://{self.listen_address}{self.metrics_path}"
        )

    async def stop(self) -> None:
        """Stop listening and release the socket."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
