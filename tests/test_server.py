"""Tests for the metrics HTTP server."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp import BasicAuth, test_utils

from openldap_exporter import __version__
from openldap_exporter.registry import MetricRegistry
from openldap_exporter.server import MetricsServer, get_version, split_listen_address
from openldap_exporter.webconfig import WebSecurity, hash_password


@pytest.fixture
def registry():
    return MetricRegistry()


async def make_client(server: MetricsServer) -> test_utils.TestClient:
    client = test_utils.TestClient(test_utils.TestServer(server.app))
    await client.start_server()
    return client


class TestMetricsEndpoint:
    """Tests for the metrics endpoint."""

    @pytest.mark.asyncio
    async def test_serves_registry(self, registry):
        """GET /metrics MUST return the registry in text format."""
        registry.record("scrape", True)
        client = await make_client(MetricsServer(registry))
        try:
            resp = await client.get("/metrics")
            body = await resp.text()
        finally:
            await client.close()

        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/plain")
        assert 'openldap_scrape_total{result="ok"} 1.0' in body

    @pytest.mark.asyncio
    async def test_custom_metrics_path(self, registry):
        """The metrics path MUST be configurable."""
        client = await make_client(MetricsServer(registry, metrics_path="/ldap"))
        try:
            ok = await client.get("/ldap")
            missing = await client.get("/metrics")
        finally:
            await client.close()

        assert ok.status == 200
        assert missing.status == 404

    @pytest.mark.asyncio
    async def test_reflects_later_updates(self, registry):
        """Each request MUST read the registry's current state."""
        client = await make_client(MetricsServer(registry))
        try:
            registry.gauge("monitor_operation").labels(dn="cn=Bind,cn=Operations,cn=Monitor").set(3)
            body = await (await client.get("/metrics")).text()
        finally:
            await client.close()

        assert 'openldap_monitor_operation{dn="cn=Bind,cn=Operations,cn=Monitor"} 3.0' in body


class TestVersionEndpoint:
    """Tests for /version."""

    @pytest.mark.asyncio
    async def test_get_version(self, registry):
        """GET /version MUST return the version as plain text."""
        client = await make_client(MetricsServer(registry))
        try:
            resp = await client.get("/version")
            body = await resp.text()
        finally:
            await client.close()

        assert resp.status == 200
        assert body.startswith(__version__)
        assert body.endswith("\n")

    @pytest.mark.asyncio
    async def test_post_not_allowed(self, registry):
        """Non-GET requests to /version MUST get 405."""
        client = await make_client(MetricsServer(registry))
        try:
            resp = await client.post("/version")
        finally:
            await client.close()

        assert resp.status == 405

    def test_version_includes_commit(self, monkeypatch):
        """The build commit SHOULD appear in the version string."""
        monkeypatch.setenv("OPENLDAP_EXPORTER_COMMIT", "abc123")
        assert get_version() == f"{__version__} (abc123)"


class TestListenAddress:
    """Tests for listen address parsing."""

    def test_port_only(self):
        """':9330' MUST listen on all interfaces."""
        assert split_listen_address(":9330") == (None, 9330)

    def test_host_and_port(self):
        """'127.0.0.1:9330' MUST keep the host."""
        assert split_listen_address("127.0.0.1:9330") == ("127.0.0.1", 9330)

    def test_ipv6(self):
        """Bracketed IPv6 hosts SHOULD be unwrapped."""
        assert split_listen_address("[::1]:9330") == ("::1", 9330)

    def test_invalid(self):
        """Addresses without a port MUST be rejected."""
        with pytest.raises(ValueError):
            split_listen_address("localhost")


class TestBasicAuth:
    """Tests for basic auth on the metrics endpoint."""

    @pytest.fixture
    def secured(self, registry):
        security = WebSecurity(users={"prometheus": hash_password("s3cret")})
        return MetricsServer(registry, web_security=security)

    @pytest.mark.asyncio
    async def test_missing_credentials(self, secured):
        """Requests without credentials MUST get 401 with a challenge."""
        client = await make_client(secured)
        try:
            resp = await client.get("/metrics")
        finally:
            await client.close()

        assert resp.status == 401
        assert resp.headers["WWW-Authenticate"].startswith("Basic")

    @pytest.mark.asyncio
    async def test_wrong_password(self, secured):
        """A wrong password MUST get 401."""
        client = await make_client(secured)
        try:
            resp = await client.get("/metrics", auth=BasicAuth("prometheus", "nope"))
        finally:
            await client.close()

        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_valid_credentials(self, secured):
        """Valid credentials MUST reach both endpoints."""
        client = await make_client(secured)
        try:
            metrics = await client.get("/metrics", auth=BasicAuth("prometheus", "s3cret"))
            version = await client.get("/version", auth=BasicAuth("prometheus", "s3cret"))
        finally:
            await client.close()

        assert metrics.status == 200
        assert version.status == 200

    @pytest.mark.asyncio
    async def test_open_without_users(self, registry):
        """Without configured users the endpoint MUST stay open."""
        client = await make_client(MetricsServer(registry, web_security=WebSecurity()))
        try:
            resp = await client.get("/metrics")
        finally:
            await client.close()

        assert resp.status == 200


class TestTLS:
    """Tests for serving over TLS."""

    def test_context_built_when_tls_configured(self, registry, tmp_path):
        """A TLS web config MUST produce an SSL context at construction."""
        security = WebSecurity(cert_file=tmp_path / "s.crt", key_file=tmp_path / "s.key")
        context = MagicMock()
        with patch.object(WebSecurity, "ssl_context", return_value=context):
            server = MetricsServer(registry, web_security=security)

        assert server.ssl_context is context

    def test_plain_http_by_default(self, registry):
        """Without a web config there MUST be no SSL context."""
        assert MetricsServer(registry).ssl_context is None

    @pytest.mark.asyncio
    async def test_site_uses_context(self, registry, tmp_path):
        """start() MUST hand the SSL context to the TCP site."""
        security = WebSecurity(cert_file=tmp_path / "s.crt", key_file=tmp_path / "s.key")
        context = MagicMock()
        with patch.object(WebSecurity, "ssl_context", return_value=context):
            server = MetricsServer(registry, listen_address="127.0.0.1:0", web_security=security)

        with patch("openldap_exporter.server.web.TCPSite") as site_cls:
            site_cls.return_value.start = AsyncMock()
            await server.start()
            await server.stop()

        _, kwargs = site_cls.call_args
        assert kwargs["ssl_context"] is context
