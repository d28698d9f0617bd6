"""openldap-exporter command line.

Usage:
    openldap-exporter --ldap-addr ldap://ldap.example.com --interval 30
    openldap-exporter --config /etc/openldap_exporter.toml
    openldap-exporter --replication-object dc=example,dc=com

Every option can also be set through its environment variable; options given
on the command line override values from the config file.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

import click

from openldap_exporter import __version__
from openldap_exporter.address import resolve
from openldap_exporter.config import ExporterConfig, load_config
from openldap_exporter.connection import ConnectionFactory
from openldap_exporter.errors import ConfigurationError
from openldap_exporter.logs import configure_logging
from openldap_exporter.probe import AuthProbe
from openldap_exporter.registry import MetricRegistry
from openldap_exporter.scraper import Scraper
from openldap_exporter.server import MetricsServer, split_listen_address
from openldap_exporter.webconfig import load_web_config

logger = logging.getLogger(__name__)


def apply_overrides(config: ExporterConfig, **options) -> ExporterConfig:
    """Copy every option that was actually given onto the config."""
    mapping = {
        "prom_addr": (config.web, "listen_address"),
        "metrics_path": (config.web, "metrics_path"),
        "web_config": (config.web, "config_file"),
        "ldap_addr": (config.ldap, "addr"),
        "ldap_user": (config.ldap, "user"),
        "ldap_pass": (config.ldap, "password"),
        "ca_file": (config.ldap, "ca_file"),
        "insecure_skip_verify": (config.ldap, "insecure_skip_verify"),
        "start_tls": (config.ldap, "start_tls"),
        "interval": (config.scrape, "interval"),
        "json_log": (config.log, "json"),
        "log_level": (config.log, "level"),
    }
    for name, value in options.items():
        if value is None or name not in mapping:
            continue
        section, attr = mapping[name]
        setattr(section, attr, value)

    replication = options.get("replication_objects")
    if replication:
        config.ldap.replication_objects = list(replication)
    return config


def build_scraper(config: ExporterConfig, registry: MetricRegistry) -> Scraper:
    """Wire address, connection factory, probe and scraper from config.

    Raises:
        ConfigurationError: If the address or CA file is invalid.
    """
    spec = resolve(
        config.ldap.addr,
        insecure_skip_verify=config.ldap.insecure_skip_verify,
        ca_cert_path=config.ldap.ca_file,
        use_starttls=config.ldap.start_tls,
        server_name=config.ldap.server_name,
    )
    factory = ConnectionFactory(
        connect_timeout=config.ldap.connect_timeout,
        receive_timeout=config.ldap.receive_timeout,
    )

    probe = None
    if config.probe.enabled:
        probe = AuthProbe(
            spec=spec,
            factory=factory,
            registry=registry,
            user=config.probe.user,
            password=config.probe.password,
            base_dn=config.probe.base_dn or config.probe.user,
            search_filter=config.probe.filter,
        )

    return Scraper(
        spec=spec,
        registry=registry,
        user=config.ldap.user,
        password=config.ldap.password,
        interval=config.scrape.interval,
        replication_dns=config.ldap.replication_objects,
        factory=factory,
        probe=probe,
    )


def build_server(config: ExporterConfig, registry: MetricRegistry) -> MetricsServer:
    """Build the metrics server, with TLS and basic auth if configured.

    Raises:
        ConfigurationError: If the web config file or its certificate is invalid.
    """
    web_security = None
    if config.web.config_file:
        web_security = load_web_config(Path(config.web.config_file))
    return MetricsServer(
        registry,
        listen_address=config.web.listen_address,
        metrics_path=config.web.metrics_path,
        web_security=web_security,
    )


async def serve(server: MetricsServer, scraper: Scraper) -> None:
    """Run the metrics server and scrape loop until a signal arrives."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal() -> None:
        logger.info("shutdown received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal)
        except NotImplementedError:
            pass  # Not supported on this platform

    await server.start()
    try:
        await scraper.run(stop_event)
    finally:
        await server.stop()


@click.command()
@click.option("--prom-addr", envvar="PROM_ADDR", help="Bind address for Prometheus HTTP metrics server [:9330]")
@click.option("--metrics-path", envvar="METRICS_PATH", help="Path on which to expose Prometheus metrics [/metrics]")
@click.option("--web-config", envvar="WEB_CFG_FILE", help="TOML file with TLS and basic auth settings for the metrics endpoint")
@click.option("--ldap-addr", envvar="LDAP_ADDR", help="Address of OpenLDAP server [localhost:389]")
@click.option("--ldap-user", envvar="LDAP_USER", help="OpenLDAP bind username (optional)")
@click.option("--ldap-pass", envvar="LDAP_PASS", help="OpenLDAP bind password (optional)")
@click.option("--ca-file", envvar="LDAP_CA_FILE", help="PEM file with CA certificates for TLS")
@click.option(
    "--insecure-skip-verify/--verify",
    default=None,
    envvar="LDAP_INSECURE_SKIP_VERIFY",
    help="Skip TLS certificate verification",
)
@click.option("--start-tls/--no-start-tls", default=None, envvar="LDAP_START_TLS", help="Use StartTLS on ldap:// connections")
@click.option("--interval", type=click.FloatRange(min=0, min_open=True), envvar="INTERVAL", help="Scrape interval in seconds [30]")
@click.option("--json-log/--text-log", default=None, envvar="JSON_LOG", help="Output logs in JSON format")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False), envvar="LOG_LEVEL")
@click.option(
    "--replication-object",
    "replication_objects",
    multiple=True,
    help="Object to watch replication upon (repeatable)",
)
@click.option(
    "-c", "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Optional configuration from a TOML file",
)
@click.version_option(version=__version__, prog_name="openldap-exporter")
def cli(config: str | None, **options) -> None:
    """Export OpenLDAP cn=Monitor metrics to Prometheus."""
    try:
        exporter_config = load_config(Path(config) if config else None)
        apply_overrides(exporter_config, **options)
        configure_logging(exporter_config.log.level, exporter_config.log.json)
        logger.info("service starting")

        split_listen_address(exporter_config.web.listen_address)
        registry = MetricRegistry()
        scraper = build_scraper(exporter_config, registry)
        server = build_server(exporter_config, registry)
    except (ConfigurationError, ValueError) as e:
        raise click.ClickException(str(e)) from e

    try:
        asyncio.run(serve(server, scraper))
    except OSError as e:
        # Typically the metrics port is already taken
        logger.error(f"service failed: {e}")
        raise click.ClickException(str(e)) from e
    logger.info("service stopped")


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
