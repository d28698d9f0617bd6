"""Exporter configuration management.

Loads configuration from openldap_exporter.toml with sensible defaults.
Command-line options override file values (see cli.py).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib as tomli  # Python 3.11+ stdlib
except ImportError:
    import tomli  # Backport for older Python

from openldap_exporter.errors import ConfigurationError

CONFIG_FILE_NAME = "openldap_exporter.toml"


@dataclass
class LDAPConfig:
    """Directory server connection settings."""

    addr: str = "localhost:389"
    user: str | None = None
    password: str | None = None
    ca_file: str | None = None
    insecure_skip_verify: bool = False
    start_tls: bool = False
    server_name: str | None = None
    connect_timeout: float = 10.0
    receive_timeout: float = 30.0
    replication_objects: list[str] = field(default_factory=list)


@dataclass
class WebConfig:
    """Metrics HTTP endpoint settings."""

    listen_address: str = ":9330"
    metrics_path: str = "/metrics"
    config_file: str | None = None  # TLS and basic auth settings


@dataclass
class ScrapeConfig:
    """Scrape loop settings."""

    interval: float = 30.0  # seconds


@dataclass
class LogConfig:
    """Logging settings."""

    level: str = "INFO"
    json: bool = False


@dataclass
class ProbeConfig:
    """Authentication probe settings (disabled by default)."""

    enabled: bool = False
    user: str | None = None
    password: str | None = None
    base_dn: str | None = None
    filter: str = "(objectClass=*)"


@dataclass
class ExporterConfig:
    """Root configuration for the exporter."""

    ldap: LDAPConfig = field(default_factory=LDAPConfig)
    web: WebConfig = field(default_factory=WebConfig)
    scrape: ScrapeConfig = field(default_factory=ScrapeConfig)
    log: LogConfig = field(default_factory=LogConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)


def load_config(config_path: Path | None = None) -> ExporterConfig:
    """Load configuration from openldap_exporter.toml.

    Args:
        config_path: Path to config file. If None, searches current directory
                     and parent directories for openldap_exporter.toml.

    Returns:
        ExporterConfig with values from file or defaults.

    Raises:
        ConfigurationError: If the file cannot be parsed or holds bad values.
    """
    if config_path is None:
        config_path = _find_config_file()

    if config_path is None or not config_path.exists():
        return ExporterConfig()

    try:
        with open(config_path, "rb") as f:
            data = tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise ConfigurationError(f"{config_path}: {e}") from e

    return _parse_config(data)


def _find_config_file() -> Path | None:
    """Search for openldap_exporter.toml in current and parent directories."""
    current = Path.cwd()

    for directory in [current, *current.parents]:
        config_file = directory / CONFIG_FILE_NAME
        if config_file.exists():
            return config_file

    return None


def _typed(section: str, data: dict, key: str, kind: type | tuple[type, ...], default):
    value = data.get(key, default)
    if value is None or isinstance(value, kind):
        # bool is an int subclass; reject it for numeric settings
        if isinstance(value, bool) and kind in (int, float, (int, float)):
            raise ConfigurationError(f"[{section}] {key} must be a number")
        return value
    raise ConfigurationError(f"[{section}] {key} has the wrong type")


def _parse_config(data: dict) -> ExporterConfig:
    """Parse configuration dictionary into ExporterConfig."""
    ldap_data = data.get("ldap", {})
    web_data = data.get("web", {})
    scrape_data = data.get("scrape", {})
    log_data = data.get("log", {})
    probe_data = data.get("probe", {})

    replication = _typed("ldap", ldap_data, "replication_objects", list, [])
    if not all(isinstance(dn, str) for dn in replication):
        raise ConfigurationError("[ldap] replication_objects must be a list of strings")

    ldap_config = LDAPConfig(
        addr=_typed("ldap", ldap_data, "addr", str, "localhost:389"),
        user=_typed("ldap", ldap_data, "user", str, None),
        password=_typed("ldap", ldap_data, "password", str, None),
        ca_file=_typed("ldap", ldap_data, "ca_file", str, None),
        insecure_skip_verify=_typed("ldap", ldap_data, "insecure_skip_verify", bool, False),
        start_tls=_typed("ldap", ldap_data, "start_tls", bool, False),
        server_name=_typed("ldap", ldap_data, "server_name", str, None),
        connect_timeout=_typed("ldap", ldap_data, "connect_timeout", (int, float), 10.0),
        receive_timeout=_typed("ldap", ldap_data, "receive_timeout", (int, float), 30.0),
        replication_objects=list(replication),
    )

    web_config = WebConfig(
        listen_address=_typed("web", web_data, "listen_address", str, ":9330"),
        metrics_path=_typed("web", web_data, "metrics_path", str, "/metrics"),
        config_file=_typed("web", web_data, "config_file", str, None),
    )

    interval = _typed("scrape", scrape_data, "interval", (int, float), 30.0)
    if interval <= 0:
        raise ConfigurationError("[scrape] interval must be positive")
    scrape_config = ScrapeConfig(interval=float(interval))

    log_config = LogConfig(
        level=_typed("log", log_data, "level", str, "INFO"),
        json=_typed("log", log_data, "json", bool, False),
    )

    probe_config = ProbeConfig(
        enabled=_typed("probe", probe_data, "enabled", bool, False),
        user=_typed("probe", probe_data, "user", str, None),
        password=_typed("probe", probe_data, "password", str, None),
        base_dn=_typed("probe", probe_data, "base_dn", str, None),
        filter=_typed("probe", probe_data, "filter", str, "(objectClass=*)"),
    )
    if probe_config.enabled and not (probe_config.user and probe_config.password):
        raise ConfigurationError("[probe] enabled requires user and password")

    return ExporterConfig(
        ldap=ldap_config,
        web=web_config,
        scrape=scrape_config,
        log=log_config,
        probe=probe_config,
    )
