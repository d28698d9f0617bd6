"""TLS and basic auth for the metrics endpoint.

Settings come from a TOML file passed with ``--web-config``:

    [tls]
    cert_file = "server.crt"
    key_file = "server.key"

    [basic_auth_users]
    prometheus = "<sha256 hex digest of the password>"

Relative paths are resolved against the directory holding the file. Either
section may be left out.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import ssl
from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib as tomli  # Python 3.11+ stdlib
except ImportError:
    import tomli  # Backport for older Python

from openldap_exporter.errors import ConfigurationError

logger = logging.getLogger(__name__)

_SHA256_HEX_RE = re.compile(r"^[0-9a-f]{64}$")


def hash_password(password: str) -> str:
    """Hash a basic auth password the way the web config stores it."""
    return hashlib.sha256(password.encode()).hexdigest()


@dataclass
class WebSecurity:
    """Resolved TLS and basic auth settings."""

    cert_file: Path | None = None
    key_file: Path | None = None
    users: dict[str, str] = field(default_factory=dict)

    @property
    def tls_enabled(self) -> bool:
        return self.cert_file is not None

    @property
    def auth_enabled(self) -> bool:
        return bool(self.users)

    def ssl_context(self) -> ssl.SSLContext:
        """Build the server-side TLS context.

        Raises:
            ConfigurationError: If the certificate or key cannot be loaded.
        """
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        try:
            context.load_cert_chain(str(self.cert_file), str(self.key_file))
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError(
                f"web TLS certificate {self.cert_file}: {e}"
            ) from e
        return context

    def check_credentials(self, username: str, password: str) -> bool:
        """Check a username/password pair.

        Uses constant-time comparison. Unknown users still pay for a hash.
        """
        stored_hash = self.users.get(username, "")
        password_hash = hash_password(password)
        return hmac.compare_digest(password_hash, stored_hash) and bool(stored_hash)


def load_web_config(path: Path) -> WebSecurity:
    """Load a web config file.

    Raises:
        ConfigurationError: If the file is missing, malformed or incomplete.
    """
    try:
        with open(path, "rb") as f:
            data = tomli.load(f)
    except OSError as e:
        raise ConfigurationError(f"web config {path}: {e.strerror or e}") from e
    except tomli.TOMLDecodeError as e:
        raise ConfigurationError(f"web config {path}: {e}") from e

    base_dir = path.parent
    tls_data = data.get("tls", {})
    users_data = data.get("basic_auth_users", {})
    if not isinstance(tls_data, dict) or not isinstance(users_data, dict):
        raise ConfigurationError(f"web config {path}: [tls] and [basic_auth_users] must be tables")

    cert_file = tls_data.get("cert_file")
    key_file = tls_data.get("key_file")
    if bool(cert_file) != bool(key_file):
        raise ConfigurationError(f"web config {path}: [tls] needs both cert_file and key_file")
    if cert_file and not (isinstance(cert_file, str) and isinstance(key_file, str)):
        raise ConfigurationError(f"web config {path}: [tls] paths must be strings")

    users: dict[str, str] = {}
    for username, digest in users_data.items():
        if not isinstance(digest, str) or not _SHA256_HEX_RE.match(digest.lower()):
            raise ConfigurationError(
                f"web config {path}: password for {username!r} must be a sha256 hex digest"
            )
        users[username] = digest.lower()

    security = WebSecurity(
        cert_file=base_dir / cert_file if cert_file else None,
        key_file=base_dir / key_file if key_file else None,
        users=users,
    )
    logger.debug(
        f"Loaded web config {path}",
        extra={"tls": security.tls_enabled, "basic_auth": security.auth_enabled},
    )
    return security
