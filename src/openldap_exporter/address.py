"""LDAP server address resolution.

Parses the configured server address into an AddressSpec:
- ldap://host[:port] or bare host[:port]: plain TCP, port 389 by default
- ldaps://host[:port]: TLS from the first byte, port 636 by default
- ldapi://<percent-encoded socket path>: local unix domain socket
"""

from __future__ import annotations

import logging
import os
import re
import ssl
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote, unquote

from openldap_exporter.errors import AddressFormatError, CertificateError

logger = logging.getLogger(__name__)

DEFAULT_LDAP_PORT = 389
DEFAULT_LDAPS_PORT = 636

PEM_CERTIFICATE_MARKER = "-----BEGIN CERTIFICATE-----"

_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.\-]*)://(.*)$", re.DOTALL)
_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9_]([A-Za-z0-9_.\-]*[A-Za-z0-9_])?$")


class Scheme(Enum):
    """Supported LDAP URI schemes."""

    LDAP = "ldap"
    LDAPS = "ldaps"
    LDAPI = "ldapi"


DEFAULT_PORTS = {
    Scheme.LDAP: DEFAULT_LDAP_PORT,
    Scheme.LDAPS: DEFAULT_LDAPS_PORT,
}


@dataclass(frozen=True)
class AddressSpec:
    """Resolved LDAP server address plus TLS policy.

    Exactly one of (host, port) or socket_path is set, depending on scheme.
    """

    scheme: Scheme
    host: str | None = None
    port: int | None = None
    socket_path: str | None = None
    insecure_skip_verify: bool = False
    ca_cert_path: str | None = None
    ca_cert_data: str | None = None
    use_starttls: bool = False
    server_name: str | None = None

    @property
    def use_tls(self) -> bool:
        """True when the connection is encrypted from the first byte."""
        return self.scheme == Scheme.LDAPS

    @property
    def is_socket(self) -> bool:
        """True for ldapi:// addresses."""
        return self.scheme == Scheme.LDAPI

    @property
    def url(self) -> str:
        """Canonical address, used in log lines."""
        if self.is_socket:
            return f"{self.scheme.value}://{quote(self.socket_path or '', safe='')}"
        host = self.host or ""
        if ":" in host:
            host = f"[{host}]"
        return f"{self.scheme.value}://{host}:{self.port}"

    @property
    def security(self) -> str:
        """Short description of the transport security in effect."""
        security = "None"
        if self.use_tls:
            security = "TLS"
        elif self.use_starttls:
            security = "StartTLS"
        if self.insecure_skip_verify and (self.use_tls or self.use_starttls):
            security += "/InsecureSkipVerify"
        return security


def resolve(
    raw: str,
    insecure_skip_verify: bool = False,
    ca_cert_path: str | None = None,
    use_starttls: bool = False,
    server_name: str | None = None,
) -> AddressSpec:
    """Parse a server address into an AddressSpec.

    Args:
        raw: Address such as ``ldap://host:389``, ``host:389``,
            ``ldaps://host`` or ``ldapi://%2Fvar%2Frun%2Fslapd%2Fldapi``.
        insecure_skip_verify: Disable TLS certificate verification.
        ca_cert_path: Optional PEM bundle used to verify the server.
        use_starttls: Upgrade a plain ldap:// connection with StartTLS.
            Ignored for ldaps:// and ldapi://.
        server_name: TLS server name override; defaults to the host.

    Returns:
        The resolved AddressSpec.

    Raises:
        AddressFormatError: If the address matches no supported form.
        CertificateError: If the CA file cannot be loaded.
    """
    if raw is None or not raw.strip():
        raise AddressFormatError(raw or "", "address is empty")

    address = raw.strip()
    if any(ch.isspace() for ch in address):
        raise AddressFormatError(raw, "address contains whitespace")

    match = _SCHEME_RE.match(address)
    if match:
        scheme_name, rest = match.group(1).lower(), match.group(2)
        try:
            scheme = Scheme(scheme_name)
        except ValueError:
            raise AddressFormatError(
                raw, f"{scheme_name} is not a scheme i understand"
            ) from None
    else:
        scheme, rest = Scheme.LDAP, address

    use_starttls = use_starttls and scheme == Scheme.LDAP
    ca_cert_data = None
    # the CA bundle is only read when the connection will negotiate TLS
    if ca_cert_path and not insecure_skip_verify and (scheme == Scheme.LDAPS or use_starttls):
        ca_cert_data = load_ca_certificate(ca_cert_path)

    if scheme == Scheme.LDAPI:
        socket_path = unquote(rest)
        if not socket_path:
            raise AddressFormatError(raw, "ldapi address has no socket path")
        return AddressSpec(
            scheme=scheme,
            socket_path=socket_path,
            insecure_skip_verify=insecure_skip_verify,
            ca_cert_path=ca_cert_path,
            ca_cert_data=ca_cert_data,
        )

    host, port = _split_host_port(raw, rest)
    if port is None:
        port = DEFAULT_PORTS[scheme]

    return AddressSpec(
        scheme=scheme,
        host=host,
        port=port,
        insecure_skip_verify=insecure_skip_verify,
        ca_cert_path=ca_cert_path,
        ca_cert_data=ca_cert_data,
        # StartTLS only applies to an unencrypted TCP connection
        use_starttls=use_starttls,
        server_name=server_name or host,
    )


def _split_host_port(raw: str, hostport: str) -> tuple[str, int | None]:
    """Split ``host[:port]`` or ``[v6addr][:port]``."""
    if hostport.endswith("/"):
        hostport = hostport[:-1]
    if not hostport:
        raise AddressFormatError(raw, "address has no host")
    if any(ch in hostport for ch in "/?#@"):
        raise AddressFormatError(raw, "address must be host[:port] only")

    port_text: str | None = None
    if hostport.startswith("["):
        end = hostport.find("]")
        if end == -1:
            raise AddressFormatError(raw, "unterminated IPv6 literal")
        host = hostport[1:end]
        remainder = hostport[end + 1:]
        if remainder:
            if not remainder.startswith(":"):
                raise AddressFormatError(raw, "unexpected text after IPv6 literal")
            port_text = remainder[1:]
        if not host or not re.fullmatch(r"[0-9A-Fa-f:.%A-Za-z]+", host):
            raise AddressFormatError(raw, "invalid IPv6 literal")
    else:
        if hostport.count(":") > 1:
            raise AddressFormatError(raw, "IPv6 addresses must be bracketed")
        host, sep, port_text_part = hostport.partition(":")
        if sep:
            port_text = port_text_part
        if not host:
            raise AddressFormatError(raw, "address has no host")
        if not _HOSTNAME_RE.match(host):
            raise AddressFormatError(raw, f"invalid host {host!r}")

    if port_text is None:
        return host, None
    if not port_text.isdigit():
        raise AddressFormatError(raw, f"invalid port {port_text!r}")
    port = int(port_text)
    if not 0 < port < 65536:
        raise AddressFormatError(raw, f"port {port} out of range")
    return host, port


def load_ca_certificate(path: str) -> str:
    """Read a PEM CA bundle and check that it holds at least one certificate.

    Args:
        path: Path to the PEM file.

    Returns:
        The PEM text, ready to be handed to the TLS layer.

    Raises:
        CertificateError: If the file is missing, unreadable or has no
            parseable certificate.
    """
    if not os.path.exists(path):
        raise CertificateError(path, "file does not exist")

    try:
        with open(path, encoding="ascii") as f:
            pem = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise CertificateError(path, "file is not readable") from e

    if PEM_CERTIFICATE_MARKER not in pem:
        raise CertificateError(path, "could not parse any PEM certificates")

    try:
        context = ssl.create_default_context()
        context.load_verify_locations(cadata=pem)
    except (ssl.SSLError, ValueError) as e:
        raise CertificateError(path, "could not parse any PEM certificates") from e

    logger.debug(f"Loaded CA certificates from {path}")
    return pem
