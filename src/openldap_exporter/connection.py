"""LDAP connections for a single scrape tick.

Wraps ldap3 so the rest of the exporter only deals with DirectoryEntry
values and the exporter's own exception types.
"""

from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass, field
from urllib.parse import quote

from ldap3 import AUTO_BIND_NONE, BASE, NONE, SIMPLE, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException

from openldap_exporter.address import AddressSpec
from openldap_exporter.errors import AuthError, DialError, SearchError, TLSNegotiationError

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_RECEIVE_TIMEOUT = 30.0


@dataclass(frozen=True)
class DirectoryEntry:
    """One search result entry."""

    dn: str
    attributes: dict[str, list[str]] = field(default_factory=dict)

    def get_attribute_value(self, name: str) -> str:
        """Get the first value of an attribute.

        Attribute names are matched case-insensitively, as in LDAP.

        Returns:
            The first value, or an empty string if absent.
        """
        lowered = name.lower()
        for key, values in self.attributes.items():
            if key.lower() == lowered:
                return values[0] if values else ""
        return ""


def _as_text(value: object) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _entry_from_response(item: dict) -> DirectoryEntry:
    attributes: dict[str, list[str]] = {}
    for name, values in (item.get("attributes") or {}).items():
        if not isinstance(values, (list, tuple)):
            values = [values]
        attributes[name] = [_as_text(v) for v in values]
    return DirectoryEntry(dn=item.get("dn", ""), attributes=attributes)


class DirectoryConnection:
    """An open LDAP connection, scoped to one tick."""

    def __init__(self, conn: Connection, spec: AddressSpec):
        self._conn = conn
        self.spec = spec
        self.closed = False

    def bind(self, user: str, password: str) -> None:
        """Simple bind with the given DN and password.

        Raises:
            AuthError: If the server rejects the credentials.
        """
        # the connection was opened anonymous; switch it to a simple bind
        self._conn.authentication = SIMPLE
        self._conn.user = user
        self._conn.password = password
        try:
            bound = self._conn.bind(read_server_info=False)
        except LDAPException as e:
            raise AuthError(f"bind as {user} failed: {e}") from e
        if not bound:
            description = (self._conn.result or {}).get("description", "unknown error")
            raise AuthError(f"bind as {user} failed: {description}")

    def search(
        self,
        base_dn: str,
        search_filter: str,
        attribute: str,
        subtree: bool = True,
    ) -> list[DirectoryEntry]:
        """Search below base_dn, fetching a single attribute.

        Args:
            base_dn: Search base.
            search_filter: LDAP filter expression.
            attribute: The only attribute requested.
            subtree: Whole-subtree scope, otherwise base scope.

        Returns:
            Matching entries in server order.

        Raises:
            SearchError: If the search cannot be completed.
        """
        try:
            self._conn.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE if subtree else BASE,
                attributes=[attribute],
            )
        except LDAPException as e:
            raise SearchError(
                f"search {search_filter} under {base_dn} failed: {e}",
                search_filter=search_filter,
            ) from e

        return [
            _entry_from_response(item)
            for item in (self._conn.response or [])
            if item.get("type") == "searchResEntry"
        ]

    def close(self) -> None:
        """Unbind and drop the socket. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        try:
            self._conn.unbind()
        except LDAPException as e:
            logger.debug(f"Error closing LDAP connection: {e}")


class ConnectionFactory:
    """Open LDAP connections according to a resolved AddressSpec."""

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        receive_timeout: float = DEFAULT_RECEIVE_TIMEOUT,
    ):
        self.connect_timeout = connect_timeout
        self.receive_timeout = receive_timeout

    def build_tls(self, spec: AddressSpec) -> Tls:
        """Build the ldap3 TLS settings for an address."""
        if spec.insecure_skip_verify:
            return Tls(validate=ssl.CERT_NONE)
        return Tls(
            validate=ssl.CERT_REQUIRED,
            ca_certs_data=spec.ca_cert_data,
            valid_names=[spec.server_name] if spec.server_name else None,
            sni=spec.server_name,
        )

    def build_server(self, spec: AddressSpec) -> Server:
        """Build the ldap3 Server for an address."""
        if spec.is_socket:
            # ldap3 unquotes everything after "ldapi://" into the socket path
            return Server(
                f"ldapi://{quote(spec.socket_path or '', safe='')}",
                get_info=NONE,
                connect_timeout=self.connect_timeout,
            )

        tls = self.build_tls(spec) if (spec.use_tls or spec.use_starttls) else None
        return Server(
            spec.host,
            port=spec.port,
            use_ssl=spec.use_tls,
            tls=tls,
            get_info=NONE,
            connect_timeout=self.connect_timeout,
        )

    def connect(self, spec: AddressSpec) -> DirectoryConnection:
        """Open a connection, upgrading with StartTLS when requested.

        Raises:
            DialError: If the socket or TLS handshake fails.
            TLSNegotiationError: If StartTLS fails on a plain connection.
        """
        server = self.build_server(spec)
        conn = Connection(
            server,
            auto_bind=AUTO_BIND_NONE,
            raise_exceptions=True,
            receive_timeout=self.receive_timeout,
        )

        try:
            conn.open()
        except LDAPException as e:
            raise DialError(f"dial {spec.url} failed: {e}") from e

        if spec.use_starttls:
            try:
                upgraded = conn.start_tls()
            except LDAPException as e:
                _discard(conn)
                raise TLSNegotiationError(f"StartTLS on {spec.url} failed: {e}") from e
            if not upgraded:
                _discard(conn)
                raise TLSNegotiationError(f"StartTLS on {spec.url} was refused")

        return DirectoryConnection(conn, spec)


def _discard(conn: Connection) -> None:
    try:
        conn.unbind()
    except LDAPException:
        pass
