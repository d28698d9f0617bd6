"""Exception hierarchy for the exporter.

Configuration errors are raised at startup and stop the process. Everything
raised during a scrape tick is contained to that tick (or to a single query)
and only shows up as a counter increment plus a log line.
"""

from __future__ import annotations


class ExporterError(Exception):
    """Base class for all exporter errors."""


# =============================================================================
# Startup errors
# =============================================================================


class ConfigurationError(ExporterError):
    """Raised when exporter configuration is invalid."""


class AddressFormatError(ConfigurationError):
    """Raised when an LDAP server address cannot be parsed."""

    def __init__(self, address: str, reason: str):
        super().__init__(f"invalid LDAP address {address!r}: {reason}")
        self.address = address
        self.reason = reason


class CertificateError(ConfigurationError):
    """Raised when a CA certificate file cannot be loaded."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"CA certificate {path!r}: {reason}")
        self.path = path
        self.reason = reason


# =============================================================================
# Per-tick errors
# =============================================================================


class DialError(ExporterError):
    """Raised when the LDAP server cannot be reached."""


class TLSNegotiationError(DialError):
    """Raised when StartTLS fails on an already opened connection."""


class AuthError(ExporterError):
    """Raised when the server rejects a bind."""


class SearchError(ExporterError):
    """Raised when a single monitor search fails."""

    def __init__(self, message: str, search_filter: str = ""):
        super().__init__(message)
        self.search_filter = search_filter


# =============================================================================
# Per-entry
# =============================================================================


class DecodeSkip(ExporterError):
    """Signals that one entry's attribute value could not be decoded.

    Never propagates out of the decoder.
    """

    def __init__(self, field_name: str, value: str):
        super().__init__(f"unexpected {field_name} value {value!r}")
        self.field_name = field_name
        self.value = value
