"""Authentication probe.

Measures how long a bind plus a base-scope search takes for a secondary
(probe) account, on its own connection. Its failures are counted separately
and never change the scrape result.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge

from openldap_exporter.errors import ExporterError
from openldap_exporter.registry import SUBSYSTEM, MetricRegistry

if TYPE_CHECKING:
    from openldap_exporter.address import AddressSpec
    from openldap_exporter.connection import ConnectionFactory

logger = logging.getLogger(__name__)

DEFAULT_PROBE_FILTER = "(objectClass=*)"


class AuthProbe:
    """Timed bind and search with a dedicated probe credential."""

    def __init__(
        self,
        spec: AddressSpec,
        factory: ConnectionFactory,
        registry: MetricRegistry,
        user: str,
        password: str,
        base_dn: str,
        search_filter: str = DEFAULT_PROBE_FILTER,
    ):
        """Initialize the probe and register its metrics.

        Args:
            spec: Resolved server address.
            factory: Connection factory shared with the scraper.
            registry: Registry the probe metrics are added to.
            user: Probe bind DN.
            password: Probe bind password.
            base_dn: Entry read after the bind (usually the probe user itself).
            search_filter: Filter for the base-scope read.
        """
        self.spec = spec
        self.factory = factory
        self.user = user
        self.password = password
        self.base_dn = base_dn
        self.search_filter = search_filter

        self.duration = Gauge(
            "auth_probe_seconds",
            "duration of the last successful probe bind and search",
            subsystem=SUBSYSTEM,
            registry=registry.registry,
        )
        self.attempts = Counter(
            "auth_probe",
            "successful vs unsuccessful authentication probe attempts",
            ["result"],
            subsystem=SUBSYSTEM,
            registry=registry.registry,
        )

    def run_once(self) -> bool:
        """Run the probe once.

        Returns:
            True if bind and search both succeeded.
        """
        started = time.perf_counter()
        conn = None
        try:
            conn = self.factory.connect(self.spec)
            conn.bind(self.user, self.password)
            conn.search(self.base_dn, self.search_filter, "1.1", subtree=False)
        except ExporterError as e:
            logger.warning(f"auth probe failed: {e}", extra={"addr": self.spec.url})
            self.attempts.labels(result="fail").inc()
            return False
        finally:
            if conn is not None:
                conn.close()

        self.duration.set(time.perf_counter() - started)
        self.attempts.labels(result="ok").inc()
        return True
