"""Tick-driven scrape loop.

Each tick: dial -> optional bind -> run every catalog query -> count the
outcome. The connection lives for exactly one tick. Failures never escape a
tick; they are logged and counted, and the next tick tries again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

from openldap_exporter.connection import ConnectionFactory, DirectoryConnection
from openldap_exporter.decoder import decode
from openldap_exporter.errors import AuthError, DialError, SearchError
from openldap_exporter.queries import Query, build_catalog
from openldap_exporter.registry import MetricRegistry

if TYPE_CHECKING:
    from openldap_exporter.address import AddressSpec
    from openldap_exporter.probe import AuthProbe

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0  # seconds


@dataclass
class ScrapeOutcome:
    """What happened during one tick."""

    dialed: bool = False
    authenticated: bool = False
    query_results: list[bool] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when dial, bind and every search succeeded."""
        return self.dialed and self.authenticated and all(self.query_results)


class Scraper:
    """Periodically scrape cn=Monitor into a MetricRegistry."""

    def __init__(
        self,
        spec: AddressSpec,
        registry: MetricRegistry,
        user: str | None = None,
        password: str | None = None,
        interval: float = DEFAULT_INTERVAL,
        replication_dns: Iterable[str] = (),
        factory: ConnectionFactory | None = None,
        probe: AuthProbe | None = None,
    ):
        """Initialize the scraper.

        Args:
            spec: Resolved server address.
            registry: Registry receiving gauges and outcome counters.
            user: Bind DN. Both user and password are needed to bind.
            password: Bind password.
            interval: Seconds between ticks.
            replication_dns: Suffixes whose contextCSN is watched.
            factory: Connection factory (defaults to a plain ConnectionFactory).
            probe: Optional authentication probe run after each tick.
        """
        self.spec = spec
        self.registry = registry
        self.user = user
        self.password = password
        self.interval = interval
        self.factory = factory or ConnectionFactory()
        self.probe = probe
        self.queries: tuple[Query, ...] = build_catalog(replication_dns)
        self._stop_event = asyncio.Event()

    @property
    def has_credentials(self) -> bool:
        """Bind only happens when both user and password are set."""
        return bool(self.user) and bool(self.password)

    def scrape_once(self) -> ScrapeOutcome:
        """Run one tick synchronously.

        Returns:
            The tick outcome. Exactly one scrape counter is incremented.
        """
        outcome = ScrapeOutcome()
        try:
            self._scrape(outcome)
        except Exception:
            logger.exception("Unexpected error during scrape")
        self.registry.record("scrape", outcome.ok)
        return outcome

    def _scrape(self, outcome: ScrapeOutcome) -> None:
        try:
            conn = self.factory.connect(self.spec)
        except DialError as e:
            logger.error(f"dial failed: {e}", extra={"addr": self.spec.url})
            self.registry.record("dial", False)
            return
        self.registry.record("dial", True)
        outcome.dialed = True

        try:
            if self.has_credentials:
                if not self._bind(conn):
                    return
            outcome.authenticated = True

            for query in self.queries:
                outcome.query_results.append(self._run_query(conn, query))
        finally:
            conn.close()

    def _bind(self, conn: DirectoryConnection) -> bool:
        try:
            conn.bind(self.user, self.password)
        except AuthError as e:
            logger.error(f"bind failed: {e}", extra={"addr": self.spec.url})
            self.registry.record("bind", False)
            return False
        self.registry.record("bind", True)
        return True

    def _run_query(self, conn: DirectoryConnection, query: Query) -> bool:
        try:
            entries = conn.search(
                query.base_dn, query.search_filter, query.search_attribute
            )
        except SearchError as e:
            logger.warning(
                f"query failed: {e}", extra={"filter": query.search_filter}
            )
            return False
        decode(entries, query, self.registry)
        return True

    async def run(
        self,
        stop_event: asyncio.Event | None = None,
        max_ticks: int | None = None,
    ) -> None:
        """Scrape every interval until stopped.

        The wait between ticks is the only cancellation point: a tick that
        has started runs to completion.

        Args:
            stop_event: External stop signal, in addition to stop().
            max_ticks: Optional tick limit (for testing).
        """
        logger.info(
            "starting monitor loop",
            extra={"addr": self.spec.url, "security": self.spec.security},
        )
        ticks = 0

        while not self._should_stop(stop_event):
            if max_ticks is not None and ticks >= max_ticks:
                break

            if await self._wait(stop_event):
                break

            await asyncio.to_thread(self._tick)
            ticks += 1

        logger.info("monitor loop stopped")

    def _tick(self) -> None:
        self.scrape_once()
        if self.probe is not None:
            try:
                self.probe.run_once()
            except Exception:
                logger.exception("Unexpected error in auth probe")

    def stop(self) -> None:
        """Stop the loop before its next tick."""
        self._stop_event.set()

    def _should_stop(self, stop_event: asyncio.Event | None) -> bool:
        return self._stop_event.is_set() or (
            stop_event is not None and stop_event.is_set()
        )

    async def _wait(self, stop_event: asyncio.Event | None) -> bool:
        """Sleep one interval. Returns True if a stop arrived meanwhile."""
        waiters = [asyncio.ensure_future(self._stop_event.wait())]
        if stop_event is not None:
            waiters.append(asyncio.ensure_future(stop_event.wait()))
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
        return bool(done) or self._should_stop(stop_event)
