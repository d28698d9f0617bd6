"""Tests for the scrape loop."""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from openldap_exporter.address import resolve
from openldap_exporter.connection import DirectoryEntry
from openldap_exporter.errors import AuthError, DialError, SearchError, TLSNegotiationError
from openldap_exporter.registry import MetricRegistry
from openldap_exporter.scraper import ScrapeOutcome, Scraper


# =============================================================================
# Fixtures
# =============================================================================


def monitor_entries(base_dn, search_filter, attribute, subtree=True):
    """Canned cn=Monitor answers keyed by the requested attribute."""
    answers = {
        "monitoredInfo": [
            DirectoryEntry("cn=Uptime,cn=Time,cn=Monitor", {"monitoredInfo": ["120"]}),
        ],
        "monitorCounter": [
            DirectoryEntry("cn=Total,cn=Connections,cn=Monitor", {"monitorCounter": ["42"]}),
        ],
        "monitorOpCompleted": [
            DirectoryEntry("cn=Bind,cn=Operations,cn=Monitor", {"monitorOpCompleted": ["7"]}),
        ],
        "contextCSN": [
            DirectoryEntry(base_dn, {"contextCSN": ["20060102150405.000000Z#7#sid1#2"]}),
        ],
    }
    return answers[attribute]


@pytest.fixture
def registry():
    return MetricRegistry()


@pytest.fixture
def conn():
    connection = MagicMock()
    connection.search.side_effect = monitor_entries
    return connection


@pytest.fixture
def factory(conn):
    f = MagicMock()
    f.connect.return_value = conn
    return f


def make_scraper(registry, factory, **kwargs) -> Scraper:
    return Scraper(spec=resolve("ldap://h"), registry=registry, factory=factory, **kwargs)


def counter(registry: MetricRegistry, name: str, result: str) -> float:
    return registry.sample(f"openldap_{name}_total", {"result": result}) or 0.0


# =============================================================================
# ScrapeOutcome
# =============================================================================


class TestScrapeOutcome:
    """Tests for the ScrapeOutcome value."""

    def test_default_is_not_ok(self):
        """An empty outcome MUST NOT be ok."""
        assert ScrapeOutcome().ok is False

    def test_all_queries_ok(self):
        """An outcome with every stage successful MUST be ok."""
        assert ScrapeOutcome(True, True, [True, True, True]).ok is True

    def test_one_query_failed(self):
        """A single failed query MUST make the outcome fail."""
        assert ScrapeOutcome(True, True, [True, False, True]).ok is False


# =============================================================================
# Single tick
# =============================================================================


class TestScrapeOnce:
    """Tests for a single tick."""

    def test_successful_tick(self, registry, factory, conn):
        """A clean tick MUST run every query and count one ok scrape."""
        scraper = make_scraper(registry, factory)

        outcome = scraper.scrape_once()

        assert outcome.ok is True
        assert conn.search.call_count == 3
        assert counter(registry, "dial", "ok") == 1
        assert counter(registry, "scrape", "ok") == 1
        assert counter(registry, "scrape", "fail") == 0
        assert registry.sample(
            "openldap_monitor_counter_object", {"dn": "cn=Total,cn=Connections,cn=Monitor"}
        ) == 42.0
        conn.close.assert_called_once()

    def test_queries_run_in_catalog_order(self, registry, factory, conn):
        """Queries MUST run in catalog order, replication last."""
        scraper = make_scraper(registry, factory, replication_dns=["dc=example,dc=com"])

        scraper.scrape_once()

        attributes = [c.args[2] for c in conn.search.call_args_list]
        assert attributes == ["monitoredInfo", "monitorCounter", "monitorOpCompleted", "contextCSN"]
        assert registry.sample(
            "openldap_monitor_replication", {"id": "sid1", "type": "count"}
        ) == 7.0

    def test_anonymous_does_not_bind(self, registry, factory, conn):
        """Without credentials no bind MUST be attempted."""
        make_scraper(registry, factory, user="cn=admin").scrape_once()

        conn.bind.assert_not_called()
        assert counter(registry, "bind", "ok") == 0
        assert counter(registry, "bind", "fail") == 0

    def test_bind_with_credentials(self, registry, factory, conn):
        """With user and password a bind MUST happen before searching."""
        make_scraper(registry, factory, user="cn=admin", password="secret").scrape_once()

        conn.bind.assert_called_once_with("cn=admin", "secret")
        assert counter(registry, "bind", "ok") == 1

    def test_dial_failure(self, registry, factory, conn):
        """A dial failure MUST count dial and scrape failures and do nothing else."""
        factory.connect.side_effect = DialError("connection refused")
        scraper = make_scraper(registry, factory, user="cn=admin", password="secret")

        outcome = scraper.scrape_once()

        assert outcome.dialed is False
        assert counter(registry, "dial", "fail") == 1
        assert counter(registry, "dial", "ok") == 0
        assert counter(registry, "scrape", "fail") == 1
        conn.bind.assert_not_called()
        conn.search.assert_not_called()
        conn.close.assert_not_called()

    def test_starttls_failure_counts_as_dial_failure(self, registry, factory, conn):
        """A StartTLS failure MUST count as a failed dial."""
        factory.connect.side_effect = TLSNegotiationError("handshake failed")

        make_scraper(registry, factory).scrape_once()

        assert counter(registry, "dial", "fail") == 1
        assert counter(registry, "scrape", "fail") == 1
        conn.search.assert_not_called()

    def test_bind_failure(self, registry, factory, conn):
        """A bind failure MUST end the tick and still close the connection."""
        conn.bind.side_effect = AuthError("invalidCredentials")
        scraper = make_scraper(registry, factory, user="cn=admin", password="wrong")

        outcome = scraper.scrape_once()

        assert outcome.dialed is True
        assert outcome.authenticated is False
        assert counter(registry, "dial", "ok") == 1
        assert counter(registry, "bind", "fail") == 1
        assert counter(registry, "scrape", "fail") == 1
        conn.search.assert_not_called()
        conn.close.assert_called_once()

    def test_one_query_fails(self, registry, factory, conn):
        """One failed query MUST fail the scrape but not the other queries."""

        def flaky(base_dn, search_filter, attribute, subtree=True):
            if attribute == "monitorCounter":
                raise SearchError("noSuchObject", search_filter=search_filter)
            return monitor_entries(base_dn, search_filter, attribute)

        conn.search.side_effect = flaky
        scraper = make_scraper(registry, factory)

        outcome = scraper.scrape_once()

        assert outcome.query_results == [True, False, True]
        assert counter(registry, "scrape", "fail") == 1
        assert counter(registry, "scrape", "ok") == 0
        assert registry.sample(
            "openldap_monitored_object", {"dn": "cn=Uptime,cn=Time,cn=Monitor"}
        ) == 120.0
        assert registry.sample(
            "openldap_monitor_operation", {"dn": "cn=Bind,cn=Operations,cn=Monitor"}
        ) == 7.0
        conn.close.assert_called_once()

    def test_unexpected_error_is_contained(self, registry, factory, conn):
        """Unexpected errors MUST be counted, not raised."""
        conn.search.side_effect = RuntimeError("boom")

        outcome = make_scraper(registry, factory).scrape_once()

        assert outcome.ok is False
        assert counter(registry, "scrape", "fail") == 1
        conn.close.assert_called_once()

    def test_one_scrape_count_per_tick(self, registry, factory):
        """Each tick MUST increment the scrape counter exactly once."""
        scraper = make_scraper(registry, factory)

        for _ in range(3):
            scraper.scrape_once()

        assert counter(registry, "scrape", "ok") + counter(registry, "scrape", "fail") == 3
        assert factory.connect.call_count == 3

    def test_catalog_built_once(self, registry, factory):
        """The catalog MUST be built at construction and reused."""
        scraper = make_scraper(registry, factory, replication_dns=["dc=a"])
        catalog = scraper.queries

        scraper.scrape_once()
        scraper.scrape_once()

        assert scraper.queries is catalog
        assert len(catalog) == 4

    def test_probe_runs_after_tick(self, registry, factory):
        """A configured probe MUST run once per tick."""
        probe = MagicMock()
        scraper = make_scraper(registry, factory, probe=probe)

        scraper._tick()

        probe.run_once.assert_called_once()


# =============================================================================
# Loop
# =============================================================================


class TestRunLoop:
    """Tests for the async scrape loop."""

    @pytest.mark.asyncio
    async def test_runs_max_ticks(self, registry, factory):
        """run() MUST stop after max_ticks."""
        scraper = make_scraper(registry, factory, interval=0.01)

        await scraper.run(max_ticks=3)

        assert factory.connect.call_count == 3
        assert counter(registry, "scrape", "ok") == 3

    @pytest.mark.asyncio
    async def test_waits_before_first_tick(self, registry, factory):
        """The first tick MUST come one interval after start."""
        scraper = make_scraper(registry, factory, interval=10)
        stop = asyncio.Event()

        task = asyncio.create_task(scraper.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        factory.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_event_ends_wait_promptly(self, registry, factory):
        """Setting the stop event MUST end the loop without waiting out the interval."""
        scraper = make_scraper(registry, factory, interval=3600)
        stop = asyncio.Event()

        task = asyncio.create_task(scraper.run(stop))
        await asyncio.sleep(0)
        stop.set()

        await asyncio.wait_for(task, timeout=1)
        assert counter(registry, "scrape", "ok") == 0

    @pytest.mark.asyncio
    async def test_stop_method(self, registry, factory):
        """stop() MUST end the loop as well."""
        scraper = make_scraper(registry, factory, interval=3600)

        task = asyncio.create_task(scraper.run())
        await asyncio.sleep(0)
        scraper.stop()

        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_already_stopped(self, registry, factory):
        """A loop started with the stop event set MUST NOT tick."""
        scraper = make_scraper(registry, factory, interval=0.01)
        stop = asyncio.Event()
        stop.set()

        await scraper.run(stop)

        factory.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_during_tick_lets_it_finish(self, registry, factory, conn):
        """A stop during a tick MUST let it finish, close, and start no new tick."""
        started = threading.Event()
        release = threading.Event()
        stop = asyncio.Event()

        def slow_search(base_dn, search_filter, attribute, subtree=True):
            started.set()
            release.wait(timeout=5)
            return monitor_entries(base_dn, search_filter, attribute)

        conn.search.side_effect = slow_search
        scraper = make_scraper(registry, factory, interval=0.01)

        task = asyncio.create_task(scraper.run(stop))
        await asyncio.to_thread(started.wait, 5)
        stop.set()
        release.set()
        await asyncio.wait_for(task, timeout=5)

        assert factory.connect.call_count == 1
        assert counter(registry, "scrape", "ok") == 1
        conn.close.assert_called_once()
