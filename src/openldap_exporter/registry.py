"""Prometheus metric families published by the exporter.

The registry is built once at process start and handed to both the scraper
and the HTTP exposition server. Nothing is registered with the
prometheus_client default registry.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge

SUBSYSTEM = "openldap"

MONITOR_BASE_DN = "cn=Monitor"
OPERATIONS_BASE_DN = "cn=Operations,cn=Monitor"

# Gauge family names used by the query catalog
MONITORED_OBJECT = "monitored_object"
MONITOR_COUNTER_OBJECT = "monitor_counter_object"
MONITOR_OPERATION = "monitor_operation"
MONITOR_REPLICATION = "monitor_replication"

GAUGE_DEFINITIONS: dict[str, tuple[str, list[str]]] = {
    MONITORED_OBJECT: (
        f"{MONITOR_BASE_DN} (objectClass=monitoredObject) monitoredInfo",
        ["dn"],
    ),
    MONITOR_COUNTER_OBJECT: (
        f"{MONITOR_BASE_DN} (objectClass=monitorCounterObject) monitorCounter",
        ["dn"],
    ),
    MONITOR_OPERATION: (
        f"{OPERATIONS_BASE_DN} (objectClass=monitorOperation) monitorOpCompleted",
        ["dn"],
    ),
    MONITOR_REPLICATION: (
        f"{MONITOR_BASE_DN} monitorReplication",
        ["id", "type"],
    ),
}

COUNTER_DEFINITIONS: dict[str, str] = {
    "dial": "successful vs unsuccessful ldap dial attempts",
    "bind": "successful vs unsuccessful ldap bind attempts",
    "scrape": "successful vs unsuccessful ldap scrape attempts",
}

RESULT_OK = "ok"
RESULT_FAIL = "fail"


class MetricRegistry:
    """Named gauge and counter families keyed by label sets.

    prometheus_client metrics are thread-safe, so the scrape thread can
    write while the HTTP handler reads.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.gauges: dict[str, Gauge] = {}
        self.counters: dict[str, Counter] = {}

        for name, (description, labels) in GAUGE_DEFINITIONS.items():
            self.gauges[name] = Gauge(
                name,
                description,
                labels,
                subsystem=SUBSYSTEM,
                registry=self.registry,
            )

        for name, description in COUNTER_DEFINITIONS.items():
            self.counters[name] = Counter(
                name,
                description,
                ["result"],
                subsystem=SUBSYSTEM,
                registry=self.registry,
            )

    def gauge(self, name: str) -> Gauge:
        """Get a gauge family by its short name (e.g. ``monitored_object``)."""
        return self.gauges[name]

    def counter(self, name: str) -> Counter:
        """Get a counter family by its short name (e.g. ``dial``)."""
        return self.counters[name]

    def record(self, name: str, ok: bool) -> None:
        """Increment an outcome counter by one.

        Args:
            name: Counter short name (``dial``, ``bind`` or ``scrape``).
            ok: Whether the attempt succeeded.
        """
        result = RESULT_OK if ok else RESULT_FAIL
        self.counters[name].labels(result=result).inc()

    def sample(self, metric: str, labels: dict[str, str] | None = None) -> float | None:
        """Read the current value of one series.

        Args:
            metric: Full sample name, e.g. ``openldap_dial_total``.
            labels: Label set of the series.

        Returns:
            The value, or None if the series does not exist.
        """
        return self.registry.get_sample_value(metric, labels or {})
