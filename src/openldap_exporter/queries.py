"""Monitor query catalog.

Three fixed searches against cn=Monitor, plus one contextCSN search per
replicated suffix the operator asked to watch.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from openldap_exporter.registry import (
    MONITOR_BASE_DN,
    MONITOR_COUNTER_OBJECT,
    MONITOR_OPERATION,
    MONITOR_REPLICATION,
    MONITORED_OBJECT,
    OPERATIONS_BASE_DN,
)

REPLICATION_ATTRIBUTE = "contextCSN"


class DecodeStrategy(Enum):
    """How a query's attribute values turn into gauge samples."""

    SCALAR_NUMERIC = "scalar_numeric"  # one float per entry, labeled by dn
    REPLICATION_STATE = "replication_state"  # contextCSN, labeled by server id


@dataclass(frozen=True)
class Query:
    """A single monitor search and the gauge family it feeds."""

    base_dn: str
    search_filter: str
    search_attribute: str
    metric: str
    decode: DecodeStrategy = DecodeStrategy.SCALAR_NUMERIC


def object_class(name: str) -> str:
    """Build an ``(objectClass=<name>)`` filter."""
    return f"(objectClass={name})"


BASE_QUERIES: tuple[Query, ...] = (
    Query(
        base_dn=MONITOR_BASE_DN,
        search_filter=object_class("monitoredObject"),
        search_attribute="monitoredInfo",
        metric=MONITORED_OBJECT,
    ),
    Query(
        base_dn=MONITOR_BASE_DN,
        search_filter=object_class("monitorCounterObject"),
        search_attribute="monitorCounter",
        metric=MONITOR_COUNTER_OBJECT,
    ),
    Query(
        base_dn=OPERATIONS_BASE_DN,
        search_filter=object_class("monitorOperation"),
        search_attribute="monitorOpCompleted",
        metric=MONITOR_OPERATION,
    ),
)


def replication_query(base_dn: str) -> Query:
    """Build the contextCSN query for one replicated suffix."""
    return Query(
        base_dn=base_dn,
        search_filter=object_class("*"),
        search_attribute=REPLICATION_ATTRIBUTE,
        metric=MONITOR_REPLICATION,
        decode=DecodeStrategy.REPLICATION_STATE,
    )


def build_catalog(replication_dns: Iterable[str] = ()) -> tuple[Query, ...]:
    """Build the full query catalog.

    Args:
        replication_dns: Suffixes whose contextCSN should be watched.
            Blank entries are ignored; order is kept.

    Returns:
        The base queries followed by one replication query per suffix.
    """
    extra = tuple(
        replication_query(dn.strip()) for dn in replication_dns if dn and dn.strip()
    )
    return BASE_QUERIES + extra
