"""Turn monitor search results into gauge samples.

Decoding never fails a scrape: entries without the attribute, or with a
value that does not parse, are skipped one by one.
"""

from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from openldap_exporter.connection import DirectoryEntry
from openldap_exporter.errors import DecodeSkip
from openldap_exporter.queries import DecodeStrategy, Query
from openldap_exporter.registry import MetricRegistry

logger = logging.getLogger(__name__)

CSN_SEPARATOR = "#"
CSN_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

# YYYYMMDDHHMMSS.ffffffZ, fraction optional and up to microseconds
_CSN_TIMESTAMP_RE = re.compile(r"^(\d{14})(?:\.(\d{1,6}))?Z$")


@dataclass(frozen=True)
class ReplicationState:
    """A parsed contextCSN value: timestamp#count#server-id#mod."""

    timestamp: datetime
    count: float
    server_id: str
    mod: float

    @property
    def epoch_seconds(self) -> int:
        """Unix time of the change, truncated to whole seconds."""
        return calendar.timegm(self.timestamp.utctimetuple())


def _parse_float(field_name: str, text: str) -> float:
    if not text or text != text.strip() or "_" in text:
        raise DecodeSkip(field_name, text)
    try:
        return float(text)
    except ValueError:
        raise DecodeSkip(field_name, text) from None


def parse_csn_timestamp(text: str) -> datetime:
    """Parse the generalized-time part of a CSN into an aware UTC datetime.

    Raises:
        DecodeSkip: If the text is not ``YYYYMMDDHHMMSS[.ffffff]Z``.
    """
    match = _CSN_TIMESTAMP_RE.match(text)
    if not match:
        raise DecodeSkip("gt", text)
    try:
        timestamp = datetime.strptime(match.group(1), CSN_TIMESTAMP_FORMAT)
    except ValueError:
        raise DecodeSkip("gt", text) from None
    fraction = match.group(2) or ""
    microsecond = int(fraction.ljust(6, "0")) if fraction else 0
    return timestamp.replace(microsecond=microsecond, tzinfo=timezone.utc)


def parse_csn(value: str) -> ReplicationState:
    """Parse a contextCSN value.

    Args:
        value: e.g. ``20060102150405.000000Z#000007#001#000002``.

    Returns:
        The parsed ReplicationState.

    Raises:
        DecodeSkip: If any of the four fields is missing or malformed.
    """
    fields = value.split(CSN_SEPARATOR)
    if len(fields) != 4:
        raise DecodeSkip("csn", value)

    gt_text, count_text, server_id, mod_text = fields
    timestamp = parse_csn_timestamp(gt_text)
    count = _parse_float("count", count_text)
    if not server_id:
        raise DecodeSkip("sid", server_id)
    mod = _parse_float("mod", mod_text)

    return ReplicationState(
        timestamp=timestamp,
        count=count,
        server_id=server_id,
        mod=mod,
    )


def decode(
    entries: Iterable[DirectoryEntry],
    query: Query,
    registry: MetricRegistry,
) -> None:
    """Write the query's attribute values into its gauge family.

    Args:
        entries: Search results for the query.
        query: The query that produced them.
        registry: Registry holding the target gauge family.
    """
    if query.decode == DecodeStrategy.REPLICATION_STATE:
        _set_replication_values(entries, query, registry)
    else:
        _set_scalar_values(entries, query, registry)


def _set_scalar_values(
    entries: Iterable[DirectoryEntry],
    query: Query,
    registry: MetricRegistry,
) -> None:
    gauge = registry.gauge(query.metric)
    for entry in entries:
        value = entry.get_attribute_value(query.search_attribute)
        if not value:
            # not every entry carries the attribute
            continue
        try:
            number = _parse_float(query.search_attribute, value)
        except DecodeSkip:
            # monitoredInfo is free text on several entries
            logger.debug(f"Skipping non-numeric {query.search_attribute} on {entry.dn}")
            continue
        gauge.labels(dn=entry.dn).set(number)


def _set_replication_values(
    entries: Iterable[DirectoryEntry],
    query: Query,
    registry: MetricRegistry,
) -> None:
    gauge = registry.gauge(query.metric)
    for entry in entries:
        value = entry.get_attribute_value(query.search_attribute)
        if not value:
            continue
        try:
            state = parse_csn(value)
        except DecodeSkip as e:
            logger.warning(
                f"{e}",
                extra={
                    "filter": query.search_filter,
                    "attr": query.search_attribute,
                    "value": value,
                },
            )
            continue

        gauge.labels(id=state.server_id, type="gt").set(state.epoch_seconds)
        gauge.labels(id=state.server_id, type="count").set(state.count)
        gauge.labels(id=state.server_id, type="mod").set(state.mod)
