"""
Usage report export.

Serializes slices of the ledger to JSON or CSV, newest events first.

``iter_report`` streams encoded chunks straight from the store cursor and
is the way to export large ledgers. ``export_report`` joins those chunks
into one bytes object and therefore holds the whole report in memory.
"""

import csv
import io
import json
from datetime import datetime
from enum import Enum
from typing import Iterable, Iterator, Optional, Union

from ..storage.models import LedgerFilter, UsageEvent
from ..storage.repository import LedgerStore

# Fixed CSV column order.
CSV_COLUMNS = (
    "timestamp",
    "provider",
    "endpoint",
    "cost",
    "quantity",
    "success",
    "status_code",
    "response_time",
    "unrecognized",
)


class ReportFormat(Enum):
    JSON = "json"
    CSV = "csv"


class InvalidFormat(ValueError):
    """Raised when an export format is not supported."""
    def __init__(self, format_name: object):
        valid_formats = [f.value for f in ReportFormat]
        super().__init__(f"Unsupported report format: {format_name!r} (expected one of {valid_formats})")
        self.format = format_name


def parse_format(format_name: Union[str, ReportFormat]) -> ReportFormat:
    if isinstance(format_name, ReportFormat):
        return format_name
    try:
        return ReportFormat(str(format_name).lower())
    except ValueError:
        raise InvalidFormat(format_name)


class ReportExporter:
    """Exports ledger events matching a filter."""

    def __init__(self, store: LedgerStore):
        self._store = store

    def iter_report(
        self,
        format: Union[str, ReportFormat],
        provider: Optional[str] = None,
        providers: Optional[Iterable[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Iterator[bytes]:
        """Stream an encoded report chunk by chunk.

        The format is validated before the ledger is touched.

        Raises:
            InvalidFormat: If format is not json or csv
            ServiceUnavailable: If the ledger store cannot be read
        """
        report_format = parse_format(format)
        filters = LedgerFilter(
            provider=provider,
            providers=tuple(providers) if providers is not None else None,
            start=start,
            end=end,
        )
        events = self._store.iter_events(filters, newest_first=True)
        if report_format == ReportFormat.JSON:
            return _iter_json(events)
        return _iter_csv(events)

    def export_report(
        self,
        format: Union[str, ReportFormat],
        provider: Optional[str] = None,
        providers: Optional[Iterable[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> bytes:
        """Return the complete report as bytes (buffered in memory)."""
        return b"".join(self.iter_report(format, provider, providers, start, end))


def _iter_json(events: Iterator[UsageEvent]) -> Iterator[bytes]:
    yield b"["
    first = True
    for event in events:
        prefix = b"" if first else b","
        first = False
        yield prefix + json.dumps(event.to_dict(), sort_keys=True).encode("utf-8")
    yield b"]"


def _iter_csv(events: Iterator[UsageEvent]) -> Iterator[bytes]:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    def flush() -> bytes:
        chunk = buffer.getvalue().encode("utf-8")
        buffer.seek(0)
        buffer.truncate(0)
        return chunk

    writer.writerow(CSV_COLUMNS)
    yield flush()
    for event in events:
        writer.writerow([
            event.timestamp.isoformat(),
            event.provider,
            event.endpoint,
            repr(event.cost),
            event.quantity,
            str(event.success).lower(),
            "" if event.status_code is None else event.status_code,
            "" if event.response_time is None else event.response_time,
            str(event.unrecognized).lower(),
        ])
        yield flush()
