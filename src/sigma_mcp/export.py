"""
Asynchronous export jobs: initiate, poll until ready, parse the payload.

Sigma exports run server-side. A job is created with an export request,
which returns a query id, and the result is fetched from the download
endpoint once ready. The download answers with an empty body until then.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Generic, TypeVar

from .errors import ExportTimeoutError, RemoteApiError
from .models import AnalyticsRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_POLL_INTERVAL_SECONDS = 2.0

EXPORT_FORMATS = {"json", "csv", "jsonl"}

# Column headers of the usage-analytics element -> AnalyticsRecord attribute.
ANALYTICS_FIELD_MAP: dict[str, str] = {
    "# Interactions": "interactions",
    "# Interactions (Percentile)": "interactions_percentile",
    "# Opens": "opens",
    "# Opens (Percentile)": "opens_percentile",
    "# Publishes": "publishes",
    "# Publishes (Percentile)": "publishes_percentile",
    "# Users": "users",
    "Account Type (Doc Created by)": "account_type",
    "Days Since Last Activity": "days_since_last_activity",
    "Days w/ Activity": "days_with_activity",
    "Days w/ Activity (Percentile)": "days_with_activity_percentile",
    "Details": "details",
    "Doc Created At (UTC)": "doc_created_at",
    "Doc Created By (email)": "doc_created_by_email",
    "Doc Created By (name)": "doc_created_by_name",
    "Document Name [version]": "document_name",
    "Document Type": "document_type",
    "First Activity (UTC)": "first_activity",
    "Last Activity (UTC)": "last_activity",
    "Last Opened On (UTC)": "last_opened_on",
    "Last Interacted On (UTC)": "last_interacted_on",
    "Last Published On (UTC)": "last_published_on",
    "Version Tag": "version_tag",
}

NUMERIC_ANALYTICS_FIELDS = {
    "interactions",
    "interactions_percentile",
    "opens",
    "opens_percentile",
    "publishes",
    "publishes_percentile",
    "users",
    "days_since_last_activity",
    "days_with_activity",
    "days_with_activity_percentile",
}

OPTIONAL_ANALYTICS_FIELDS = {"last_interacted_on", "last_published_on"}


class ExportState(str, Enum):
    NOT_STARTED = "not_started"
    INITIATED = "initiated"
    POLLING = "polling"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


def build_export_request(
    element_id: str,
    export_format: str,
    parameters: dict[str, str] | None = None,
) -> dict[str, Any]:
    if export_format not in EXPORT_FORMATS:
        raise ValueError(f"unsupported export format: {export_format}")
    body: dict[str, Any] = {"format": {"type": export_format}, "elementId": element_id}
    if parameters:
        body["parameters"] = dict(parameters)
    return body


def parse_analytics_row(raw: dict[str, Any]) -> AnalyticsRecord:
    values: dict[str, Any] = {}
    for column, attr in ANALYTICS_FIELD_MAP.items():
        value = raw.get(column)
        if attr in NUMERIC_ANALYTICS_FIELDS:
            values[attr] = value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0
        elif attr in OPTIONAL_ANALYTICS_FIELDS:
            values[attr] = str(value) if value else None
        else:
            values[attr] = str(value) if value else ""
    return AnalyticsRecord(**values)


def parse_analytics_jsonl(text: str) -> list[AnalyticsRecord]:
    """Parse a JSONL payload, skipping lines that are not valid JSON objects."""
    records: list[AnalyticsRecord] = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("Skipping unparseable analytics line %d: %s", line_number, exc)
            continue
        if not isinstance(raw, dict):
            logger.warning("Skipping non-object analytics line %d", line_number)
            continue
        records.append(parse_analytics_row(raw))
    return records


def parse_generic_export(text: str, export_format: str) -> str | None:
    """Return the export payload as text, or None while it is not ready."""
    if not text.strip():
        return None
    if export_format != "json":
        return text
    try:
        return json.dumps(json.loads(text), indent=2)
    except json.JSONDecodeError:
        return text


class ExportJob(Generic[T]):
    """State of one export, from request through download."""

    def __init__(
        self,
        workbook_id: str,
        element_id: str,
        export_format: str,
        parameters: dict[str, str] | None = None,
    ):
        self.workbook_id = workbook_id
        self.element_id = element_id
        self.export_format = export_format
        self.parameters = parameters
        self.query_id: str | None = None
        self.state = ExportState.NOT_STARTED
        self.attempts = 0
        self.last_error: str | None = None

    def request_body(self) -> dict[str, Any]:
        return build_export_request(self.element_id, self.export_format, self.parameters)

    def mark_initiated(self, query_id: str) -> None:
        if self.state is not ExportState.NOT_STARTED:
            raise RuntimeError(f"export already {self.state.value}")
        self.query_id = query_id
        self.state = ExportState.INITIATED

    async def poll(
        self,
        attempt: Callable[[str], Awaitable[T | None]],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        """
        Call ``attempt`` until it yields a non-empty result.

        A falsy result means "not ready". A RemoteApiError is logged and
        retried, except on the final attempt where it propagates. Attempts
        are spaced by a fixed interval; no sleep follows the last one.
        """
        if self.query_id is None:
            raise RuntimeError("export has not been initiated")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        query_id = self.query_id
        self.state = ExportState.POLLING
        for number in range(1, max_attempts + 1):
            self.attempts = number
            try:
                result = await attempt(query_id)
            except RemoteApiError as exc:
                self.last_error = str(exc)
                if number == max_attempts:
                    self.state = ExportState.FAILED
                    raise
                logger.warning(
                    "Export %s attempt %d/%d failed: %s", query_id, number, max_attempts, exc
                )
            except Exception as exc:
                self.last_error = str(exc)
                self.state = ExportState.FAILED
                raise
            else:
                if result:
                    self.state = ExportState.COMPLETED
                    logger.info("Export %s ready after %d attempt(s)", query_id, number)
                    return result
                logger.debug("Export %s not ready (attempt %d/%d)", query_id, number, max_attempts)

            if number < max_attempts:
                await sleep(interval_seconds)

        self.state = ExportState.TIMED_OUT
        raise ExportTimeoutError(query_id, max_attempts, interval_seconds)
