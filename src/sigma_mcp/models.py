"""
Data model for cached Sigma documents, usage analytics and access tokens.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ANALYTICS_KEY_PREFIX = "analytics"


class DocumentType(str, Enum):
    WORKBOOK = "workbook"
    DATASET = "dataset"

    @property
    def partition(self) -> str:
        """Name of the in-memory and file-backend partition for this type."""
        return f"{self.value}s"


class BadgeStatus(str, Enum):
    ENDORSED = "Endorsed"
    WARNING = "Warning"
    DEPRECATED = "Deprecated"

    @classmethod
    def derive(cls, raw: Any) -> BadgeStatus | None:
        """Map a platform badge value onto a known status, case-insensitively."""
        if not isinstance(raw, str):
            return None
        wanted = raw.strip().lower()
        for status in cls:
            if status.value.lower() == wanted:
                return status
        return None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def analytics_cache_key(workbook_id: str, element_id: str) -> str:
    return f"{ANALYTICS_KEY_PREFIX}:{workbook_id}:{element_id}"


@dataclass
class DocumentElement:
    """A page element (table, chart, ...) inside a workbook."""

    id: str
    name: str
    type: str = ""
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DocumentElement:
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name") or data.get("id", "")),
            type=str(data.get("type") or ""),
            description=data.get("description"),
        )


@dataclass
class Document:
    """A workbook or dataset as reported by the Sigma API."""

    id: str
    type: DocumentType
    name: str
    url: str = ""
    description: str | None = None
    created_by: str = ""
    updated_at: str = ""
    badge_status: BadgeStatus | None = None
    tags: list[str] = field(default_factory=list)
    elements: list[DocumentElement] = field(default_factory=list)


@dataclass
class CachedDocument(Document):
    """Document plus the derived search text and the instant it was cached."""

    searchable_text: str = ""
    last_cached_at: str = ""

    @classmethod
    def from_document(cls, document: Document, cached_at: str | None = None) -> CachedDocument:
        values = {f.name: getattr(document, f.name) for f in fields(Document)}
        cached = cls(**values)
        cached.searchable_text = build_searchable_text(document)
        cached.last_cached_at = cached_at or utc_now_iso()
        return cached

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["badge_status"] = self.badge_status.value if self.badge_status else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedDocument:
        return cls(
            id=str(data["id"]),
            type=DocumentType(data["type"]),
            name=str(data.get("name") or ""),
            url=str(data.get("url") or ""),
            description=data.get("description"),
            created_by=str(data.get("created_by") or ""),
            updated_at=str(data.get("updated_at") or ""),
            badge_status=BadgeStatus.derive(data.get("badge_status")),
            tags=[str(tag) for tag in data.get("tags") or []],
            elements=[DocumentElement.from_dict(el) for el in data.get("elements") or []],
            searchable_text=str(data.get("searchable_text") or ""),
            last_cached_at=str(data.get("last_cached_at") or ""),
        )


def build_searchable_text(document: Document) -> str:
    """Lower-cased concatenation of the fields search should match against."""
    parts = [
        document.name,
        document.description or "",
        document.created_by,
        document.badge_status.value if document.badge_status else "",
        *document.tags,
        *(f"{el.name} {el.description or ''}" for el in document.elements),
    ]
    return " ".join(part for part in parts if part).lower()


@dataclass(frozen=True)
class AnalyticsRecord:
    """One row of the Sigma usage-analytics export."""

    interactions: float = 0
    interactions_percentile: float = 0
    opens: float = 0
    opens_percentile: float = 0
    publishes: float = 0
    publishes_percentile: float = 0
    users: float = 0
    account_type: str = ""
    days_since_last_activity: float = 0
    days_with_activity: float = 0
    days_with_activity_percentile: float = 0
    details: str = ""
    doc_created_at: str = ""
    doc_created_by_email: str = ""
    doc_created_by_name: str = ""
    document_name: str = ""
    document_type: str = ""
    first_activity: str = ""
    last_activity: str = ""
    last_opened_on: str = ""
    last_interacted_on: str | None = None
    last_published_on: str | None = None
    version_tag: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalyticsRecord:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


ANALYTICS_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(AnalyticsRecord))


@dataclass
class AnalyticsCacheEntry:
    """Analytics rows for one (workbook, element) pair and when they were fetched."""

    workbook_id: str
    element_id: str
    records: list[AnalyticsRecord]
    last_cached: float

    @property
    def key(self) -> str:
        return analytics_cache_key(self.workbook_id, self.element_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workbookId": self.workbook_id,
            "elementId": self.element_id,
            "data": [record.to_dict() for record in self.records],
            "lastCached": self.last_cached,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalyticsCacheEntry:
        return cls(
            workbook_id=str(data["workbookId"]),
            element_id=str(data["elementId"]),
            records=[AnalyticsRecord.from_dict(row) for row in data.get("data") or []],
            last_cached=float(data["lastCached"]),
        )


@dataclass
class AccessToken:
    """Bearer token with the instant after which it must be renewed."""

    value: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
