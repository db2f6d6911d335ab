"""
Document cache with relevance search and a TTL cache for analytics exports.

Workbooks and datasets are held in memory, one partition per document type,
and mirrored to a durable store. A partition is only ever replaced as a
whole, so readers see either the old or the new contents, never a mix.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import StoreUnavailableError
from .models import (
    AnalyticsCacheEntry,
    AnalyticsRecord,
    BadgeStatus,
    CachedDocument,
    Document,
    DocumentType,
    analytics_cache_key,
    utc_now_iso,
)
from .store import DocumentStore

logger = logging.getLogger(__name__)

ANALYTICS_CACHE_TTL_SECONDS = 30 * 60
DEFAULT_REFRESH_CONCURRENCY = 8
DEFAULT_SEARCH_LIMIT = 10

SEARCH_TYPES = {"workbook", "dataset", "all"}

SCORE_EXACT_NAME = 100
SCORE_NAME_CONTAINS = 50
SCORE_DESCRIPTION_CONTAINS = 25
SCORE_TEXT_CONTAINS = 10
SCORE_ENDORSED = 5
SCORE_DEPRECATED = -10
SCORE_WORD_MATCH = 5
MIN_WORD_LENGTH = 3


class DocumentSource(Protocol):
    """The part of the Sigma client a refresh needs."""

    async def list_workbooks(self) -> list[Document]: ...

    async def list_datasets(self) -> list[Document]: ...

    async def get_workbook_details(self, workbook_id: str) -> Document: ...


def is_analytics_cache_valid(last_cached: float, now: float | None = None) -> bool:
    """True while the entry is younger than the TTL (strictly)."""
    if now is None:
        now = time.time()
    return (now - last_cached) < ANALYTICS_CACHE_TTL_SECONDS


def normalize_search_term(query: Any) -> str | None:
    if not isinstance(query, str):
        return None
    term = query.strip().lower()
    return term or None


def calculate_relevance_score(document: CachedDocument, query: Any) -> int:
    """
    Lexical relevance of a document for a search term.

    Name matches dominate (exact beats substring), then description and the
    combined search text. Multi-word queries add a bonus per matching word.
    A document that matched gets a small boost when endorsed and a penalty
    when deprecated. The score never drops below zero.
    """
    term = normalize_search_term(query)
    if term is None:
        return 0

    name = (document.name or "").lower()
    description = (document.description or "").lower()
    text = (document.searchable_text or "").lower()

    score = 0
    if name == term:
        score += SCORE_EXACT_NAME
    elif term in name:
        score += SCORE_NAME_CONTAINS

    if term in description:
        score += SCORE_DESCRIPTION_CONTAINS
    if term in text:
        score += SCORE_TEXT_CONTAINS

    words = [word for word in term.split(" ") if word]
    if len(words) > 1:
        for word in words:
            if len(word) >= MIN_WORD_LENGTH and word in text:
                score += SCORE_WORD_MATCH

    # Badges only adjust documents that already matched.
    if score == 0:
        return 0
    if document.badge_status is BadgeStatus.ENDORSED:
        score += SCORE_ENDORSED
    elif document.badge_status is BadgeStatus.DEPRECATED:
        score += SCORE_DEPRECATED

    return max(0, score)


@dataclass
class CacheHealth:
    """Health state for the document cache."""

    degraded: bool = False
    reason: str | None = None
    failure_count: int = 0
    last_error: str | None = None
    last_error_at: float | None = None
    last_success_at: float | None = None


class DocumentCache:
    """In-memory document index and analytics cache backed by a DocumentStore."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        refresh_concurrency: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._clock = clock
        self._refresh_concurrency = refresh_concurrency or int(
            os.getenv("SIGMA_REFRESH_CONCURRENCY", str(DEFAULT_REFRESH_CONCURRENCY))
        )
        if self._refresh_concurrency < 1:
            raise ValueError("SIGMA_REFRESH_CONCURRENCY must be at least 1")

        self._partitions: dict[DocumentType, tuple[CachedDocument, ...]] = {
            DocumentType.WORKBOOK: (),
            DocumentType.DATASET: (),
        }
        self._analytics: dict[str, AnalyticsCacheEntry] = {}
        self._health = CacheHealth()
        self._last_refresh_at: float | None = None

    def _set_degraded(self, reason: str) -> None:
        self._health.degraded = True
        self._health.reason = reason
        self._health.failure_count += 1
        self._health.last_error = reason
        self._health.last_error_at = self._clock()

    def _set_healthy(self) -> None:
        self._health.degraded = False
        self._health.reason = None
        self._health.failure_count = 0
        self._health.last_success_at = self._clock()

    def is_degraded(self) -> bool:
        return self._health.degraded

    def is_empty(self) -> bool:
        return not any(self._partitions.values())

    async def initialize(self) -> None:
        """Load both partitions from the store; a failed load leaves that partition empty."""
        loaded: dict[DocumentType, tuple[CachedDocument, ...]] = {}
        errors: list[str] = []
        for doc_type in DocumentType:
            try:
                loaded[doc_type] = tuple(await self._store.load_documents(doc_type))
            except Exception as exc:
                logger.warning("Failed to load cached %ss, starting empty: %s", doc_type.value, exc)
                errors.append(f"{doc_type.value}: {exc}")
                loaded[doc_type] = ()

        self._partitions = loaded
        if errors:
            self._set_degraded(f"store load errors: {'; '.join(errors)}")
        else:
            self._set_healthy()
        logger.info(
            "Loaded %d workbooks and %d datasets from cache",
            len(loaded[DocumentType.WORKBOOK]),
            len(loaded[DocumentType.DATASET]),
        )

    def get_workbooks(self) -> Sequence[CachedDocument]:
        return self._partitions[DocumentType.WORKBOOK]

    def get_datasets(self) -> Sequence[CachedDocument]:
        return self._partitions[DocumentType.DATASET]

    def _candidates(self, document_type: str) -> Sequence[CachedDocument]:
        partitions = self._partitions
        if document_type == "all":
            return partitions[DocumentType.WORKBOOK] + partitions[DocumentType.DATASET]
        return partitions[DocumentType(document_type)]

    def search_documents(
        self,
        query: Any,
        document_type: str = "all",
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[CachedDocument]:
        """Documents with a positive relevance score, best first, at most ``limit``."""
        term = normalize_search_term(query)
        if term is None or document_type not in SEARCH_TYPES:
            return []
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            return []

        scored = [(calculate_relevance_score(doc, term), doc) for doc in self._candidates(document_type)]
        matches = [item for item in scored if item[0] > 0]
        matches.sort(key=lambda item: item[0], reverse=True)
        return [doc for _, doc in matches[:limit]]

    async def update_document_cache(self, doc_type: DocumentType, documents: Iterable[Document]) -> None:
        """Replace one partition wholesale: persist first, then swap it in."""
        cached_at = utc_now_iso()
        by_id: dict[str, CachedDocument] = {}
        for document in documents:
            by_id[document.id] = CachedDocument.from_document(document, cached_at)
        partition = tuple(by_id.values())

        await self._store.save_documents(doc_type, list(partition))
        self._partitions = {**self._partitions, doc_type: partition}
        logger.info("Updated cache with %d %ss", len(partition), doc_type.value)

    async def refresh_cache(self, source: DocumentSource) -> dict[str, int]:
        """Rebuild both partitions from the Sigma API."""
        logger.info("Refreshing document cache")
        try:
            workbooks, datasets = await asyncio.gather(source.list_workbooks(), source.list_datasets())

            semaphore = asyncio.Semaphore(self._refresh_concurrency)

            async def with_details(workbook: Document) -> Document:
                async with semaphore:
                    return await source.get_workbook_details(workbook.id)

            detailed = await asyncio.gather(*(with_details(wb) for wb in workbooks))

            await self.update_document_cache(DocumentType.WORKBOOK, detailed)
            await self.update_document_cache(DocumentType.DATASET, datasets)
        except Exception as exc:
            self._set_degraded(f"refresh failed: {exc}")
            logger.error("Failed to refresh document cache: %s", exc)
            raise

        self._last_refresh_at = self._clock()
        self._set_healthy()
        summary = {"workbooks": len(self.get_workbooks()), "datasets": len(self.get_datasets())}
        logger.info("Cache refresh completed: %s", summary)
        return summary

    def is_analytics_cache_valid(self, last_cached: float) -> bool:
        return is_analytics_cache_valid(last_cached, self._clock())

    async def get_cached_document_analytics(
        self, workbook_id: str, element_id: str
    ) -> list[AnalyticsRecord] | None:
        """Cached analytics rows, or None when absent or older than the TTL."""
        key = analytics_cache_key(workbook_id, element_id)
        entry = self._analytics.get(key)
        if entry is None:
            try:
                entry = await self._store.load_analytics(key)
            except StoreUnavailableError as exc:
                logger.warning("Analytics cache read for %s failed, treating as miss: %s", key, exc)
                return None
            if entry is not None:
                self._analytics[key] = entry

        if entry is None:
            return None
        if not self.is_analytics_cache_valid(entry.last_cached):
            self._analytics.pop(key, None)
            return None
        return list(entry.records)

    async def cache_document_analytics(
        self, workbook_id: str, element_id: str, records: Iterable[AnalyticsRecord]
    ) -> AnalyticsCacheEntry:
        entry = AnalyticsCacheEntry(
            workbook_id=workbook_id,
            element_id=element_id,
            records=list(records),
            last_cached=self._clock(),
        )
        await self._store.save_analytics(entry.key, entry)
        self._analytics[entry.key] = entry
        return entry

    def get_health(self) -> dict[str, Any]:
        workbooks = self.get_workbooks()
        datasets = self.get_datasets()
        last_cached = next((doc.last_cached_at for doc in (*workbooks, *datasets) if doc.last_cached_at), None)
        return {
            "degraded": self._health.degraded,
            "reason": self._health.reason,
            "failureCount": self._health.failure_count,
            "lastError": self._health.last_error,
            "lastErrorAt": self._health.last_error_at,
            "lastSuccessAt": self._health.last_success_at,
            "lastRefreshAt": self._last_refresh_at,
            "lastCachedAt": last_cached or "never",
            "workbooksCount": len(workbooks),
            "datasetsCount": len(datasets),
            "analyticsEntries": len(self._analytics),
            "analyticsTtlSeconds": ANALYTICS_CACHE_TTL_SECONDS,
            "store": self._store.describe(),
        }
