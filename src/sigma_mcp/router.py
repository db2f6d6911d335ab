"""
Tool routing between the document cache, the analytics TTL cache and the Sigma API.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any

from .cache import DEFAULT_SEARCH_LIMIT, DocumentCache
from .client import SigmaApiClient
from .errors import InvalidQueryError, SigmaMcpError
from .models import AnalyticsRecord
from .query import RecordQueryEngine, SimpleQueryEngine

logger = logging.getLogger(__name__)

SERVER_VERSION = "0.1.0"


class ToolRouter:
    """Owns the cache, client and query engine shared by every tool call."""

    def __init__(
        self,
        cache: DocumentCache,
        client: SigmaApiClient,
        query_engine: RecordQueryEngine | None = None,
        analytics_workbook_id: str | None = None,
        analytics_element_id: str | None = None,
    ):
        self._cache = cache
        self._client = client
        self._query_engine = query_engine or SimpleQueryEngine()
        self._analytics_workbook_id = analytics_workbook_id or os.getenv("SIGMA_ANALYTICS_WORKBOOK_ID")
        self._analytics_element_id = analytics_element_id or os.getenv("SIGMA_ANALYTICS_ELEMENT_ID")

    @property
    def cache(self) -> DocumentCache:
        return self._cache

    @property
    def client(self) -> SigmaApiClient:
        return self._client

    def search_documents(
        self,
        query: Any,
        document_type: str = "all",
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[dict[str, Any]]:
        results = self._cache.search_documents(query, document_type, limit)
        return [doc.to_dict() for doc in results]

    def list_workbooks(self) -> list[dict[str, Any]]:
        return [doc.to_dict() for doc in self._cache.get_workbooks()]

    def list_datasets(self) -> list[dict[str, Any]]:
        return [doc.to_dict() for doc in self._cache.get_datasets()]

    async def export_data(
        self,
        workbook_id: str,
        element_id: str,
        export_format: str = "json",
        parameters: dict[str, str] | None = None,
    ) -> str:
        if not workbook_id or not element_id:
            raise InvalidQueryError("workbook_id and element_id are required")
        if export_format not in {"json", "csv"}:
            raise InvalidQueryError(f"format must be 'json' or 'csv', got {export_format!r}")
        return await self._client.export_data(workbook_id, element_id, export_format, parameters)

    async def _load_analytics(
        self,
        workbook_id: str,
        element_id: str,
        parameters: dict[str, str] | None,
        use_cache: bool,
    ) -> tuple[list[AnalyticsRecord], str]:
        # The cache key has no parameter component, so filtered exports bypass it.
        cacheable = not parameters
        if cacheable and use_cache:
            cached = await self._cache.get_cached_document_analytics(workbook_id, element_id)
            if cached is not None:
                logger.debug("Analytics cache hit for %s/%s", workbook_id, element_id)
                return cached, "cache"

        records = await self._client.get_document_analytics(workbook_id, element_id, parameters)
        if cacheable:
            await self._cache.cache_document_analytics(workbook_id, element_id, records)
        return records, "remote"

    async def get_document_analytics(
        self,
        workbook_id: str,
        element_id: str,
        parameters: dict[str, str] | None = None,
        use_cache: bool = True,
    ) -> dict[str, Any]:
        if not workbook_id or not element_id:
            raise InvalidQueryError("workbook_id and element_id are required")
        records, source = await self._load_analytics(workbook_id, element_id, parameters, use_cache)
        return {
            "records": [record.to_dict() for record in records],
            "totalCount": len(records),
            "source": source,
        }

    async def analyze_documents(
        self,
        query: str,
        workbook_id: str | None = None,
        element_id: str | None = None,
        use_cache: bool = True,
    ) -> dict[str, Any]:
        workbook_id = workbook_id or self._analytics_workbook_id
        element_id = element_id or self._analytics_element_id
        if not workbook_id or not element_id:
            raise InvalidQueryError(
                "analytics source not configured: pass workbook_id/element_id or set "
                "SIGMA_ANALYTICS_WORKBOOK_ID and SIGMA_ANALYTICS_ELEMENT_ID"
            )

        # Parse before fetching so a bad expression fails without an export.
        self._query_engine.execute([], query)

        records, source = await self._load_analytics(workbook_id, element_id, None, use_cache)
        selected = self._query_engine.execute(records, query)
        return {
            "query": query,
            "records": [record.to_dict() for record in selected],
            "totalCount": len(selected),
            "scannedCount": len(records),
            "source": source,
        }

    async def heartbeat(self) -> dict[str, Any]:
        started = time.monotonic()
        try:
            user_info = await self._client.whoami()
        except SigmaMcpError as exc:
            logger.warning("Heartbeat failed: %s", exc)
            return {
                "status": "unhealthy",
                "error": exc.message,
                "sigma_api": {"connected": False},
                "server_info": {"version": SERVER_VERSION},
            }

        health = self._cache.get_health()
        return {
            "status": "healthy",
            "sigma_api": {
                "connected": True,
                "response_time_ms": round((time.monotonic() - started) * 1000),
                "user_info": user_info,
            },
            "document_cache": {
                "workbooks_count": health["workbooksCount"],
                "datasets_count": health["datasetsCount"],
                "last_updated": health["lastCachedAt"],
            },
            "server_info": {"version": SERVER_VERSION},
        }

    async def refresh_cache(self) -> dict[str, Any]:
        await self._cache.refresh_cache(self._client)
        return self._cache.get_health()

    def get_health(self) -> dict[str, Any]:
        return {
            "cache": self._cache.get_health(),
            "sigma": self._client.get_health(),
        }

    async def aclose(self) -> None:
        await self._client.aclose()
