from __future__ import annotations

import asyncio
from typing import Any

import pytest

from sigma_mcp.errors import AuthError, InvalidQueryError, RemoteApiError
from sigma_mcp.models import AnalyticsRecord, CachedDocument, Document, DocumentType
from sigma_mcp.router import SERVER_VERSION, ToolRouter


class FakeCache:
    def __init__(self, workbooks: list[CachedDocument] | None = None):
        self.workbooks = workbooks or []
        self.analytics: dict[tuple[str, str], list[AnalyticsRecord]] = {}
        self.cached_writes: list[tuple[str, str]] = []
        self.refreshed_with: list[Any] = []
        self.searches: list[tuple[Any, str, int]] = []

    def search_documents(self, query: Any, document_type: str = "all", limit: int = 10) -> list[CachedDocument]:
        self.searches.append((query, document_type, limit))
        return self.workbooks[:limit]

    def get_workbooks(self) -> list[CachedDocument]:
        return self.workbooks

    def get_datasets(self) -> list[CachedDocument]:
        return []

    async def get_cached_document_analytics(self, workbook_id: str, element_id: str):
        return self.analytics.get((workbook_id, element_id))

    async def cache_document_analytics(self, workbook_id: str, element_id: str, records):
        self.cached_writes.append((workbook_id, element_id))
        self.analytics[(workbook_id, element_id)] = list(records)

    async def refresh_cache(self, source: Any) -> dict[str, int]:
        self.refreshed_with.append(source)
        return {"workbooks": len(self.workbooks), "datasets": 0}

    def get_health(self) -> dict[str, Any]:
        return {
            "degraded": False,
            "workbooksCount": len(self.workbooks),
            "datasetsCount": 0,
            "lastCachedAt": "2024-05-01T00:00:00Z",
        }


class FakeClient:
    def __init__(self):
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.analytics: list[AnalyticsRecord] = []
        self.exceptions: dict[str, Exception] = {}
        self.closed = False

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.exceptions:
            raise self.exceptions[name]

    async def export_data(self, workbook_id, element_id, export_format="json", parameters=None) -> str:
        self._record("export_data", workbook_id, element_id, export_format, parameters)
        return "a,b\n1,2\n"

    async def get_document_analytics(self, workbook_id, element_id, parameters=None):
        self._record("get_document_analytics", workbook_id, element_id, parameters)
        return list(self.analytics)

    async def whoami(self) -> dict[str, Any]:
        self._record("whoami")
        return {"email": "ana@example.com"}

    def get_health(self) -> dict[str, Any]:
        return {"hasToken": True}

    async def aclose(self) -> None:
        self.closed = True


def _workbook(doc_id: str, name: str) -> CachedDocument:
    return CachedDocument.from_document(
        Document(id=doc_id, type=DocumentType.WORKBOOK, name=name), cached_at="2024-05-01T00:00:00Z"
    )


def _analytics_calls(client: FakeClient) -> list[tuple[str, tuple[Any, ...]]]:
    return [call for call in client.calls if call[0] == "get_document_analytics"]


def test_search_documents_serializes_cache_results():
    cache = FakeCache([_workbook("w1", "Sales"), _workbook("w2", "Ops")])
    router = ToolRouter(cache, FakeClient())

    result = router.search_documents("sales", "workbook", 1)

    assert cache.searches == [("sales", "workbook", 1)]
    assert result == [cache.workbooks[0].to_dict()]
    assert result[0]["type"] == "workbook"


def test_list_tools_read_only_from_cache():
    cache = FakeCache([_workbook("w1", "Sales")])
    client = FakeClient()
    router = ToolRouter(cache, client)

    assert [doc["id"] for doc in router.list_workbooks()] == ["w1"]
    assert router.list_datasets() == []
    assert client.calls == []


def test_export_data_validates_arguments():
    client = FakeClient()
    router = ToolRouter(FakeCache(), client)

    with pytest.raises(InvalidQueryError):
        asyncio.run(router.export_data("", "el"))
    with pytest.raises(InvalidQueryError):
        asyncio.run(router.export_data("wb", "el", "jsonl"))
    assert client.calls == []

    assert asyncio.run(router.export_data("wb", "el", "csv")) == "a,b\n1,2\n"
    assert client.calls == [("export_data", ("wb", "el", "csv", None))]


def test_analytics_cache_hit_skips_remote_call():
    cache = FakeCache()
    cache.analytics[("wb", "el")] = [AnalyticsRecord(opens=3)]
    client = FakeClient()
    router = ToolRouter(cache, client)

    result = asyncio.run(router.get_document_analytics("wb", "el"))

    assert result["source"] == "cache"
    assert result["totalCount"] == 1
    assert result["records"][0]["opens"] == 3
    assert client.calls == []


def test_analytics_miss_fetches_and_caches():
    cache = FakeCache()
    client = FakeClient()
    client.analytics = [AnalyticsRecord(opens=1), AnalyticsRecord(opens=2)]
    router = ToolRouter(cache, client)

    first = asyncio.run(router.get_document_analytics("wb", "el"))
    second = asyncio.run(router.get_document_analytics("wb", "el"))

    assert first["source"] == "remote"
    assert second["source"] == "cache"
    assert len(_analytics_calls(client)) == 1
    assert cache.cached_writes == [("wb", "el")]


def test_use_cache_false_bypasses_lookup_but_refreshes_entry():
    cache = FakeCache()
    cache.analytics[("wb", "el")] = [AnalyticsRecord(opens=3)]
    client = FakeClient()
    client.analytics = [AnalyticsRecord(opens=8)]
    router = ToolRouter(cache, client)

    result = asyncio.run(router.get_document_analytics("wb", "el", use_cache=False))

    assert result["source"] == "remote"
    assert cache.analytics[("wb", "el")] == [AnalyticsRecord(opens=8)]


def test_parameterized_analytics_are_never_cached():
    cache = FakeCache()
    cache.analytics[("wb", "el")] = [AnalyticsRecord(opens=3)]
    client = FakeClient()
    client.analytics = [AnalyticsRecord(opens=4)]
    router = ToolRouter(cache, client)

    result = asyncio.run(router.get_document_analytics("wb", "el", {"Date": "last-7-days"}))

    assert result["source"] == "remote"
    assert result["records"][0]["opens"] == 4
    assert cache.cached_writes == []
    assert _analytics_calls(client) == [("get_document_analytics", ("wb", "el", {"Date": "last-7-days"}))]


def test_remote_errors_propagate_from_analytics():
    client = FakeClient()
    client.exceptions["get_document_analytics"] = RemoteApiError("down", status=503)
    router = ToolRouter(FakeCache(), client)

    with pytest.raises(RemoteApiError):
        asyncio.run(router.get_document_analytics("wb", "el"))


def test_analyze_documents_filters_cached_records():
    cache = FakeCache()
    cache.analytics[("wb", "el")] = [
        AnalyticsRecord(opens=1, document_name="Quiet"),
        AnalyticsRecord(opens=30, document_name="Busy"),
        AnalyticsRecord(opens=12, document_name="Steady"),
    ]
    router = ToolRouter(cache, FakeClient(), analytics_workbook_id="wb", analytics_element_id="el")

    result = asyncio.run(router.analyze_documents("WHERE opens > 5 ORDER BY opens DESC"))

    assert [r["document_name"] for r in result["records"]] == ["Busy", "Steady"]
    assert result["totalCount"] == 2
    assert result["scannedCount"] == 3
    assert result["source"] == "cache"


def test_analyze_documents_rejects_bad_query_before_fetching():
    client = FakeClient()
    router = ToolRouter(FakeCache(), client, analytics_workbook_id="wb", analytics_element_id="el")

    with pytest.raises(InvalidQueryError):
        asyncio.run(router.analyze_documents("WHERE bogus > 1"))
    assert client.calls == []


def test_analyze_documents_requires_source(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("SIGMA_ANALYTICS_WORKBOOK_ID", raising=False)
    monkeypatch.delenv("SIGMA_ANALYTICS_ELEMENT_ID", raising=False)
    router = ToolRouter(FakeCache(), FakeClient())

    with pytest.raises(InvalidQueryError):
        asyncio.run(router.analyze_documents("LIMIT 1"))


def test_analyze_documents_reads_source_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SIGMA_ANALYTICS_WORKBOOK_ID", "env-wb")
    monkeypatch.setenv("SIGMA_ANALYTICS_ELEMENT_ID", "env-el")
    client = FakeClient()
    router = ToolRouter(FakeCache(), client)

    asyncio.run(router.analyze_documents(""))

    assert _analytics_calls(client) == [("get_document_analytics", ("env-wb", "env-el", None))]


def test_heartbeat_healthy():
    router = ToolRouter(FakeCache([_workbook("w1", "Sales")]), FakeClient())

    result = asyncio.run(router.heartbeat())

    assert result["status"] == "healthy"
    assert result["sigma_api"]["connected"] is True
    assert result["sigma_api"]["user_info"] == {"email": "ana@example.com"}
    assert result["document_cache"]["workbooks_count"] == 1
    assert result["server_info"]["version"] == SERVER_VERSION


def test_heartbeat_reports_auth_failure():
    client = FakeClient()
    client.exceptions["whoami"] = AuthError("bad credentials", status=401)
    router = ToolRouter(FakeCache(), client)

    result = asyncio.run(router.heartbeat())

    assert result["status"] == "unhealthy"
    assert result["error"] == "bad credentials"
    assert result["sigma_api"] == {"connected": False}


def test_refresh_uses_client_as_source_and_returns_health():
    cache = FakeCache([_workbook("w1", "Sales")])
    client = FakeClient()
    router = ToolRouter(cache, client)

    health = asyncio.run(router.refresh_cache())

    assert cache.refreshed_with == [client]
    assert health["workbooksCount"] == 1


def test_health_and_close():
    client = FakeClient()
    router = ToolRouter(FakeCache(), client)

    assert router.get_health()["sigma"] == {"hasToken": True}
    asyncio.run(router.aclose())
    assert client.closed is True
