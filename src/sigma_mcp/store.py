"""
Durable storage for cached documents and analytics entries.

Two interchangeable backends, chosen once at construction:

- DynamoDocumentStore: one item per document keyed by (id, type); analytics
  entries use id ``analytics:{workbookId}:{elementId}`` and type ``analytics``.
- LocalFileDocumentStore: a single JSON file holding both document
  partitions, the analytics entries and a ``lastUpdated`` timestamp.

A store that has never been written to reads as empty, never as an error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from decimal import Decimal
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StoreUnavailableError
from .models import (
    ANALYTICS_KEY_PREFIX,
    AnalyticsCacheEntry,
    AnalyticsRecord,
    CachedDocument,
    DocumentType,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_CACHE_PATH = "local-cache.json"

_MISSING_TABLE_CODES = {"ResourceNotFoundException"}


class DocumentStore(ABC):
    """Read/write contract shared by both backends."""

    @abstractmethod
    async def load_documents(self, doc_type: DocumentType) -> list[CachedDocument]: ...

    @abstractmethod
    async def save_documents(self, doc_type: DocumentType, documents: list[CachedDocument]) -> None: ...

    @abstractmethod
    async def load_analytics(self, key: str) -> AnalyticsCacheEntry | None: ...

    @abstractmethod
    async def save_analytics(self, key: str, entry: AnalyticsCacheEntry) -> None: ...

    @abstractmethod
    def describe(self) -> dict[str, Any]: ...


class DynamoDocumentStore(DocumentStore):
    """DynamoDB table backend. boto3 calls run in a worker thread."""

    def __init__(self, table_name: str | None = None, table: Any = None, region_name: str | None = None):
        self._table_name = table_name or os.getenv("CACHE_TABLE_NAME", "")
        if table is None and not self._table_name:
            raise ValueError("CACHE_TABLE_NAME must be set when USE_LOCAL_CACHE is not enabled")
        self._region_name = region_name or os.getenv("AWS_REGION")
        self._table = table

    def _get_table(self) -> Any:
        if self._table is None:
            resource = boto3.resource("dynamodb", region_name=self._region_name)
            self._table = resource.Table(self._table_name)
        return self._table

    @staticmethod
    def _is_missing_table(exc: ClientError) -> bool:
        return exc.response.get("Error", {}).get("Code") in _MISSING_TABLE_CODES

    def _scan_type(self, doc_type: str, **extra: Any) -> list[dict[str, Any]]:
        table = self._get_table()
        names = {"#type": "type", **extra.pop("ExpressionAttributeNames", {})}
        params: dict[str, Any] = {
            "FilterExpression": "#type = :type",
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": {":type": doc_type},
            **extra,
        }
        items: list[dict[str, Any]] = []
        while True:
            response = table.scan(**params)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            params["ExclusiveStartKey"] = last_key

    def _load_documents_sync(self, doc_type: DocumentType) -> list[CachedDocument]:
        try:
            items = self._scan_type(doc_type.value)
        except ClientError as exc:
            if self._is_missing_table(exc):
                logger.info("Cache table %s does not exist yet", self._table_name)
                return []
            raise StoreUnavailableError(f"scan of {self._table_name} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailableError(f"scan of {self._table_name} failed: {exc}") from exc
        return [CachedDocument.from_dict(item) for item in items]

    def _save_documents_sync(self, doc_type: DocumentType, documents: list[CachedDocument]) -> None:
        keep = {doc.id for doc in documents}
        try:
            existing = self._scan_type(
                doc_type.value,
                ProjectionExpression="#id",
                ExpressionAttributeNames={"#id": "id"},
            )
            with self._get_table().batch_writer() as batch:
                for doc in documents:
                    batch.put_item(Item=doc.to_dict())
                for item in existing:
                    if item["id"] not in keep:
                        batch.delete_item(Key={"id": item["id"], "type": doc_type.value})
        except (ClientError, BotoCoreError) as exc:
            raise StoreUnavailableError(f"write to {self._table_name} failed: {exc}") from exc

    def _load_analytics_sync(self, key: str) -> AnalyticsCacheEntry | None:
        try:
            response = self._get_table().get_item(Key={"id": key, "type": ANALYTICS_KEY_PREFIX})
        except ClientError as exc:
            if self._is_missing_table(exc):
                return None
            raise StoreUnavailableError(f"read of {key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailableError(f"read of {key} failed: {exc}") from exc
        item = response.get("Item")
        if not item:
            return None
        return AnalyticsCacheEntry(
            workbook_id=str(item["workbookId"]),
            element_id=str(item["elementId"]),
            records=[AnalyticsRecord.from_dict(row) for row in json.loads(item.get("data") or "[]")],
            last_cached=float(item["lastCached"]),
        )

    def _save_analytics_sync(self, key: str, entry: AnalyticsCacheEntry) -> None:
        item = {
            "id": key,
            "type": ANALYTICS_KEY_PREFIX,
            "workbookId": entry.workbook_id,
            "elementId": entry.element_id,
            # Rows carry floats, which DynamoDB only accepts as Decimal.
            "data": json.dumps([record.to_dict() for record in entry.records]),
            "lastCached": Decimal(str(entry.last_cached)),
        }
        try:
            self._get_table().put_item(Item=item)
        except (ClientError, BotoCoreError) as exc:
            raise StoreUnavailableError(f"write of {key} failed: {exc}") from exc

    async def load_documents(self, doc_type: DocumentType) -> list[CachedDocument]:
        return await asyncio.to_thread(self._load_documents_sync, doc_type)

    async def save_documents(self, doc_type: DocumentType, documents: list[CachedDocument]) -> None:
        await asyncio.to_thread(self._save_documents_sync, doc_type, documents)

    async def load_analytics(self, key: str) -> AnalyticsCacheEntry | None:
        return await asyncio.to_thread(self._load_analytics_sync, key)

    async def save_analytics(self, key: str, entry: AnalyticsCacheEntry) -> None:
        await asyncio.to_thread(self._save_analytics_sync, key, entry)

    def describe(self) -> dict[str, Any]:
        return {"backend": "dynamodb", "table": self._table_name}


class LocalFileDocumentStore(DocumentStore):
    """Single JSON file backend, rewritten atomically on every save."""

    def __init__(self, path: str | os.PathLike[str] | None = None):
        self._path = Path(path or os.getenv("LOCAL_CACHE_PATH") or Path.cwd() / DEFAULT_LOCAL_CACHE_PATH)
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_blob(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreUnavailableError(f"cannot read {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreUnavailableError(f"{self._path} does not hold a JSON object")
        return data

    def _read_blob_for_write(self) -> dict[str, Any]:
        """Current contents, or an empty blob when the file is unreadable so the write replaces it."""
        try:
            data = self._read_blob()
        except StoreUnavailableError as exc:
            logger.warning("Discarding unreadable cache file before write: %s", exc)
            data = {}
        data.setdefault("workbooks", [])
        data.setdefault("datasets", [])
        data.setdefault("analytics", {})
        return data

    def _write_blob(self, data: dict[str, Any]) -> None:
        data["lastUpdated"] = utc_now_iso()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".local-cache-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            raise StoreUnavailableError(f"cannot write {self._path}: {exc}") from exc

    def _load_documents_sync(self, doc_type: DocumentType) -> list[CachedDocument]:
        rows = self._read_blob().get(doc_type.partition) or []
        return [CachedDocument.from_dict(row) for row in rows]

    def _save_documents_sync(self, doc_type: DocumentType, documents: list[CachedDocument]) -> None:
        data = self._read_blob_for_write()
        data[doc_type.partition] = [doc.to_dict() for doc in documents]
        self._write_blob(data)

    def _load_analytics_sync(self, key: str) -> AnalyticsCacheEntry | None:
        row = (self._read_blob().get("analytics") or {}).get(key)
        return AnalyticsCacheEntry.from_dict(row) if row else None

    def _save_analytics_sync(self, key: str, entry: AnalyticsCacheEntry) -> None:
        data = self._read_blob_for_write()
        data["analytics"][key] = entry.to_dict()
        self._write_blob(data)

    async def load_documents(self, doc_type: DocumentType) -> list[CachedDocument]:
        return await asyncio.to_thread(self._load_documents_sync, doc_type)

    async def save_documents(self, doc_type: DocumentType, documents: list[CachedDocument]) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._save_documents_sync, doc_type, documents)

    async def load_analytics(self, key: str) -> AnalyticsCacheEntry | None:
        return await asyncio.to_thread(self._load_analytics_sync, key)

    async def save_analytics(self, key: str, entry: AnalyticsCacheEntry) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._save_analytics_sync, key, entry)

    def describe(self) -> dict[str, Any]:
        return {"backend": "local_file", "path": str(self._path)}


def create_document_store(use_local: bool | None = None) -> DocumentStore:
    """Pick the backend from the flag, or from USE_LOCAL_CACHE when not given."""
    if use_local is None:
        use_local = os.getenv("USE_LOCAL_CACHE", "false").strip().lower() in {"1", "true", "yes"}
    store: DocumentStore = LocalFileDocumentStore() if use_local else DynamoDocumentStore()
    logger.info("Using %s document store", store.describe()["backend"])
    return store
