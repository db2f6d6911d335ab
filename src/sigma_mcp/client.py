"""
Sigma REST API client.

Owns the OAuth client-credentials token, issues authenticated requests and
drives asynchronous export jobs (initiate, poll, download).
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from .errors import AuthError, RemoteApiError
from .export import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    ExportJob,
    T,
    parse_analytics_jsonl,
    parse_generic_export,
)
from .models import AccessToken, AnalyticsRecord, BadgeStatus, Document, DocumentElement, DocumentType

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.sigmacomputing.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
TOKEN_ENDPOINT = "/v2/auth/token"
TOKEN_LIFETIME_FRACTION = 0.9

_ID_FIELDS = {DocumentType.WORKBOOK: "workbookId", DocumentType.DATASET: "datasetId"}


def _number_from_env(name: str, default: float, cast: Callable[[str], Any] = float) -> Any:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def to_document(entry: dict[str, Any], doc_type: DocumentType) -> Document:
    """Normalize a listing or detail entry from the API into a Document."""
    doc_id = entry.get(_ID_FIELDS[doc_type]) or entry.get("id")
    if not doc_id:
        raise RemoteApiError(f"{doc_type.value} entry without an id")
    return Document(
        id=str(doc_id),
        type=doc_type,
        name=str(entry.get("name") or ""),
        url=str(entry.get("url") or ""),
        description=entry.get("description"),
        created_by=str(entry.get("createdByEmail") or entry.get("ownerEmail") or entry.get("createdBy") or ""),
        updated_at=str(entry.get("updatedAt") or ""),
        badge_status=BadgeStatus.derive(entry.get("badge")),
        tags=[str(tag.get("name", "")) if isinstance(tag, dict) else str(tag) for tag in entry.get("tags") or []],
    )


class SigmaApiClient:
    """Async Sigma API client with proactive token renewal."""

    def __init__(
        self,
        base_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        *,
        timeout_seconds: float | None = None,
        export_max_attempts: int | None = None,
        export_poll_interval_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._base_url = (base_url or os.getenv("SIGMA_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self._client_id = client_id if client_id is not None else os.getenv("SIGMA_CLIENT_ID", "")
        self._client_secret = (
            client_secret if client_secret is not None else os.getenv("SIGMA_CLIENT_SECRET", "")
        )
        self._timeout_seconds = timeout_seconds or _number_from_env(
            "SIGMA_REQUEST_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS
        )
        self._export_max_attempts = export_max_attempts or _number_from_env(
            "SIGMA_EXPORT_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS, int
        )
        self._export_poll_interval = (
            export_poll_interval_seconds
            if export_poll_interval_seconds is not None
            else _number_from_env("SIGMA_EXPORT_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS)
        )
        if self._export_max_attempts < 1:
            raise ValueError("SIGMA_EXPORT_MAX_ATTEMPTS must be at least 1")

        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_seconds,
            transport=transport,
        )
        self._clock = clock
        self._sleep = sleep

        self._token: AccessToken | None = None
        self._token_renewals = 0

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    # -- token lifecycle -------------------------------------------------

    def _token_is_valid(self) -> bool:
        return self._token is not None and not self._token.is_expired(self._clock())

    def clear_token(self) -> None:
        self._token = None

    async def ensure_valid_token(self) -> str:
        """Return a bearer token that has not crossed 90% of its lifetime."""
        token = self._token
        if token is None or token.is_expired(self._clock()):
            token = await self._exchange_token()
        return token.value

    async def _exchange_token(self) -> AccessToken:
        if not self._client_id or not self._client_secret:
            raise AuthError("SIGMA_CLIENT_ID and SIGMA_CLIENT_SECRET must be set")

        logger.debug("Requesting Sigma access token from %s%s", self._base_url, TOKEN_ENDPOINT)
        try:
            response = await self._http.post(
                TOKEN_ENDPOINT,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            self._record_failure(exc)
            raise AuthError(f"token exchange failed: {exc}") from exc

        if not response.is_success:
            error = AuthError(
                f"token exchange failed: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )
            self._record_failure(error)
            raise error

        try:
            payload = response.json()
            value = str(payload["access_token"])
            expires_in = float(payload["expires_in"])
        except (ValueError, KeyError, TypeError) as exc:
            error = AuthError(f"malformed token response: {exc}", status=response.status_code)
            self._record_failure(error)
            raise error from exc

        token = AccessToken(
            value=value,
            expires_at=self._clock() + TOKEN_LIFETIME_FRACTION * expires_in,
        )
        self._token = token
        self._token_renewals += 1
        logger.info("Obtained Sigma access token (renews in %.0fs)", TOKEN_LIFETIME_FRACTION * expires_in)
        return token

    # -- requests --------------------------------------------------------

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Issue an authenticated request; non-2xx raises RemoteApiError."""
        token = await self.ensure_valid_token()
        try:
            response = await self._http.request(
                method,
                endpoint,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            self._record_failure(exc)
            raise RemoteApiError(f"{method} {endpoint} failed: {exc}", endpoint=endpoint) from exc

        if not response.is_success:
            if response.status_code == 401:
                self.clear_token()
            error = RemoteApiError(
                f"{method} {endpoint} failed: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
                endpoint=endpoint,
            )
            self._record_failure(error)
            raise error

        self._record_success()
        return response

    async def _get_json(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self.request(endpoint, params=params)
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteApiError(f"GET {endpoint} returned invalid JSON", endpoint=endpoint) from exc
        if not isinstance(data, dict):
            raise RemoteApiError(f"GET {endpoint} returned unexpected payload", endpoint=endpoint)
        return data

    async def _list_entries(self, endpoint: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        query = dict(params or {})
        while True:
            data = await self._get_json(endpoint, query or None)
            entries.extend(entry for entry in data.get("entries") or [] if isinstance(entry, dict))
            next_page = data.get("nextPage")
            if not data.get("hasMore") or not next_page:
                return entries
            query["page"] = next_page

    # -- documents -------------------------------------------------------

    async def list_workbooks(self) -> list[Document]:
        entries = await self._list_entries("/v2/workbooks")
        return [to_document(entry, DocumentType.WORKBOOK) for entry in entries]

    async def list_datasets(self) -> list[Document]:
        entries = await self._list_entries("/v2/datasets")
        return [to_document(entry, DocumentType.DATASET) for entry in entries]

    async def get_workbook_details(self, workbook_id: str) -> Document:
        """Fetch a workbook together with the elements on all of its pages."""
        workbook = to_document(await self._get_json(f"/v2/workbooks/{workbook_id}"), DocumentType.WORKBOOK)

        pages = await self._list_entries(f"/v2/workbooks/{workbook_id}/pages")
        for page in pages:
            page_id = page.get("pageId")
            if not page_id:
                continue
            for element in await self._list_entries(f"/v2/workbooks/{workbook_id}/pages/{page_id}/elements"):
                element_id = str(element.get("elementId") or "")
                workbook.elements.append(
                    DocumentElement(
                        id=element_id,
                        name=str(element.get("name") or element_id),
                        type=str(element.get("type") or ""),
                        description=element.get("description"),
                    )
                )
        return workbook

    async def whoami(self) -> dict[str, Any]:
        """Check connectivity, falling back to a one-item workbook listing."""
        try:
            return await self._get_json("/v2/whoami")
        except RemoteApiError as exc:
            logger.info("whoami unavailable (%s), probing workbooks endpoint", exc)
            try:
                data = await self._get_json("/v2/workbooks", {"limit": 1})
            except RemoteApiError as probe_exc:
                raise AuthError(f"authentication check failed: {exc}", status=exc.status) from probe_exc
            return {
                "authenticated": True,
                "message": "Authentication successful (tested via workbooks endpoint)",
                "workbooks_count": len(data.get("entries") or []),
            }

    # -- exports ---------------------------------------------------------

    async def initiate_export(self, job: ExportJob[Any]) -> str:
        response = await self.request(
            f"/v2/workbooks/{job.workbook_id}/export", "POST", json=job.request_body()
        )
        try:
            query_id = response.json()["queryId"]
        except (ValueError, KeyError, TypeError) as exc:
            raise RemoteApiError(
                "export request returned no queryId", status=response.status_code
            ) from exc
        job.mark_initiated(str(query_id))
        logger.info(
            "Started %s export %s for workbook %s element %s",
            job.export_format,
            query_id,
            job.workbook_id,
            job.element_id,
        )
        return str(query_id)

    async def download_export(self, query_id: str) -> str:
        response = await self.request(f"/v2/query/{query_id}/download")
        return response.text

    async def poll_export(
        self,
        job: ExportJob[T],
        parse: Callable[[str], T | None],
        max_attempts: int | None = None,
    ) -> T:
        async def attempt(query_id: str) -> T | None:
            return parse(await self.download_export(query_id))

        return await job.poll(
            attempt,
            max_attempts=max_attempts or self._export_max_attempts,
            interval_seconds=self._export_poll_interval,
            sleep=self._sleep,
        )

    async def export_data(
        self,
        workbook_id: str,
        element_id: str,
        export_format: str = "json",
        parameters: dict[str, str] | None = None,
    ) -> str:
        """Export an element as JSON or CSV text."""
        job: ExportJob[str] = ExportJob(workbook_id, element_id, export_format, parameters)
        await self.initiate_export(job)
        return await self.poll_export(job, lambda text: parse_generic_export(text, export_format))

    async def get_document_analytics(
        self,
        workbook_id: str,
        element_id: str,
        parameters: dict[str, str] | None = None,
    ) -> list[AnalyticsRecord]:
        """Export a usage-analytics element as JSONL and parse its rows."""
        job: ExportJob[list[AnalyticsRecord]] = ExportJob(workbook_id, element_id, "jsonl", parameters)
        await self.initiate_export(job)
        return await self.poll_export(job, parse_analytics_jsonl)

    # -- health ----------------------------------------------------------

    def _record_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.warning("Sigma API call failed (%s): %s", exc.__class__.__name__, exc)

    def _record_success(self) -> None:
        self._failure_count = 0
        self._last_error = None
        self._last_success_at = self._clock()

    def get_health(self) -> dict[str, Any]:
        return {
            "baseUrl": self._base_url,
            "hasToken": self._token_is_valid(),
            "tokenExpiresAt": self._token.expires_at if self._token else None,
            "tokenRenewals": self._token_renewals,
            "failureCount": self._failure_count,
            "lastError": self._last_error,
            "lastFailureAt": self._last_failure_at,
            "lastSuccessAt": self._last_success_at,
            "exportMaxAttempts": self._export_max_attempts,
        }

    async def aclose(self) -> None:
        await self._http.aclose()
