"""
MCP server exposing cached Sigma documents and usage analytics.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from dotenv import load_dotenv
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from .cache import DocumentCache
from .client import SigmaApiClient
from .errors import SigmaMcpError
from .router import ToolRouter
from .store import create_document_store

logger = logging.getLogger(__name__)

R = TypeVar("R")

WORKBOOKS_URI = "sigma://documents/workbooks"
DATASETS_URI = "sigma://documents/datasets"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in {"1", "true", "yes"}


def configure_logging(level: str | None = None) -> None:
    """Log to stderr; stdout carries the MCP stdio protocol."""
    log_level = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    for noisy in ("httpx", "httpcore", "botocore", "boto3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_router() -> ToolRouter:
    store = create_document_store()
    return ToolRouter(DocumentCache(store), SigmaApiClient())


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[ToolRouter]:
    """Load the document cache (never fatal) and close the API client on exit."""
    router = build_router()
    await router.cache.initialize()

    if router.cache.is_empty() and _env_flag("SIGMA_REFRESH_ON_START"):
        try:
            await router.refresh_cache()
        except Exception as exc:
            logger.warning("Startup refresh failed, serving empty cache: %s", exc)
    try:
        yield router
    finally:
        await router.aclose()


mcp = FastMCP(
    "sigma-analytics",
    instructions=(
        "Sigma analytics server. Document search and listings are served from a "
        "local cache of workbooks and datasets; call refresh_cache to rebuild it. "
        "Exports and usage analytics are fetched from the Sigma API, with analytics "
        "results cached for 30 minutes."
    ),
    lifespan=_lifespan,
)


def _router(ctx: Context) -> ToolRouter:
    return ctx.request_context.lifespan_context


async def _run(call: Awaitable[R]) -> R:
    try:
        return await call
    except SigmaMcpError as exc:
        raise ToolError(f"{exc.code}: {exc.message}") from exc


@mcp.tool()
async def heartbeat(ctx: Context) -> dict[str, Any]:
    """Test connectivity to the Sigma API and report document cache status."""
    return await _router(ctx).heartbeat()


@mcp.tool()
def search_documents(
    ctx: Context,
    query: str,
    document_type: str = "all",
    limit: int = 10,
) -> list[dict[str, Any]]:
    """Search cached Sigma workbooks and datasets.

    Args:
        query: Text matched against names, descriptions, creators, badges and tags.
        document_type: "workbook", "dataset" or "all" (default).
        limit: Maximum number of results (default 10).

    Returns:
        Matching documents, most relevant first. Deprecated documents rank lower,
        endorsed ones higher. An empty query returns an empty list.
    """
    return _router(ctx).search_documents(query, document_type, limit)


@mcp.tool()
def list_workbooks(ctx: Context) -> list[dict[str, Any]]:
    """List all cached workbooks."""
    return _router(ctx).list_workbooks()


@mcp.tool()
def list_datasets(ctx: Context) -> list[dict[str, Any]]:
    """List all cached datasets."""
    return _router(ctx).list_datasets()


@mcp.tool()
async def export_data(
    ctx: Context,
    workbook_id: str,
    element_id: str,
    format: str = "json",
    parameters: dict[str, str] | None = None,
) -> str:
    """Export data from a workbook element (table, chart) as JSON or CSV.

    Args:
        workbook_id: ID of the workbook to export from.
        element_id: ID of the element inside the workbook.
        format: "json" (default) or "csv".
        parameters: Optional workbook control values, e.g. a date filter.

    Returns:
        The exported data as text. Exports are polled for up to about a minute.
    """
    return await _run(_router(ctx).export_data(workbook_id, element_id, format, parameters))


@mcp.tool()
async def get_document_analytics(
    ctx: Context,
    workbook_id: str,
    element_id: str,
    parameters: dict[str, str] | None = None,
    use_cache: bool = True,
) -> dict[str, Any]:
    """Fetch usage analytics rows (opens, interactions, users, ...) for documents.

    Args:
        workbook_id: ID of the usage-analytics workbook.
        element_id: ID of the analytics element.
        parameters: Optional control values; filtered results are never cached.
        use_cache: Set False to bypass the 30 minute analytics cache.

    Returns:
        dict with "records", "totalCount" and "source" ("cache" or "remote").
    """
    return await _run(
        _router(ctx).get_document_analytics(workbook_id, element_id, parameters, use_cache)
    )


@mcp.tool()
async def analyze_documents(
    ctx: Context,
    query: str,
    workbook_id: str | None = None,
    element_id: str | None = None,
    use_cache: bool = True,
) -> dict[str, Any]:
    """Filter, sort and limit usage analytics with a small query language.

    Args:
        query: e.g. "WHERE opens > 10 AND document_type = 'workbook' ORDER BY opens DESC LIMIT 10".
            Fields are analytics attribute names (opens, users, interactions,
            document_name, doc_created_by_email, last_activity, ...).
        workbook_id: Analytics workbook; defaults to SIGMA_ANALYTICS_WORKBOOK_ID.
        element_id: Analytics element; defaults to SIGMA_ANALYTICS_ELEMENT_ID.
        use_cache: Set False to bypass the 30 minute analytics cache.

    Returns:
        dict with "records", "totalCount", "scannedCount" and "source".
    """
    return await _run(_router(ctx).analyze_documents(query, workbook_id, element_id, use_cache))


@mcp.tool()
async def refresh_cache(ctx: Context) -> dict[str, Any]:
    """Rebuild the workbook and dataset cache from the Sigma API and return cache health."""
    return await _run(_router(ctx).refresh_cache())


@mcp.tool()
def get_cache_health(ctx: Context) -> dict[str, Any]:
    """Return document cache and Sigma API client health."""
    return _router(ctx).get_health()


@mcp.resource(WORKBOOKS_URI, name="Sigma Workbooks", mime_type="application/json")
def workbooks_resource() -> list[dict[str, Any]]:
    """All cached Sigma workbooks with metadata."""
    return _router(mcp.get_context()).list_workbooks()


@mcp.resource(DATASETS_URI, name="Sigma Datasets", mime_type="application/json")
def datasets_resource() -> list[dict[str, Any]]:
    """All cached Sigma datasets with metadata."""
    return _router(mcp.get_context()).list_datasets()


def main() -> None:
    load_dotenv()
    configure_logging()
    mcp.run()
