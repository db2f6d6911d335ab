"""Sigma analytics MCP server: cached document search and usage analytics."""

from .server import main

__all__ = ["main"]
