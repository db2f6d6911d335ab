"""
Error types raised by the Sigma client, document cache and query engine.
"""

from __future__ import annotations


class SigmaMcpError(RuntimeError):
    """Base error carrying a stable machine-readable code."""

    code = "sigma_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code or self.code
        self.message = message


class AuthError(SigmaMcpError):
    """Raised when the client-credentials token exchange fails."""

    code = "auth_failed"

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RemoteApiError(SigmaMcpError):
    """Raised when the Sigma API answers with a non-success status."""

    code = "remote_api_error"

    def __init__(self, message: str, status: int | None = None, endpoint: str | None = None):
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint


class ExportTimeoutError(SigmaMcpError):
    """Raised when an export does not become ready within its attempt budget."""

    code = "export_timeout"

    def __init__(self, query_id: str, attempts: int, interval_seconds: float = 2.0):
        super().__init__(
            f"export {query_id} did not complete within {attempts} attempts "
            f"({attempts * interval_seconds:g} seconds)"
        )
        self.query_id = query_id
        self.attempts = attempts


class StoreUnavailableError(SigmaMcpError):
    """Raised when the durable store cannot be read or written."""

    code = "store_unavailable"


class InvalidQueryError(SigmaMcpError):
    """Raised for malformed search terms or record query expressions."""

    code = "invalid_query"
