"""
Errors raised by the TimeFlow client's server calls.

None of these reach the user interface for an ordinary outage: the session
store converts them into queued offline intents.
"""
from typing import Optional


class TimeFlowClientError(Exception):
    """Base class for client errors."""


class TransientNetworkError(TimeFlowClientError):
    """The server could not be reached or answered with a server-side error. Worth retrying later."""


class AuthError(TimeFlowClientError):
    """The server rejected our credentials (HTTP 401)."""


class RequestRejectedError(TimeFlowClientError):
    """The server understood the request and refused it (HTTP 4xx other than 401)."""

    def __init__(self, status_code: int, detail: Optional[str] = None):
        super().__init__(f"Request rejected with HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class ConflictError(TimeFlowClientError):
    """The server's timeline changed under the request (HTTP 409). The same request may succeed if retried."""
