"""
HTTP client for the TimeFlow API.
Thin wrapper over requests that maps transport and HTTP failures onto the
client's error types.
"""
import logging
from typing import Any, Dict, List, Optional

import requests  # Using requests library for HTTP communication

from . import config
from .errors import AuthError, ConflictError, RequestRejectedError, TimeFlowClientError, TransientNetworkError

log = logging.getLogger(__name__)


class TimeFlowAPI:
    """Calls the TimeFlow server's session, activity and auth endpoints."""

    def __init__(
        self,
        base_url: str = config.SERVER_URL,
        token: Optional[str] = None,
        timeout: float = config.REQUEST_TIMEOUT_SECONDS,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token or config.SERVER_AUTH_TOKEN or None
        self.timeout = timeout
        self.http = http or requests.Session()

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    def _url(self, path: str, versioned: bool = True) -> str:
        prefix = config.API_PREFIX if versioned else ""
        return f"{self.base_url}{prefix}{path}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, json: Any = None, versioned: bool = True) -> Dict[str, Any]:
        url = self._url(path, versioned=versioned)
        try:
            response = self.http.request(method, url, json=json, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()  # Raises HTTPError for bad responses (4xx or 5xx)
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code
            detail = _error_detail(e.response)
            if status_code == 401:
                raise AuthError(detail or "Unauthorized") from e
            if status_code == 409:
                raise ConflictError(detail or "Conflict") from e
            if 400 <= status_code < 500:
                raise RequestRejectedError(status_code, detail) from e
            raise TransientNetworkError(f"{method} {url} failed with HTTP {status_code}") from e
        except requests.exceptions.Timeout as e:
            raise TransientNetworkError(f"Timeout calling {method} {url}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientNetworkError(f"Connection error calling {method} {url}") from e
        except requests.exceptions.RequestException as e:  # Catch-all for other requests issues
            raise TransientNetworkError(f"Error calling {method} {url}: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise TransientNetworkError(f"{method} {url} returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise TransientNetworkError(f"{method} {url} returned {type(body).__name__}, expected a JSON object")
        return body

    # --- Endpoints ---

    def health(self) -> bool:
        """True if the server answers its health check."""
        try:
            return self._request("GET", "/health", versioned=False).get("status") == "healthy"
        except TimeFlowClientError as e:
            log.debug(f"Health check failed: {e}")
            return False

    def login(self, email: str, password: str) -> Dict[str, Any]:
        data = self._request("POST", "/auth/login", json={"email": email, "password": password})
        self.set_token(data.get("access_token"))
        return data

    def get_current_session(self) -> Optional[Dict[str, Any]]:
        return self._request("GET", "/sessions/current").get("session")

    def switch(self, to_activity_id: int, timestamp: int, local_id: str) -> Dict[str, Any]:
        return self._request(
            "POST", "/sessions/switch",
            json={"toActivityId": to_activity_id, "timestamp": timestamp, "localId": local_id},
        )

    def stop(self, timestamp: int, local_id: str) -> Dict[str, Any]:
        return self._request("POST", "/sessions/stop", json={"timestamp": timestamp, "localId": local_id})

    def sync(self, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self._request("POST", "/sessions/sync", json={"events": events})

    def list_activities(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/activities").get("activities", [])


def _error_detail(response: Optional[requests.Response]) -> Optional[str]:
    if response is None:
        return None
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    detail = body.get("detail") if isinstance(body, dict) else None
    if detail is None or isinstance(detail, str):
        return detail
    return str(detail)
