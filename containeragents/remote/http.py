"""
containeragents/remote/http.py
──────────────────────────────
RestSession: the requests.Session wrapper both platform adapters talk through.

Responsibilities
────────────────
  • base URL joining and JSON bodies
  • bearer authentication from a token provider (static token or a refreshing
    OAuth token for ARM)
  • bounded retry with exponential backoff on connection errors, timeouts,
    429 and 5xx, so a single dropped socket does not fail a provisioning
    attempt or a reclamation delete
  • mapping of final HTTP errors onto RemoteResourceError /
    RemoteConnectionError

404 is special: adapters ask for it explicitly with allow_missing=True and
receive None, which is how "not found" becomes a value instead of an error.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from containeragents.remote.base import RemoteConnectionError, RemoteResourceError

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

DEFAULT_TIMEOUT_S: float = 30.0
DEFAULT_MAX_RETRIES: int = 3

RETRY_BACKOFF_S: float = 0.5
"""Sleep before the first retry; doubled for each further retry."""

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class RestSession:
    """
    Authenticated JSON-over-HTTP session against one API endpoint.

    Args:
        base_url:       e.g. "https://k8s.example:6443" or the ARM endpoint.
        token_provider: Returns the bearer token for each request. None = no auth.
        verify:         TLS verification flag or CA bundle path.
        session:        Injected requests.Session (tests pass a MagicMock).
        timeout_s:      Per-request timeout.
        max_retries:    Retries after the first attempt for transient failures.
        sleep:          Sleep function used between retries.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[Callable[[], str]] = None,
        verify: Any = True,
        session: Optional[requests.Session] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._session = session if session is not None else requests.Session()
        self._session.verify = verify
        self._timeout_s = timeout_s
        self._max_retries = max_retries
        self._sleep = sleep

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        allow_missing: bool = False,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[requests.Response]:
        """
        Send one request, retrying transient failures.

        Returns:
            The response, or None for a 404 when allow_missing is set.

        Raises:
            RemoteConnectionError: connection/timeout/429/5xx after all retries.
            RemoteResourceError:   any other status ≥ 400.
        """
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        request_headers = {"Accept": "application/json"}
        if headers:
            request_headers.update(headers)

        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            if self._token_provider is not None:
                request_headers["Authorization"] = f"Bearer {self._token_provider()}"
            try:
                response = self._session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=request_headers,
                    timeout=self._timeout_s,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt == attempts:
                    raise RemoteConnectionError(f"{method} {url} failed: {e}") from e
                logger.info("%s %s failed (%s), retry %d/%d", method, url, e, attempt, self._max_retries)
                self._backoff(attempt)
                continue

            status = response.status_code
            if status in RETRYABLE_STATUS:
                if attempt == attempts:
                    raise RemoteConnectionError(
                        f"{method} {url} → {status} after {attempts} attempts: {_excerpt(response)}"
                    )
                logger.info("%s %s → %d, retry %d/%d", method, url, status, attempt, self._max_retries)
                self._backoff(attempt)
                continue
            if status == 404 and allow_missing:
                return None
            if status >= 400:
                raise RemoteResourceError(f"{method} {url} → {status}: {_excerpt(response)}")
            return response

        raise RemoteConnectionError(f"{method} {url} failed")

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """GET and decode JSON. None if the object does not exist."""
        response = self.request("GET", path, params=params, allow_missing=True)
        return None if response is None else response.json()

    def close(self) -> None:
        self._session.close()

    def _backoff(self, attempt: int) -> None:
        self._sleep(RETRY_BACKOFF_S * (2 ** (attempt - 1)))


def _excerpt(response: requests.Response, limit: int = 300) -> str:
    text = response.text or ""
    return text[:limit]
