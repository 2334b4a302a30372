"""Shared HTTP plumbing for the REST-based remote adapters.

``RestSession`` wraps a thread-local ``requests.Session`` (adapters are
called from worker threads via ``run_sync``), applies the configured
timeout to every request, records rate-limit headers from every response,
and translates HTTP failures into the sync error taxonomy:

=========================  =============================
Response                   Raised
=========================  =============================
timeout / connection       ``TransientNetworkError``
401                        ``AuthError``
403 with quota exhausted   ``RateLimitError``
403 otherwise              ``AuthError``
404 / 410                  ``NotFoundError``
400 / 422                  ``ItemValidationError``
429                        ``RateLimitError``
5xx                        ``TransientNetworkError``
=========================  =============================
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any

import requests

from ..errors import (
    AuthError,
    ItemValidationError,
    NotFoundError,
    RateLimitError,
    SyncError,
    TransientNetworkError,
)
from ..models import RateLimitState

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = (10.0, 60.0)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO 8601 API timestamp (``...Z`` suffix) into an aware datetime."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _int_header(headers: Any, name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


def parse_rate_limit(
    headers: Any, now: float | None = None
) -> RateLimitState | None:
    """Extract quota information from response headers.

    Understands ``X-RateLimit-Remaining``, ``X-RateLimit-Limit``,
    ``X-RateLimit-Reset`` (epoch seconds) and ``Retry-After`` (seconds,
    used as the reset time when no explicit reset is given).

    Returns:
        A ``RateLimitState``, or ``None`` when no rate-limit header is set.
    """
    remaining = _int_header(headers, "X-RateLimit-Remaining")
    limit = _int_header(headers, "X-RateLimit-Limit")
    reset = _int_header(headers, "X-RateLimit-Reset")
    retry_after = _int_header(headers, "Retry-After")

    if remaining is None and reset is None and retry_after is None:
        return None

    reset_at: float | None = float(reset) if reset is not None else None
    if reset_at is None and retry_after is not None:
        reset_at = (now if now is not None else time.time()) + retry_after
        if remaining is None:
            remaining = 0

    return RateLimitState(remaining=remaining, reset_at=reset_at, limit=limit)


class RestSession:
    """Authenticated JSON-over-HTTP session for one remote backend.

    Args:
        base_url: Root URL that relative paths are joined to.
        auth: ``requests`` auth tuple, if basic auth is used.
        headers: Default headers sent with every request.
        timeout: ``(connect, read)`` timeout in seconds.
        insecure: Disable TLS verification (development only).
    """

    def __init__(
        self,
        base_url: str,
        auth: tuple[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: tuple[float, float] = DEFAULT_TIMEOUT,
        insecure: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.insecure = insecure
        self._thread_local = threading.local()
        self._rate_lock = threading.Lock()
        self._rate_limit = RateLimitState()

    @property
    def session(self) -> requests.Session:
        """The current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.auth = self.auth
        session.verify = not self.insecure
        session.headers.update(self.headers)
        return session

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def url(self, path: str) -> str:
        """Resolve *path* against ``base_url`` (absolute URLs pass through)."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        """Send a request and raise a ``SyncError`` subclass on failure."""
        url = self.url(path)
        try:
            response = self._get_session().request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise TransientNetworkError(
                f"Timeout on {method} {url}: {exc}"
            ) from exc
        except requests.exceptions.ConnectionError as exc:
            raise TransientNetworkError(
                f"Connection error on {method} {url}: {exc}"
            ) from exc

        state = parse_rate_limit(response.headers)
        if state is not None:
            with self._rate_lock:
                self._rate_limit = state

        self._raise_for_status(response, method, url, state)
        return response

    def get_json(self, path: str, **kwargs: Any) -> Any:
        return self._json(self.request("GET", path, **kwargs))

    def post_json(self, path: str, **kwargs: Any) -> Any:
        return self._json(self.request("POST", path, **kwargs))

    def patch_json(self, path: str, **kwargs: Any) -> Any:
        return self._json(self.request("PATCH", path, **kwargs))

    @property
    def rate_limit(self) -> RateLimitState:
        """Quota state from the most recent response carrying headers."""
        with self._rate_lock:
            return self._rate_limit

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _json(response: requests.Response) -> Any:
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _raise_for_status(
        response: requests.Response,
        method: str,
        url: str,
        state: RateLimitState | None,
    ) -> None:
        status = response.status_code
        if status < 400:
            return

        body = response.text[:500] if response.text else ""
        reset_at = state.reset_at if state else None
        retry_after = _int_header(response.headers, "Retry-After")

        match status:
            case 401:
                raise AuthError(
                    f"Authentication failed for {method} {url}"
                )
            case 403 if (state is not None and state.remaining == 0) or (
                retry_after is not None
            ) or "rate limit" in body.lower():
                raise RateLimitError(
                    f"Rate limit exceeded for {method} {url}",
                    reset_at=reset_at,
                    retry_after=retry_after,
                )
            case 403:
                raise AuthError(
                    f"Permission denied for {method} {url}: {body}",
                    "Grant the token write access to the target project.",
                )
            case 404 | 410:
                raise NotFoundError(f"Not found: {url}")
            case 400 | 422:
                raise ItemValidationError(
                    f"Remote rejected {method} {url}: {body}"
                )
            case 429:
                raise RateLimitError(
                    f"Too many requests for {method} {url}",
                    reset_at=reset_at,
                    retry_after=retry_after,
                )
            case s if s >= 500:
                raise TransientNetworkError(
                    f"Server error {status} for {method} {url}"
                )
            case _:
                raise SyncError(f"HTTP {status} for {method} {url}: {body}")
