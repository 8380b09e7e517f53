from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Callable, Mapping, Optional, Tuple, Type, TypeVar

import httpx

from intern_collector.settings import DEFAULT_USER_AGENT, CollectorSettings

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class TransportError(RuntimeError):
    pass


class FetchError(TransportError):
    def __init__(self, url: str, status_code: Optional[int], message: str) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


def retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay_s: float = 1.0,
    exponential_backoff: bool = True,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``operation`` up to ``max_attempts`` times.

    Between attempts sleeps ``base_delay_s * 2 ** (attempt - 1)`` (or a flat
    ``base_delay_s`` without backoff). The last failure is re-raised once all
    attempts are used.
    """

    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as e:
            LOGGER.warning("Attempt %d/%d failed: %s", attempt, attempts, e)
            if attempt >= attempts:
                raise
            wait_s = base_delay_s * (2 ** (attempt - 1)) if exponential_backoff else base_delay_s
            sleep(wait_s)
    raise AssertionError("unreachable")  # pragma: no cover


def delay(ms: float, *, sleep: Callable[[float], None] = time.sleep) -> None:
    """Pause between requests for polite pacing."""
    if ms > 0:
        sleep(ms / 1000.0)


@dataclass(frozen=True)
class FetchResult:
    url: str
    status_code: int
    text: str
    content_type: Optional[str]


class PoliteHttpClient:
    """httpx wrapper with default headers, a per-instance cookie jar and retries.

    Transient failures (network errors, timeouts, 429 and 5xx) are retried
    with exponential backoff; anything still failing surfaces as FetchError.
    """

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        accept_language: str = "zh-CN,zh;q=0.9,en;q=0.8",
        default_headers: Optional[Mapping[str, str]] = None,
        timeout_s: float = 30.0,
        max_retries: int = 2,
        backoff_base_s: float = 0.5,
        backoff_max_s: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_s)
        self._max_retries = max(0, int(max_retries))
        self._backoff_base_s = float(backoff_base_s)
        self._backoff_max_s = float(backoff_max_s)
        self._sleep = sleep
        self._rng = rng or random.Random()

        headers = {
            "User-Agent": user_agent,
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": accept_language,
        }
        headers.update(default_headers or {})

        self._client = httpx.Client(
            timeout=self._timeout,
            follow_redirects=True,
            transport=transport,
            headers=headers,
        )

    @classmethod
    def from_settings(
        cls,
        settings: CollectorSettings,
        *,
        default_headers: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "PoliteHttpClient":
        return cls(
            user_agent=settings.user_agent,
            accept_language=settings.accept_language,
            default_headers=default_headers,
            timeout_s=settings.http_timeout_s,
            max_retries=settings.http_max_retries,
            backoff_base_s=settings.http_backoff_base_s,
            backoff_max_s=settings.http_backoff_max_s,
            transport=transport,
            sleep=sleep,
        )

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PoliteHttpClient":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.close()

    def _backoff(self, attempt: int) -> float:
        base = self._backoff_base_s * (2 ** max(0, attempt - 1))
        jitter = self._rng.random() * 0.25 if base > 0 else 0.0
        return min(self._backoff_max_s, base + jitter)

    def _is_retryable_status(self, status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code <= 599

    def _parse_retry_after_s(self, value: Optional[str]) -> Optional[float]:
        if not value or not value.strip():
            return None
        try:
            return max(0.0, float(value.strip()))
        except ValueError:
            return None

    def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout_s: Optional[float] = None,
    ) -> httpx.Response:
        timeout = httpx.Timeout(timeout_s) if timeout_s is not None else self._timeout
        attempts = self._max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                LOGGER.debug("HTTP %s %s (attempt %d/%d)", method, url, attempt, attempts)
                resp = self._client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=dict(headers) if headers else None,
                    timeout=timeout,
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                if attempt >= attempts:
                    raise FetchError(url, None, f"HTTP transport error for {url}: {e}") from e
                self._sleep(self._backoff(attempt))
                continue

            if self._is_retryable_status(resp.status_code) and attempt < attempts:
                retry_after = self._parse_retry_after_s(resp.headers.get("Retry-After"))
                self._sleep(retry_after if retry_after is not None else self._backoff(attempt))
                continue

            if resp.status_code >= 400:
                LOGGER.debug("HTTP %s %s -> %s", method, url, resp.status_code)
                raise FetchError(url, int(resp.status_code), f"HTTP {resp.status_code} for {url}")
            return resp

        raise FetchError(url, None, f"HTTP failed for {url}")  # pragma: no cover

    def get_json(self, url: str, *, params: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Any:
        return self._decode_json(self.request("GET", url, params=params, **kwargs))

    def post_json(self, url: str, payload: Any = None, **kwargs: Any) -> Any:
        return self._decode_json(self.request("POST", url, json=payload, **kwargs))

    def get_text(self, url: str, **kwargs: Any) -> FetchResult:
        resp = self.request("GET", url, **kwargs)
        return FetchResult(
            url=str(resp.url),
            status_code=int(resp.status_code),
            text=resp.text,
            content_type=resp.headers.get("Content-Type"),
        )

    def probe(self, url: str, *, timeout_s: float = 10.0) -> bool:
        """Single GET without retries; True only for a 2xx answer."""
        try:
            resp = self._client.get(url, timeout=httpx.Timeout(timeout_s))
        except httpx.HTTPError as e:
            LOGGER.debug("Probe failed for %s: %s", url, e)
            return False
        return 200 <= resp.status_code < 300

    @staticmethod
    def _decode_json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(str(resp.url), int(resp.status_code), f"Invalid JSON from {resp.url}: {e}") from e


