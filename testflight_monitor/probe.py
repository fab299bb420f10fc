from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from .settings import DEFAULT_USER_AGENT


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Raw outcome of one HTTP exchange.

    Either ``http_status`` is set (the exchange completed) or ``network_error``
    names the failure kind (timeout, connect_error, ...).
    """

    url: str
    elapsed_ms: float
    http_status: int | None = None
    redirect_location: str | None = None
    body_excerpt: str | None = None
    network_error: str | None = None
    error_detail: str | None = None

    @property
    def completed(self) -> bool:
        return self.network_error is None and self.http_status is not None


def safe_url(url: str) -> str:
    """Drop query strings and fragments before logging."""
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


def _network_error_kind(exc: Exception) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.ConnectError):
        return "connect_error"
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return "invalid_url"
    return "request_error"


class HttpProber:
    """Performs exactly one request per probe. Redirects are never followed.

    ``method="GET"`` reads the body (truncated to ``max_body_chars``) for keyword
    classification; ``method="HEAD"`` only reports status and redirect target.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_seconds: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        method: str = "GET",
        max_body_chars: int = 200_000,
    ) -> None:
        method = str(method or "GET").upper()
        if method not in {"GET", "HEAD"}:
            raise ValueError(f"Unsupported probe method: {method}")
        self.client = client
        self.timeout_seconds = float(timeout_seconds)
        self.user_agent = user_agent
        self.method = method
        self.max_body_chars = int(max_body_chars)

    async def _exchange(self, url: str, headers: dict[str, str]) -> tuple[int, str | None, str | None]:
        async with self.client.stream(
            self.method,
            url,
            headers=headers,
            follow_redirects=False,
            timeout=self.timeout_seconds,
        ) as resp:
            location = resp.headers.get("location") if 300 <= resp.status_code < 400 else None
            if self.method != "GET":
                return int(resp.status_code), location, None
            chunks: list[str] = []
            size = 0
            async for chunk in resp.aiter_text():
                chunks.append(chunk)
                size += len(chunk)
                if size >= self.max_body_chars:
                    break
            return int(resp.status_code), location, "".join(chunks)[: self.max_body_chars]

    def _failure(self, url: str, started: float, kind: str, detail: str) -> ProbeResult:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info("Probe failed", url=safe_url(url), error_kind=kind, elapsed_ms=round(elapsed_ms, 1))
        return ProbeResult(
            url=url,
            elapsed_ms=round(elapsed_ms, 3),
            network_error=kind,
            error_detail=detail[:1000],
        )

    async def probe(self, url: str) -> ProbeResult:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        started = time.perf_counter()
        # timeout_seconds bounds the whole exchange, body included.
        try:
            status, location, body = await asyncio.wait_for(
                self._exchange(url, headers), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            return self._failure(url, started, "timeout", f"no complete response within {self.timeout_seconds:g}s")
        except (httpx.RequestError, httpx.InvalidURL) as e:
            return self._failure(url, started, _network_error_kind(e), f"{type(e).__name__}: {e}")

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.debug(
            "Probe completed",
            url=safe_url(url),
            http_status=status,
            redirect=bool(location),
            elapsed_ms=round(elapsed_ms, 1),
        )
        return ProbeResult(
            url=url,
            elapsed_ms=round(elapsed_ms, 3),
            http_status=status,
            redirect_location=location,
            body_excerpt=body,
        )
