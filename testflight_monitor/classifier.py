"""Map raw probe results onto the build status taxonomy.

Classifiers are pure: the same ``ProbeResult`` fields always produce the same
``Classification``. Latency is never consulted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from .models import BuildStatus
from .probe import ProbeResult


UNAVAILABLE_KEYWORDS: tuple[str, ...] = ("expired", "no longer available")
AVAILABLE_KEYWORDS: tuple[str, ...] = ("start testing", "open in testflight")
CAPACITY_KEYWORDS: tuple[str, ...] = ("full", "capacity", "not accepting any new testers")
REDIRECT_UNAVAILABLE_KEYWORDS: tuple[str, ...] = ("expired", "unavailable")

_SCRIPT_AND_STYLE_RE = re.compile(r"(?is)<(script|style)[^>]*>.*?</\1>")
_HTML_TAG_RE = re.compile(r"(?is)<[^>]+>")


@dataclass(frozen=True)
class Classification:
    status: BuildStatus
    summary: str


class ResponseClassifier(Protocol):
    def classify(self, result: ProbeResult) -> Classification: ...


def _normalize_text(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip().lower()


def html_to_visible_text(html: str) -> str:
    without_scripts = _SCRIPT_AND_STYLE_RE.sub(" ", html)
    without_tags = _HTML_TAG_RE.sub(" ", without_scripts)
    return _normalize_text(without_tags)


def _keyword_re(keywords: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(r"\s+".join(re.escape(w) for w in kw.split()) for kw in keywords)
    return re.compile(rf"\b(?:{alternatives})\b")


def _network_error(result: ProbeResult) -> Classification:
    return Classification(BuildStatus.ERROR, f"Network error: {result.network_error or 'request_failed'}")


def _classify_redirect(result: ProbeResult, unavailable: tuple[str, ...]) -> Classification:
    code = result.http_status
    location = (result.redirect_location or "").lower()
    if location and any(kw in location for kw in unavailable):
        return Classification(BuildStatus.EXPIRED, f"Redirected to unavailable page (HTTP {code})")
    return Classification(BuildStatus.ACTIVE, f"Redirected (HTTP {code}), presumed active")


class KeywordResponseClassifier:
    """Classifies GET probes by status code, redirect target and page text.

    Precedence (first match wins): network error, unavailable keywords,
    available keywords, capacity keywords, unclear 200, 404, redirects,
    anything else.
    """

    def __init__(
        self,
        *,
        unavailable: tuple[str, ...] = UNAVAILABLE_KEYWORDS,
        available: tuple[str, ...] = AVAILABLE_KEYWORDS,
        capacity: tuple[str, ...] = CAPACITY_KEYWORDS,
        redirect_unavailable: tuple[str, ...] = REDIRECT_UNAVAILABLE_KEYWORDS,
    ) -> None:
        self._unavailable_re = _keyword_re(unavailable)
        self._available_re = _keyword_re(available)
        self._capacity_re = _keyword_re(capacity)
        self._redirect_unavailable = tuple(kw.lower() for kw in redirect_unavailable)

    def classify(self, result: ProbeResult) -> Classification:
        if not result.completed:
            return _network_error(result)

        code = int(result.http_status)  # type: ignore[arg-type]
        if code == 200:
            text = html_to_visible_text(result.body_excerpt or "")
            if self._unavailable_re.search(text):
                return Classification(BuildStatus.EXPIRED, "Build has expired")
            if self._available_re.search(text):
                return Classification(BuildStatus.ACTIVE, "Build is available for testing")
            if self._capacity_re.search(text):
                return Classification(BuildStatus.ACTIVE, "Build is at capacity but still active")
            # Low confidence, not an assertion that the build was removed.
            return Classification(BuildStatus.NOT_FOUND, "Build status unclear (HTTP 200)")
        if code == 404:
            return Classification(BuildStatus.NOT_FOUND, "Build not found (404)")
        if 300 <= code < 400:
            return _classify_redirect(result, self._redirect_unavailable)
        return Classification(BuildStatus.ERROR, f"HTTP {code}")


class RedirectResponseClassifier:
    """Body-free classification for HEAD probes: status code and redirect target only."""

    def __init__(self, *, redirect_unavailable: tuple[str, ...] = REDIRECT_UNAVAILABLE_KEYWORDS) -> None:
        self._redirect_unavailable = tuple(kw.lower() for kw in redirect_unavailable)

    def classify(self, result: ProbeResult) -> Classification:
        if not result.completed:
            return _network_error(result)

        code = int(result.http_status)  # type: ignore[arg-type]
        if code == 200:
            return Classification(BuildStatus.ACTIVE, "HTTP 200")
        if code == 404:
            return Classification(BuildStatus.NOT_FOUND, "Build not found (404)")
        if 300 <= code < 400:
            return _classify_redirect(result, self._redirect_unavailable)
        return Classification(BuildStatus.ERROR, f"HTTP {code}")


def classifier_for_strategy(strategy: str) -> ResponseClassifier:
    s = str(strategy or "").strip().lower()
    if s == "get":
        return KeywordResponseClassifier()
    if s == "head":
        return RedirectResponseClassifier()
    raise ValueError(f"Unknown probe strategy: {strategy!r}")


def format_check_message(classification: Classification, elapsed_ms: float) -> str:
    return f"{classification.summary} ({int(round(float(elapsed_ms)))}ms)"
