from __future__ import annotations

import itertools

import pytest

from testflight_monitor.classifier import (
    KeywordResponseClassifier,
    RedirectResponseClassifier,
    classifier_for_strategy,
    format_check_message,
    html_to_visible_text,
)
from testflight_monitor.models import BuildStatus
from testflight_monitor.probe import ProbeResult


URL = "https://testflight.apple.com/join/ABCDEF"


def _page(body_text: str) -> str:
    return f"<!doctype html><html><head><title>TestFlight</title></head><body><main>{body_text}</main></body></html>"


def _ok(body: str | None) -> ProbeResult:
    return ProbeResult(url=URL, elapsed_ms=12.0, http_status=200, body_excerpt=body)


@pytest.mark.parametrize(
    ("body", "status", "summary"),
    [
        (_page("This beta has expired."), BuildStatus.EXPIRED, "Build has expired"),
        (_page("This beta is no longer available."), BuildStatus.EXPIRED, "Build has expired"),
        (_page("<a>Start Testing</a>"), BuildStatus.ACTIVE, "Build is available for testing"),
        (_page("<button>Open in TestFlight</button>"), BuildStatus.ACTIVE, "Build is available for testing"),
        (_page("This beta is full."), BuildStatus.ACTIVE, "Build is at capacity but still active"),
        (_page("The beta has reached capacity"), BuildStatus.ACTIVE, "Build is at capacity but still active"),
        (
            _page("This beta is not accepting any new testers right now."),
            BuildStatus.ACTIVE,
            "Build is at capacity but still active",
        ),
        (_page("Join the beta"), BuildStatus.NOT_FOUND, "Build status unclear (HTTP 200)"),
        (None, BuildStatus.NOT_FOUND, "Build status unclear (HTTP 200)"),
    ],
)
def test_keyword_classifier_http_200(body: str | None, status: BuildStatus, summary: str) -> None:
    c = KeywordResponseClassifier().classify(_ok(body))
    assert c.status is status
    assert c.summary == summary


def test_unavailable_keywords_take_precedence_over_available() -> None:
    body = _page("Start Testing is disabled: this build has expired")
    assert KeywordResponseClassifier().classify(_ok(body)).status is BuildStatus.EXPIRED


def test_available_keywords_take_precedence_over_capacity() -> None:
    body = _page("Almost full! Start Testing today")
    c = KeywordResponseClassifier().classify(_ok(body))
    assert c.status is BuildStatus.ACTIVE
    assert c.summary == "Build is available for testing"


def test_keywords_match_whole_words_only() -> None:
    body = _page("Your beta is fully configured")
    assert KeywordResponseClassifier().classify(_ok(body)).status is BuildStatus.NOT_FOUND


def test_script_and_markup_are_not_visible_text() -> None:
    body = (
        "<html><head><script>window.state = {expired: true}</script>"
        "<style>.full { width: 100% }</style></head>"
        "<body><a class='start'>Start\n   Testing</a></body></html>"
    )
    assert html_to_visible_text(body) == "start testing"
    assert KeywordResponseClassifier().classify(_ok(body)).status is BuildStatus.ACTIVE


def test_http_404_is_not_found() -> None:
    c = KeywordResponseClassifier().classify(ProbeResult(url=URL, elapsed_ms=5.0, http_status=404, body_excerpt="Not Found"))
    assert c.status is BuildStatus.NOT_FOUND
    assert c.summary == "Build not found (404)"


@pytest.mark.parametrize(
    ("code", "location", "status"),
    [
        (302, "https://testflight.apple.com/expired", BuildStatus.EXPIRED),
        (301, "https://testflight.apple.com/Unavailable?reason=x", BuildStatus.EXPIRED),
        (302, "https://testflight.apple.com/join/ABCDEF/", BuildStatus.ACTIVE),
        (307, None, BuildStatus.ACTIVE),
    ],
)
def test_redirects(code: int, location: str | None, status: BuildStatus) -> None:
    result = ProbeResult(url=URL, elapsed_ms=5.0, http_status=code, redirect_location=location, body_excerpt="")
    assert KeywordResponseClassifier().classify(result).status is status
    assert RedirectResponseClassifier().classify(result).status is status


@pytest.mark.parametrize("code", [400, 403, 429, 500, 503])
def test_other_http_statuses_are_errors(code: int) -> None:
    c = KeywordResponseClassifier().classify(ProbeResult(url=URL, elapsed_ms=5.0, http_status=code, body_excerpt="Start Testing"))
    assert c.status is BuildStatus.ERROR
    assert c.summary == f"HTTP {code}"


def test_network_error_is_error() -> None:
    result = ProbeResult(url=URL, elapsed_ms=30001.0, network_error="timeout", error_detail="ReadTimeout: timed out")
    for classifier in (KeywordResponseClassifier(), RedirectResponseClassifier()):
        c = classifier.classify(result)
        assert c.status is BuildStatus.ERROR
        assert c.summary == "Network error: timeout"


def test_redirect_classifier_ignores_bodies() -> None:
    c = RedirectResponseClassifier()
    assert c.classify(ProbeResult(url=URL, elapsed_ms=1.0, http_status=200)).status is BuildStatus.ACTIVE
    assert c.classify(_ok(_page("This beta has expired."))).status is BuildStatus.ACTIVE
    assert c.classify(ProbeResult(url=URL, elapsed_ms=1.0, http_status=404)).status is BuildStatus.NOT_FOUND
    assert c.classify(ProbeResult(url=URL, elapsed_ms=1.0, http_status=502)).status is BuildStatus.ERROR


def test_classification_is_deterministic_and_closed() -> None:
    codes = [None, 200, 204, 301, 302, 304, 400, 404, 410, 500, 503]
    locations = [None, "", "https://testflight.apple.com/join/X", "/expired", "/unavailable"]
    bodies = [
        None,
        "",
        _page("Start Testing"),
        _page("expired"),
        _page("beta is full"),
        _page("fullness"),
        "<script>expired</script>",
    ]
    latencies = [0.0, 1.5, 29999.0]
    classifiers = [KeywordResponseClassifier(), RedirectResponseClassifier()]

    for code, location, body in itertools.product(codes, locations, bodies):
        results = [
            ProbeResult(
                url=URL,
                elapsed_ms=ms,
                http_status=code,
                redirect_location=location,
                body_excerpt=body,
                network_error="timeout" if code is None else None,
            )
            for ms in latencies
        ]
        for classifier in classifiers:
            outputs = {classifier.classify(r) for r in results}
            outputs.add(classifier.classify(results[0]))
            # Latency never changes the outcome.
            assert len(outputs) == 1
            (only,) = outputs
            assert isinstance(only.status, BuildStatus)
            assert only.status.value in {"PENDING", "ACTIVE", "EXPIRED", "NOT_FOUND", "ERROR"}


def test_classifier_for_strategy() -> None:
    assert isinstance(classifier_for_strategy("get"), KeywordResponseClassifier)
    assert isinstance(classifier_for_strategy("HEAD"), RedirectResponseClassifier)
    with pytest.raises(ValueError):
        classifier_for_strategy("post")


def test_format_check_message_rounds_latency() -> None:
    c = KeywordResponseClassifier().classify(_ok(_page("Start Testing")))
    assert format_check_message(c, 340.4) == "Build is available for testing (340ms)"
    assert format_check_message(c, 0.6) == "Build is available for testing (1ms)"
