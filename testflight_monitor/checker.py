from __future__ import annotations

from dataclasses import dataclass

import structlog

from .classifier import Classification, ResponseClassifier, format_check_message
from .models import Build
from .probe import HttpProber, ProbeResult, safe_url
from .recorder import RecordOutcome, TransitionRecorder


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckResult:
    build: Build
    probe: ProbeResult
    classification: Classification
    message: str
    outcome: RecordOutcome


class BuildChecker:
    """Probe one build, classify the response and record the result."""

    def __init__(self, prober: HttpProber, classifier: ResponseClassifier, recorder: TransitionRecorder) -> None:
        self.prober = prober
        self.classifier = classifier
        self.recorder = recorder

    async def check(self, build: Build) -> CheckResult:
        result = await self.prober.probe(build.url)
        classification = self.classifier.classify(result)
        message = format_check_message(classification, result.elapsed_ms)
        logger.info(
            "Build checked",
            build_id=build.id,
            build=build.name,
            url=safe_url(build.url),
            status=classification.status.value,
            http_status=result.http_status,
            elapsed_ms=round(result.elapsed_ms, 1),
        )
        outcome = await self.recorder.record(
            build.id,
            classification.status,
            message,
            result.elapsed_ms,
            http_status=result.http_status,
            error_detail=result.error_detail,
        )
        return CheckResult(build=build, probe=result, classification=classification, message=message, outcome=outcome)
