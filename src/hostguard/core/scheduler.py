"""Phase scheduler: runs detectors in bounded-concurrency waves.

Phase 1 runs every core detector. The indicator extractor then decides
whether the adaptive detectors run as phase 2. Within a phase detectors are
issued in chunks of ``max_parallel_agents`` and each chunk is joined before
the next starts. A failing, hanging or cancelled detector becomes an
unknown-risk result; nothing a detector does aborts the run.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from ..errors import DetectorError
from ..models.finding import DetectorResult, DetectorStatus, RiskLevel
from ..models.run import (
    ADAPTIVE_PHASE_NAME,
    CORE_PHASE_NAME,
    AdaptiveAnalysis,
    AnalysisPhase,
    AnalysisRun,
    NoticeKind,
    RunNotice,
)
from .cache import SignatureCache
from .correlator import (
    calculate_overall_risk,
    correlate_findings,
    derive_risk_from_findings,
    generate_summary,
)
from .detectors import ADAPTIVE_PHASE, CORE_PHASE, DetectorContext, DetectorRegistry
from .indicators import AdaptiveDecision, IndicatorExtractor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

_STATUS_NOTICES = {
    DetectorStatus.ERROR: NoticeKind.DETECTOR_ERROR,
    DetectorStatus.TIMEOUT: NoticeKind.DETECTOR_TIMEOUT,
    DetectorStatus.CANCELLED: NoticeKind.DETECTOR_CANCELLED,
}


def chunked(items: list, size: int) -> list[list]:
    size = max(1, int(size))
    return [items[i:i + size] for i in range(0, len(items), size)]


def get_os_version() -> str:
    mac_version = platform.mac_ver()[0]
    if mac_version:
        return mac_version
    return f"{platform.system()} {platform.release()}".strip()


class Scheduler:
    """Runs the core phase, the optional adaptive phase, and assembles the run."""

    def __init__(
        self,
        registry: DetectorRegistry,
        extractor: Optional[IndicatorExtractor] = None,
        parallel: bool = True,
        max_parallel_agents: int = 3,
        detector_timeout: float = 120,
        adaptive_mode: bool = True,
        analysis_depth: str = "comprehensive",
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        detector_options: Optional[dict] = None,
    ):
        self.registry = registry
        self.extractor = extractor or IndicatorExtractor()
        self.parallel = parallel
        self.max_parallel_agents = max(1, int(max_parallel_agents))
        self.detector_timeout = detector_timeout
        self.adaptive_mode = adaptive_mode
        self.analysis_depth = analysis_depth
        self.progress = progress
        self.cancel_event = cancel_event
        self.detector_options = detector_options or {}

        self.signature_cache = SignatureCache()
        self.notices: list[RunNotice] = []
        self.completed = 0
        self.total = 0

    @classmethod
    def from_config(
        cls,
        config: dict,
        registry: DetectorRegistry,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> "Scheduler":
        analysis = config.get("analysis", {})
        return cls(
            registry,
            extractor=IndicatorExtractor.from_config(config),
            parallel=analysis.get("parallel_execution", True),
            max_parallel_agents=analysis.get("max_parallel_agents", 3),
            detector_timeout=analysis.get("detector_timeout_seconds", 120),
            adaptive_mode=analysis.get("adaptive_mode", True),
            analysis_depth=analysis.get("depth", "comprehensive"),
            progress=progress,
            cancel_event=cancel_event,
            detector_options=config.get("detector_options", {}),
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(self) -> AnalysisRun:
        self.signature_cache.clear()
        self.notices = []
        self.completed = 0

        results: dict[str, DetectorResult] = {}
        phases: list[AnalysisPhase] = []

        core_keys = self.registry.keys(CORE_PHASE)
        adaptive_keys = self.registry.keys(ADAPTIVE_PHASE)
        self.total = len(core_keys)

        logger.info("Phase 1: %s (%d detectors)", CORE_PHASE_NAME, len(core_keys))
        results.update(await self.run_phase(core_keys))
        phases.append(AnalysisPhase(name=CORE_PHASE_NAME, detectors=core_keys, completed=not self.cancelled))

        decision = self.extractor.decide(results)
        if decision.extraction_error:
            self._notice(NoticeKind.INDICATOR_EXTRACTION_FAILED, "indicators", decision.extraction_error)

        adaptive_phase, adaptive_ran = await self._run_adaptive_phase(decision, adaptive_keys, results)
        phases.append(adaptive_phase)

        correlations = correlate_findings(results)
        summary = generate_summary(results)
        if summary.error:
            self._notice(NoticeKind.AGGREGATION_ERROR, "summary", summary.error)

        return AnalysisRun(
            analysis_depth=self.analysis_depth,
            timestamp=datetime.now(timezone.utc),
            hostname=platform.node(),
            os_version=get_os_version(),
            results=results,
            overall_risk=calculate_overall_risk(results),
            summary=summary,
            phases=phases,
            adaptive_analysis=AdaptiveAnalysis(
                blockchain_analysis_enabled="blockchain" in decision.domains,
                extended_forensics_enabled=decision.depth_triggered,
                indicator_domains=decision.domains,
                indicator_count=len(decision.indicators),
                adaptive_phase_ran=adaptive_ran,
                total_detectors_ran=len(results),
            ),
            correlations=correlations,
            notices=list(self.notices),
        )

    async def _run_adaptive_phase(
        self,
        decision: AdaptiveDecision,
        adaptive_keys: list[str],
        results: dict[str, DetectorResult],
    ) -> tuple[AnalysisPhase, bool]:
        skipped_reason = None
        if not self.adaptive_mode:
            skipped_reason = "adaptive mode disabled"
        elif self.cancelled:
            skipped_reason = "run cancelled"
        elif not decision.should_run:
            skipped_reason = "no indicators and depth thresholds not crossed"
        elif not adaptive_keys:
            skipped_reason = "no adaptive detectors registered"

        if skipped_reason:
            logger.info("Phase 2 skipped: %s", skipped_reason)
            self._notice(NoticeKind.ADAPTIVE_PHASE_SKIPPED, ADAPTIVE_PHASE, skipped_reason)
            return AnalysisPhase(
                name=ADAPTIVE_PHASE_NAME,
                detectors=[],
                ran=False,
                completed=False,
                triggers=decision.triggers,
                skipped_reason=skipped_reason,
            ), False

        logger.info("Phase 2: %s triggered by %s", ADAPTIVE_PHASE_NAME, ", ".join(decision.triggers))
        self.total += len(adaptive_keys)
        results.update(await self.run_phase(adaptive_keys))
        return AnalysisPhase(
            name=ADAPTIVE_PHASE_NAME,
            detectors=adaptive_keys,
            completed=not self.cancelled,
            triggers=decision.triggers,
        ), True

    # ------------------------------------------------------------------
    # Phase execution
    # ------------------------------------------------------------------

    async def run_phase(self, keys: list[str]) -> dict[str, DetectorResult]:
        """Run detectors chunk by chunk, joining each chunk before the next."""
        results: dict[str, DetectorResult] = {}
        size = self.max_parallel_agents if self.parallel else 1

        for chunk in chunked(list(keys), size):
            if self.cancelled:
                for key in chunk:
                    results[key] = self._finish(key, self._cancelled_result(key))
                continue

            chunk_results = await asyncio.gather(*(self._invoke(key) for key in chunk))
            for key, result in zip(chunk, chunk_results):
                results[key] = result
        return results

    async def _invoke(self, key: str) -> DetectorResult:
        spec = self.registry.spec(key)
        start = time.monotonic()
        logger.debug("Running %s", spec.name)

        try:
            context = DetectorContext(
                key=key,
                signature_cache=self.signature_cache,
                options=dict(self.detector_options.get(key, {})),
                command_timeout=self.detector_timeout,
            )
            detector = spec.factory(context)
            name = getattr(detector, "name", spec.name) or spec.name
            result = await self._await_detector(detector.analyze())
        except asyncio.TimeoutError:
            result = DetectorResult.failure(
                key,
                f"Timed out after {self.detector_timeout}s",
                detector_name=spec.name,
                status=DetectorStatus.TIMEOUT,
            )
        except asyncio.CancelledError:
            if self.cancelled:
                result = self._cancelled_result(key)
            elif asyncio.current_task().cancelling():
                raise
            else:
                # cancelled from inside the detector, not by the run
                result = DetectorResult.failure(key, "Detector was cancelled internally", detector_name=spec.name)
        except DetectorError as e:
            result = DetectorResult.failure(key, e.message, detector_name=spec.name)
        except Exception as e:
            result = DetectorResult.failure(key, str(e) or type(e).__name__, detector_name=spec.name)
        else:
            result = self._normalize(key, name, result)

        duration = time.monotonic() - start
        result = result.model_copy(update={"duration_seconds": round(duration, 3)})
        return self._finish(key, result)

    async def _await_detector(self, coro) -> DetectorResult:
        """Await a detector under the timeout, racing the cancel signal."""
        task = asyncio.ensure_future(asyncio.wait_for(coro, timeout=self.detector_timeout))
        if self.cancel_event is None:
            return await task

        cancel_waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        raise asyncio.CancelledError()

    def _normalize(self, key: str, name: str, result: object) -> DetectorResult:
        """Key the result by registry key and re-derive risk from its findings."""
        if not isinstance(result, DetectorResult):
            return DetectorResult.failure(
                key, f"Detector returned {type(result).__name__}, not DetectorResult", detector_name=name
            )
        if result.failed:
            return result.model_copy(update={
                "detector_key": key,
                "detector_name": result.detector_name or name,
                "findings": [],
                "overall_risk": RiskLevel.UNKNOWN,
                "status": result.status if result.status != DetectorStatus.COMPLETE else DetectorStatus.ERROR,
            })
        return result.model_copy(update={
            "detector_key": key,
            "detector_name": result.detector_name or name,
            "overall_risk": derive_risk_from_findings(result.findings, result.overall_risk),
        })

    def _cancelled_result(self, key: str) -> DetectorResult:
        name = self.registry.spec(key).name
        return DetectorResult.failure(key, "cancelled", detector_name=name, status=DetectorStatus.CANCELLED)

    def _finish(self, key: str, result: DetectorResult) -> DetectorResult:
        self.completed += 1
        if result.failed:
            kind = _STATUS_NOTICES.get(result.status, NoticeKind.DETECTOR_ERROR)
            logger.warning("%s %s: %s", result.detector_name or key, result.status.value, result.error)
            self._notice(kind, key, result.error or result.status.value)
        else:
            logger.info(
                "%s completed - %d/%d - Risk: %s",
                result.detector_name or key, self.completed, self.total, result.overall_risk.value.upper(),
            )
        self._report_progress()
        return result

    def _report_progress(self) -> None:
        if self.progress is None:
            return
        try:
            self.progress(self.completed, self.total)
        except Exception as e:
            logger.debug("Progress callback failed: %s", e)

    def _notice(self, kind: NoticeKind, source: str, message: str) -> None:
        self.notices.append(RunNotice(kind=kind, source=source, message=message))
