"""Tests for core/scheduler.py."""

from __future__ import annotations

import asyncio

import pytest

from hostguard.core.detectors import DetectorContext
from hostguard.core.scheduler import Scheduler, chunked
from hostguard.errors import DetectorError
from hostguard.models.finding import DetectorResult, DetectorStatus, Finding, RiskLevel
from hostguard.models.run import ADAPTIVE_PHASE_NAME, CORE_PHASE_NAME, NoticeKind

UNISWAP_HIGH = [
    {"type": "suspicious_process", "description": "Unsigned uniswap helper", "risk": "high", "command": "uniswap-agent"},
    {"type": "suspicious_process", "description": "uniswap bot with injected dylib", "risk": "high"},
]


class RawDetector:
    """Detector that bypasses BaseDetector and returns whatever it is given."""

    def __init__(self, context: DetectorContext, value=None, error: Exception | None = None):
        self.name = "RawDetector"
        self.value = value
        self.error = error

    async def analyze(self):
        if self.error is not None:
            raise self.error
        return self.value


class InnerCancelDetector:
    """Awaits a helper task that gets cancelled underneath it."""

    def __init__(self, context: DetectorContext):
        self.name = "InnerCancelDetector"

    async def analyze(self):
        helper = asyncio.ensure_future(asyncio.sleep(10))
        helper.cancel()
        await helper


def _notice_kinds(run) -> list[NoticeKind]:
    return [n.kind for n in run.notices]


class TestChunked:
    def test_splits(self):
        assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_size_floor(self):
        assert chunked([1, 2], 0) == [[1], [2]]

    def test_empty(self):
        assert chunked([], 3) == []


class TestAdaptiveTriggers:
    @pytest.mark.asyncio
    async def test_domain_indicator_runs_adaptive_phase(self, build_registry):
        run = await Scheduler(build_registry(process=UNISWAP_HIGH)).run()

        assert len(run.results) == 8
        assert "blockchain" in run.results and "defi" in run.results
        assert run.adaptive_analysis.blockchain_analysis_enabled
        assert run.adaptive_analysis.adaptive_phase_ran
        assert run.adaptive_analysis.total_detectors_ran == 8
        assert run.adaptive_analysis.indicator_domains == ["blockchain"]
        assert [p.name for p in run.phases] == [CORE_PHASE_NAME, ADAPTIVE_PHASE_NAME]
        assert "domain:blockchain" in run.phases[1].triggers
        assert run.overall_risk == RiskLevel.HIGH

    @pytest.mark.asyncio
    async def test_low_findings_skip_adaptive_phase(self, build_registry):
        run = await Scheduler(build_registry()).run()

        assert len(run.results) == 6
        assert "blockchain" not in run.results
        assert not run.adaptive_analysis.blockchain_analysis_enabled
        assert not run.adaptive_analysis.adaptive_phase_ran
        assert not run.phases[1].ran
        assert run.phases[1].skipped_reason
        assert NoticeKind.ADAPTIVE_PHASE_SKIPPED in _notice_kinds(run)
        assert run.overall_risk == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_throwing_detector_isolated(self, build_registry, static_factory):
        registry = build_registry(
            persistence=static_factory([], error=RuntimeError("launchctl exploded")),
            network=[{"description": "open port", "risk": "medium"}],
        )
        run = await Scheduler(registry).run()

        failed = run.results["persistence"]
        assert failed.error == "launchctl exploded"
        assert failed.overall_risk == RiskLevel.UNKNOWN
        assert failed.status == DetectorStatus.ERROR
        assert len(run.results) == 6
        assert run.overall_risk == RiskLevel.MEDIUM
        assert run.summary.per_detector["persistence"].error == "launchctl exploded"
        assert NoticeKind.DETECTOR_ERROR in _notice_kinds(run)

    @pytest.mark.asyncio
    async def test_depth_trigger_alone_runs_adaptive_phase(self, build_registry):
        registry = build_registry(system=[{"description": "SIP disabled", "risk": "high"}])
        run = await Scheduler(registry).run()

        assert len(run.results) == 8
        assert not run.adaptive_analysis.blockchain_analysis_enabled
        assert run.adaptive_analysis.extended_forensics_enabled
        assert run.phases[1].triggers == ["depth:high"]

    @pytest.mark.asyncio
    async def test_adaptive_mode_disabled(self, build_registry):
        run = await Scheduler(build_registry(process=UNISWAP_HIGH), adaptive_mode=False).run()
        assert len(run.results) == 6
        assert run.phases[1].skipped_reason == "adaptive mode disabled"


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_factory_error(self, build_registry):
        def broken_factory(context):
            raise ValueError("cannot construct")

        run = await Scheduler(build_registry(network=broken_factory)).run()
        assert run.results["network"].error == "cannot construct"
        assert run.results["network"].overall_risk == RiskLevel.UNKNOWN

    @pytest.mark.asyncio
    async def test_raw_detector_raising(self, build_registry):
        registry = build_registry(system=lambda ctx: RawDetector(ctx, error=KeyError("missing")))
        run = await Scheduler(registry).run()
        assert run.results["system"].failed
        assert len(run.results) == 6

    @pytest.mark.asyncio
    async def test_non_result_return_value(self, build_registry):
        registry = build_registry(system=lambda ctx: RawDetector(ctx, value={"findings": []}))
        run = await Scheduler(registry).run()
        assert run.results["system"].status == DetectorStatus.ERROR
        assert "not DetectorResult" in run.results["system"].error

    @pytest.mark.asyncio
    async def test_timeout(self, build_registry, static_factory):
        registry = build_registry(resource=static_factory([], delay=5))
        run = await Scheduler(registry, detector_timeout=0.05).run()

        result = run.results["resource"]
        assert result.status == DetectorStatus.TIMEOUT
        assert result.overall_risk == RiskLevel.UNKNOWN
        assert NoticeKind.DETECTOR_TIMEOUT in _notice_kinds(run)
        assert len(run.results) == 6

    @pytest.mark.asyncio
    async def test_all_detectors_fail(self, build_registry, static_factory):
        failing = {key: static_factory([], error=RuntimeError(key)) for key in
                   ("resource", "system", "persistence", "process", "network", "permission")}
        run = await Scheduler(build_registry(**failing)).run()
        assert run.overall_risk == RiskLevel.UNKNOWN
        assert run.summary.total_findings == 0
        assert all(r.failed for r in run.results.values())

    @pytest.mark.asyncio
    async def test_detector_internal_cancellation_isolated(self, build_registry):
        registry = build_registry(persistence=InnerCancelDetector)
        run = await Scheduler(registry).run()

        result = run.results["persistence"]
        assert result.status == DetectorStatus.ERROR
        assert result.overall_risk == RiskLevel.UNKNOWN
        assert len(run.results) == 6
        assert all(not r.failed for k, r in run.results.items() if k != "persistence")

    @pytest.mark.asyncio
    async def test_detector_internal_cancellation_with_cancel_event(self, build_registry):
        registry = build_registry(persistence=InnerCancelDetector)
        run = await Scheduler(registry, cancel_event=asyncio.Event()).run()
        assert run.results["persistence"].status == DetectorStatus.ERROR
        assert len(run.results) == 6

    @pytest.mark.asyncio
    async def test_cancelling_the_run_task_still_propagates(self, build_registry, static_factory):
        registry = build_registry(resource=static_factory([], delay=5))
        task = asyncio.ensure_future(Scheduler(registry).run())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_detector_error_message_kept(self, build_registry):
        error = DetectorError("system", "launchctl unavailable")
        registry = build_registry(system=lambda ctx: RawDetector(ctx, error=error))
        run = await Scheduler(registry).run()
        assert run.results["system"].error == "launchctl unavailable"


class TestNormalization:
    @pytest.mark.asyncio
    async def test_reported_risk_recomputed(self, build_registry):
        drifted = DetectorResult(
            detector_key="other",
            findings=[Finding(description="benign", risk="low")],
            overall_risk="high",
        )
        run = await Scheduler(build_registry(system=lambda ctx: RawDetector(ctx, value=drifted))).run()

        result = run.results["system"]
        assert result.detector_key == "system"
        assert result.overall_risk == RiskLevel.LOW
        assert run.overall_risk == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_self_reported_error_forced_unknown(self, build_registry):
        partial = DetectorResult(
            detector_key="system",
            findings=[Finding(description="half", risk="high")],
            overall_risk="high",
            error="partial read",
        )
        run = await Scheduler(build_registry(system=lambda ctx: RawDetector(ctx, value=partial))).run()

        result = run.results["system"]
        assert result.status == DetectorStatus.ERROR
        assert result.overall_risk == RiskLevel.UNKNOWN
        assert result.findings == []


class TestConcurrency:
    @staticmethod
    def _tracking_factory(state: dict, delay: float = 0.02):
        class Tracking(RawDetector):
            async def analyze(self):
                state["active"] += 1
                state["max"] = max(state["max"], state["active"])
                state["order"].append(("start", self.key))
                await asyncio.sleep(delay)
                state["active"] -= 1
                state["order"].append(("end", self.key))
                return DetectorResult(detector_key=self.key)

        def factory(context):
            detector = Tracking(context)
            detector.key = context.key
            return detector

        return factory

    def _registry(self, build_registry, state):
        factory = self._tracking_factory(state)
        keys = ("resource", "system", "persistence", "process", "network", "permission")
        return build_registry(**{key: factory for key in keys})

    @pytest.mark.asyncio
    async def test_bounded_by_max_parallel(self, build_registry):
        state = {"active": 0, "max": 0, "order": []}
        await Scheduler(self._registry(build_registry, state), max_parallel_agents=2).run()
        assert state["max"] == 2

    @pytest.mark.asyncio
    async def test_sequential(self, build_registry):
        state = {"active": 0, "max": 0, "order": []}
        await Scheduler(self._registry(build_registry, state), parallel=False, max_parallel_agents=3).run()
        assert state["max"] == 1

    @pytest.mark.asyncio
    async def test_chunk_joined_before_next(self, build_registry):
        state = {"active": 0, "max": 0, "order": []}
        await Scheduler(self._registry(build_registry, state), max_parallel_agents=3).run()

        order = state["order"]
        first_chunk_ends = [order.index(("end", k)) for k in ("resource", "system", "persistence")]
        second_chunk_starts = [order.index(("start", k)) for k in ("process", "network", "permission")]
        assert max(first_chunk_ends) < min(second_chunk_starts)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, build_registry):
        event = asyncio.Event()
        event.set()
        run = await Scheduler(build_registry(process=UNISWAP_HIGH), cancel_event=event).run()

        assert all(r.status == DetectorStatus.CANCELLED for r in run.results.values())
        assert len(run.results) == 6
        assert run.phases[1].skipped_reason == "run cancelled"
        assert run.overall_risk == RiskLevel.UNKNOWN

    @pytest.mark.asyncio
    async def test_cancel_mid_run(self, build_registry, static_factory):
        event = asyncio.Event()

        class Canceller(RawDetector):
            async def analyze(self):
                await asyncio.sleep(0.01)
                event.set()
                return DetectorResult(detector_key="resource")

        registry = build_registry(
            resource=lambda ctx: Canceller(ctx),
            system=static_factory([], delay=5),
        )
        run = await Scheduler(registry, max_parallel_agents=3, cancel_event=event).run()

        assert run.results["system"].status == DetectorStatus.CANCELLED
        for key in ("process", "network", "permission"):
            assert run.results[key].status == DetectorStatus.CANCELLED
        assert NoticeKind.DETECTOR_CANCELLED in _notice_kinds(run)
        assert not run.phases[0].completed


class TestProgressAndCache:
    @pytest.mark.asyncio
    async def test_progress_without_adaptive(self, build_registry):
        calls = []
        await Scheduler(build_registry(), progress=lambda done, total: calls.append((done, total))).run()
        assert calls == [(i, 6) for i in range(1, 7)]

    @pytest.mark.asyncio
    async def test_progress_total_grows_with_adaptive(self, build_registry):
        calls = []
        await Scheduler(
            build_registry(process=UNISWAP_HIGH), progress=lambda done, total: calls.append((done, total))
        ).run()
        assert calls[5] == (6, 6)
        assert calls[-1] == (8, 8)

    @pytest.mark.asyncio
    async def test_progress_callback_error_ignored(self, build_registry):
        def bad_progress(done, total):
            raise RuntimeError("ui gone")

        run = await Scheduler(build_registry(), progress=bad_progress).run()
        assert len(run.results) == 6

    @pytest.mark.asyncio
    async def test_shared_signature_cache_injected(self, build_registry):
        seen = []

        def factory(context):
            seen.append(context.signature_cache)
            return RawDetector(context, value=DetectorResult(detector_key=context.key))

        scheduler = Scheduler(build_registry(resource=factory, system=factory, network=factory))
        await scheduler.run()

        assert len(seen) == 3
        assert all(cache is scheduler.signature_cache for cache in seen)

    @pytest.mark.asyncio
    async def test_detector_options_passed(self, build_registry):
        captured = {}

        def factory(context):
            captured.update(context.options)
            return RawDetector(context, value=DetectorResult(detector_key=context.key))

        await Scheduler(build_registry(network=factory), detector_options={"network": {"ports": [22]}}).run()
        assert captured == {"ports": [22]}


class TestFromConfig:
    def test_reads_analysis_section(self, build_registry, config):
        config["analysis"]["max_parallel_agents"] = 5
        config["analysis"]["parallel_execution"] = False
        config["analysis"]["detector_timeout_seconds"] = 7
        scheduler = Scheduler.from_config(config, build_registry())
        assert scheduler.max_parallel_agents == 5
        assert scheduler.parallel is False
        assert scheduler.detector_timeout == 7
