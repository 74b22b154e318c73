"""Shared fixtures for hostguard tests."""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Callable, Optional

import pytest

from hostguard.core.config import DEFAULT_CONFIG
from hostguard.core.correlator import calculate_overall_risk, generate_summary
from hostguard.core.detectors import ADAPTIVE_PHASE, CORE_PHASE, BaseDetector, DetectorContext, DetectorRegistry
from hostguard.models.finding import DetectorResult, Finding
from hostguard.models.run import AnalysisRun

CORE_KEYS = ("resource", "system", "persistence", "process", "network", "permission")
ADAPTIVE_KEYS = ("blockchain", "defi")


def make_result(key: str, *risks: str, **finding_fields) -> DetectorResult:
    """A completed DetectorResult with one finding per given risk."""
    findings = [
        Finding(id=f"{key}#{i}", type="test_finding", description=f"{key} finding {i}", risk=risk, **finding_fields)
        for i, risk in enumerate(risks)
    ]
    return DetectorResult(detector_key=key, detector_name=key.title(), findings=findings)


class StaticDetector(BaseDetector):
    """Returns the findings it was built with, optionally after a delay or by raising."""

    def __init__(
        self,
        context: DetectorContext,
        findings: list[dict],
        delay: float = 0,
        error: Optional[Exception] = None,
        calls: Optional[list] = None,
    ):
        super().__init__(context)
        self.name = f"{context.key.title()}Detector"
        self._findings = findings
        self._delay = delay
        self._error = error
        self._calls = calls

    async def collect(self) -> list[Finding]:
        if self._calls is not None:
            self._calls.append(self.key)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return [Finding(**f) for f in self._findings]


def static_factory(findings: list[dict], **kwargs) -> Callable[[DetectorContext], StaticDetector]:
    def factory(context: DetectorContext) -> StaticDetector:
        return StaticDetector(context, findings, **kwargs)

    return factory


@pytest.fixture
def config() -> dict:
    return copy.deepcopy(DEFAULT_CONFIG)


@pytest.fixture
def build_registry() -> Callable[..., DetectorRegistry]:
    """Registry with the six core and two adaptive keys.

    Keyword arguments map a detector key to its findings list, or to a
    prebuilt factory.
    """

    def _build(**overrides) -> DetectorRegistry:
        registry = DetectorRegistry()
        for phase, keys in ((CORE_PHASE, CORE_KEYS), (ADAPTIVE_PHASE, ADAPTIVE_KEYS)):
            for key in keys:
                value = overrides.get(key, [{"type": "baseline", "description": "ok", "risk": "low"}])
                factory = value if callable(value) else static_factory(value)
                registry.register(key, factory, phase=phase, name=f"{key.title()}Detector")
        return registry

    return _build


@pytest.fixture
def sample_results() -> dict[str, DetectorResult]:
    return {
        "process": make_result("process", "high", "low"),
        "network": make_result("network", "medium"),
        "system": make_result("system"),
        "persistence": DetectorResult.failure("persistence", "launchctl unavailable"),
    }


@pytest.fixture
def sample_run(sample_results: dict[str, DetectorResult]) -> AnalysisRun:
    return AnalysisRun(
        timestamp=datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc),
        hostname="test-host",
        os_version="14.5",
        results=sample_results,
        overall_risk=calculate_overall_risk(sample_results),
        summary=generate_summary(sample_results),
    )


@pytest.fixture(name="make_result")
def make_result_fixture() -> Callable[..., DetectorResult]:
    return make_result


@pytest.fixture(name="static_factory")
def static_factory_fixture() -> Callable[..., Callable[[DetectorContext], StaticDetector]]:
    return static_factory
