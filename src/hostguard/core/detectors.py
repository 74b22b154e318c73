"""Detector interface, registry and dry-run mock detectors.

A detector is any object with a ``name`` and an async ``analyze()`` returning
a DetectorResult. The registry maps stable detector keys to factories; the
scheduler builds a fresh instance per run and hands it a DetectorContext
carrying the run's shared signature cache.
"""

from __future__ import annotations

import importlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

from ..errors import ConfigError, DetectorError
from ..models.finding import DetectorResult, DetectorStatus, Finding
from ..utils.signature import SignatureAssessment, get_signature_assessment
from .cache import SignatureCache
from .correlator import derive_risk_from_findings

logger = logging.getLogger(__name__)

CORE_PHASE = "core"
ADAPTIVE_PHASE = "adaptive"


@runtime_checkable
class Detector(Protocol):
    """Protocol every detector implements. analyze() must never raise."""

    name: str

    async def analyze(self) -> DetectorResult: ...


@dataclass
class DetectorContext:
    """Construction-time handle passed to every detector factory."""

    key: str
    signature_cache: SignatureCache
    options: dict = field(default_factory=dict)
    command_timeout: float = 30

    async def assess_signature(self, path: str) -> SignatureAssessment:
        return await get_signature_assessment(path, cache=self.signature_cache, timeout=self.command_timeout)


DetectorFactory = Callable[[DetectorContext], Detector]


class BaseDetector:
    """Base class that turns collect() failures into unknown-risk results."""

    name: str = "BaseDetector"

    def __init__(self, context: DetectorContext):
        self.context = context
        self.key = context.key

    async def collect(self) -> list[Finding]:
        """Gather findings. Raise DetectorError for an expected failure (tool missing, no access)."""
        raise NotImplementedError

    def extra(self) -> dict:
        """Detector-specific payload attached to the result (e.g. snapshots)."""
        return {}

    async def analyze(self) -> DetectorResult:
        start = time.monotonic()
        try:
            findings = await self.collect()
        except Exception as e:
            err = e if isinstance(e, DetectorError) else DetectorError(self.key, str(e) or type(e).__name__)
            logger.warning("%s failed: %s", self.name, err)
            return DetectorResult.failure(
                self.key,
                err.message,
                detector_name=self.name,
                duration_seconds=time.monotonic() - start,
            )
        return DetectorResult(
            detector_key=self.key,
            detector_name=self.name,
            findings=findings,
            overall_risk=derive_risk_from_findings(findings),
            status=DetectorStatus.COMPLETE,
            duration_seconds=time.monotonic() - start,
            extra=self.extra(),
        )


@dataclass(frozen=True)
class DetectorSpec:
    key: str
    factory: DetectorFactory
    phase: str = CORE_PHASE
    name: str = ""


class DetectorRegistry:
    """Ordered (key -> factory) registry, split into core and adaptive sets."""

    def __init__(self) -> None:
        self._specs: dict[str, DetectorSpec] = {}

    def register(
        self,
        key: str,
        factory: DetectorFactory,
        phase: str = CORE_PHASE,
        name: str = "",
    ) -> None:
        if phase not in (CORE_PHASE, ADAPTIVE_PHASE):
            raise ValueError(f"Unknown detector phase: {phase}")
        if key in self._specs:
            raise ValueError(f"Detector already registered: {key}")
        self._specs[key] = DetectorSpec(key=key, factory=factory, phase=phase, name=name or key)

    def keys(self, phase: str) -> list[str]:
        return [spec.key for spec in self._specs.values() if spec.phase == phase]

    def spec(self, key: str) -> DetectorSpec:
        return self._specs[key]

    def __contains__(self, key: str) -> bool:
        return key in self._specs

    def __len__(self) -> int:
        return len(self._specs)


def load_factory(import_string: str) -> DetectorFactory:
    """Resolve 'package.module:Factory' to a callable."""
    module_name, _, attr = import_string.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Detector must be 'module:attribute', got {import_string!r}")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load detector {import_string!r}: {e}") from e
    if not callable(factory):
        raise ConfigError(f"Detector {import_string!r} is not callable")
    return factory


def build_registry_from_config(config: dict) -> DetectorRegistry:
    """Registry from the detectors.core / detectors.adaptive import strings."""
    registry = DetectorRegistry()
    detectors = config.get("detectors", {})
    for phase in (CORE_PHASE, ADAPTIVE_PHASE):
        for key, import_string in (detectors.get(phase) or {}).items():
            registry.register(key, load_factory(str(import_string)), phase=phase)
    return registry


# ---------------------------------------------------------------------------
# Mock detectors for dry-run mode
# ---------------------------------------------------------------------------

CORE_DETECTOR_DEFS: dict[str, str] = {
    "resource": "ResourceDetector",
    "system": "SystemDetector",
    "persistence": "PersistenceDetector",
    "process": "ProcessDetector",
    "network": "NetworkDetector",
    "permission": "PermissionDetector",
}

ADAPTIVE_DETECTOR_DEFS: dict[str, str] = {
    "blockchain": "BlockchainDetector",
    "defi": "DeFiSecurityDetector",
}

MOCK_FINDINGS: dict[str, list[dict[str, Any]]] = {
    "resource": [
        {
            "type": "high_cpu_usage",
            "description": "Process sustained 92% CPU for over 10 minutes",
            "risk": "low",
            "pid": 812,
            "command": "/Applications/Editor.app/Contents/MacOS/Editor",
        },
    ],
    "system": [
        {
            "type": "firewall_disabled",
            "description": "Application firewall is turned off",
            "risk": "medium",
        },
    ],
    "persistence": [
        {
            "type": "launch_agent",
            "description": "Unsigned LaunchAgent starts at login",
            "risk": "medium",
            "plist": "/Users/demo/Library/LaunchAgents/com.example.helper.plist",
            "program": "/Users/demo/.local/bin/helper",
        },
    ],
    "process": [
        {
            "type": "suspicious_process",
            "description": "Unsigned binary running from a temporary directory",
            "risk": "high",
            "pid": 4242,
            "command": "/private/tmp/.cache/updater --silent",
        },
        {
            "type": "browser_extension_host",
            "description": "Helper process for a uniswap trading extension",
            "risk": "low",
            "pid": 5120,
            "program": "Chrome Helper",
        },
    ],
    "network": [
        {
            "type": "listening_port",
            "description": "Process listens on all interfaces",
            "risk": "medium",
            "pid": 4242,
            "remote_address": "0.0.0.0:8333",
        },
    ],
    "permission": [
        {
            "type": "full_disk_access",
            "description": "Terminal has Full Disk Access",
            "risk": "low",
            "program": "Terminal",
        },
    ],
    "blockchain": [
        {
            "type": "wallet_extension",
            "description": "Browser wallet extension installed",
            "risk": "medium",
        },
    ],
    "defi": [],
}


class MockDetector(BaseDetector):
    """Returns canned findings. Used by --dry-run and tests."""

    def __init__(self, context: DetectorContext, name: str, findings: list[dict[str, Any]]):
        super().__init__(context)
        self.name = name
        self._findings = findings

    async def collect(self) -> list[Finding]:
        return [
            Finding(id=f"{self.key}#{i}", **finding)
            for i, finding in enumerate(self._findings)
        ]


def _mock_factory(key: str, name: str) -> DetectorFactory:
    def factory(context: DetectorContext) -> Detector:
        return MockDetector(context, name=name, findings=MOCK_FINDINGS.get(key, []))

    return factory


def build_mock_registry() -> DetectorRegistry:
    registry = DetectorRegistry()
    for key, name in CORE_DETECTOR_DEFS.items():
        registry.register(key, _mock_factory(key, name), phase=CORE_PHASE, name=name)
    for key, name in ADAPTIVE_DETECTOR_DEFS.items():
        registry.register(key, _mock_factory(key, name), phase=ADAPTIVE_PHASE, name=name)
    return registry
