"""Analysis run data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .finding import DetectorResult, RiskLevel
from .gateway import ExternalAnalysis


class DetectorSummary(BaseModel):
    findings: int = 0
    risk: RiskLevel = RiskLevel.UNKNOWN
    error: Optional[str] = None


class Summary(BaseModel):
    total_findings: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    per_detector: dict[str, DetectorSummary] = {}
    error: Optional[str] = None


class NoticeKind(str, Enum):
    DETECTOR_ERROR = "detector_error"
    DETECTOR_TIMEOUT = "detector_timeout"
    DETECTOR_CANCELLED = "detector_cancelled"
    INDICATOR_EXTRACTION_FAILED = "indicator_extraction_failed"
    ADAPTIVE_PHASE_SKIPPED = "adaptive_phase_skipped"
    AGGREGATION_ERROR = "aggregation_error"
    EXTERNAL_ANALYSIS_SKIPPED = "external_analysis_skipped"
    EXTERNAL_ANALYSIS_FAILED = "external_analysis_failed"
    FIREWALL_TRIP = "firewall_trip"


class RunNotice(BaseModel):
    """A degraded path taken during the run."""

    model_config = ConfigDict(frozen=True)

    kind: NoticeKind
    source: str = ""
    message: str = ""


class AnalysisPhase(BaseModel):
    name: str
    detectors: list[str] = []
    ran: bool = True
    completed: bool = True
    triggers: list[str] = []
    skipped_reason: Optional[str] = None


class AdaptiveAnalysis(BaseModel):
    blockchain_analysis_enabled: bool = False
    extended_forensics_enabled: bool = False
    indicator_domains: list[str] = []
    indicator_count: int = 0
    adaptive_phase_ran: bool = False
    total_detectors_ran: int = 0


class Correlation(BaseModel):
    rule: str
    description: str
    risk: RiskLevel = RiskLevel.LOW
    finding_ids: list[str] = []


class AnalysisRun(BaseModel):
    """Assembled once by the scheduler; read-only afterwards."""

    model_config = ConfigDict(frozen=True)

    mode: str = "unified"
    analysis_depth: str = "comprehensive"
    timestamp: datetime
    hostname: str = ""
    os_version: str = ""
    results: dict[str, DetectorResult] = {}
    overall_risk: RiskLevel = RiskLevel.UNKNOWN
    summary: Summary = Field(default_factory=Summary)
    phases: list[AnalysisPhase] = []
    adaptive_analysis: AdaptiveAnalysis = Field(default_factory=AdaptiveAnalysis)
    correlations: list[Correlation] = []
    notices: list[RunNotice] = []
    external_analysis: Optional[ExternalAnalysis] = None

    @property
    def adaptive_phases(self) -> list[AnalysisPhase]:
        return [p for p in self.phases if p.name != CORE_PHASE_NAME]

    def with_external_analysis(
        self, analysis: ExternalAnalysis, notices: Optional[list[RunNotice]] = None
    ) -> "AnalysisRun":
        """Return a copy carrying the external analysis outcome."""
        return self.model_copy(
            update={
                "external_analysis": analysis,
                "notices": list(self.notices) + list(notices or []),
            }
        )


CORE_PHASE_NAME = "Core Security Analysis"
ADAPTIVE_PHASE_NAME = "Adaptive Analysis"
