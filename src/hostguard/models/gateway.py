"""External analysis gateway data models."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .firewall import SensitivePatternMatch


class CompletionResult(BaseModel):
    success: bool
    content: Optional[str] = None
    tokens_used: Optional[dict] = None
    error: Optional[str] = None


class GatewayResult(BaseModel):
    provider: str
    model: str
    analysis_text: str = ""
    per_finding: dict[str, dict] = {}
    usage: dict = {}


class ExternalAnalysisStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED_FOR_SECURITY = "skipped_for_security"
    SKIPPED_OPT_OUT = "skipped_opt_out"
    SKIPPED_NO_PROVIDER = "skipped_no_provider"
    SKIPPED_BELOW_THRESHOLD = "skipped_below_threshold"
    FAILED = "failed"


class ExternalAnalysis(BaseModel):
    status: ExternalAnalysisStatus
    provider: Optional[str] = None
    result: Optional[GatewayResult] = None
    firewall_matches: list[SensitivePatternMatch] = []
    error: Optional[str] = None
    prompt_length: int = 0

    @property
    def skipped(self) -> bool:
        return self.status.value.startswith("skipped")
