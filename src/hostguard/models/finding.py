"""Finding and detector result data models."""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RiskLevel(str, Enum):
    UNKNOWN = "unknown"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self.value]

    @classmethod
    def parse(cls, value: Any) -> "RiskLevel":
        """Normalize a risk value; anything unrecognised becomes UNKNOWN."""
        if isinstance(value, RiskLevel):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @classmethod
    def highest(cls, levels: Iterable[Any]) -> "RiskLevel":
        best = cls.UNKNOWN
        for level in levels:
            level = cls.parse(level)
            if level.rank > best.rank:
                best = level
        return best

    def __lt__(self, other):
        if isinstance(other, RiskLevel):
            return self.rank < other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, RiskLevel):
            return self.rank <= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, RiskLevel):
            return self.rank > other.rank
        return NotImplemented

    def __ge__(self, other):
        if isinstance(other, RiskLevel):
            return self.rank >= other.rank
        return NotImplemented


_RISK_RANK = {"unknown": 0, "low": 1, "medium": 2, "high": 3}


class DetectorStatus(str, Enum):
    COMPLETE = "complete"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class Finding(BaseModel):
    """One observation reported by a detector. Immutable once created.

    Detector-specific evidence beyond the well-known fields is kept as extra
    attributes.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str = ""
    type: str = "finding"
    description: str = ""
    risk: RiskLevel = RiskLevel.LOW
    pid: Optional[int] = None
    command: Optional[str] = None
    program: Optional[str] = None
    path: Optional[str] = None
    plist: Optional[str] = None
    remote_address: Optional[str] = None
    risks: list[str] = []

    @field_validator("risk", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> RiskLevel:
        return RiskLevel.parse(value)

    def field_text(self, name: str) -> str:
        """Return a field (well-known or extra) as text, '' when absent."""
        value = getattr(self, name, None)
        if value is None and self.model_extra:
            value = self.model_extra.get(name)
        return "" if value is None else str(value)


class DetectorResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    detector_key: str
    detector_name: str = ""
    findings: list[Finding] = []
    overall_risk: RiskLevel = RiskLevel.UNKNOWN
    status: DetectorStatus = DetectorStatus.COMPLETE
    error: Optional[str] = None
    duration_seconds: float = 0
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("overall_risk", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> RiskLevel:
        return RiskLevel.parse(value)

    @property
    def failed(self) -> bool:
        return self.status != DetectorStatus.COMPLETE or bool(self.error)

    @classmethod
    def failure(
        cls,
        detector_key: str,
        error: str,
        detector_name: str = "",
        status: DetectorStatus = DetectorStatus.ERROR,
        duration_seconds: float = 0,
    ) -> "DetectorResult":
        """Build the {error, overall_risk: unknown} result for a failed detector."""
        return cls(
            detector_key=detector_key,
            detector_name=detector_name or detector_key,
            findings=[],
            overall_risk=RiskLevel.UNKNOWN,
            status=status,
            error=error,
            duration_seconds=duration_seconds,
        )
