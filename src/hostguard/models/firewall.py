"""Sensitive data firewall data models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class SensitivePatternMatch(BaseModel):
    """Match metadata for one pattern. Never holds raw matched text."""

    model_config = ConfigDict(frozen=True)

    pattern_key: str
    pattern_name: str
    count: int
    masked_samples: list[str] = []


class DetectionReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_sensitive_data: bool = False
    matches: list[SensitivePatternMatch] = []
    text_length: int = 0

    def match_for(self, pattern_name: str) -> SensitivePatternMatch | None:
        for match in self.matches:
            if match.pattern_name == pattern_name or match.pattern_key == pattern_name:
                return match
        return None
