"""Indicator data model."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from .finding import Finding


class Indicator(BaseModel):
    """Evidence in core-phase findings suggesting an adaptive phase should run."""

    model_config = ConfigDict(frozen=True)

    domain: str
    source_detector: str
    source_finding: Finding
    matched_terms: list[str]
