"""Indicator extraction: decides whether the adaptive phase should run.

Two independent triggers:
- domain: a registered rule finds dictionary terms in a core detector's
  findings (case-insensitive substring match on the named fields).
- depth: the core phase produced at least one high or several medium
  findings.

New domains are added as IndicatorRule entries; extract() never changes.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional

from ..errors import IndicatorExtractionError
from ..models.finding import DetectorResult, Finding
from ..models.indicator import Indicator
from .correlator import generate_summary

logger = logging.getLogger(__name__)

BLOCKCHAIN_KEYWORDS = (
    "bitcoin", "ethereum", "crypto", "blockchain", "wallet", "mining",
    "metamask", "phantom", "coinbase", "binance", "uniswap", "defi",
)

BLOCKCHAIN_DOMAINS = (
    "etherscan", "uniswap", "opensea", "pancakeswap", "curve",
    "compound", "aave", "sushiswap", "1inch", "metamask",
)

DEFAULT_MIN_HIGH_FINDINGS = 1
DEFAULT_MIN_MEDIUM_FINDINGS = 5


@dataclass(frozen=True)
class IndicatorRule:
    detector_key: str
    fields: tuple[str, ...]
    terms: tuple[str, ...]
    domain: str

    def match(self, finding: Finding) -> list[str]:
        text = " ".join(finding.field_text(name) for name in self.fields).lower()
        if not text.strip():
            return []
        return [term for term in self.terms if term in text]


DEFAULT_RULES: tuple[IndicatorRule, ...] = (
    IndicatorRule(
        detector_key="process",
        fields=("command", "program", "description"),
        terms=BLOCKCHAIN_KEYWORDS,
        domain="blockchain",
    ),
    IndicatorRule(
        detector_key="network",
        fields=("remote_address",),
        terms=BLOCKCHAIN_DOMAINS,
        domain="blockchain",
    ),
)


@dataclass
class AdaptiveDecision:
    indicators: list[Indicator]
    depth_triggers: list[str]
    extraction_error: Optional[str] = None

    @property
    def domain_triggered(self) -> bool:
        return bool(self.indicators)

    @property
    def depth_triggered(self) -> bool:
        return bool(self.depth_triggers)

    @property
    def should_run(self) -> bool:
        return self.domain_triggered or self.depth_triggered

    @property
    def domains(self) -> list[str]:
        return sorted({i.domain for i in self.indicators})

    @property
    def triggers(self) -> list[str]:
        return [f"domain:{d}" for d in self.domains] + [f"depth:{t}" for t in self.depth_triggers]


class IndicatorExtractor:
    def __init__(
        self,
        rules: Optional[tuple[IndicatorRule, ...]] = None,
        min_high_findings: int = DEFAULT_MIN_HIGH_FINDINGS,
        min_medium_findings: int = DEFAULT_MIN_MEDIUM_FINDINGS,
    ):
        self.rules = tuple(DEFAULT_RULES if rules is None else rules)
        self.min_high_findings = min_high_findings
        self.min_medium_findings = min_medium_findings

    @classmethod
    def from_config(cls, config: dict) -> "IndicatorExtractor":
        analysis = config.get("analysis", {})
        thresholds = analysis.get("extended_forensics", {})
        rules = DEFAULT_RULES if analysis.get("blockchain_detection", True) else ()
        return cls(
            rules=rules,
            min_high_findings=thresholds.get("min_high_findings", DEFAULT_MIN_HIGH_FINDINGS),
            min_medium_findings=thresholds.get("min_medium_findings", DEFAULT_MIN_MEDIUM_FINDINGS),
        )

    def register(self, rule: IndicatorRule) -> None:
        self.rules = self.rules + (rule,)

    def extract(self, results: Mapping[str, DetectorResult]) -> list[Indicator]:
        """One Indicator per matching finding per rule."""
        indicators: list[Indicator] = []
        for rule in self.rules:
            result = results.get(rule.detector_key)
            if result is None or result.failed:
                continue
            for finding in result.findings:
                terms = rule.match(finding)
                if terms:
                    indicators.append(Indicator(
                        domain=rule.domain,
                        source_detector=rule.detector_key,
                        source_finding=finding,
                        matched_terms=terms,
                    ))
        return indicators

    def depth_triggers(self, results: Mapping[str, DetectorResult]) -> list[str]:
        summary = generate_summary(results)
        triggers = []
        if summary.high_count >= self.min_high_findings:
            triggers.append("high")
        if summary.medium_count >= self.min_medium_findings:
            triggers.append("medium")
        return triggers

    def decide(self, results: Mapping[str, DetectorResult]) -> AdaptiveDecision:
        """Evaluate both triggers. Extraction failure fails open to no indicators."""
        extraction_error = None
        try:
            indicators = self.extract(results)
        except Exception as e:
            err = IndicatorExtractionError(f"Indicator extraction failed: {e}")
            logger.warning("%s", err)
            indicators = []
            extraction_error = str(err)

        return AdaptiveDecision(
            indicators=indicators,
            depth_triggers=self.depth_triggers(results),
            extraction_error=extraction_error,
        )
