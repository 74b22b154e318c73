"""Risk aggregation, summary generation and cross-detector correlation.

Detector-level risk is always recomputed from the detector's own findings so
a self-reported risk that drifted from its findings never leaks into the
verdict.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable, Iterable, Optional

from ..errors import AggregationError
from ..models.finding import DetectorResult, Finding, RiskLevel
from ..models.run import Correlation, DetectorSummary, Summary

logger = logging.getLogger(__name__)

# A correlation rule inspects the full result map and returns zero or more
# correlations, e.g. a process finding whose PID also owns a listening socket.
CorrelationRule = Callable[[Mapping[str, DetectorResult]], Iterable[Correlation]]

CORRELATION_RULES: list[CorrelationRule] = []


def _risk_of(finding: Any) -> RiskLevel:
    if isinstance(finding, Finding):
        return finding.risk
    if isinstance(finding, Mapping):
        return RiskLevel.parse(finding.get("risk"))
    return RiskLevel.parse(getattr(finding, "risk", None))


def _raw_findings_of(result: Any) -> list:
    """Findings list of a result as given, tolerating dicts and malformed values."""
    if isinstance(result, DetectorResult):
        return list(result.findings)
    if isinstance(result, Mapping):
        findings = result.get("findings")
    else:
        findings = getattr(result, "findings", None)
    if isinstance(findings, (list, tuple)):
        return list(findings)
    return []


def _findings_of(result: Any) -> list:
    return [f for f in _raw_findings_of(result) if f is not None]


def _error_of(result: Any) -> Optional[str]:
    if isinstance(result, DetectorResult):
        return result.error if result.failed else None
    if isinstance(result, Mapping):
        return result.get("error")
    return getattr(result, "error", None)


def _reported_risk_of(result: Any) -> RiskLevel:
    if isinstance(result, Mapping):
        return RiskLevel.parse(result.get("overall_risk", result.get("overallRisk")))
    return RiskLevel.parse(getattr(result, "overall_risk", None))


def derive_risk_from_findings(
    findings: Optional[Iterable[Any]], reported_risk: Any = RiskLevel.UNKNOWN
) -> RiskLevel:
    """Risk strictly from findings: high if any high, else medium, else low.

    The reported risk only breaks the tie when there are no findings.
    """
    findings = [f for f in (findings or []) if f is not None]
    if not findings:
        return RiskLevel.parse(reported_risk)
    risks = {_risk_of(f) for f in findings}
    if RiskLevel.HIGH in risks:
        return RiskLevel.HIGH
    if RiskLevel.MEDIUM in risks:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def calculate_overall_risk(results: Any) -> RiskLevel:
    """Max-risk reduction over detector results.

    Errored, missing or empty results count as UNKNOWN, the lowest rank, so
    the verdict is UNKNOWN only if every result is like that.
    """
    if not isinstance(results, Mapping):
        return RiskLevel.UNKNOWN

    risks = []
    for result in results.values():
        if result is None or _error_of(result):
            continue
        risks.append(derive_risk_from_findings(_findings_of(result), _reported_risk_of(result)))
    return RiskLevel.highest(risks)


def generate_summary(results: Any) -> Summary:
    """Totals, per-tier counts and per-detector breakdown. Never raises."""
    if not isinstance(results, Mapping):
        return Summary(error="Invalid results data")

    summary = Summary()
    per_detector: dict[str, DetectorSummary] = {}

    try:
        for key, result in results.items():
            if result is None:
                per_detector[str(key)] = DetectorSummary(error="Result is missing")
                continue

            error = _error_of(result)
            raw_findings = _raw_findings_of(result)
            findings = [f for f in raw_findings if f is not None]
            summary.total_findings += len(raw_findings)

            for finding in findings:
                risk = _risk_of(finding)
                if risk == RiskLevel.HIGH:
                    summary.high_count += 1
                elif risk == RiskLevel.MEDIUM:
                    summary.medium_count += 1
                else:
                    summary.low_count += 1

            if error:
                per_detector[str(key)] = DetectorSummary(findings=len(raw_findings), error=str(error))
                continue

            per_detector[str(key)] = DetectorSummary(
                findings=len(raw_findings),
                risk=derive_risk_from_findings(findings, _reported_risk_of(result)),
            )
    except Exception as e:
        err = AggregationError(f"Error generating summary: {e}")
        logger.warning("%s", err)
        summary.error = str(err)

    summary.per_detector = per_detector
    return summary


def correlate_findings(
    results: Mapping[str, DetectorResult],
    rules: Optional[list[CorrelationRule]] = None,
) -> list[Correlation]:
    """Apply correlation rules. A failing rule is logged and skipped."""
    correlations: list[Correlation] = []
    for rule in CORRELATION_RULES if rules is None else rules:
        name = getattr(rule, "__name__", repr(rule))
        try:
            correlations.extend(rule(results))
        except Exception as e:
            logger.warning("Correlation rule %s failed: %s", name, e)
    return correlations
