"""Error taxonomy for hostguard.

Only ConfigError is meant to reach the user. Everything else is caught at the
seam where it happens and recorded on the run as a notice.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models.firewall import DetectionReport


class HostguardError(Exception):
    """Base class for all hostguard errors."""


class ConfigError(HostguardError):
    """Invalid configuration value or unreadable config file."""


class DetectorError(HostguardError):
    """A detector failed. Converted to an unknown-risk result, never fatal."""

    def __init__(self, detector_key: str, message: str):
        super().__init__(f"{detector_key}: {message}")
        self.detector_key = detector_key
        self.message = message


class IndicatorExtractionError(HostguardError):
    """Indicator extraction failed. Fails open: treated as no indicators."""


class AggregationError(HostguardError):
    """Summary generation hit malformed input. Surfaced as summary.error."""


class FirewallTrip(HostguardError):
    """The firewall blocked an outbound payload.

    Not a failure: the external-analysis step is skipped for security and the
    match metadata (masked) is kept for review.
    """

    def __init__(self, report: "DetectionReport"):
        names = ", ".join(m.pattern_name for m in report.matches)
        super().__init__(f"Sensitive data detected in outbound payload: {names}")
        self.report = report


class GatewayError(HostguardError):
    """Recoverable failure of the external analysis provider (network/auth)."""

    def __init__(self, message: str, provider: str = "", retryable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable


class NoDetectorsError(HostguardError):
    """The registry has no core detectors to run."""
