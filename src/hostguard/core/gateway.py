"""External analysis gateway.

The only path from an AnalysisRun to a provider. The outbound prompt and
summary are built, passed through SensitiveDataFirewall.clear(), and only the
resulting ClearedPayload is handed to the provider. Every skip and failure is
recorded on the run; nothing here raises to the caller.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..errors import FirewallTrip, GatewayError
from ..models.gateway import ExternalAnalysis, ExternalAnalysisStatus, GatewayResult
from ..models.run import AnalysisRun, NoticeKind, RunNotice
from ..providers.base import GatewayProvider
from ..utils.sanitize import sanitize_error
from .firewall import ClearedPayload, SensitiveDataFirewall
from .prompt import SYSTEM_PROMPT, PromptBuilder, build_outbound_summary

logger = logging.getLogger(__name__)


class ExternalAnalysisGateway:
    def __init__(
        self,
        firewall: SensitiveDataFirewall,
        provider: Optional[GatewayProvider] = None,
        enabled: bool = True,
        mode: str = "summary",
        objective: str = "integrated",
        min_findings_to_analyze: int = 1,
        enable_logging: bool = False,
        log_dir: Optional[Path] = None,
    ):
        self.firewall = firewall
        self.provider = provider
        self.enabled = enabled
        self.prompt_builder = PromptBuilder(firewall, mode=mode, objective=objective)
        self.min_findings_to_analyze = min_findings_to_analyze
        self.enable_logging = enable_logging
        self.log_dir = Path(log_dir) if log_dir else Path("./logs/llm-requests")

    @classmethod
    def from_config(
        cls,
        config: dict,
        provider: Optional[GatewayProvider] = None,
        firewall: Optional[SensitiveDataFirewall] = None,
    ) -> "ExternalAnalysisGateway":
        external = config.get("external_analysis", {})
        return cls(
            firewall or SensitiveDataFirewall.from_config(config),
            provider=provider,
            enabled=external.get("enabled", True),
            mode=external.get("mode", "summary"),
            objective=external.get("objective", "integrated"),
            min_findings_to_analyze=external.get("min_findings_to_analyze", 1),
            enable_logging=external.get("enable_logging", False),
            log_dir=external.get("log_dir"),
        )

    async def analyze(self, run: AnalysisRun, prompt_override: Optional[str] = None) -> AnalysisRun:
        """Return a copy of the run with external_analysis and notices attached."""
        provider_name = getattr(self.provider, "name", None)

        if not self.enabled:
            return self._skip(run, ExternalAnalysisStatus.SKIPPED_OPT_OUT, "External analysis disabled")
        if self.provider is None:
            return self._skip(run, ExternalAnalysisStatus.SKIPPED_NO_PROVIDER, "No external analysis provider configured")
        if run.summary.total_findings < self.min_findings_to_analyze:
            return self._skip(
                run,
                ExternalAnalysisStatus.SKIPPED_BELOW_THRESHOLD,
                f"{run.summary.total_findings} findings, below threshold of {self.min_findings_to_analyze}",
                provider=provider_name,
            )

        prompt = prompt_override if prompt_override is not None else self.prompt_builder.build(run)
        summary = build_outbound_summary(run)

        try:
            payload = self.firewall.clear(SYSTEM_PROMPT, prompt, summary)
        except FirewallTrip as trip:
            names = ", ".join(f"{m.pattern_name} ({m.count})" for m in trip.report.matches)
            logger.warning("External analysis blocked by firewall: %s", names)
            analysis = ExternalAnalysis(
                status=ExternalAnalysisStatus.SKIPPED_FOR_SECURITY,
                provider=provider_name,
                firewall_matches=trip.report.matches,
                error=str(trip),
                prompt_length=len(prompt),
            )
            return run.with_external_analysis(analysis, [
                RunNotice(kind=NoticeKind.FIREWALL_TRIP, source="firewall", message=str(trip)),
            ])

        try:
            result = await self.provider.analyze(payload)
        except GatewayError as e:
            return self._fail(run, payload, e, len(prompt))
        except Exception as e:
            wrapped = GatewayError(f"Unexpected {type(e).__name__} from provider: {e}", provider=provider_name or "")
            return self._fail(run, payload, wrapped, len(prompt))

        logger.info("External analysis completed by %s (%s)", result.provider, result.model)
        self._write_audit_log(payload, provider_name, result=result)
        analysis = ExternalAnalysis(
            status=ExternalAnalysisStatus.COMPLETED,
            provider=provider_name,
            result=result,
            prompt_length=len(prompt),
        )
        return run.with_external_analysis(analysis)

    def _fail(self, run: AnalysisRun, payload: ClearedPayload, error: GatewayError, prompt_length: int) -> AnalysisRun:
        provider_name = getattr(self.provider, "name", None) or error.provider or None
        message = sanitize_error(str(error), self.firewall)
        logger.warning("External analysis failed (%s): %s", provider_name, message)
        self._write_audit_log(payload, provider_name, error=message)
        analysis = ExternalAnalysis(
            status=ExternalAnalysisStatus.FAILED,
            provider=provider_name,
            error=message,
            prompt_length=prompt_length,
        )
        return run.with_external_analysis(analysis, [
            RunNotice(kind=NoticeKind.EXTERNAL_ANALYSIS_FAILED, source=provider_name or "", message=message),
        ])

    def _skip(
        self,
        run: AnalysisRun,
        status: ExternalAnalysisStatus,
        reason: str,
        provider: Optional[str] = None,
    ) -> AnalysisRun:
        logger.info("External analysis skipped: %s", reason)
        analysis = ExternalAnalysis(status=status, provider=provider, error=reason)
        return run.with_external_analysis(analysis, [
            RunNotice(kind=NoticeKind.EXTERNAL_ANALYSIS_SKIPPED, source=status.value, message=reason),
        ])

    def _write_audit_log(
        self,
        payload: ClearedPayload,
        provider_name: Optional[str],
        result: Optional[GatewayResult] = None,
        error: Optional[str] = None,
    ) -> Optional[Path]:
        """Record a cleared request and its outcome. Failure to write is logged only."""
        if not self.enable_logging:
            return None

        now = datetime.now(timezone.utc)
        entry = {
            "timestamp": now.isoformat(),
            "provider": provider_name,
            "request": {
                "system_prompt": payload.system_prompt,
                "prompt": payload.prompt,
                "summary": payload.summary,
            },
            "response": result.model_dump() if result else None,
            "error": error,
        }
        path = self.log_dir / f"{now.strftime('%Y%m%dT%H%M%S%f')}-{provider_name or 'unknown'}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(entry, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write audit log %s: %s", path, e)
            return None
        return path
