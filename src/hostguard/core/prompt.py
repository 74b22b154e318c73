"""Outbound prompt assembly for external analysis.

Every finding field is passed through the firewall's strict sanitization
before it is written into the prompt. The assembled text still goes through
the gate in core.gateway; sanitizing here only makes a trip less likely.
"""

from __future__ import annotations

import json
import re
from typing import Optional

from ..models.finding import DetectorResult, Finding
from ..models.run import AnalysisRun
from .firewall import SensitiveDataFirewall

SYSTEM_PROMPT = (
    "You are a host security expert specializing in system analysis, malware "
    "detection, and security auditing. Provide clear, actionable "
    "recommendations with specific file paths and commands."
)

FINDING_LIMITS = {"summary": 10, "full": 20}

SENSITIVE_FINDING_TYPES = frozenset({
    "wallet_file",
    "wallet_key_environment",
    "sensitive_clipboard_content",
    "private_key_detected",
    "seed_phrase_detected",
    "mnemonic_detected",
})

SENSITIVE_KEYWORDS = (
    "private key", "seed phrase", "mnemonic", "wallet key",
    "ethereum address", "bitcoin address", "crypto key",
)

OBJECTIVES = {
    "security": """Act as a host security responder. From the findings:
1) Identify likely malware/persistence/backdoor chains and any privilege escalation or data exfiltration paths.
2) Prioritize Critical/High issues with rationale and map them to specific artifacts (plist, PID, path, socket).
3) Provide a validation playbook: exact commands to confirm or triage each issue.
4) Give containment and remediation steps per Critical/High issue, with a rollback note.
5) Flag legitimate-but-sensitive tools to avoid false positives.
6) For EACH finding (including medium/low) using the provided FindingID, produce purpose + risk + action in JSON.""",
    "performance": """Act as a host performance specialist. From the findings:
1) Identify processes consuming excessive resources and whether usage is justified.
2) Recommend actions to reduce load (disable services, limit background tasks, clean temp caches).
3) Provide commands or steps to validate improvements.""",
    "integrated": """Act as a host security responder with performance awareness. From the findings:
1) Identify likely malware/persistence/backdoor chains, privilege escalation, and data exfil paths.
2) Prioritize Critical/High issues with rationale mapped to artifacts (plist, PID, path, socket) and highlight resource-heavy offenders.
3) Provide a validation playbook: commands to confirm and triage each issue.
4) Give containment and remediation steps per Critical/High issue, with a rollback note.
5) Flag legitimate-but-sensitive tools to reduce false positives.
6) Offer performance optimizations (CPU/memory) and commands to verify improvements.""",
}

RESPONSE_FORMAT = """## Response Format
Please provide structured markdown with sections:
1) Executive Summary (2-3 sentences)
2) Critical Issues (prioritized, mapped to PIDs/paths/plists/sockets)
3) Issue-wise Remediation Plan (Critical/High only)
4) Validation Playbook
5) Containment & Clean-up
6) Performance notes (if resource-heavy items exist)
7) Triage Checklist

Then append a JSON block fenced with ```json named PER_FINDING mapping each FindingID to
{"purpose": "...", "risk": "...", "action": "..."}.
If you cannot map a finding, omit it. No extra prose after the JSON block.

Keep output concise; avoid repeating redacted data.

IMPORTANT: Include all risks (high/medium/low) in PER_FINDING."""


def is_sensitive_finding(finding: Finding) -> bool:
    if finding.type in SENSITIVE_FINDING_TYPES:
        return True
    description = (finding.description or "").lower()
    return any(keyword in description for keyword in SENSITIVE_KEYWORDS)


class PromptBuilder:
    def __init__(self, firewall: SensitiveDataFirewall, mode: str = "summary", objective: str = "integrated"):
        self.firewall = firewall
        self.mode = mode
        self.objective = objective if objective in OBJECTIVES else "integrated"

    def _text(self, value: Optional[str]) -> str:
        return self.firewall.sanitize_text(value or "", strict=True) or ""

    def _path(self, value: Optional[str]) -> str:
        return self.firewall.sanitize_path(value or "", strict=True) or ""

    def build(self, run: AnalysisRun) -> str:
        summary = run.summary
        system_info = (
            "System Information:\n"
            f"- Hostname: {self._text(run.hostname)}\n"
            f"- OS Version: {self._text(run.os_version)}\n"
            f"- Analysis Mode: {run.mode}\n"
            f"- Analysis Time: {run.timestamp.isoformat()}\n"
            f"- Overall Risk Level: {run.overall_risk.value}\n"
            "\n"
            "Summary:\n"
            f"- Total Findings: {summary.total_findings}\n"
            f"- High Risk: {summary.high_count}\n"
            f"- Medium Risk: {summary.medium_count}\n"
            f"- Low Risk: {summary.low_count}\n"
        )

        parts = [OBJECTIVES[self.objective], "", system_info]

        snapshot = self.format_resource_snapshot(run.results.get("resource"))
        if snapshot:
            parts.append(f"Resource Snapshot:\n{snapshot}\n")

        parts.append("Detailed Findings:")
        parts.append(self.format_findings(run.results))
        parts.append(RESPONSE_FORMAT)
        return "\n".join(parts)

    def format_findings(self, results: dict[str, DetectorResult]) -> str:
        limit = FINDING_LIMITS.get(self.mode, FINDING_LIMITS["summary"])
        lines: list[str] = []

        for key, result in results.items():
            if result.failed:
                lines.append(f"\n## {key} Detector: ERROR\n- Error: {self._text(result.error or result.status.value)}")
                continue

            lines.append(f"\n## {result.detector_name or key}")
            lines.append(f"Risk Level: {result.overall_risk.value}")

            if not result.findings:
                lines.append("No significant findings.\n")
                continue

            lines.append(f"Findings: {len(result.findings)}\n")
            for index, finding in enumerate(result.findings[:limit]):
                lines.extend(self._format_finding(key, index, finding))

            if len(result.findings) > limit:
                lines.append(f"...truncated {len(result.findings) - limit} additional findings for brevity...\n")

        return "\n".join(lines)

    def _format_finding(self, key: str, index: int, finding: Finding) -> list[str]:
        lines = [
            f"### {self._text(finding.type)} [{finding.risk.value}]",
            f"- FindingID: {key}#{index}",
            self._text(finding.description),
        ]
        if finding.pid:
            lines.append(f"- PID: {finding.pid}")
        if finding.command:
            lines.append(f"- Command: {self._text(finding.command)}")
        if finding.path:
            lines.append(f"- Path: {self._path(finding.path)}")
        if finding.program:
            lines.append(f"- Program: {self._text(finding.program)}")
        if finding.plist:
            lines.append(f"- Plist: {self._path(finding.plist)}")
        if finding.risks:
            lines.append(f"- Risks: {self._text(', '.join(finding.risks))}")
        if is_sensitive_finding(finding):
            lines.append("- Privacy Note: Sensitive data redacted for security")
        lines.append("")
        return lines

    def format_resource_snapshot(self, result: Optional[DetectorResult]) -> str:
        if result is None or result.failed or not result.extra:
            return ""

        memory = result.extra.get("memory_stats") or {}

        def _process_line(p: dict, lead: str) -> str:
            command = self._path(self._text(str(p.get("command", ""))))
            cpu = f"CPU: {p.get('cpu', 'N/A')}%"
            mem = f"MEM: {p.get('memory', 'N/A')}MB"
            first, second = (cpu, mem) if lead == "cpu" else (mem, cpu)
            return f"- {command} (PID {p.get('pid', '?')}) {first} {second}"

        top_cpu = "\n".join(_process_line(p, "cpu") for p in (result.extra.get("top_cpu_processes") or [])[:5])
        top_mem = "\n".join(_process_line(p, "mem") for p in (result.extra.get("top_memory_processes") or [])[:5])

        stats = "\n".join(
            f"- {label.title()}: {memory.get(label, 'N/A')}"
            for label in ("free", "active", "inactive", "wired", "compressed")
        )
        return (
            f"Memory Stats (MB):\n{stats}\n\n"
            f"Top CPU Processes:\n{top_cpu or '- None captured'}\n\n"
            f"Top Memory Processes:\n{top_mem or '- None captured'}"
        )


def build_outbound_summary(run: AnalysisRun) -> dict:
    """Structured summary sent next to the prompt: counts only, no finding text."""
    return {
        "overall_risk": run.overall_risk.value,
        "total_findings": run.summary.total_findings,
        "high": run.summary.high_count,
        "medium": run.summary.medium_count,
        "low": run.summary.low_count,
        "detectors": {
            key: {"findings": s.findings, "risk": s.risk.value, "error": bool(s.error)}
            for key, s in run.summary.per_detector.items()
        },
    }


def extract_per_finding(text: Optional[str]) -> dict:
    """Parse the trailing PER_FINDING JSON block. Anything unparseable -> {}."""
    if not text:
        return {}

    fence = re.search(r"```json\s*([\s\S]*?)```", text)
    candidate = fence.group(1) if fence else text
    try:
        parsed = json.loads(candidate)
    except (ValueError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}
