"""Error message sanitization for provider failures and audit logs."""

from __future__ import annotations

import os
import re
from typing import Optional

from ..core.firewall import SensitiveDataFirewall

CREDENTIAL_PATTERNS = (
    (re.compile(r"sk-ant-[a-zA-Z0-9_-]+"), "[REDACTED_KEY]"),
    (re.compile(r"sk-[a-zA-Z0-9_-]{20,}"), "[REDACTED_KEY]"),
    (re.compile(r"Bearer\s+\S+"), "Bearer [REDACTED]"),
    (re.compile(r"(x-api-key|api-key|Authorization):\s*\S+", re.IGNORECASE), r"\1: [REDACTED]"),
)

_firewall = SensitiveDataFirewall()


def sanitize_error(message: Optional[str], firewall: Optional[SensitiveDataFirewall] = None) -> Optional[str]:
    """Strip credentials, the home directory and firewall-covered secrets."""
    if not message:
        return message

    sanitized = message
    for regex, replacement in CREDENTIAL_PATTERNS:
        sanitized = regex.sub(replacement, sanitized)

    home = os.environ.get("HOME") or os.environ.get("USERPROFILE") or ""
    if home and home != "/":
        sanitized = sanitized.replace(home, "[USER_HOME]")

    return (firewall or _firewall).sanitize_text(sanitized, strict=True)
