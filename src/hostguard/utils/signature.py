"""Code-signing / Gatekeeper assessment for local executables.

Best effort: never raises, and returns an unsigned assessment when the tools
are missing or time out.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Optional

from ..core.cache import SignatureCache
from .commander import execute_shell_command

SIGNATURE_TIMEOUT = 15


@dataclass
class SignatureAssessment:
    path: str
    exists: bool = False
    has_absolute_path: bool = False
    spctl_accepted: bool = False
    spctl_output: str = ""
    codesign_output: str = ""
    team_identifier: Optional[str] = None
    authorities: list[str] = field(default_factory=list)

    @property
    def signed_by_apple(self) -> bool:
        return any("apple" in a.lower() for a in self.authorities)

    @property
    def signed_by_developer_id(self) -> bool:
        return any("developer id" in a.lower() for a in self.authorities)


def resolve_executable_path(raw_path: str) -> str:
    """Strip trailing arguments from a '/path/to/bin --flag' command line."""
    path = str(raw_path or "")
    if " " in path and path.startswith("/") and not os.path.exists(path):
        first = path.split(" ")[0]
        if os.path.exists(first):
            return first
    return path


def parse_codesign_output(output: str) -> tuple[list[str], Optional[str]]:
    authorities: list[str] = []
    team_identifier = None
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("Authority="):
            authorities.append(line[len("Authority="):].strip())
        elif line.startswith("TeamIdentifier="):
            team_identifier = line[len("TeamIdentifier="):].strip() or None
    return authorities, team_identifier


async def get_signature_assessment(
    file_path: str,
    cache: Optional[SignatureCache] = None,
    timeout: float = SIGNATURE_TIMEOUT,
) -> SignatureAssessment:
    """Assess a binary with spctl and codesign, memoized per resolved path."""
    raw_path = str(file_path or "")
    path = resolve_executable_path(raw_path)
    has_absolute_path = path.startswith("/")
    exists = has_absolute_path and os.path.exists(path)

    if not exists:
        return SignatureAssessment(path=raw_path, exists=exists, has_absolute_path=has_absolute_path)

    async def _assess() -> SignatureAssessment:
        quoted = shlex.quote(path)
        spctl_output = await execute_shell_command(
            f"spctl -a -vv --type execute {quoted} 2>&1 || true", timeout=timeout, quiet=True
        )
        codesign_output = await execute_shell_command(
            f"codesign -dv --verbose=4 {quoted} 2>&1 || true", timeout=timeout, quiet=True
        )
        authorities, team_identifier = parse_codesign_output(codesign_output)
        return SignatureAssessment(
            path=path,
            exists=True,
            has_absolute_path=True,
            spctl_accepted="accepted" in spctl_output.lower(),
            spctl_output=spctl_output,
            codesign_output=codesign_output,
            team_identifier=team_identifier,
            authorities=authorities,
        )

    if cache is None:
        return await _assess()
    return await cache.get_or_compute(path, _assess)
