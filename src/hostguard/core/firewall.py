"""Sensitive data firewall.

A declarative pattern bank with heuristic false-positive filters, used two
ways that never share state:

- sanitize_text() / sanitize_path(): one-way, lossy redaction for report and
  outbound text.
- detect(): non-mutating check, and clear(), the gate every outbound payload
  must pass before a provider will accept it.

The classifier thresholds are empirically tuned; keep the values as they are.
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..errors import FirewallTrip
from ..models.firewall import DetectionReport, SensitivePatternMatch

SEED_STOPWORDS = frozenset({
    "the", "and", "that", "with", "from", "this", "have", "will", "your",
    "macos", "analysis", "system", "security", "process", "service", "launch",
    "agent", "apple", "icloud", "profile",
})

SEED_MIN_WORDS = 12
SEED_MAX_WORDS = 24
SEED_MAX_STOPWORD_HITS = 2
SEED_MAX_DUPLICATES = 2

API_KEY_MIN_LENGTH = 24
API_KEY_MAX_LENGTH = 120
API_KEY_MIN_UNIQUE_RATIO = 0.2

SAMPLE_LIMIT = 2
SAMPLE_TRUNCATE = 20


def is_likely_seed_phrase(candidate: str) -> bool:
    """Word run shaped like a BIP-39 mnemonic rather than ordinary prose."""
    if not candidate:
        return False
    words = candidate.strip().lower().split()
    if len(words) < SEED_MIN_WORDS or len(words) > SEED_MAX_WORDS:
        return False
    if any(not re.fullmatch(r"[a-z]+", word) for word in words):
        return False

    stopword_hits = sum(1 for word in words if word in SEED_STOPWORDS)
    unique_words = len(set(words))

    return stopword_hits <= SEED_MAX_STOPWORD_HITS and unique_words >= len(words) - SEED_MAX_DUPLICATES


def is_likely_api_key(candidate: str) -> bool:
    """Token with enough length, mixed classes and entropy to be a secret."""
    if not candidate:
        return False
    if len(candidate) < API_KEY_MIN_LENGTH or len(candidate) > API_KEY_MAX_LENGTH:
        return False
    if "<key>" in candidate or "</key>" in candidate:
        return False

    has_upper = re.search(r"[A-Z]", candidate) is not None
    has_lower = re.search(r"[a-z]", candidate) is not None
    has_digit = re.search(r"\d", candidate) is not None
    unique_ratio = len(set(candidate)) / len(candidate)

    if not (has_digit and (has_upper or has_lower)):
        return False
    if unique_ratio < API_KEY_MIN_UNIQUE_RATIO:
        return False

    # plist / XML value tokens
    if re.fullmatch(r"string|data", candidate, re.IGNORECASE):
        return False

    if re.fullmatch(r"(.)\1{10,}", candidate):
        return False

    return True


@dataclass(frozen=True)
class SensitivePattern:
    """One entry of the pattern bank.

    gate: participates in detect() and clear(). Report-only patterns redact
    but never block.
    strict_only: applied only when sanitizing text that leaves the process.
    """

    key: str
    name: str
    regex: re.Pattern
    replacement: str
    post_filter: Optional[Callable[[str], bool]] = None
    gate: bool = True
    strict_only: bool = False

    def accepts(self, value: str) -> bool:
        return self.post_filter is None or self.post_filter(value)


GATE_PATTERNS: tuple[SensitivePattern, ...] = (
    SensitivePattern(
        key="private_key",
        name="Potential private key",
        regex=re.compile(r"[a-fA-F0-9]{64,}"),
        replacement="***REDACTED_PRIVATE_KEY***",
    ),
    SensitivePattern(
        key="eth_address",
        name="Ethereum address",
        regex=re.compile(r"0x[a-fA-F0-9]{40}"),
        replacement="0x***REDACTED_ETH_ADDRESS***",
    ),
    SensitivePattern(
        key="btc_address",
        name="Bitcoin address",
        regex=re.compile(r"\b[13][a-km-zA-HJ-NP-Z1-9]{25,34}\b"),
        replacement="***REDACTED_BTC_ADDRESS***",
    ),
    SensitivePattern(
        key="wallet_import",
        name="Wallet import format",
        regex=re.compile(r"[56][a-km-zA-HJ-NP-Z1-9]{50,}"),
        replacement="***WALLET-REDACTED***",
    ),
    SensitivePattern(
        key="api_key",
        name="API key or token",
        regex=re.compile(r"[a-zA-Z0-9+/]{32,}={0,2}"),
        replacement="***REDACTED_API_KEY***",
        post_filter=is_likely_api_key,
    ),
    SensitivePattern(
        key="secret_assignment",
        name="Password or secret assignment",
        regex=re.compile(
            r"(password|passwd|secret|token|mnemonic|seed|private|key)\s*[=:]\s*[a-zA-Z0-9+/_-]{8,}",
            re.IGNORECASE,
        ),
        replacement=r"\1=***REDACTED***",
    ),
    SensitivePattern(
        key="seed_phrase",
        name="Potential seed phrase",
        regex=re.compile(r"\b[a-z]+(?:\s+[a-z]+){11,}\b", re.IGNORECASE),
        replacement="***SEED-PHRASE-REDACTED***",
        post_filter=is_likely_seed_phrase,
    ),
)

EMAIL_PATTERN = SensitivePattern(
    key="email",
    name="Email address",
    regex=re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    replacement="***REDACTED_EMAIL***",
    gate=False,
)

REPORT_PATTERNS: tuple[SensitivePattern, ...] = (
    SensitivePattern(
        key="hex_string",
        name="Hex string",
        regex=re.compile(r"\b[a-fA-F0-9]{16,31}\b"),
        replacement="***REDACTED_HEX***",
        gate=False,
    ),
    SensitivePattern(
        key="url",
        name="URL",
        regex=re.compile(r"https?://[^\s]+", re.IGNORECASE),
        replacement="***URL-REDACTED***",
        gate=False,
        strict_only=True,
    ),
    SensitivePattern(
        key="ipv4",
        name="IPv4 address",
        regex=re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),
        replacement="***IP-REDACTED***",
        gate=False,
        strict_only=True,
    ),
)

_HOME_SEGMENTS = (
    (re.compile(r"/Users/[^/]+"), "/Users/***REDACTED***"),
    (re.compile(r"/home/[^/]+"), "/home/***REDACTED***"),
    (re.compile(r"C:\\Users\\[^\\]+"), r"C:\\Users\\***REDACTED***"),
    (re.compile(r"/private/var/folders/[^/]+"), "/private/var/folders/***REDACTED***"),
)
_WALLET_PATH = re.compile(r"(wallet|keystore|private|seed|mnemonic)[^/]*/[^/]*", re.IGNORECASE)
_LOCAL_HOST = re.compile(r"\b[a-zA-Z0-9_-]+\.local\b", re.IGNORECASE)


def _mask_sample(value: str) -> str:
    truncated = value[:SAMPLE_TRUNCATE] + "***" if len(value) > SAMPLE_TRUNCATE else value
    return re.sub(r"[a-fA-F0-9]", "*", truncated)


@dataclass(frozen=True)
class ClearedPayload:
    """Outbound payload that passed the firewall gate in this process.

    Only SensitiveDataFirewall.clear() builds these; providers refuse
    anything else.
    """

    system_prompt: str
    prompt: str
    summary: dict
    report: DetectionReport
    _token: object = field(repr=False, compare=False, default=None)

    @property
    def is_cleared(self) -> bool:
        return self._token is _CLEARANCE_TOKEN and not self.report.has_sensitive_data


_CLEARANCE_TOKEN = object()


def assemble_outbound_text(system_prompt: str, prompt: str, summary: dict) -> str:
    """The exact text the gate inspects: everything that would leave."""
    return "\n".join([system_prompt or "", prompt or "", json.dumps(summary or {}, sort_keys=True, default=str)])


class SensitiveDataFirewall:
    """Pattern bank plus false-positive filters."""

    def __init__(
        self,
        redact_user_paths: bool = True,
        redact_usernames: bool = True,
        redact_ips: bool = False,
        patterns: Optional[tuple[SensitivePattern, ...]] = None,
    ):
        self.redact_user_paths = redact_user_paths
        self.redact_ips = redact_ips
        gate = tuple(patterns) if patterns is not None else GATE_PATTERNS
        extra = REPORT_PATTERNS + ((EMAIL_PATTERN,) if redact_usernames else ())
        self.patterns: tuple[SensitivePattern, ...] = gate + extra

    @classmethod
    def from_config(cls, config: dict) -> "SensitiveDataFirewall":
        privacy = config.get("privacy", {})
        return cls(
            redact_user_paths=privacy.get("redact_user_paths", True),
            redact_usernames=privacy.get("redact_usernames", True),
            redact_ips=privacy.get("redact_ips", False),
        )

    @property
    def gate_patterns(self) -> list[SensitivePattern]:
        return [p for p in self.patterns if p.gate]

    def _active(self, strict: bool) -> list[SensitivePattern]:
        active = []
        for pattern in self.patterns:
            if pattern.key == "ipv4":
                if strict or self.redact_ips:
                    active.append(pattern)
            elif strict or not pattern.strict_only:
                active.append(pattern)
        return active

    # ------------------------------------------------------------------
    # Redaction
    # ------------------------------------------------------------------

    def sanitize_text(self, text: Optional[str], strict: bool = False) -> Optional[str]:
        """Redact every pattern match that passes its post-filter."""
        if not text or not isinstance(text, str):
            return text

        sanitized = text
        for pattern in self._active(strict):
            def _replace(m: re.Match, pattern: SensitivePattern = pattern) -> str:
                if pattern.accepts(m.group(0)):
                    return m.expand(pattern.replacement)
                return m.group(0)

            sanitized = pattern.regex.sub(_replace, sanitized)
        return sanitized

    def sanitize_path(self, path: Optional[str], strict: bool = False) -> Optional[str]:
        """Redact user-home segments, then sanitize each component.

        File extensions are preserved. Strict mode also drops wallet/keystore
        path segments and *.local host names.
        """
        if not path or not isinstance(path, str):
            return path

        sanitized = path
        if self.redact_user_paths:
            for regex, replacement in _HOME_SEGMENTS:
                sanitized = regex.sub(replacement, sanitized)

        if strict:
            sanitized = _WALLET_PATH.sub("***WALLET-PATH-REDACTED***", sanitized)
            sanitized = _LOCAL_HOST.sub("***HOST-REDACTED***", sanitized)

        components = re.split(r"[/\\]", sanitized)
        return "/".join(self._sanitize_component(c, strict) for c in components)

    def _sanitize_component(self, component: str, strict: bool) -> str:
        if not component or component.startswith("***"):
            return component
        last_dot = component.rfind(".")
        if last_dot > 0:
            return self.sanitize_text(component[:last_dot], strict) + component[last_dot:]
        return self.sanitize_text(component, strict)

    # ------------------------------------------------------------------
    # Detection and gate
    # ------------------------------------------------------------------

    def detect(self, text: Optional[str]) -> DetectionReport:
        """Check text against the gate patterns without modifying it.

        Patterns run in bank order and claim the spans they match, so a
        later pattern never re-reports the same characters.
        """
        if not text or not isinstance(text, str):
            return DetectionReport(has_sensitive_data=False, matches=[], text_length=len(text or ""))

        claimed: list[tuple[int, int]] = []
        matches: list[SensitivePatternMatch] = []

        for pattern in self.gate_patterns:
            hits: list[str] = []
            for m in pattern.regex.finditer(text):
                start, end = m.span()
                if any(start < c_end and c_start < end for c_start, c_end in claimed):
                    continue
                value = m.group(0)
                if not pattern.accepts(value):
                    continue
                claimed.append((start, end))
                hits.append(value)

            if hits:
                matches.append(SensitivePatternMatch(
                    pattern_key=pattern.key,
                    pattern_name=pattern.name,
                    count=len(hits),
                    masked_samples=[_mask_sample(v) for v in hits[:SAMPLE_LIMIT]],
                ))

        return DetectionReport(
            has_sensitive_data=bool(matches),
            matches=matches,
            text_length=len(text),
        )

    def clear(self, system_prompt: str, prompt: str, summary: Optional[dict] = None) -> ClearedPayload:
        """Gate an outbound payload. Raises FirewallTrip on any match."""
        # snapshot: later edits to the caller's dict must not reach the provider
        summary = copy.deepcopy(summary or {})
        report = self.detect(assemble_outbound_text(system_prompt, prompt, summary))
        if report.has_sensitive_data:
            raise FirewallTrip(report)
        return ClearedPayload(
            system_prompt=system_prompt,
            prompt=prompt,
            summary=summary,
            report=report,
            _token=_CLEARANCE_TOKEN,
        )
