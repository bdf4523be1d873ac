"""Pattern-based PII scrubbing for text sent to third-party AI providers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RedactionPattern:
    name: str
    pattern: re.Pattern[str]
    replacement: str


@dataclass(frozen=True)
class Redaction:
    """Scrubbed text plus a short, truncated description of each match."""

    text: str
    found: list[str] = field(default_factory=list)

    @property
    def kinds(self) -> list[str]:
        return sorted({entry.split(":", 1)[0] for entry in self.found})


_EMAIL = RedactionPattern(
    "email",
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "[EMAIL]",
)

_TOKENS = (
    RedactionPattern("bearer_token", re.compile(r"\b[Bb]earer\s+[A-Za-z0-9\-_.]+"), "Bearer [TOKEN]"),
    RedactionPattern(
        "api_key",
        re.compile(
            r"\b(?:api[_-]?key|apikey|token)\s*[:=]\s*['\"]?[A-Za-z0-9\-_]{20,}['\"]?",
            re.IGNORECASE,
        ),
        "api_key=[TOKEN]",
    ),
    RedactionPattern("aws_access_key", re.compile(r"\bAKIA[0-9A-Z]{16}\b"), "[AWS_ACCESS_KEY]"),
    RedactionPattern("github_token", re.compile(r"\bghp_[A-Za-z0-9]{36}\b"), "[GITHUB_TOKEN]"),
    RedactionPattern(
        "jwt_token",
        re.compile(r"\beyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+"),
        "[JWT_TOKEN]",
    ),
)

_IPV4 = RedactionPattern(
    "ipv4",
    re.compile(
        r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
        r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
    ),
    "[IP_ADDRESS]",
)

_PHONE_US = RedactionPattern(
    "phone_us",
    re.compile(r"(?<!\w)(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}\b"),
    "[PHONE_NUMBER]",
)

_SSN = RedactionPattern("ssn", re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"), "[SSN]")


class PIIRedactor:
    """Replace sensitive substrings before text leaves the process.

    Emails and credential-looking tokens are redacted by default; IP
    addresses, US phone numbers, and SSNs are opt-in. Extra patterns can be
    supplied as ``(name, regex)`` or ``(name, regex, replacement)`` tuples;
    the replacement defaults to ``[NAME]``.
    """

    def __init__(
        self,
        redact_emails: bool = True,
        redact_tokens: bool = True,
        redact_ips: bool = False,
        redact_phone_numbers: bool = False,
        redact_ssns: bool = False,
        custom_patterns: list[tuple[str, ...]] | None = None,
    ) -> None:
        patterns: list[RedactionPattern] = []
        if redact_emails:
            patterns.append(_EMAIL)
        if redact_tokens:
            patterns.extend(_TOKENS)
        if redact_ips:
            patterns.append(_IPV4)
        if redact_phone_numbers:
            patterns.append(_PHONE_US)
        if redact_ssns:
            patterns.append(_SSN)
        for custom in custom_patterns or []:
            name, regex, *rest = custom
            replacement = rest[0] if rest else f"[{name.upper()}]"
            patterns.append(RedactionPattern(name, re.compile(regex), replacement))
        self._patterns = tuple(patterns)

    @property
    def enabled(self) -> bool:
        return bool(self._patterns)

    def redact(self, text: str) -> Redaction:
        """Apply every configured pattern to *text* in order."""
        redacted = text
        found: list[str] = []
        for entry in self._patterns:
            matches = [m.group(0) for m in entry.pattern.finditer(redacted)]
            if not matches:
                continue
            found.extend(f"{entry.name}: {m[:10]}..." for m in matches)
            redacted = entry.pattern.sub(entry.replacement, redacted)
        return Redaction(text=redacted, found=found)
