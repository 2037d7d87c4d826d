"""Classification of agent CLI failures from their output."""

from __future__ import annotations

import re

RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "usage limit",
    "you've hit your limit",
    "quota",
    "429",
    "too many requests",
)

AUTH_PATTERNS: tuple[str, ...] = (
    "api key",
    "api_key",
    "unauthorized",
    "authentication",
    "not logged in",
    "401",
)

_MODEL_NOT_FOUND = re.compile(
    r"model.{0,200}?(?:not\s+found|does\s+not\s+exist|doesn't\s+exist|not\s+exist|unknown)",
    re.IGNORECASE | re.DOTALL,
)
_DID_YOU_MEAN = re.compile(
    r"did\s+you\s+mean[:\s]+[\"'`]?([\w.\-/:]+)",
    re.IGNORECASE,
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_rate_limit(text: str) -> bool:
    """Return ``True`` when text matches a rate/usage/quota limit."""
    if not text:
        return False
    return _contains_any(text, RATE_LIMIT_PATTERNS)


def looks_like_auth_failure(text: str) -> bool:
    """Return ``True`` when text points at missing or rejected credentials."""
    if not text:
        return False
    return _contains_any(text, AUTH_PATTERNS)


def suggested_model(text: str) -> str | None:
    """Model named by a "model not found ... did you mean X" diagnostic, if any."""
    if not text:
        return None
    nf = _MODEL_NOT_FOUND.search(text)
    if not nf:
        return None
    suggestion = _DID_YOU_MEAN.search(text, nf.start())
    if not suggestion:
        return None
    return suggestion.group(1).rstrip(".:") or None


def failure_hint(text: str) -> str:
    """Short explanation for a failed iteration, or ``""`` when nothing matches."""
    if looks_like_rate_limit(text):
        return "the provider reported a rate or usage limit"
    if looks_like_auth_failure(text):
        return "the provider rejected its credentials (check the API key or login)"
    return ""
