from __future__ import annotations

import re

REDACTED = "[REDACTED]"
ELLIPSIS = "…"

_REDACTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"),
    re.compile(r"\b(?:sk|pk|rk|ghp|gho|xox[abp])[-_][A-Za-z0-9_-]{12,}\b"),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]{12,}"),
    re.compile(r"\b[0-9a-fA-F]{32,}\b"),
    re.compile(r"\b(?=[A-Za-z0-9+/]*\d)(?=[A-Za-z0-9+/]*[A-Z])[A-Za-z0-9+/]{40,}={0,2}"),
)


def truncate_chars(text: str, limit: int) -> str:
    """Cap ``text`` at ``limit`` characters, marking the cut with an ellipsis."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 1)] + ELLIPSIS


def truncate_bytes(text: str, limit: int) -> str:
    """Cap ``text`` at ``limit`` UTF-8 bytes without splitting a character."""
    if limit <= 0:
        return ""
    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text
    return encoded[:limit].decode("utf-8", errors="ignore")


def utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def redact(text: str) -> str:
    """Mask e-mail addresses and secret-looking tokens."""
    for pattern in _REDACTION_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def summarize(text: str, limit: int, *, redact_sensitive: bool = True) -> str:
    collapsed = " ".join(text.split())
    if redact_sensitive:
        collapsed = redact(collapsed)
    return truncate_chars(collapsed, limit)


__all__ = ["REDACTED", "redact", "summarize", "truncate_bytes", "truncate_chars", "utf8_len"]
