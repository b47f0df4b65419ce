"""Redacted previews of worker logs for activity metadata."""

from __future__ import annotations

import re
from dataclasses import dataclass

PREVIEW_MAX_LINES = 12
PREVIEW_MAX_CHARS = 600
_LINE_MAX_CHARS = 240


@dataclass(frozen=True, slots=True)
class _Redaction:
    pattern: re.Pattern[str]
    replacement: str


_REDACTIONS: tuple[_Redaction, ...] = (
    _Redaction(
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._~+/\-]{8,}=*"),
        r"\1 [redacted]",
    ),
    _Redaction(
        re.compile(r"(?i)\b(?:sk|oxk)[_-][a-z0-9_\-]{8,}"),
        "[redacted-key]",
    ),
    _Redaction(
        re.compile(
            r"(?i)\b([a-z0-9_]*(?:api_key|token|secret|password))"
            r"(\s*[:=]\s*)['\"]?[^'\"\s&]+['\"]?",
        ),
        r"\1\2[redacted]",
    ),
    _Redaction(
        re.compile(r"(?i)\b(https?://)[^/\s:@]+:[^/\s@]+@"),
        r"\1[redacted]@",
    ),
    _Redaction(
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=)[^&\s]+"),
        r"\1[redacted]",
    ),
    _Redaction(
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def redact_secrets(text: str) -> str:
    for redaction in _REDACTIONS:
        text = redaction.pattern.sub(redaction.replacement, text)
    return text


def log_preview(
    log_tail: str,
    *,
    max_lines: int = PREVIEW_MAX_LINES,
    max_chars: int = PREVIEW_MAX_CHARS,
) -> str:
    """Last non-blank lines of a worker log, redacted and clamped.

    Long lines are cut individually before the whole preview is trimmed from
    the front, so the final lines (usually the error) survive.
    """

    lines = [line.rstrip() for line in log_tail.splitlines() if line.strip()]
    if not lines:
        return ""
    kept = [
        redact_secrets(line)[:_LINE_MAX_CHARS]
        for line in lines[-max_lines:]
    ]
    preview = "\n".join(kept)
    if len(preview) <= max_chars:
        return preview
    return preview[-max_chars:]
