"""
Redaction of secret-like substrings.

Runs once, at the capture boundary, before an event is buffered or
persisted. The replacement markers carry no trace of the original text.
"""

import re
from typing import List, Optional, Sequence, Tuple

from .config import DEFAULT_REDACT_PATTERNS


class Redactor:
    """Replaces credentials and PII in free text."""

    # Structural patterns, applied after the configured key patterns
    SENSITIVE_PATTERNS = [
        (r'-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----', '[PRIVATE_KEY]'),
        (r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b', '[EMAIL]'),  # Email
        (r'\b(?:sk|pk|api|key|token|secret|password)[_-][a-zA-Z0-9_-]{15,}\b', '[API_KEY]'),  # API keys with prefix
        (r'\b(?:ghp|gho|github_pat|xox[abpr])_?[A-Za-z0-9_-]{20,}\b', '[API_KEY]'),  # GitHub / Slack tokens
        (r'\bAKIA[0-9A-Z]{16}\b', '[API_KEY]'),  # AWS access key id
        (r'\b[A-Za-z0-9]{32,}\b', '[API_KEY]'),  # Long alphanumeric tokens (32+ chars)
        (r'\b[0-9]{4}[-\s]?[0-9]{4}[-\s]?[0-9]{4}[-\s]?[0-9]{4}\b', '[CARD]'),  # Credit card
    ]

    def __init__(
        self,
        key_patterns: Optional[Sequence[str]] = None,
        replacement: str = "[REDACTED]",
    ):
        """
        Args:
            key_patterns: Regexes naming secret-bearing keys (``password``,
                ``api[_-]?key``). Any ``key = value`` or ``key: value``
                assignment whose key matches has its value replaced.
            replacement: Marker written in place of assigned secret values
        """
        self._replacement = replacement
        patterns = list(key_patterns if key_patterns is not None else DEFAULT_REDACT_PATTERNS)
        self._key_patterns: List[Tuple[re.Pattern, str]] = []
        for pattern in patterns:
            compiled = re.compile(
                r'\b((?:[\w-]*?)(?:' + pattern + r')[\w-]*)(\s*[:=]\s*)(["\']?)[^\s"\',;]+\3',
                re.IGNORECASE,
            )
            self._key_patterns.append((compiled, pattern))
        self._sensitive = [
            (re.compile(pattern, re.IGNORECASE), marker) for pattern, marker in self.SENSITIVE_PATTERNS
        ]

    def redact(self, text: str) -> Tuple[str, Optional[str]]:
        """Redact sensitive data from text.

        Returns:
            (redacted_text, notes) where notes summarizes what was removed,
            or None when nothing matched.
        """
        if not text:
            return text, None

        redacted = text
        redactions = []

        for compiled, name in self._key_patterns:
            redacted, count = compiled.subn(
                lambda m: f"{m.group(1)}{m.group(2)}{self._replacement}", redacted
            )
            if count:
                redactions.append(f"Redacted {count} {name} value(s)")

        for compiled, marker in self._sensitive:
            redacted, count = compiled.subn(marker, redacted)
            if count:
                redactions.append(f"Redacted {count} {marker}")

        notes = "; ".join(redactions) if redactions else None
        return redacted, notes

    def redact_text(self, text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        return self.redact(text)[0]
