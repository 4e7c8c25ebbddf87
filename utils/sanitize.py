"""
Input sanitization for user turns and host-supplied cargo.
"""
from __future__ import annotations

import html
from typing import Any


class InputSanitizer:
    def __init__(self, max_length: int = 10000):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        """Drop control characters, truncate, strip and HTML-escape a turn."""
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length] + "... [truncated]"
        return html.escape(content.strip(), quote=True)

    def sanitize_cargo(self, cargo: dict[str, Any]) -> dict[str, Any]:
        """Keep JSON-friendly values; anything else is stored as its string form."""
        safe = {}
        for k, v in cargo.items():
            if v is None or isinstance(v, (str, int, float, bool)):
                safe[str(k)] = v
            elif isinstance(v, dict):
                safe[str(k)] = self.sanitize_cargo(v)
            elif isinstance(v, (list, tuple)):
                safe[str(k)] = [
                    self.sanitize_cargo(i) if isinstance(i, dict) else i
                    for i in v
                ]
            else:
                safe[str(k)] = str(v)
        return safe
