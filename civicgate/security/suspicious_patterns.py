"""
Heuristic detection of obviously hostile request URLs.

This is a coarse pre-filter, not a WAF. It has known false positives (a
search for "update status" matches sql_injection, any ``..`` in a query
value matches path_traversal) and false negatives (encoded payloads,
keywords followed by a comment instead of whitespace, request bodies are
never inspected).

Patterns are evaluated in order against ``path + query`` and the first
match wins.
"""

import re
from dataclasses import dataclass

MAX_REPORTED_URL_LENGTH = 200


@dataclass(frozen=True)
class SuspiciousPattern:
    name: str
    regex: re.Pattern

    def matches(self, value: str) -> bool:
        return self.regex.search(value) is not None


@dataclass(frozen=True)
class SuspiciousMatch:
    pattern: str
    full_url: str


DEFAULT_PATTERNS: tuple[SuspiciousPattern, ...] = (
    SuspiciousPattern("path_traversal", re.compile(r"\.\.|/.\.")),
    SuspiciousPattern(
        "sql_injection",
        re.compile(r"(?:union|select|insert|update|delete|drop|create|alter)\s", re.IGNORECASE),
    ),
    SuspiciousPattern(
        "xss",
        re.compile(r"<script|javascript:|data:text/html|<iframe", re.IGNORECASE),
    ),
    SuspiciousPattern(
        "shell_exec",
        re.compile(r"\b(?:eval|exec|system|passthru|shell_exec)\b", re.IGNORECASE),
    ),
)


def build_full_url(path: str, query: str) -> str:
    """Join path and query, adding the ``?`` separator when a bare query is given."""
    if query and not query.startswith("?"):
        query = f"?{query}"
    return f"{path}{query}"


class SuspiciousRequestDetector:
    def __init__(self, patterns: tuple[SuspiciousPattern, ...] | list[SuspiciousPattern] | None = None):
        self.patterns = tuple(DEFAULT_PATTERNS if patterns is None else patterns)

    def scan(self, path: str, query: str = "", user_agent: str = "") -> SuspiciousMatch | None:
        """
        Return the first matching pattern for the request URL, or None.

        The user agent is accepted so callers can report it; it is not
        matched against the patterns.
        """
        full_url = build_full_url(path, query)
        for pattern in self.patterns:
            if pattern.matches(full_url):
                return SuspiciousMatch(
                    pattern=pattern.name,
                    full_url=full_url[:MAX_REPORTED_URL_LENGTH],
                )
        return None
