# src/threat_monitor/patterns.py
"""
Static signature library for injection and automation detection.

Signatures are compiled once at import time and never mutated, so matching
is a pure function of its input.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class Signature:
    """A named regular expression belonging to one attack category."""
    category: str
    name: str
    regex: "re.Pattern"

    @property
    def pattern(self) -> str:
        return self.regex.pattern

    def search(self, content: str) -> bool:
        return self.regex.search(content) is not None


def _sig(category: str, name: str, pattern: str) -> Signature:
    return Signature(category, name, re.compile(pattern, re.IGNORECASE))


# Evaluated in order; the first hit wins.
INJECTION_SIGNATURES: Tuple[Signature, ...] = (
    # SQL injection
    _sig("sql", "sql_keyword", r"(union|select|insert|update|delete|drop|create|alter)\s+"),
    _sig("sql", "sql_tautology", r"(\b|'|\")or(\b|'|\")\s*\d+\s*=\s*\d+"),
    _sig("sql", "sql_piggyback", r"';\s*(drop|delete|update|insert)"),

    # XSS
    _sig("xss", "script_tag", r"<script[^>]*>.*?</script>"),
    _sig("xss", "javascript_uri", r"javascript:"),
    _sig("xss", "event_handler", r"on\w+\s*="),

    # Command injection
    _sig("command", "chained_command", r";.*?\b(cat|ls|pwd|whoami|id|uname)\b"),
    _sig("command", "piped_command", r"\|\s*(cat|ls|pwd|whoami)"),

    # Path traversal
    _sig("path_traversal", "dot_dot_slash", r"\.\./.*\.\."),
    _sig("path_traversal", "encoded_dot_dot_slash", r"%2e%2e%2f"),

    # LDAP injection
    _sig("ldap", "ldap_or_filter", r"\(\|\("),
    _sig("ldap", "ldap_and_filter", r"\(&\("),
)

USER_AGENT_SIGNATURES: Tuple[Signature, ...] = (
    _sig("automation", "http_library", r"curl|wget|python|go-http|java"),
    _sig("automation", "crawler", r"bot|crawler|spider|scraper"),
    _sig("automation", "attack_tool", r"scanner|exploit|attack"),
)


def match_injection(content: str) -> Optional[Signature]:
    """
    Return the first injection signature found in ``content``.

    Args:
        content: Serialized request input (query, body and params)

    Returns:
        The matching Signature, or None for benign input
    """
    for signature in INJECTION_SIGNATURES:
        if signature.search(content):
            return signature
    return None


def match_user_agent(user_agent: str) -> Optional[Signature]:
    """Return the first automation/scanner signature the user agent matches."""
    for signature in USER_AGENT_SIGNATURES:
        if signature.search(user_agent or ""):
            return signature
    return None


def is_suspicious_user_agent(user_agent: str) -> bool:
    return match_user_agent(user_agent) is not None
