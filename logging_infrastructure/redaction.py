"""
Sensitive-data redaction for structured log metadata.

Keys are matched against a denylist and a set of case-insensitive patterns;
string values are matched against common credential shapes. Anything that
matches is replaced with REDACTION_MARKER before a record is serialized.
"""

import re
from typing import Any, Dict, Mapping

REDACTION_MARKER = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "password_confirmation",
        "token",
        "api_key",
        "secret",
        "access_token",
        "refresh_token",
        "authorization",
        "cookie",
        "session",
        "credit_card",
        "card_number",
        "cvv",
        "ssn",
    }
)

SENSITIVE_KEY_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"password",
        r"token",
        r"api[-_]?key",
        r"secret",
        r"authorization",
        r"cookie",
        r"credit[-_]?card",
        r"\bssn\b",
        r"\bcvv\b",
    )
)

# Opaque grouping hashes, never secrets
UNREDACTED_KEYS = frozenset({"fingerprint"})

MIN_SENSITIVE_VALUE_LENGTH = 8

_BEARER_TOKEN = re.compile(r"^Bearer\s+", re.IGNORECASE)
_HEX_DIGEST = re.compile(r"^[a-f0-9]{32,}$")
_BASE64_BLOCK = re.compile(r"^[A-Za-z0-9+/]{20,}={0,2}$")
_SECRET_KEY = re.compile(r"^sk_[A-Za-z0-9_]{24,}$")
_UPPERCASE_KEY = re.compile(r"^[A-Z0-9]{20,}$")

# Loose matcher used for job arguments, security details and cache keys
LOOSE_SENSITIVE_PATTERN = re.compile(r"password|token|secret|key", re.IGNORECASE)


def is_sensitive_key(key: Any) -> bool:
    key_str = str(key).lower()
    if key_str in SENSITIVE_KEYS:
        return True
    return any(pattern.search(key_str) for pattern in SENSITIVE_KEY_PATTERNS)


def looks_like_sensitive_value(value: Any) -> bool:
    """
    Check whether a string has the shape of a credential.

    Publishable keys (``pk_...``) are intentionally not matched.
    """
    if not isinstance(value, str) or len(value) < MIN_SENSITIVE_VALUE_LENGTH:
        return False
    return bool(
        _BEARER_TOKEN.match(value)
        or _HEX_DIGEST.match(value)
        or _BASE64_BLOCK.match(value)
        or _SECRET_KEY.match(value)
        or _UPPERCASE_KEY.match(value)
    )


def redact_value(key: Any, value: Any) -> Any:
    if is_sensitive_key(key):
        return REDACTION_MARKER
    if isinstance(value, Mapping):
        return redact(value)
    if isinstance(value, (list, tuple)):
        return [_redact_item(item) for item in value]
    if str(key) in UNREDACTED_KEYS:
        return value
    if looks_like_sensitive_value(value):
        return REDACTION_MARKER
    return value


def _redact_item(item: Any) -> Any:
    if isinstance(item, Mapping):
        return redact(item)
    if isinstance(item, (list, tuple)):
        return [_redact_item(i) for i in item]
    return item


def redact(data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return a redacted copy of a (possibly nested) metadata mapping.

    The input is never mutated.

    Args:
        data: Metadata mapping; nested mappings and sequences are walked.

    Returns:
        New dictionary with sensitive keys and values replaced by REDACTION_MARKER
    """
    return {key: redact_value(key, value) for key, value in data.items()}


def sanitize_loose(data: Any) -> Any:
    """
    Replace string values that mention password/token/secret/key.

    This is the coarser filter applied to job arguments and security event
    details, where the values rather than the keys carry the risk.
    """
    if isinstance(data, Mapping):
        return {k: sanitize_loose(v) for k, v in data.items()}
    if isinstance(data, str) and LOOSE_SENSITIVE_PATTERN.search(data):
        return REDACTION_MARKER
    return data


def redact_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    """Redact request parameters by key name only."""
    result: Dict[str, Any] = {}
    for key, value in params.items():
        if is_sensitive_key(key):
            result[key] = REDACTION_MARKER
        elif isinstance(value, Mapping):
            result[key] = redact_params(value)
        elif isinstance(value, list):
            result[key] = [redact_params(v) if isinstance(v, Mapping) else v for v in value]
        else:
            result[key] = value
    return result
