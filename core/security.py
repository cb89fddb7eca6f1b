"""
Secret handling helpers: redaction of credentials from messages and
constant-time bearer token comparison.
"""

import hmac
import re
from typing import Any, Dict, Iterable, Optional

SENSITIVE_KEYS = {"password", "auth_token", "api_key", "token", "secret", "authorization", "client_secret"}

REDACTED = "***"

# user:password@host in connection URLs
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.\-]*://)(?P<user>[^:/@\s]+):(?P<pw>[^@\s]+)@")
_BEARER = re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)


def redact(text: str, secrets: Iterable[Optional[str]] = ()) -> str:
    """Remove known secrets, URL credentials and bearer tokens from ``text``."""
    if not text:
        return text
    for secret in secrets:
        if secret and len(secret) >= 3:
            text = text.replace(secret, REDACTED)
    text = _URL_CREDENTIALS.sub(lambda m: f"{m.group('scheme')}{m.group('user')}:{REDACTED}@", text)
    return _BEARER.sub(lambda m: f"{m.group(1)}{REDACTED}", text)


def redact_mapping(data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``data`` with sensitive keys masked (one level of nesting)."""
    masked = {}
    for key, value in data.items():
        if key.lower() in SENSITIVE_KEYS and value:
            masked[key] = REDACTED
        elif isinstance(value, dict):
            masked[key] = {
                k: (REDACTED if k.lower() in SENSITIVE_KEYS and v else v)
                for k, v in value.items()
            }
        else:
            masked[key] = value
    return masked


def verify_bearer_token(authorization: Optional[str], expected: Optional[str]) -> bool:
    """
    Check an ``Authorization`` header against a shared secret.

    When no secret is configured every caller is accepted.
    """
    if not expected:
        return True
    if not authorization:
        return False
    return hmac.compare_digest(authorization, f"Bearer {expected}")
