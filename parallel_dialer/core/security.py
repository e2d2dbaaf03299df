"""Signed tokens for webhook attribution and API access.

Tokens have the form ``timestamp:user_id:signature`` where the signature is an
HMAC-SHA256 over ``purpose:timestamp:user_id``. The purpose keeps a webhook
token embedded in a callback URL from being replayed as an API credential.
"""
import hashlib
import hmac
import time
from typing import Optional

from parallel_dialer.core.config import settings
from parallel_dialer.core.errors import InvalidTokenError

WEBHOOK_PURPOSE = "webhook"
API_PURPOSE = "api"


def _sign(secret: str, purpose: str, timestamp: str, user_id: int) -> str:
    message = f"{purpose}:{timestamp}:{user_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def generate_token(
    user_id: int,
    purpose: str = WEBHOOK_PURPOSE,
    secret: Optional[str] = None,
    now: Optional[float] = None,
) -> str:
    """Generate a signed token identifying ``user_id``."""
    secret = secret or settings.webhook_secret
    timestamp = str(int((now if now is not None else time.time()) * 1000))
    return f"{timestamp}:{user_id}:{_sign(secret, purpose, timestamp, user_id)}"


def verify_token(
    token: str,
    purpose: str = WEBHOOK_PURPOSE,
    max_age_seconds: Optional[int] = None,
    secret: Optional[str] = None,
    now: Optional[float] = None,
) -> int:
    """Verify a signed token and return the user id it carries.

    Raises:
        InvalidTokenError: malformed, forged or expired token
    """
    if not token:
        raise InvalidTokenError("Missing token")

    parts = token.split(":")
    if len(parts) != 3:
        raise InvalidTokenError("Invalid token format")

    timestamp, user_id_str, signature = parts
    try:
        user_id = int(user_id_str)
        issued_ms = int(timestamp)
    except ValueError:
        raise InvalidTokenError("Invalid token fields")

    secret = secret or settings.webhook_secret
    expected = _sign(secret, purpose, timestamp, user_id)
    if not hmac.compare_digest(signature, expected):
        raise InvalidTokenError("Invalid token signature")

    if max_age_seconds is None:
        max_age_seconds = (
            settings.webhook_token_max_age_seconds
            if purpose == WEBHOOK_PURPOSE
            else settings.api_token_max_age_seconds
        )
    current_ms = (now if now is not None else time.time()) * 1000
    if current_ms - issued_ms > max_age_seconds * 1000:
        raise InvalidTokenError("Token expired")

    return user_id
