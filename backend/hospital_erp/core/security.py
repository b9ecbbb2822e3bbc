from datetime import datetime, timedelta, timezone
import hashlib
import hmac
from typing import Any, Dict, Optional

from jose import jwt


def create_access_token(
    *,
    subject: str,
    secret: str,
    alg: str,
    expires_minutes: int,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if extra:
        to_encode.update(extra)
    return jwt.encode(to_encode, secret, algorithm=alg)


def sign_webhook_payload(payload: bytes, *, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    header: str | None,
    *,
    secret: str,
    tolerance_seconds: int = 300,
    now: int | None = None,
) -> bool:
    """Check a ``t=<unix>,v1=<hex>`` signature header against the raw request body."""
    if not header:
        return False
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return False
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        return False
    current = now if now is not None else int(datetime.now(timezone.utc).timestamp())
    if abs(current - timestamp) > tolerance_seconds:
        return False
    expected = sign_webhook_payload(payload, secret=secret, timestamp=timestamp)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)
