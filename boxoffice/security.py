import hashlib
import secrets
from datetime import datetime, timedelta, timezone

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

SIGNATURE_HEADER = "Webhook-Signature"


def body_digest(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def sign_webhook(resource_id: str, body: bytes, secret: str, ttl_minutes: int = 5) -> str:
    exp = int((datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).timestamp())
    payload = {"id": resource_id, "body_sha256": body_digest(body), "exp": exp}
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_webhook_signature(signature: str | None, body: bytes, secret: str) -> dict:
    """Check a provider notification signature against the raw request body.

    Raises ValueError with a reason code; the caller answers non-2xx so the
    provider retries.
    """
    if not signature:
        raise ValueError("MISSING_SIGNATURE")
    try:
        payload = jwt.decode(signature, secret, algorithms=["HS256"], options={"require_exp": True})
    except ExpiredSignatureError:
        raise ValueError("EXPIRED_SIGNATURE")
    except JWTError:
        raise ValueError("INVALID_SIGNATURE")

    for k in ["id", "body_sha256"]:
        if k not in payload:
            raise ValueError("INVALID_SIGNATURE")

    if not secrets.compare_digest(payload["body_sha256"], body_digest(body)):
        raise ValueError("BODY_MISMATCH")

    return payload


def new_ticket_secret() -> str:
    return secrets.token_urlsafe(32)


def hash_ticket_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def new_public_token() -> str:
    return secrets.token_urlsafe(24)
