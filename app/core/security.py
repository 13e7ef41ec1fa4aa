from __future__ import annotations

import hashlib
import hmac
import time

from itsdangerous import BadData, URLSafeTimedSerializer

from app.core.settings import settings


serializer = URLSafeTimedSerializer(settings.secret_key, salt="billing-session")


def sign_session(user_id: str) -> str:
    return serializer.dumps({"user_id": user_id})


def unsign_session(token: str) -> str | None:
    try:
        data = serializer.loads(token, max_age=settings.session_max_age_seconds)
    except BadData:
        return None
    if not isinstance(data, dict):
        return None
    return data.get("user_id")


def stripe_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a `Stripe-Signature` header for `payload`.

    Same scheme Stripe uses when delivering webhooks; handy for local replay.
    """
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"
