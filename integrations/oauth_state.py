"""
OAuth state helpers (CSRF protection).

The state string encodes merchant_id + platform + expiry and is signed
with ``config.oauth_state_secret`` so the callback can trust it without
server-side storage.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional, Tuple

from config.settings import config
from integrations.errors import InvalidStateError


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()[:32]


def create_state(
    merchant_id: int,
    platform: str,
    *,
    secret: Optional[str] = None,
    ttl: Optional[int] = None,
) -> str:
    """Create an opaque state string encoding merchant_id + platform + expiry."""
    secret = secret or config.oauth_state_secret
    ttl = config.oauth_state_ttl_seconds if ttl is None else ttl
    payload = json.dumps(
        {
            "merchant_id": merchant_id,
            "platform": platform,
            "exp": int(time.time()) + ttl,
            "nonce": secrets.token_hex(8),
        },
        separators=(",", ":"),
    )
    raw = payload.encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw, secret)


def verify_state(state: str, *, secret: Optional[str] = None) -> Tuple[int, str]:
    """Verify a state token, return ``(merchant_id, platform)``.  Raises on failure."""
    secret = secret or config.oauth_state_secret
    try:
        encoded, sep, sig = state.partition(".")
        if not sep:
            raise ValueError("bad format")
        raw = urlsafe_b64decode(encoded.encode())
        if not hmac.compare_digest(sig, _sign(raw, secret)):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("state expired")
        return int(payload["merchant_id"]), str(payload["platform"])
    except Exception as exc:
        raise InvalidStateError(f"Invalid or expired OAuth state: {exc}") from exc
