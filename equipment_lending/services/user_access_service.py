from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from pathlib import Path
from typing import Any


SESSION_TTL_SECONDS = 60 * 60 * 12

LOGGER = logging.getLogger("equipment_lending.auth")

_BASE_DIR = Path(__file__).resolve().parent.parent
_DATA_DIR = Path(os.environ.get("LENDING_DATA_DIR") or (_BASE_DIR / "data"))
_REVOCATIONS_PATH = _DATA_DIR / "revoked_sessions.json"
_LOCK = threading.Lock()


def _signing_key() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SIGNING_KEY = _signing_key()


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _signature(body: str) -> bytes:
    return hmac.new(_SIGNING_KEY, body.encode("ascii"), hashlib.sha256).digest()


def _read_revocations() -> dict[str, float]:
    """Session ids revoked before expiry, mapped to the time they would have expired."""
    if not _REVOCATIONS_PATH.exists():
        return {}
    try:
        stored = json.loads(_REVOCATIONS_PATH.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        LOGGER.warning("Revocation list unreadable path=%s", _REVOCATIONS_PATH)
        return {}
    if not isinstance(stored, dict):
        return {}
    revocations: dict[str, float] = {}
    for session_id, expires_at in stored.items():
        try:
            revocations[str(session_id)] = float(expires_at)
        except (TypeError, ValueError):
            continue
    return revocations


def _write_revocations(revocations: dict[str, float]) -> None:
    _DATA_DIR.mkdir(parents=True, exist_ok=True)
    _REVOCATIONS_PATH.write_text(json.dumps(revocations, indent=2, sort_keys=True), encoding="utf-8")


def _claims(token: str) -> dict[str, Any] | None:
    try:
        body, signature = token.split(".", 1)
        if not hmac.compare_digest(_signature(body), _unb64(signature)):
            return None
        claims = json.loads(_unb64(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(claims, dict) or not claims.get("sid"):
        return None
    return claims


def create_session(user_id: int, role: str, ttl_seconds: int = SESSION_TTL_SECONDS) -> str:
    """Issue a signed borrower token. The role is carried for display; capabilities come from the user row."""
    claims = {
        "sid": secrets.token_hex(8),
        "userID": int(user_id),
        "role": role,
        "expiresAt": time.time() + ttl_seconds,
    }
    body = _b64(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    return f"{body}.{_b64(_signature(body))}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    claims = _claims(token)
    if claims is None:
        return None
    try:
        expires_at = float(claims.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    now = time.time()
    if now >= expires_at:
        return None

    with _LOCK:
        revocations = _read_revocations()
        live = {sid: exp for sid, exp in revocations.items() if exp > now}
        if len(live) != len(revocations):
            _write_revocations(live)
    if claims["sid"] in live:
        return None
    return claims


def remove_session(token: str | None) -> None:
    claims = _claims(token) if token else None
    if claims is None:
        return
    try:
        expires_at = float(claims.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        expires_at = time.time() + SESSION_TTL_SECONDS
    if expires_at <= time.time():
        return
    with _LOCK:
        revocations = _read_revocations()
        revocations[claims["sid"]] = expires_at
        _write_revocations(revocations)
    LOGGER.info("Session revoked user_id=%s", claims.get("userID"))
