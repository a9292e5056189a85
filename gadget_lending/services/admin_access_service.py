from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from gadget_lending.models.lending_models import Admin


SUPER_ADMIN = "Super Admin"
STAFF_ADMIN = "Staff Admin"
ADMIN_ROLES = (SUPER_ADMIN, STAFF_ADMIN)
MIN_PASSWORD_LENGTH = 8

SESSION_TTL_SECONDS = int(os.environ.get("SESSION_TTL_SECONDS") or str(60 * 60 * 12))
AUTH_ATTEMPT_WINDOW_SECONDS = int(os.environ.get("AUTH_ATTEMPT_WINDOW_SECONDS") or "300")
AUTH_MAX_ATTEMPTS_PER_ACCOUNT = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_ACCOUNT") or "8")
AUTH_LOCKOUT_SECONDS = int(os.environ.get("AUTH_LOCKOUT_SECONDS") or "900")

_LOCK = threading.Lock()
_REVOKED_TOKENS: dict[str, float] = {}
_ATTEMPTS_BY_ACCOUNT: dict[str, list[float]] = {}
_LOCKOUT_UNTIL_BY_ACCOUNT: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


SESSION_SECRET = _require_session_secret()


def password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def set_password(admin: Admin, password: str) -> None:
    trimmed = str(password or "").strip()
    if len(trimmed) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    salt = secrets.token_hex(16)
    admin.password_salt = salt
    admin.password_hash = password_hash(trimmed, salt)


def verify_password(admin: Admin, password: str) -> bool:
    if not admin.password_hash or not admin.password_salt:
        return False
    candidate = password_hash(str(password or "").strip(), admin.password_salt)
    return hmac.compare_digest(candidate, admin.password_hash)


def find_admin_by_email(db: Session, email: str) -> Admin | None:
    return db.execute(
        select(Admin).where(Admin.email == (email or "").strip().lower())
    ).scalars().first()


def authenticate(db: Session, email: str, password: str) -> Admin | None:
    admin = find_admin_by_email(db, email)
    if admin is None or not admin.is_active:
        return None
    if not verify_password(admin, password):
        return None
    return admin


def create_admin(db: Session, email: str, name: str, password: str, role: str = STAFF_ADMIN) -> Admin:
    if role not in ADMIN_ROLES:
        raise ValueError(f"role must be one of: {', '.join(ADMIN_ROLES)}")
    if find_admin_by_email(db, email):
        raise ValueError("An admin with that email already exists.")
    admin = Admin(email=email.strip().lower(), name=name.strip(), role=role, is_active=True)
    set_password(admin, password)
    db.add(admin)
    return admin


def serialize_admin(admin: Admin) -> dict[str, Any]:
    return {
        "adminID": admin.admin_id,
        "email": admin.email,
        "name": admin.name,
        "role": admin.role,
        "isActive": bool(admin.is_active),
        "createdAt": admin.created_at,
    }


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def create_session(admin: Admin) -> str:
    payload = {
        "adminID": int(admin.admin_id),
        "nonce": secrets.token_hex(8),
        "expiresAt": time.time() + SESSION_TTL_SECONDS,
    }
    body = json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def decode_session(token: str | None) -> dict[str, Any] | None:
    """Verify signature, expiry and revocation; returns the token payload."""
    if not token:
        return None
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        payload = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(payload, dict):
        return None

    now = time.time()
    try:
        expires_at = float(payload.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if now >= expires_at:
        return None
    with _LOCK:
        for revoked_token, revoked_exp in list(_REVOKED_TOKENS.items()):
            if now >= revoked_exp:
                _REVOKED_TOKENS.pop(revoked_token, None)
        if token in _REVOKED_TOKENS:
            return None
    return payload


def resolve_session_admin(db: Session, token: str | None) -> Admin | None:
    payload = decode_session(token)
    if not payload:
        return None
    try:
        admin_id = int(payload.get("adminID") or 0)
    except (TypeError, ValueError):
        return None
    admin = db.get(Admin, admin_id) if admin_id > 0 else None
    if admin is None or not admin.is_active:
        return None
    return admin


def remove_session(token: str | None) -> None:
    payload = decode_session(token)
    if not payload:
        return
    with _LOCK:
        _REVOKED_TOKENS[token] = float(payload.get("expiresAt") or time.time() + SESSION_TTL_SECONDS)


def _prune_attempts(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def check_login_guard(account_key: str) -> int | None:
    """Seconds to wait before another attempt, or None when allowed."""
    now_ts = time.time()
    with _LOCK:
        lockout_until = _LOCKOUT_UNTIL_BY_ACCOUNT.get(account_key)
        if lockout_until and lockout_until > now_ts:
            return max(1, int(lockout_until - now_ts))
        if lockout_until:
            _LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)
        _ATTEMPTS_BY_ACCOUNT[account_key] = _prune_attempts(_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
    return None


def record_login_failure(account_key: str) -> None:
    now_ts = time.time()
    with _LOCK:
        attempts = _prune_attempts(_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        attempts.append(now_ts)
        _ATTEMPTS_BY_ACCOUNT[account_key] = attempts
        if len(attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)


def record_login_success(account_key: str) -> None:
    with _LOCK:
        _ATTEMPTS_BY_ACCOUNT.pop(account_key, None)
        _LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)
