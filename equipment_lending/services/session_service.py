from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from dataclasses import dataclass
from typing import Any

from services.errors import Forbidden

SESSION_TTL_SECONDS = 60 * 60 * 12

ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLE_STUDENT = "student"
KNOWN_ROLES = {ROLE_ADMIN, ROLE_STAFF, ROLE_STUDENT}
PRIVILEGED_ROLES = frozenset({ROLE_ADMIN, ROLE_STAFF})


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


@dataclass(frozen=True)
class Caller:
    """Authenticated identity handed over by the identity provider."""

    user_id: str
    role: str

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role in KNOWN_ROLES:
        return role
    return ROLE_STUDENT


def require_privileged(caller: Caller) -> None:
    if not caller.is_privileged:
        raise Forbidden("Staff or admin role required.", role=caller.role)


def require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise Forbidden("Admin role required.", role=caller.role)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def create_session(user_id: str, role: str, ttl_seconds: int = SESSION_TTL_SECONDS) -> str:
    payload = {
        "userID": str(user_id),
        "role": normalize_role(role),
        "expiresAt": time.time() + ttl_seconds,
    }
    body = json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        decoded = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None

    if not isinstance(decoded, dict):
        return None
    try:
        expires_at = float(decoded.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if time.time() >= expires_at or not decoded.get("userID"):
        return None
    return decoded


def caller_from_session(session: dict[str, Any] | None) -> Caller | None:
    if not session:
        return None
    user_id = str(session.get("userID") or "").strip()
    if not user_id:
        return None
    return Caller(user_id=user_id, role=normalize_role(session.get("role")))
