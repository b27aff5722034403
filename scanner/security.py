import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import TypedDict

from fastapi import Header, HTTPException

from scanner.config import AUTH_TOKEN_TTL_SECONDS, DEVICE_SECRET, SIGNING_KEY


class DeviceSession(TypedDict):
    sub: str                  # device id
    teacher_id: str | None    # teacher signed in on the device
    iat: int
    exp: int


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str) -> str:
    digest = hmac.new(
        SIGNING_KEY.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def verify_device_secret(device_secret: str) -> bool:
    expected = DEVICE_SECRET.strip()
    candidate = (device_secret or "").strip()
    if not expected:
        return False
    return hmac.compare_digest(candidate, expected)


def issue_session_token(device_id: str, teacher_id: str | None = None) -> tuple[str, DeviceSession]:
    now = int(time.time())
    claims: DeviceSession = {
        "sub": device_id.strip(),
        "teacher_id": (teacher_id or "").strip() or None,
        "iat": now,
        "exp": now + AUTH_TOKEN_TTL_SECONDS,
    }
    claims_json = json.dumps(claims, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(claims_json.encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64)}", claims


def decode_session_token(token: str) -> DeviceSession | None:
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    if not hmac.compare_digest(signature, _sign(payload_b64)):
        return None

    try:
        claims = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not isinstance(claims, dict):
        return None

    sub = claims.get("sub")
    teacher_id = claims.get("teacher_id")
    iat = claims.get("iat")
    exp = claims.get("exp")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if teacher_id is not None and not isinstance(teacher_id, str):
        return None
    if not isinstance(exp, int) or not isinstance(iat, int):
        return None
    if exp < int(time.time()):
        return None

    return {"sub": sub, "teacher_id": teacher_id, "iat": iat, "exp": exp}


def require_session(authorization: str | None = Header(default=None)) -> DeviceSession:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    session = decode_session_token(token.strip())
    if not session:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return session
