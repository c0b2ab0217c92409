from typing import Optional
from jose import JWTError, jwt
import hmac
from ..config import settings
from ..schemas.job import Actor, StaffRole


def decode_token(token: str) -> Optional[dict]:
    """Decode and verify a JWT token"""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None


def verify_access_token(token: str) -> Optional[dict]:
    """Verify an access token and return payload"""
    payload = decode_token(token)
    if payload and payload.get("type") == "access":
        return payload
    return None


def actor_from_token(token: str) -> Optional[Actor]:
    """
    Build the acting staff member from an access token.
    Expects claims: sub (user id), name, role (TECH | QC | MANAGER).
    """
    payload = verify_access_token(token)
    if not payload or not payload.get("sub"):
        return None
    try:
        role = StaffRole(str(payload.get("role", "")).upper())
    except ValueError:
        return None
    return Actor(
        user_id=str(payload["sub"]),
        name=payload.get("name") or str(payload["sub"]),
        role=role
    )


def verify_shared_secret(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison of a shared secret (cron token)"""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
