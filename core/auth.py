"""
auth.py — Operator accounts and bearer tokens.

Passwords are stored as bcrypt hashes. Tokens are HS256 JWTs signed with
the configured secret key, carrying ``sub`` (email), ``name`` and ``exp``.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt

from core.config import Settings, get_settings
from core.database import create_user, get_user_by_email
from core.errors import AuthenticationError, ValidationError

logger = logging.getLogger("racetiming.auth")

TOKEN_ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_BYTES = 72  # bcrypt only reads this many bytes


# ─── Passwords ───────────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, stored: str) -> bool:
    if not stored:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
    except ValueError:
        return False


# ─── Tokens ──────────────────────────────────────────────────────────

def issue_token(claims: dict, settings: Optional[Settings] = None) -> str:
    """Sign ``claims`` plus an expiry ``token_ttl_hours`` from now."""
    settings = settings or get_settings()
    expires = datetime.now(timezone.utc) + timedelta(hours=settings.token_ttl_hours)
    return jwt.encode(dict(claims, exp=expires), settings.secret_key,
                      algorithm=TOKEN_ALGORITHM)


def verify_token(token: str, settings: Optional[Settings] = None) -> dict:
    """Return the token's claims or raise AuthenticationError."""
    settings = settings or get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[TOKEN_ALGORITHM],
                          options={"require": ["exp", "sub"]})
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.PyJWTError:
        raise AuthenticationError("Invalid token")


# ─── Accounts ────────────────────────────────────────────────────────

def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def register_user(conn: sqlite3.Connection, name: str, email: str,
                  password: str) -> int:
    email = _normalize_email(email)
    name = (name or "").strip()
    if not name or "@" not in email:
        raise ValidationError("Name and a valid email are required")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    user_id = create_user(conn, name, email, hash_password(password))
    logger.info("User registered: %s", email)
    return user_id


def authenticate(conn: sqlite3.Connection, email: str, password: str) -> tuple[str, dict]:
    """Check credentials. Returns (token, user)."""
    user = get_user_by_email(conn, _normalize_email(email))
    if user is None or not verify_password(password or "", user["password_hash"]):
        logger.info("Failed login for %s", email)
        raise AuthenticationError("Invalid email or password")
    profile = {"id": user["id"], "name": user["name"], "email": user["email"]}
    token = issue_token({"sub": user["email"], "name": user["name"]})
    return token, profile


def ensure_bootstrap_admin(conn: sqlite3.Connection,
                           settings: Optional[Settings] = None) -> bool:
    """Create the configured admin account if it doesn't exist yet."""
    settings = settings or get_settings()
    if not settings.admin_email or not settings.admin_password:
        return False
    if get_user_by_email(conn, _normalize_email(settings.admin_email)):
        return False
    register_user(conn, "Administrator", settings.admin_email, settings.admin_password)
    logger.info("Bootstrap admin created: %s", settings.admin_email)
    return True
