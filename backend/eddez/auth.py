from __future__ import annotations

import hashlib
import hmac
import os
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, Request, Response

from . import app_db
from .logging_utils import get_logger
from .schemas import Role, User

log = get_logger(__name__)

AUTH_COOKIE = "eddez_session"

_AUTH_SECRET = os.getenv("EDDEZ_AUTH_SECRET")
if not _AUTH_SECRET:
    _AUTH_SECRET = secrets.token_hex(32)
    log.warning("EDDEZ_AUTH_SECRET is not set; using ephemeral secret (logins reset on restart).")

_SESSION_TTL_S = int(os.getenv("EDDEZ_SESSION_TTL_S", "2592000"))  # 30 days


@dataclass(frozen=True)
class Principal:
    authenticated: bool
    role: Role | None = None
    email: str | None = None
    name: str | None = None

    def to_user(self) -> User:
        return User(email=str(self.email or ""), name=str(self.name or ""), role=self.role or "user")


ANONYMOUS = Principal(authenticated=False)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _token_hash(token: str) -> str:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def _normalize_email(email: str) -> str:
    return str(email or "").strip().lower()


def hash_password(password: str, *, iterations: int = 200_000) -> str:
    pwd = str(password or "")
    if not pwd:
        raise ValueError("Password is empty")
    salt = secrets.token_bytes(16)
    dk = hashlib.pbkdf2_hmac("sha256", pwd.encode("utf-8"), salt, iterations)
    return f"pbkdf2_sha256${iterations}${salt.hex()}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        algo, it_s, salt_hex, hash_hex = str(stored or "").split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        iterations = int(it_s)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except ValueError:
        return False

    dk = hashlib.pbkdf2_hmac("sha256", str(password or "").encode("utf-8"), salt, iterations)
    return hmac.compare_digest(dk, expected)


def ensure_bootstrap_admin() -> None:
    email = _normalize_email(os.getenv("EDDEZ_ADMIN_EMAIL") or "admin@eddez.local")
    password = os.getenv("EDDEZ_ADMIN_PASSWORD")

    existing = app_db.get_user(email)
    if existing:
        if existing.get("role") != "admin":
            app_db.set_user_role(email, "admin")
            log.warning("Promoted %s to admin (EDDEZ_ADMIN_EMAIL)", email)
        return

    generated = False
    if not password:
        password = secrets.token_urlsafe(14)
        generated = True
    try:
        app_db.create_user(email=email, name="Admin", password_hash=hash_password(password), role="admin")
    except sqlite3.Error as e:
        log.exception("Failed to create bootstrap admin user")
        raise RuntimeError(f"Failed to create bootstrap admin user: {e}") from e

    if generated:
        log.warning(
            "BOOTSTRAP admin user created: email=%s password=%s (set EDDEZ_ADMIN_PASSWORD to override)",
            email,
            password,
        )
    else:
        log.info("Bootstrap admin user created: email=%s (password from env)", email)


def resolve_auth(request: Request) -> Principal:
    try:
        app_db.delete_expired_auth_sessions(_utc_now().isoformat())
    except sqlite3.Error:
        log.warning("Failed to clean up expired auth sessions", exc_info=True)

    token = request.cookies.get(AUTH_COOKIE)
    if not token:
        return ANONYMOUS

    th = _token_hash(token)
    sess = app_db.get_auth_session(th)
    if not sess:
        return ANONYMOUS
    try:
        expires_at = datetime.fromisoformat(str(sess.get("expires_at") or ""))
    except ValueError:
        expires_at = _utc_now() - timedelta(seconds=1)
    if expires_at <= _utc_now():
        app_db.delete_auth_session(th)
        return ANONYMOUS

    app_db.touch_auth_session(th)
    return Principal(
        authenticated=True,
        role=str(sess.get("role") or "user"),  # type: ignore[arg-type]
        email=str(sess["email"]),
        name=str(sess.get("name") or ""),
    )


def require_login(principal: Principal) -> None:
    if not principal.authenticated:
        raise HTTPException(status_code=401, detail="Login required")


def require_role(principal: Principal, allowed: set[Role]) -> None:
    require_login(principal)
    if principal.role not in allowed:
        raise HTTPException(status_code=403, detail="Forbidden")


def require_owner_or_admin(principal: Principal, owner_email: str, *, admin_allowed: bool = True) -> str:
    """Return the normalized owner email when the caller may act on it."""
    require_login(principal)
    owner = _normalize_email(owner_email)
    if owner == principal.email:
        return owner
    if admin_allowed and principal.role == "admin":
        return owner
    raise HTTPException(status_code=403, detail="Forbidden")


def _start_session(email: str) -> str:
    token = secrets.token_urlsafe(32)
    expires_at = (_utc_now() + timedelta(seconds=_SESSION_TTL_S)).isoformat()
    try:
        app_db.create_auth_session(token_hash=_token_hash(token), email=email, expires_at=expires_at)
    except sqlite3.Error as e:
        log.exception("Failed to create auth session")
        raise HTTPException(status_code=500, detail=f"Failed to create auth session: {e}") from e
    return token


def create_login_session(*, email: str, password: str) -> tuple[Principal, str]:
    ident = _normalize_email(email)
    rec = app_db.get_user(ident)
    if not rec or not verify_password(password, str(rec.get("password_hash") or "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = _start_session(ident)
    principal = Principal(authenticated=True, role=str(rec["role"]), email=ident, name=str(rec["name"]))  # type: ignore[arg-type]
    return principal, token


def register_user(*, email: str, password: str, name: str) -> tuple[Principal, str]:
    ident = _normalize_email(email)
    if app_db.get_user(ident):
        raise HTTPException(status_code=400, detail="User already exists")
    try:
        app_db.create_user(email=ident, name=name.strip(), password_hash=hash_password(password), role="user")
    except sqlite3.IntegrityError as e:
        raise HTTPException(status_code=400, detail="User already exists") from e

    token = _start_session(ident)
    return Principal(authenticated=True, role="user", email=ident, name=name.strip()), token


def apply_login_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        AUTH_COOKIE,
        token,
        httponly=True,
        samesite="lax",
        secure=False,
        max_age=_SESSION_TTL_S,
    )


def logout_session(request: Request, response: Response) -> None:
    token = request.cookies.get(AUTH_COOKIE)
    if token:
        app_db.delete_auth_session(_token_hash(token))
    response.delete_cookie(AUTH_COOKIE)
