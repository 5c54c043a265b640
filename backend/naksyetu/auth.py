"""Authentication utilities for the FastAPI application.

Provides:
- Password hashing and validation with policy enforcement
- JWT token creation and validation
- User authentication via credentials or tokens
- Role checking dependencies (single `role` field per user)

Adds structured logging around authentication attempts for observability.
"""

######### Imports #########

import datetime
import logging
import os
import re

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from . import db as db_mod
from .datetime_utils import ensure_aware, now_utc
from .enums import ADMIN_ROLES, UserRole
from .settings import get_settings

######### Password Hashing Configuration #########

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

######### Logging and Security Configuration #########

auth_logger = logging.getLogger('auth')
# auto_error=False keeps the Authorize button in the docs while allowing the
# cookie fallback and optional-auth endpoints.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login", auto_error=False)

settings = get_settings()
JWT_SECRET = settings.jwt_secret
JWT_ALGO = 'HS256'
JWT_ISSUER = os.getenv('JWT_ISSUER')

MAX_FAILED_LOGINS = 5
LOCKOUT_MINUTES = 15

######### Password Management #########


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def validate_password(password: str):
    """Password policy configurable via environment variables.

    - PASSWORD_MIN_LENGTH (int, default 8)
    - PASSWORD_REQUIRE_NUMERIC (true/false, default true)
    """
    try:
        minlen = int(os.getenv('PASSWORD_MIN_LENGTH', '8'))
    except (TypeError, ValueError):
        minlen = 8
    require_numeric = os.getenv('PASSWORD_REQUIRE_NUMERIC', 'true').lower() in ('1', 'true', 'yes')

    if not password or len(password) < minlen:
        raise HTTPException(status_code=400, detail=f'Password must be at least {minlen} characters long')
    if require_numeric and not re.search(r"[0-9]", password):
        raise HTTPException(status_code=400, detail='Password must contain a number')


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except (UnknownHashError, ValueError):
        return False


def create_access_token(data: dict, expires_minutes: int | None = None):
    to_encode = data.copy()
    now_dt = now_utc()
    exp_minutes = expires_minutes if isinstance(expires_minutes, int) and expires_minutes > 0 else settings.access_token_minutes
    to_encode.update({"exp": now_dt + datetime.timedelta(minutes=exp_minutes), "iat": now_dt})
    if JWT_ISSUER:
        to_encode["iss"] = JWT_ISSUER
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


async def get_user_by_email(email: str):
    if not email:
        return None
    return await db_mod.db.users.find_one({"email": email.lower()})


async def authenticate_user(email: str, password: str):
    user = await get_user_by_email(email)
    if not user:
        auth_logger.info('auth.login.failed reason=not_found email=%s', email)
        return None
    lock_until = user.get('lockout_until')
    if lock_until and now_utc() < ensure_aware(lock_until):
        auth_logger.warning('auth.login.locked email=%s until=%s', email, lock_until)
        return None

    if not verify_password(password, user.get('password_hash') or ''):
        res = await db_mod.db.users.find_one_and_update(
            {"_id": user['_id']},
            {"$inc": {"failed_login_attempts": 1}},
            return_document=True,
        )
        attempts = (res or {}).get('failed_login_attempts') or 0
        if attempts >= MAX_FAILED_LOGINS:
            lock_until = now_utc() + datetime.timedelta(minutes=LOCKOUT_MINUTES)
            await db_mod.db.users.update_one({"_id": user['_id']}, {"$set": {"lockout_until": lock_until}})
            auth_logger.warning('auth.login.lockout email=%s attempts=%s', email, attempts)
        else:
            auth_logger.info('auth.login.failed reason=bad_credentials email=%s attempts=%s', email, attempts)
        return None

    updates = {"failed_login_attempts": 0, "last_login_at": now_utc()}
    if pwd_context.needs_update(user['password_hash']):
        updates['password_hash'] = hash_password(password)
    await db_mod.db.users.update_one({"_id": user['_id']}, {"$set": updates, "$unset": {"lockout_until": ""}})
    auth_logger.info('auth.login.success email=%s', email)
    return user


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _user_from_token(token: str):
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO], options={"require": ["exp", "sub"]})
    except JWTError as exc:
        raise _credentials_exception() from exc
    if JWT_ISSUER and payload.get("iss") != JWT_ISSUER:
        raise _credentials_exception()
    user = await get_user_by_email(payload.get("sub"))
    if user is None:
        raise _credentials_exception()
    return user


def _token_from_request(request: Request, token: str | None) -> str | None:
    return token or request.cookies.get('__Host-access_token') or request.cookies.get('access_token')


async def get_current_user(request: Request, token: str = Depends(oauth2_scheme)):
    """Dependency that returns the current authenticated user.

    Token retrieval order:
    1. Authorization: Bearer <token> header
    2. HttpOnly cookie named 'access_token'
    """
    raw = _token_from_request(request, token)
    if not raw:
        raise _credentials_exception()
    return await _user_from_token(raw)


async def get_optional_user(request: Request, token: str = Depends(oauth2_scheme)):
    """Like get_current_user but returns None for anonymous requests (guest checkout)."""
    raw = _token_from_request(request, token)
    if not raw:
        return None
    try:
        return await _user_from_token(raw)
    except HTTPException:
        return None


def user_role(user: dict | None) -> str:
    return (user or {}).get('role') or UserRole.attendee.value


def is_admin(user: dict | None) -> bool:
    return user_role(user) in ADMIN_ROLES


def display_name(user: dict | None, fallback: str = 'Unknown User') -> str:
    user = user or {}
    return user.get('full_name') or user.get('name') or user.get('email') or fallback


def require_roles(*roles: str):
    """Factory returning a FastAPI dependency that ensures the current user has one of `roles`.

    Usage: Depends(require_roles('organizer', 'admin')).
    """
    allowed = {r.value if isinstance(r, UserRole) else r for r in roles}

    def _dependency(current_user=Depends(get_current_user)):
        if user_role(current_user) not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Forbidden')
        return current_user

    return _dependency


def require_admin(current_user=Depends(get_current_user)):
    """Dependency that allows admin and super-admin users."""
    if not is_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Admin required')
    return current_user


def require_super_admin(current_user=Depends(get_current_user)):
    if user_role(current_user) != UserRole.super_admin.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Super-admin required')
    return current_user
