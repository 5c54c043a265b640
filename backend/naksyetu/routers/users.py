"""Users router

Self-service registration, login (JSON or form), profile and the influencer
username lookup used when creating campaigns.
"""
import json
import logging
import os
from contextlib import suppress

from fastapi import APIRouter, Depends, Form, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError

from .. import db as db_mod
from ..auth import (authenticate_user, create_access_token, get_current_user, hash_password,
                    validate_password)
from ..datetime_utils import now_utc
from ..enums import UserRole
from ..schemas import ProfileUpdate, TokenOut, UserCreate
from ..services import promocodes
from ..utils import generate_token_pair, normalize_phone, serialize

logger = logging.getLogger("auth")

router = APIRouter()

PRIVATE_FIELDS = ('password_hash', 'failed_login_attempts', 'lockout_until')


def public_user(user: dict) -> dict:
    out = serialize({k: v for k, v in user.items() if k not in PRIVATE_FIELDS})
    out['role'] = user.get('role') or UserRole.attendee.value
    return out


async def _username_taken(name: str, exclude_id=None) -> bool:
    query = {'name_lower': name.lower()}
    if exclude_id is not None:
        query['_id'] = {'$ne': exclude_id}
    return await db_mod.db.users.find_one(query) is not None


@router.post(
    '/register',
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Bad Request - e.g. password validation failed"},
        409: {"description": "Conflict - email or username already registered"},
    },
)
async def register(u: UserCreate):
    email_lower = str(u.email).lower()
    if await db_mod.db.users.find_one({"email": email_lower}):
        raise HTTPException(status_code=409, detail="Email already registered")
    if await _username_taken(u.name):
        raise HTTPException(status_code=409, detail="This username is already taken.")
    if u.password != u.password_confirm:
        raise HTTPException(status_code=400, detail="Passwords do not match")
    validate_password(u.password)

    now = now_utc()
    # role is never taken from the client; privileged roles come from invitations
    user_doc = {
        'email': email_lower,
        'name': u.name,
        'name_lower': u.name.lower(),
        'full_name': (u.full_name or '').strip() or None,
        'phone': normalize_phone(u.phone),
        'role': UserRole.attendee.value,
        'password_hash': hash_password(u.password),
        'failed_login_attempts': 0,
        'loyalty_points': 0,
        'assigned_events': [],
        'created_at': now,
        'updated_at': now,
    }
    try:
        res = await db_mod.db.users.insert_one(user_doc)
    except DuplicateKeyError as exc:
        raise HTTPException(status_code=409, detail="Email or username already registered") from exc
    logger.info('auth.register.success user_id=%s email=%s', res.inserted_id, email_lower)
    return {"message": "User created successfully", "id": str(res.inserted_id)}


async def _resolve_login_credentials(request: Request, username_field: str | None,
                                     password_field: str | None) -> tuple[str, str]:
    username_value = username_field.strip() if isinstance(username_field, str) and username_field.strip() else None
    password_value = password_field if isinstance(password_field, str) and password_field else None

    if not (username_value and password_value):
        with suppress(json.JSONDecodeError, UnicodeDecodeError):
            data = await request.json()
            if isinstance(data, dict):
                candidate = data.get('username') or data.get('email')
                if isinstance(candidate, str) and candidate.strip() and not username_value:
                    username_value = candidate.strip()
                if isinstance(data.get('password'), str) and data['password'] and not password_value:
                    password_value = data['password']

    if not (username_value and password_value):
        raise HTTPException(status_code=422, detail='username and password required')
    return username_value.lower(), password_value


async def _login_email(username: str) -> str:
    """Accept either the e-mail address or the public username."""
    if '@' in username:
        return username
    user = await db_mod.db.users.find_one({'name_lower': username})
    return (user or {}).get('email') or username


@router.post('/login', response_model=TokenOut,
             responses={401: {"description": "Unauthorized - invalid credentials"}, 422: {"description": "Validation error"}})
async def login(
    request: Request,
    username: str | None = Form(None),
    password: str | None = Form(None),
):
    """Login accepting either JSON body {username,password} or form data."""
    username, password = await _resolve_login_credentials(request, username, password)
    user = await authenticate_user(await _login_email(username), password)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    token = create_access_token({"sub": user['email']})
    csrf_token = generate_token_pair(16)[0]

    secure_flag = os.getenv('ALLOW_INSECURE_COOKIES', 'false').lower() not in ('1', 'true')
    use_host_prefix = secure_flag and os.getenv('USE_HOST_PREFIX_COOKIES', 'true').lower() in ('1', 'true', 'yes')
    prefix = '__Host-' if use_host_prefix else ''
    resp = JSONResponse(content={"access_token": token, "csrf_token": csrf_token, "token_type": "bearer"})
    resp.set_cookie(f'{prefix}access_token', token, httponly=True, secure=secure_flag,
                    samesite='lax', max_age=60 * 60 * 24, path='/')
    resp.set_cookie(f'{prefix}csrf_token', csrf_token, httponly=False, secure=secure_flag,
                    samesite='lax', max_age=60 * 60 * 24, path='/')
    return resp


@router.post('/logout')
async def logout(response: Response, current_user=Depends(get_current_user)):
    for name in ('access_token', 'csrf_token', '__Host-access_token', '__Host-csrf_token'):
        response.delete_cookie(name, path='/')
    logger.info('auth.logout user_id=%s', current_user['_id'])
    return {"status": "logged_out"}


@router.get('/profile')
async def get_profile(current_user=Depends(get_current_user)):
    return public_user(current_user)


@router.put('/profile')
async def update_profile(payload: ProfileUpdate, current_user=Depends(get_current_user)):
    changes = payload.model_dump(exclude_unset=True)
    update: dict = {}
    if 'name' in changes:
        name = (changes.pop('name') or '').strip()
        if not name:
            raise HTTPException(status_code=400, detail="Username cannot be empty.")
        if name.lower() != current_user.get('name_lower') and await _username_taken(name, current_user['_id']):
            raise HTTPException(status_code=409, detail="This username is already taken.")
        update.update({'name': name, 'name_lower': name.lower()})
    if 'phone' in changes:
        update['phone'] = normalize_phone(changes.pop('phone'))
    for field, value in changes.items():
        update[field] = value.strip() if isinstance(value, str) else value
    if not update:
        return public_user(current_user)
    update['updated_at'] = now_utc()
    try:
        await db_mod.db.users.update_one({'_id': current_user['_id']}, {'$set': update})
    except DuplicateKeyError as exc:
        raise HTTPException(status_code=409, detail="This username is already taken.") from exc
    logger.info('auth.profile.updated user_id=%s fields=%s', current_user['_id'], sorted(update))
    return public_user({**current_user, **update})


@router.get('/users/search')
async def search_influencer(username: str = '', current_user=Depends(get_current_user)):
    """Exact, case-insensitive username lookup for campaign partners."""
    return await promocodes.find_influencer_by_username(username)


@router.get('/users/me/coupons')
async def my_coupons(current_user=Depends(get_current_user)):
    return serialize(await promocodes.user_coupons(str(current_user['_id'])))
