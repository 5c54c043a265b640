"""
Utility functions for the NaksYetu backend.

This module provides helper functions for:
- Sending emails with SMTP configuration, retries and a development fallback.
- Generating and hashing opaque tokens (invitations).
- ObjectId parsing and JSON-safe serialization of stored documents.
- Kenyan phone number normalization (profiles, M-Pesa).
"""
import asyncio  # for to_thread and sleep
import datetime
import email.utils
import hashlib
import hmac
import logging
import secrets
import smtplib
import uuid
from email.message import EmailMessage
from typing import Mapping, Sequence

import phonenumbers
from bson.errors import InvalidId
from bson.objectid import ObjectId
from fastapi import HTTPException

from .datetime_utils import to_iso
from .settings import get_settings

logger = logging.getLogger("email")

DEFAULT_PHONE_REGION = 'KE'


async def send_email(
    *,
    to: Sequence[str] | str,
    subject: str,
    body: str,
    html_body: str | None = None,
    from_address: str | None = None,
    headers: Mapping[str, str] | None = None,
    category: str = "generic",
) -> bool:
    """Low-level reusable email sender with retry & console fallback.

    Returns True if an SMTP delivery attempt reported success. In development
    (no SMTP configured) the message is logged instead and True is returned so
    callers can treat e-mail as a best-effort notification.

    Raises:
        ValueError: If no recipients are provided.
    """
    recipients = [to] if isinstance(to, str) else list(to)
    if not recipients:
        raise ValueError("No recipients provided")

    cfg = get_settings()
    from_addr = from_address or cfg.smtp_from

    def _build_message() -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = ", ".join(recipients)
        msg.set_content(body)
        if html_body:
            msg.add_alternative(html_body, subtype='html')
        msg["Date"] = email.utils.formatdate(localtime=True)
        from_domain = from_addr.split('@', 1)[1] if '@' in from_addr else 'naksyetu.local'
        msg["Message-ID"] = f"<{uuid.uuid4().hex}@{from_domain}>"
        msg["X-NY-Category"] = category
        for k, v in (headers or {}).items():
            if k.lower() not in {"from", "to", "subject"}:
                msg[k] = v
        return msg

    def _send_once():
        msg = _build_message()
        try:
            if cfg.smtp_port == 465:
                server = smtplib.SMTP_SSL(cfg.smtp_host, cfg.smtp_port, timeout=cfg.smtp_timeout_seconds)
            else:
                server = smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.smtp_timeout_seconds)
            with server:
                server.ehlo()
                if cfg.smtp_port != 465 and cfg.smtp_use_tls:
                    server.starttls()
                    server.ehlo()
                if cfg.smtp_user and cfg.smtp_pass:
                    server.login(cfg.smtp_user, cfg.smtp_pass)
                refused = server.send_message(msg, from_addr=cfg.smtp_user or from_addr, to_addrs=recipients)
                if refused:
                    logger.warning("email.partial_failure refused=%s", refused)
            return True, None
        except (smtplib.SMTPException, OSError) as exc:
            return False, exc

    if not (cfg.smtp_host and cfg.smtp_port):
        logger.info("email.dev_fallback category=%s to=%s subject=%s\n%s", category, recipients, subject, body)
        return True

    attempt = 0
    while True:
        attempt += 1
        ok, exc = await asyncio.to_thread(_send_once)
        if ok:
            logger.info("email.sent category=%s to=%s attempt=%d", category, recipients, attempt)
            return True
        if attempt > cfg.smtp_max_retries:
            logger.error("email.failed category=%s to=%s attempts=%d error=%r", category, recipients, attempt, exc)
            return False
        backoff = min(2 ** (attempt - 1), 8)
        logger.warning("email.retry category=%s attempt=%d error=%r backoff=%ss", category, attempt, exc, backoff)
        await asyncio.sleep(backoff)


######### Tokens #########

def hash_token(token: str) -> str:
    """Return HMAC-SHA256(token, TOKEN_PEPPER) hex digest for safe storage/lookup."""
    pepper = get_settings().token_pepper.encode('utf8')
    return hmac.new(pepper, token.encode('utf8'), hashlib.sha256).hexdigest()


def generate_token_pair(bytes_entropy: int = 32) -> tuple[str, str]:
    """Generate a random hex token and its stored hash.

    Returns (token, token_hash): the token is safe to send to the user, the
    hash is what gets persisted.
    """
    t = secrets.token_hex(bytes_entropy)
    return t, hash_token(t)


######### Documents #########

def parse_object_id(value, label: str = 'id') -> ObjectId:
    """Convert a path/body id into an ObjectId or raise a 400."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f'Invalid {label}') from exc


def maybe_object_id(value) -> ObjectId | None:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError, ValueError):
        return None


def serialize(obj):
    """Recursively convert ObjectIds and datetimes into JSON friendly values.

    Top-level documents get their `_id` exposed as `id`.
    """
    if obj is None:
        return None
    if isinstance(obj, list):
        return [serialize(x) for x in obj]
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if k == '_id':
                out['id'] = serialize(v)
            elif k == 'password_hash':
                continue
            else:
                out[k] = serialize(v)
        return out
    if isinstance(obj, ObjectId):
        return str(obj)
    if isinstance(obj, datetime.datetime):
        return to_iso(obj)
    if isinstance(obj, datetime.date):
        return obj.isoformat()
    return obj


def money(value) -> float:
    """Round an amount in Ksh to cents."""
    return round(float(value or 0), 2)


######### Phone numbers #########

def normalize_phone(phone: str | None) -> str | None:
    """Validate a phone number and return it in E.164 format (Kenya by default)."""
    if phone is None or not str(phone).strip():
        return None
    try:
        parsed = phonenumbers.parse(str(phone), DEFAULT_PHONE_REGION)
    except phonenumbers.NumberParseException as exc:
        raise HTTPException(status_code=400, detail=f"Invalid phone number: {exc}") from exc
    if not phonenumbers.is_valid_number(parsed):
        raise HTTPException(status_code=400, detail="Invalid phone number.")
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def mpesa_msisdn(phone: str) -> str:
    """Return the 2547XXXXXXXX form Safaricom expects."""
    e164 = normalize_phone(phone)
    if not e164:
        raise HTTPException(status_code=400, detail="A phone number is required for M-Pesa payments.")
    return e164.lstrip('+')
