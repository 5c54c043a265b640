"""Short redirect ids (`/l/{short_id}`) carrying tracking metadata."""
import logging
import secrets
import string

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError, PyMongoError

from .. import db as db_mod
from ..datetime_utils import now_utc
from ..settings import get_settings

logger = logging.getLogger('shortlinks')

SHORT_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_short_id(length: int | None = None) -> str:
    length = length or get_settings().short_link_length
    return ''.join(secrets.choice(SHORT_ID_ALPHABET) for _ in range(length))


async def create_short_link(long_url: str, invitation_id=None, tracking_link_id=None,
                            promocode_id=None, listing_id=None) -> str:
    """Store a short link and return its id.

    The id is the document `_id`, so a collision surfaces as DuplicateKeyError
    and another id is drawn.
    """
    cfg = get_settings()
    doc = {'long_url': long_url, 'created_at': now_utc()}
    optional = {
        'invitation_id': invitation_id,
        'tracking_link_id': tracking_link_id,
        'promocode_id': promocode_id,
        'listing_id': listing_id,
    }
    doc.update({k: str(v) for k, v in optional.items() if v is not None})

    for attempt in range(1, cfg.short_link_max_attempts + 1):
        short_id = generate_short_id(cfg.short_link_length)
        try:
            await db_mod.db.short_links.insert_one({'_id': short_id, **doc})
        except DuplicateKeyError:
            logger.info('shortlink.collision short_id=%s attempt=%d', short_id, attempt)
            continue
        logger.info('shortlink.created short_id=%s attempt=%d', short_id, attempt)
        return short_id

    logger.error('shortlink.exhausted attempts=%d', cfg.short_link_max_attempts)
    raise HTTPException(status_code=503, detail='Could not generate a unique short link ID after several attempts.')


def short_url(short_id: str) -> str:
    return f"{get_settings().app_base_url.rstrip('/')}/l/{short_id}"


def absolute_url(long_url: str) -> str:
    if long_url.startswith(('http://', 'https://')):
        return long_url
    return f"{get_settings().app_base_url.rstrip('/')}/{long_url.lstrip('/')}"


async def get_short_link(short_id: str) -> dict | None:
    if not short_id:
        return None
    return await db_mod.db.short_links.find_one({'_id': short_id})


async def record_invitation_click(invitation_id: str, ip: str | None, user_agent: str | None) -> None:
    try:
        await db_mod.db.invitation_clicks.insert_one({
            'invitation_id': invitation_id,
            'timestamp': now_utc(),
            'ip': ip,
            'user_agent': user_agent,
        })
        logger.info('shortlink.invitation_click invitation_id=%s', invitation_id)
    except PyMongoError as exc:
        logger.error('shortlink.invitation_click_failed invitation_id=%s error=%s', invitation_id, exc)
