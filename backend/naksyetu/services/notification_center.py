"""In-app notification fan-out (bell icon), targeted by role and/or user id."""
import logging

from pymongo.errors import PyMongoError

from .. import db as db_mod
from ..auth import user_role
from ..datetime_utils import now_utc
from ..enums import ADMIN_ROLES

logger = logging.getLogger('notifications')


async def create_notification(type: str, message: str, link: str | None = None,
                              target_roles=None, target_users=None) -> None:
    doc = {
        'type': type,
        'message': message,
        'link': link,
        'target_roles': sorted(set(target_roles or [])),
        'target_users': [str(u) for u in (target_users or []) if u],
        'created_at': now_utc(),
        'read_by': [],
    }
    try:
        await db_mod.db.notifications.insert_one(doc)
        logger.info('notification.created type=%s roles=%s users=%s', type, doc['target_roles'], len(doc['target_users']))
    except PyMongoError as exc:
        logger.error('notification.create_failed type=%s error=%s', type, exc)


async def notify_admins(type: str, message: str, link: str | None = None, extra_users=None) -> None:
    await create_notification(type, message, link, target_roles=ADMIN_ROLES, target_users=extra_users)


def _audience_query(user: dict) -> dict:
    return {'$or': [
        {'target_roles': user_role(user)},
        {'target_users': str(user['_id'])},
    ]}


async def list_for_user(user: dict, limit: int = 50) -> list[dict]:
    cursor = db_mod.db.notifications.find(_audience_query(user)).sort('created_at', -1).limit(limit)
    uid = str(user['_id'])
    items = []
    async for doc in cursor:
        doc['read'] = uid in (doc.get('read_by') or [])
        doc.pop('read_by', None)
        items.append(doc)
    return items


async def mark_read(user: dict, notification_id) -> bool:
    res = await db_mod.db.notifications.update_one(
        {'_id': notification_id, **_audience_query(user)},
        {'$addToSet': {'read_by': str(user['_id'])}},
    )
    return res.matched_count > 0


async def mark_all_read(user: dict) -> int:
    uid = str(user['_id'])
    res = await db_mod.db.notifications.update_many(
        {**_audience_query(user), 'read_by': {'$ne': uid}},
        {'$addToSet': {'read_by': uid}},
    )
    return res.modified_count
