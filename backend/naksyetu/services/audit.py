"""Admin audit trail."""
import logging
import re

from pymongo.errors import PyMongoError

from .. import db as db_mod
from ..auth import display_name
from ..datetime_utils import now_utc

logger = logging.getLogger('audit')


async def log_admin_action(actor: dict, action: str, target_type: str, target_id, details: dict | None = None) -> None:
    """Record an admin action. Failures are logged and never raised."""
    entry = {
        'admin_id': actor.get('_id'),
        'admin_name': display_name(actor, 'Admin'),
        'action': action,
        'target_type': target_type,
        'target_id': str(target_id) if target_id is not None else None,
        'details': details or {},
        'timestamp': now_utc(),
    }
    try:
        await db_mod.db.audit_logs.insert_one(entry)
        logger.info('audit.logged action=%s target_type=%s target_id=%s admin_id=%s',
                    action, target_type, entry['target_id'], entry['admin_id'])
    except PyMongoError as exc:
        logger.error('audit.log_failed action=%s error=%s', action, exc)


def build_log_query(*, action: str | None = None, target_type: str | None = None,
                    target_id: str | None = None, admin_name: str | None = None,
                    start=None, end=None) -> dict:
    query: dict = {}
    if action:
        query['action'] = action
    if target_type:
        query['target_type'] = target_type
    if target_id:
        query['target_id'] = target_id
    if admin_name:
        query['admin_name'] = {'$regex': f'^{re.escape(admin_name)}', '$options': 'i'}
    if start or end:
        window = {}
        if start:
            window['$gte'] = start
        if end:
            window['$lt'] = end
        query['timestamp'] = window
    return query


async def list_audit_logs(limit: int = 100, **filters) -> list[dict]:
    cursor = db_mod.db.audit_logs.find(build_log_query(**filters)).sort('timestamp', -1).limit(limit)
    return await cursor.to_list(length=limit)
