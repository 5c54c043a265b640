"""Partner applications: attendees asking to become organizers, influencers or clubs.

A user holds at most one pending request; ``pending_user_id`` is set only
while the request is open and carries a unique index.
"""
import logging

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from .. import db as db_mod
from ..auth import display_name, user_role
from ..datetime_utils import now_utc
from ..enums import PARTNER_ROLES, NotificationType, ReviewStatus
from ..utils import maybe_object_id, parse_object_id
from . import audit, notification_center

logger = logging.getLogger('partners')

PENDING_MESSAGE = 'You already have a pending partner request. Please wait for it to be reviewed.'


async def request_partner_role(user: dict, role: str) -> dict:
    if role not in PARTNER_ROLES:
        raise HTTPException(status_code=400, detail='You can only apply to become an organizer, influencer or club.')
    if user_role(user) == role:
        raise HTTPException(status_code=400, detail=f"You already have the role '{role}'.")
    user_id = str(user['_id'])
    if await db_mod.db.partner_requests.find_one({'user_id': user_id, 'status': ReviewStatus.pending.value}):
        raise HTTPException(status_code=400, detail=PENDING_MESSAGE)

    doc = {
        'user_id': user_id,
        'pending_user_id': user_id,
        'user': {
            'name': display_name(user),
            'email': user.get('email'),
            'photo_url': user.get('photo_url'),
        },
        'requested_role': role,
        'status': ReviewStatus.pending.value,
        'created_at': now_utc(),
    }
    try:
        await db_mod.db.partner_requests.insert_one(doc)
    except DuplicateKeyError as exc:
        raise HTTPException(status_code=400, detail=PENDING_MESSAGE) from exc
    logger.info('partner_request.created id=%s user_id=%s role=%s', doc['_id'], user_id, role)
    await notification_center.notify_admins(
        NotificationType.partner_request.value,
        f"{doc['user']['name']} has requested to become a {role}.",
        '/admin/requests',
    )
    return doc


async def my_requests(user_id: str) -> list[dict]:
    return await db_mod.db.partner_requests.find({'user_id': str(user_id)}).sort('created_at', -1).to_list(length=None)


async def pending_requests() -> list[dict]:
    return await db_mod.db.partner_requests.find(
        {'status': ReviewStatus.pending.value}
    ).sort('created_at', -1).to_list(length=None)


async def decide(actor: dict, request_id, approve: bool) -> dict:
    """Approve or deny a pending request; approval grants the role that was asked for."""
    oid = parse_object_id(request_id, 'partner request id')
    request = await db_mod.db.partner_requests.find_one({'_id': oid})
    if not request:
        raise HTTPException(status_code=404, detail='Partner request not found.')
    status = ReviewStatus.approved if approve else ReviewStatus.rejected
    update = {'status': status.value, 'processed_at': now_utc(), 'processor_id': str(actor['_id'])}
    res = await db_mod.db.partner_requests.update_one(
        {'_id': oid, 'status': ReviewStatus.pending.value},
        {'$set': update, '$unset': {'pending_user_id': ''}},
    )
    if not res.matched_count:
        raise HTTPException(status_code=400, detail='This request has already been processed.')

    role = request['requested_role']
    user_oid = maybe_object_id(request.get('user_id'))
    if approve and user_oid is not None:
        await db_mod.db.users.update_one({'_id': user_oid}, {'$set': {'role': role, 'updated_at': now_utc()}})
    logger.info('partner_request.decided id=%s status=%s role=%s by=%s', oid, status.value, role, actor['_id'])

    action = 'approve_partner_request' if approve else 'deny_partner_request'
    detail_key = 'approved_role' if approve else 'denied_role'
    await audit.log_admin_action(actor, action, 'user', request.get('user_id'), {detail_key: role})
    verdict = 'approved' if approve else 'declined'
    await notification_center.create_notification(
        NotificationType.partner_request.value,
        f'Your request to become a {role} was {verdict}.',
        f'/{role}' if approve else '/partner-with-us',
        target_users=[request.get('user_id')],
    )
    request.pop('pending_user_id', None)
    return {**request, **update}
