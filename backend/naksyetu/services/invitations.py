"""Role invitations delivered as short links.

Only the HMAC hash of the invitation token is stored; the plaintext token
lives in the e-mailed link.
"""
import datetime
import logging

from fastapi import HTTPException

from .. import db as db_mod
from .. import notifications as email_notifications
from ..auth import display_name, user_role
from ..datetime_utils import ensure_aware, now_utc
from ..enums import ADMIN_ROLES, InvitationStatus, ListingType, UserRole
from ..settings import get_settings
from ..utils import generate_token_pair, hash_token, maybe_object_id, parse_object_id
from . import audit, shortlinks

logger = logging.getLogger('invitations')


async def _listing_name(event_id: str | None) -> str | None:
    oid = maybe_object_id(event_id)
    if oid is None:
        return None
    event = await db_mod.db[ListingType.event.collection].find_one({'_id': oid})
    return (event or {}).get('name')


async def generate_invite_link(actor: dict, email: str | None, role: str, event_id: str | None = None,
                               send_email: bool = False) -> dict:
    if send_email and not email:
        raise HTTPException(status_code=400, detail='Email is required to send an invitation.')
    try:
        invite_role = UserRole.normalize(role)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if invite_role is None:
        raise HTTPException(status_code=400, detail='Role is required.')

    actor_role = user_role(actor)
    if actor_role not in ADMIN_ROLES:
        # organizers may only bring in verifiers for their own events
        if invite_role is not UserRole.verifier or not event_id:
            raise HTTPException(status_code=403, detail='Permission denied.')
        event = await db_mod.db[ListingType.event.collection].find_one({'_id': parse_object_id(event_id, 'event id')})
        if not event or event.get('organizer_id') != str(actor['_id']):
            raise HTTPException(status_code=403, detail='Permission denied.')
    if invite_role.value in ADMIN_ROLES and actor_role != UserRole.super_admin.value:
        logger.info('invitation.rejected reason=admin_role_grant actor_id=%s role=%s', actor['_id'], invite_role.value)
        raise HTTPException(status_code=403, detail='Super-admin required')

    email = email.strip().lower() if email else None
    if email:
        existing = await db_mod.db.users.find_one({'email': email})
        if existing:
            existing_role = user_role(existing)
            reassigning_verifier = (invite_role is UserRole.verifier and existing_role == UserRole.verifier.value
                                    and event_id)
            if not reassigning_verifier and existing_role != UserRole.attendee.value:
                raise HTTPException(
                    status_code=400,
                    detail=f"A user with this email already exists with the role '{existing_role}'.",
                )

    cfg = get_settings()
    token, token_hash = generate_token_pair()
    listing_name = await _listing_name(event_id)
    doc = {
        'email': email,
        'role': invite_role.value,
        'token_hash': token_hash,
        'expires_at': now_utc() + datetime.timedelta(hours=cfg.invitation_ttl_hours),
        'status': InvitationStatus.pending.value,
        'invited_by': str(actor['_id']),
        'created_at': now_utc(),
        'event_id': event_id or None,
        'listing_name': listing_name,
    }
    await db_mod.db.invitations.insert_one(doc)

    long_link = f"{cfg.app_base_url.rstrip('/')}/invite/{token}"
    short_id = await shortlinks.create_short_link(long_link, invitation_id=doc['_id'])
    await db_mod.db.invitations.update_one({'_id': doc['_id']}, {'$set': {'short_id': short_id}})
    invite_link = shortlinks.short_url(short_id)
    logger.info('invitation.created id=%s role=%s event_id=%s short_id=%s', doc['_id'], doc['role'], event_id, short_id)

    if send_email and email:
        await email_notifications.send_invitation_email(email, doc['role'], invite_link, listing_name)
    await audit.log_admin_action(actor, 'create_invitation', 'invitation', doc['_id'], {
        'email': email or 'N/A',
        'role': doc['role'],
        'event_id': event_id or 'N/A',
    })
    return {'id': str(doc['_id']), 'invite_link': invite_link, 'short_id': short_id}


async def get_invitation_by_token(token: str) -> dict:
    if not token:
        raise HTTPException(status_code=400, detail='Invitation token is missing.')
    invite = await db_mod.db.invitations.find_one({'token_hash': hash_token(token)})
    if not invite:
        raise HTTPException(status_code=404, detail='This invitation is not valid.')
    if invite.get('status') == InvitationStatus.accepted.value:
        raise HTTPException(status_code=410, detail='This invitation has already been used.')
    if invite.get('status') == InvitationStatus.void.value:
        raise HTTPException(status_code=410, detail='This invitation has been voided by the sender.')
    if ensure_aware(invite['expires_at']) < now_utc():
        raise HTTPException(status_code=410, detail='This invitation has expired.')
    return invite


def public_view(invite: dict) -> dict:
    return {
        'email': invite.get('email'),
        'role': invite.get('role'),
        'listing_name': invite.get('listing_name'),
        'expires_at': invite.get('expires_at'),
    }


async def accept_invitation(token: str, user: dict) -> dict:
    invite = await get_invitation_by_token(token)
    invite_role = invite['role']
    current_role = user_role(user)
    event_id = invite.get('event_id')
    verifier_event = invite_role == UserRole.verifier.value and event_id

    update: dict = {}
    if current_role == UserRole.attendee.value:
        update['$set'] = {'role': invite_role}
    elif current_role != invite_role and invite_role != UserRole.verifier.value:
        raise HTTPException(
            status_code=400,
            detail=f"This user already has the role '{current_role}'. Role changes must be done manually.",
        )
    if verifier_event:
        update['$addToSet'] = {'assigned_events': event_id}

    claimed = await db_mod.db.invitations.update_one(
        {'_id': invite['_id'], 'status': InvitationStatus.pending.value},
        {'$set': {
            'status': InvitationStatus.accepted.value,
            'accepted_by': str(user['_id']),
            'accepted_email': user.get('email'),
            'accepted_at': now_utc(),
        }},
    )
    if not claimed.matched_count:
        raise HTTPException(status_code=410, detail='This invitation has already been used.')
    if update:
        await db_mod.db.users.update_one({'_id': user['_id']}, update)
    logger.info('invitation.accepted id=%s user_id=%s role=%s event_id=%s',
                invite['_id'], user['_id'], invite_role, event_id)
    return {'role': update.get('$set', {}).get('role', current_role), 'event_id': event_id}


async def list_invitations(limit: int = 200) -> list[dict]:
    invites = await db_mod.db.invitations.find({}).sort('created_at', -1).limit(limit).to_list(length=limit)
    for invite in invites:
        invite.pop('token_hash', None)
        invite['clicks'] = await db_mod.db.invitation_clicks.count_documents({'invitation_id': str(invite['_id'])})
    return invites


async def invitation_details(invitation_id) -> dict:
    invite = await db_mod.db.invitations.find_one({'_id': parse_object_id(invitation_id, 'invitation id')})
    if not invite:
        raise HTTPException(status_code=404, detail='Invitation not found.')
    invite.pop('token_hash', None)
    accepted_by = maybe_object_id(invite.get('accepted_by'))
    if accepted_by:
        user = await db_mod.db.users.find_one({'_id': accepted_by}) or {}
        invite['accepted_by'] = {
            'uid': str(accepted_by),
            'name': display_name(user, 'N/A'),
            'email': user.get('email'),
            'photo_url': user.get('photo_url'),
        }
    clicks = await db_mod.db.invitation_clicks.find({'invitation_id': str(invite['_id'])}).sort('timestamp', -1).to_list(length=None)
    invite['clicks'] = clicks
    return invite


async def void_invitation(actor: dict, invitation_id) -> None:
    oid = parse_object_id(invitation_id, 'invitation id')
    res = await db_mod.db.invitations.update_one(
        {'_id': oid, 'status': InvitationStatus.pending.value},
        {'$set': {'status': InvitationStatus.void.value, 'voided_at': now_utc(), 'voided_by': str(actor['_id'])}},
    )
    if not res.matched_count:
        raise HTTPException(status_code=400, detail='Only pending invitations can be voided.')
    logger.info('invitation.voided id=%s by=%s', oid, actor['_id'])
    await audit.log_admin_action(actor, 'void_invitation', 'invitation', oid)
