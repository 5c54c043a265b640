"""Gate-side ticket validation and verifier assignment."""
import logging

from fastapi import HTTPException
from pymongo.errors import PyMongoError

from .. import db as db_mod
from ..auth import display_name, user_role
from ..datetime_utils import ensure_aware, now_utc
from ..enums import GLOBAL_VERIFIER_ROLES, ADMIN_ROLES, ListingType, TicketStatus, UserRole
from ..utils import maybe_object_id, parse_object_id

logger = logging.getLogger('verification')

SUCCESS_MESSAGE = 'Ticket successfully validated!'
VERIFIER_ASSIGNABLE_ROLES = {UserRole.verifier.value, *ADMIN_ROLES}


def _outcome(success: bool, message: str, data: dict | None = None) -> dict:
    out = {'success': success, 'message': message}
    if data is not None:
        out['data'] = data
    return out


async def _record_history(verifier_id: str, event_id: str, ticket_id: str, status: str, message: str,
                          details: dict | None = None) -> None:
    entry = {
        'verifier_id': verifier_id,
        'event_id': event_id,
        'ticket_id': ticket_id,
        'status': status,
        'message': message,
        'timestamp': now_utc(),
    }
    if details:
        entry['details'] = details
    try:
        await db_mod.db.verification_history.insert_one(entry)
    except PyMongoError as exc:
        logger.error('verification.history_failed ticket_id=%s error=%s', ticket_id, exc)


async def _find_ticket(ticket_id: str) -> dict | None:
    oid = maybe_object_id(ticket_id)
    if oid is not None:
        ticket = await db_mod.db.tickets.find_one({'_id': oid})
        if ticket:
            return ticket
    return await db_mod.db.tickets.find_one({'qr_code': ticket_id})


async def _listing_name(listing_id: str, listing_type: str | None = None) -> str | None:
    oid = maybe_object_id(listing_id)
    if oid is None:
        return None
    kinds = [ListingType(listing_type)] if listing_type in {k.value for k in ListingType} else list(ListingType)
    for kind in kinds:
        doc = await db_mod.db[kind.collection].find_one({'_id': oid})
        if doc:
            return doc.get('name')
    return None


def _may_verify(verifier: dict, listing_id: str) -> bool:
    if user_role(verifier) in GLOBAL_VERIFIER_ROLES:
        return True
    return listing_id in (verifier.get('assigned_events') or [])


async def validate_ticket(verifier: dict | None, ticket_id: str | None, current_event_id: str) -> dict:
    """Scan a ticket at the gate.

    Returns `{success, message[, data]}`; rejections are outcomes for the
    scanner to display rather than request errors.
    """
    if not verifier:
        return _outcome(False, 'Verifier account not found.')
    ticket_id = (ticket_id or '').strip()
    if not ticket_id:
        return _outcome(False, 'Invalid QR Code. Ticket ID is missing.')
    ticket = await _find_ticket(ticket_id)
    if not ticket:
        return _outcome(False, 'Ticket not found. This QR code is invalid.')

    verifier_id = str(verifier['_id'])
    ticket_key = str(ticket['_id'])
    if ticket.get('listing_id') != current_event_id:
        other = await _listing_name(ticket.get('listing_id'), ticket.get('listing_type')) or 'another event'
        message = f'This ticket is for "{other}", not the current event.'
        await _record_history(verifier_id, current_event_id, ticket_key, 'error', message)
        logger.info('verification.wrong_event ticket_id=%s event_id=%s', ticket_key, current_event_id)
        return _outcome(False, message)

    if not _may_verify(verifier, ticket['listing_id']):
        logger.warning('verification.denied verifier_id=%s event_id=%s', verifier_id, current_event_id)
        return _outcome(False, 'Permission Denied. You are not assigned to verify tickets for this event.')

    if ticket.get('status') != TicketStatus.valid.value:
        message = _status_message(ticket)
        await _record_history(verifier_id, current_event_id, ticket_key, 'error', message)
        return _outcome(False, message)

    claimed = await db_mod.db.tickets.find_one_and_update(
        {'_id': ticket['_id'], 'status': TicketStatus.valid.value},
        {'$set': {'status': TicketStatus.used.value, 'validated_at': now_utc(), 'validated_by': verifier_id}},
        return_document=True,
    )
    if not claimed:
        # another gate scanned it first
        current = await db_mod.db.tickets.find_one({'_id': ticket['_id']}) or ticket
        message = _status_message(current)
        await _record_history(verifier_id, current_event_id, ticket_key, 'error', message)
        return _outcome(False, message)

    attendee = ticket.get('user_name')
    if not attendee:
        user = await db_mod.db.users.find_one({'_id': maybe_object_id(ticket.get('user_id'))}) if ticket.get('user_id') else None
        attendee = display_name(user, 'Unknown Attendee')
    details = {
        'event_name': await _listing_name(ticket['listing_id'], ticket.get('listing_type')) or 'Unknown Event',
        'attendee_name': attendee,
        'ticket_type': ticket.get('ticket_type'),
    }
    await _record_history(verifier_id, current_event_id, ticket_key, 'success', SUCCESS_MESSAGE, details)
    logger.info('verification.validated ticket_id=%s event_id=%s verifier_id=%s', ticket_key, current_event_id, verifier_id)
    return _outcome(True, SUCCESS_MESSAGE, details)


def _status_message(ticket: dict) -> str:
    if ticket.get('status') == TicketStatus.used.value:
        validated_at = ticket.get('validated_at')
        when = ensure_aware(validated_at).strftime('%H:%M:%S') if validated_at else 'an earlier time'
        return f'This ticket has already been used at {when}.'
    return f"This ticket status is: {ticket.get('status')}."


async def assigned_events(user: dict) -> list[dict]:
    ids = [oid for oid in (maybe_object_id(e) for e in user.get('assigned_events') or []) if oid]
    if not ids:
        return []
    events = await db_mod.db[ListingType.event.collection].find({'_id': {'$in': ids}}).to_list(length=None)
    return [{'id': str(e['_id']), 'name': e.get('name'), 'date': e.get('date')} for e in events]


async def assign_verifier(actor: dict, username: str, event_id: str) -> dict:
    username = (username or '').strip()
    if not username or not event_id:
        raise HTTPException(status_code=400, detail='Username and event are required.')
    event = await db_mod.db[ListingType.event.collection].find_one({'_id': parse_object_id(event_id, 'event id')})
    if not event:
        raise HTTPException(status_code=404, detail='Event not found.')
    if user_role(actor) not in ADMIN_ROLES and event.get('organizer_id') != str(actor['_id']):
        raise HTTPException(status_code=403, detail='Permission denied.')

    user = await db_mod.db.users.find_one({'name_lower': username.lower()})
    if not user:
        raise HTTPException(status_code=404, detail='User not found.')
    if user_role(user) not in VERIFIER_ASSIGNABLE_ROLES:
        raise HTTPException(status_code=400, detail=f'User "{username}" does not have verification permissions.')
    event_key = str(event['_id'])
    res = await db_mod.db.users.update_one(
        {'_id': user['_id'], 'assigned_events': {'$ne': event_key}},
        {'$addToSet': {'assigned_events': event_key}},
    )
    if not res.matched_count:
        raise HTTPException(status_code=400, detail='This user is already assigned to this event.')
    logger.info('verification.assigned user_id=%s event_id=%s by=%s', user['_id'], event_key, actor['_id'])
    return {'message': f'User "{username}" has been assigned as a verifier.'}


async def history_for(user: dict, limit: int = 100) -> list[dict]:
    cursor = db_mod.db.verification_history.find({'verifier_id': str(user['_id'])}).sort('timestamp', -1).limit(limit)
    return await cursor.to_list(length=limit)
