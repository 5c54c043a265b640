"""Events, tours and nightlife listings."""
import logging
import re

from fastapi import HTTPException

from .. import db as db_mod
from ..auth import user_role
from ..datetime_utils import now_utc, parse_iso
from ..enums import (ADMIN_LISTING_TRANSITIONS, ADMIN_ROLES, ORGANIZER_LISTING_TRANSITIONS, ListingStatus,
                     ListingType, NotificationType)
from ..utils import money, parse_object_id
from . import audit, notification_center

logger = logging.getLogger('listings')

EDITABLE_FIELDS = (
    'name', 'description', 'category', 'date', 'end_date', 'venue', 'location', 'image_url',
    'tickets', 'free_merch', 'booking_fee', 'itinerary', 'destination', 'age_restriction',
)


def slugify(name: str | None) -> str:
    return re.sub(r'(^-|-$)', '', re.sub(r'[^a-z0-9]+', '-', (name or '').lower()))


def listing_type(value) -> ListingType:
    try:
        parsed = ListingType.normalize(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if parsed is None:
        raise HTTPException(status_code=400, detail='Listing type is required.')
    return parsed


def _collection(kind: ListingType):
    return db_mod.db[kind.collection]


def _clean_tickets(tickets) -> list[dict]:
    cleaned = []
    for ticket in tickets or []:
        name = (ticket.get('name') or '').strip()
        if not name:
            raise HTTPException(status_code=400, detail='Every ticket type needs a name.')
        price = money(ticket.get('price'))
        if price < 0:
            raise HTTPException(status_code=400, detail='Ticket prices cannot be negative.')
        cleaned.append({'name': name, 'price': price, 'quantity': int(ticket.get('quantity') or 0)})
    return cleaned


async def get_listing(kind, listing_id) -> dict:
    kind = listing_type(kind)
    listing = await _collection(kind).find_one({'_id': parse_object_id(listing_id, 'listing id')})
    if not listing:
        raise HTTPException(status_code=404, detail='Listing not found.')
    listing['type'] = kind.value
    return listing


async def save_listing(organizer: dict, kind, data: dict, status, listing_id=None) -> dict:
    """Create or update an organizer's listing as draft or submitted for review."""
    kind = listing_type(kind)
    status = ListingStatus.normalize(status) or ListingStatus.draft
    if status not in (ListingStatus.draft, ListingStatus.submitted):
        raise HTTPException(status_code=400, detail='Listings can only be saved as draft or submitted for review.')

    payload = {k: data[k] for k in EDITABLE_FIELDS if k in data and data[k] is not None}
    if 'tickets' in payload:
        payload['tickets'] = _clean_tickets(payload['tickets'])
    if 'booking_fee' in payload:
        payload['booking_fee'] = money(payload['booking_fee'])
    for field in ('date', 'end_date'):
        if field in payload:
            try:
                payload[field] = parse_iso(payload[field])
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f'Invalid {field}') from exc
    now = now_utc()
    payload.update({
        'organizer_id': str(organizer['_id']),
        'organizer_name': organizer.get('organizer_name') or organizer.get('name') or 'Unknown Organizer',
        'status': status.value,
        'updated_at': now,
    })

    coll = _collection(kind)
    if listing_id is None:
        if not payload.get('name'):
            raise HTTPException(status_code=400, detail='Listing name is required.')
        payload['slug'] = slugify(payload['name'])
        payload['created_at'] = now
        await coll.insert_one(payload)
        logger.info('listing.created type=%s id=%s status=%s', kind.value, payload['_id'], status.value)
        return {**payload, 'type': kind.value}

    existing = await get_listing(kind, listing_id)
    if existing.get('organizer_id') != str(organizer['_id']):
        raise HTTPException(status_code=403, detail='Permission denied.')
    if payload.get('name'):
        payload['slug'] = slugify(payload['name'])
    await coll.update_one({'_id': existing['_id']}, {'$set': payload})
    logger.info('listing.updated type=%s id=%s status=%s', kind.value, existing['_id'], status.value)
    return {**existing, **payload}


async def organizer_set_status(organizer: dict, kind, listing_id, status) -> dict:
    try:
        status = ListingStatus.normalize(status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if status not in ORGANIZER_LISTING_TRANSITIONS:
        raise HTTPException(status_code=400, detail='Unsupported listing status.')
    listing = await get_listing(kind, listing_id)
    if listing.get('organizer_id') != str(organizer['_id']):
        raise HTTPException(status_code=403, detail='Permission denied.')
    await _collection(listing_type(kind)).update_one(
        {'_id': listing['_id']}, {'$set': {'status': status.value, 'updated_at': now_utc()}},
    )
    logger.info('listing.status type=%s id=%s status=%s by=organizer', kind, listing['_id'], status.value)
    return {**listing, 'status': status.value}


async def admin_set_status(admin: dict, kind, listing_id, status) -> dict:
    try:
        status = ListingStatus.normalize(status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if status not in ADMIN_LISTING_TRANSITIONS:
        raise HTTPException(status_code=400, detail='Unsupported listing status.')
    listing = await get_listing(kind, listing_id)
    await _collection(listing_type(kind)).update_one(
        {'_id': listing['_id']}, {'$set': {'status': status.value, 'updated_at': now_utc()}},
    )
    logger.info('listing.status type=%s id=%s status=%s by=admin', kind, listing['_id'], status.value)
    await audit.log_admin_action(admin, 'update_event_status', listing['type'], listing['_id'], {'new_status': status.value})
    if listing.get('organizer_id'):
        await notification_center.create_notification(
            NotificationType.listing_update.value,
            f"Your listing \"{listing.get('name')}\" is now {status.value}.",
            '/organizer/listings',
            target_users=[listing['organizer_id']],
        )
    return {**listing, 'status': status.value}


async def organizer_board(organizer_id: str) -> dict:
    listings = []
    for kind in ListingType:
        async for doc in _collection(kind).find({'organizer_id': str(organizer_id)}):
            doc['type'] = kind.value
            listings.append(doc)
    listings.sort(key=lambda d: d.get('updated_at') or d.get('created_at') or now_utc(), reverse=True)

    def _with(status: ListingStatus):
        return [doc for doc in listings if doc.get('status') == status.value]

    return {
        'all': listings,
        'published': _with(ListingStatus.published),
        'drafts': _with(ListingStatus.draft),
        'review': _with(ListingStatus.submitted),
        'rejected': _with(ListingStatus.rejected),
        'archived': _with(ListingStatus.archived),
    }


async def list_published(kind, category: str | None = None, limit: int = 100) -> list[dict]:
    kind = listing_type(kind)
    query = {'status': ListingStatus.published.value}
    if category:
        query['category'] = category
    docs = await _collection(kind).find(query).sort('date', 1).limit(limit).to_list(length=limit)
    for doc in docs:
        doc['type'] = kind.value
    return docs


async def get_public_listing(kind, listing_id, viewer: dict | None = None) -> dict:
    listing = await get_listing(kind, listing_id)
    owner = viewer and (str(viewer['_id']) == listing.get('organizer_id') or user_role(viewer) in ADMIN_ROLES)
    if listing.get('status') != ListingStatus.published.value and not owner:
        raise HTTPException(status_code=404, detail='Listing not found.')
    return listing


async def find_listing_any(listing_id) -> dict | None:
    """Locate a listing by id across all listing collections."""
    oid = parse_object_id(listing_id, 'listing id')
    for kind in ListingType:
        doc = await _collection(kind).find_one({'_id': oid})
        if doc:
            doc['type'] = kind.value
            return doc
    return None
