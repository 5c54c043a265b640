"""Organizer console router

Listings lifecycle, promocodes and campaigns, tracking links, verifier
assignment, revenue stats and payout requests.
"""
from fastapi import APIRouter, Depends, Header

from ..auth import require_roles
from ..enums import ProcessingFeePayer, UserRole
from ..schemas import (InvitationCreate, ListingSave, PayoutRequestIn, PromocodeCreate, PromocodeUpdate,
                       StatusUpdate, TrackingLinkCreate, VerifierAssign)
from ..services import analytics, invitations, listings, payouts, promocodes, site_settings, tracking, verification
from ..utils import serialize

router = APIRouter()

ORGANIZER_ROLES = (UserRole.organizer.value, UserRole.admin.value, UserRole.super_admin.value)
require_organizer = require_roles(*ORGANIZER_ROLES)


######### Listings #########

@router.get('/listings')
async def listing_board(current_user=Depends(require_organizer)):
    return serialize(await listings.organizer_board(str(current_user['_id'])))


@router.post('/listings/{listing_type}', status_code=201)
async def create_listing(listing_type: str, payload: ListingSave, current_user=Depends(require_organizer)):
    data = payload.model_dump(exclude_unset=True, exclude={'status'})
    return serialize(await listings.save_listing(current_user, listing_type, data, payload.status))


@router.put('/listings/{listing_type}/{listing_id}')
async def update_listing(listing_type: str, listing_id: str, payload: ListingSave,
                         current_user=Depends(require_organizer)):
    data = payload.model_dump(exclude_unset=True, exclude={'status'})
    return serialize(await listings.save_listing(current_user, listing_type, data, payload.status, listing_id))


@router.patch('/listings/{listing_type}/{listing_id}/status')
async def change_listing_status(listing_type: str, listing_id: str, payload: StatusUpdate,
                                current_user=Depends(require_organizer)):
    return serialize(await listings.organizer_set_status(current_user, listing_type, listing_id, payload.status))


######### Promocodes #########

@router.get('/promocodes')
async def my_promocodes(current_user=Depends(require_organizer)):
    return serialize(await promocodes.list_for_organizer(str(current_user['_id'])))


@router.post('/promocodes', status_code=201)
async def create_promocode(payload: PromocodeCreate, current_user=Depends(require_organizer)):
    data = payload.model_dump()
    data['discount_type'] = payload.discount_type.value
    if payload.commission_type is not None:
        data['commission_type'] = payload.commission_type.value
    return serialize(await promocodes.create_promocode(current_user, data))


@router.patch('/promocodes/{promocode_id}')
async def update_promocode(promocode_id: str, payload: PromocodeUpdate, current_user=Depends(require_organizer)):
    return serialize(await promocodes.update_promocode(current_user, promocode_id, payload.model_dump(exclude_unset=True)))


@router.delete('/promocodes/{promocode_id}')
async def deactivate_promocode(promocode_id: str, current_user=Depends(require_organizer)):
    return serialize(await promocodes.deactivate_promocode(current_user, promocode_id))


######### Tracking links #########

@router.get('/tracking-links')
async def my_tracking_links(current_user=Depends(require_organizer)):
    return serialize(await tracking.list_tracking_links(created_by=str(current_user['_id'])))


@router.post('/tracking-links', status_code=201)
async def create_tracking_link(payload: TrackingLinkCreate, current_user=Depends(require_organizer)):
    """Organizer links without a promocode attached."""
    return serialize(await tracking.create_tracking_link(
        current_user, payload.name, payload.listing_id, payload.listing_type,
    ))


######### Verifiers #########

@router.post('/verifiers')
async def assign_verifier(payload: VerifierAssign, current_user=Depends(require_organizer)):
    return await verification.assign_verifier(current_user, payload.username, payload.event_id)


@router.post('/invitations', status_code=201)
async def invite_verifier(payload: InvitationCreate, current_user=Depends(require_organizer)):
    return await invitations.generate_invite_link(
        current_user, payload.email, payload.role, payload.event_id, payload.send_email,
    )


######### Revenue / payouts #########

@router.get('/stats')
async def global_stats(current_user=Depends(require_organizer)):
    return serialize(await analytics.organizer_global_stats(str(current_user['_id'])))


@router.get('/payouts/stats')
async def payout_stats(current_user=Depends(require_roles(UserRole.organizer.value))):
    stats = await payouts.organizer_stats(str(current_user['_id']))
    fees = await site_settings.get_site_settings()
    processing_applies = fees['processing_fee_payer'] == ProcessingFeePayer.organizer.value
    return {**stats, 'earnings_audit': payouts.organizer_audit(stats, processing_applies)}


@router.post('/payouts/request', status_code=201)
async def request_payout(payload: PayoutRequestIn,
                         idempotency_key: str | None = Header(None, alias='Idempotency-Key'),
                         current_user=Depends(require_roles(UserRole.organizer.value))):
    return serialize(await payouts.request_payout(
        current_user, UserRole.organizer.value, payload.amount, idempotency_key,
    ))


@router.get('/payouts/history')
async def payout_history(current_user=Depends(require_roles(UserRole.organizer.value))):
    return serialize(await payouts.payout_history(str(current_user['_id'])))
