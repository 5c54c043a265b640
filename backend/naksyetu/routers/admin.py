"""Admin console router

Everything under /admin requires admin or super-admin; fee settings and
payout decisions are super-admin only.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from .. import db as db_mod
from ..auth import require_admin, require_super_admin, user_role
from ..datetime_utils import now_utc, parse_iso
from ..enums import ADMIN_ROLES, UserRole
from ..schemas import (AssistantQuestion, InvitationCreate, MerchPickup, PayoutDecision, ProductSave,
                       ProductUpdate, ReviewDecision, RoleUpdate, SiteSettingsUpdate, StatusUpdate)
from ..services import (advertising, analytics, assistant, audit, invitations, listings, merch, partner_requests,
                        payouts, site_settings)
from ..utils import parse_object_id, serialize
from .users import public_user

logger = logging.getLogger('audit')

router = APIRouter()


######### Dashboard / analytics #########

@router.get('/dashboard')
async def dashboard(current_user=Depends(require_admin)):
    data = await analytics.dashboard()
    data['recent_users'] = [public_user(u) for u in data['recent_users']]
    return serialize(data)


@router.get('/analytics')
async def admin_analytics(days: int = 30, current_user=Depends(require_admin)):
    return serialize(await analytics.admin_analytics(days=max(1, min(days, 365))))


@router.post('/assistant')
async def ask_assistant(payload: AssistantQuestion, current_user=Depends(require_admin)):
    return await assistant.ask(payload.question)


######### Users #########

@router.get('/users')
async def list_users(role: str | None = None, limit: int = 200, current_user=Depends(require_admin)):
    query = {}
    if role:
        query['role'] = role
    docs = await db_mod.db.users.find(query).sort('created_at', -1).limit(limit).to_list(length=limit)
    return [public_user(u) for u in docs]


@router.patch('/users/{user_id}/role')
async def update_user_role(user_id: str, payload: RoleUpdate, current_user=Depends(require_admin)):
    if payload.role in ADMIN_ROLES and user_role(current_user) != UserRole.super_admin.value:
        raise HTTPException(status_code=403, detail='Super-admin required')
    oid = parse_object_id(user_id, 'user id')
    user = await db_mod.db.users.find_one({'_id': oid})
    if not user:
        raise HTTPException(status_code=404, detail='User not found.')
    previous = user_role(user)
    await db_mod.db.users.update_one({'_id': oid}, {'$set': {'role': payload.role, 'updated_at': now_utc()}})
    logger.info('admin.user_role user_id=%s from=%s to=%s by=%s', oid, previous, payload.role, current_user['_id'])
    await audit.log_admin_action(current_user, 'update_user_role', 'user', oid, {
        'previous_role': previous,
        'new_role': payload.role,
    })
    return public_user({**user, 'role': payload.role})


######### Listings #########

@router.patch('/listings/{listing_type}/{listing_id}/status')
async def change_listing_status(listing_type: str, listing_id: str, payload: StatusUpdate,
                                current_user=Depends(require_admin)):
    return serialize(await listings.admin_set_status(current_user, listing_type, listing_id, payload.status))


######### Payouts #########

@router.get('/payouts')
async def payout_requests(current_user=Depends(require_admin)):
    return serialize(await payouts.list_payout_requests())


@router.patch('/payouts/{request_id}')
async def decide_payout(request_id: str, payload: PayoutDecision, current_user=Depends(require_super_admin)):
    return serialize(await payouts.update_payout_status(
        current_user, request_id, payload.status, payload.amount_disbursed, payload.rejection_reason,
    ))


######### Settings #########

@router.get('/settings')
async def get_settings_doc(current_user=Depends(require_admin)):
    return await site_settings.get_site_settings()


@router.put('/settings')
async def update_settings_doc(payload: SiteSettingsUpdate, current_user=Depends(require_super_admin)):
    return await site_settings.update_site_settings(current_user, payload.model_dump(exclude_none=True))


######### Invitations #########

@router.get('/invitations')
async def list_invitations(current_user=Depends(require_admin)):
    return serialize(await invitations.list_invitations())


@router.post('/invitations', status_code=201)
async def create_invitation(payload: InvitationCreate, current_user=Depends(require_admin)):
    return await invitations.generate_invite_link(
        current_user, payload.email, payload.role, payload.event_id, payload.send_email,
    )


@router.get('/invitations/{invitation_id}')
async def invitation_details(invitation_id: str, current_user=Depends(require_admin)):
    return serialize(await invitations.invitation_details(invitation_id))


@router.post('/invitations/{invitation_id}/void')
async def void_invitation(invitation_id: str, current_user=Depends(require_admin)):
    await invitations.void_invitation(current_user, invitation_id)
    return {'status': 'void'}


######### Partner requests / ads #########

@router.get('/partner-requests')
async def pending_partner_requests(current_user=Depends(require_admin)):
    return serialize(await partner_requests.pending_requests())


@router.post('/partner-requests/{request_id}/approve')
async def approve_partner_request(request_id: str, current_user=Depends(require_admin)):
    return serialize(await partner_requests.decide(current_user, request_id, approve=True))


@router.post('/partner-requests/{request_id}/deny')
async def deny_partner_request(request_id: str, current_user=Depends(require_admin)):
    return serialize(await partner_requests.decide(current_user, request_id, approve=False))


@router.get('/ads')
async def ad_requests(status: str | None = None, current_user=Depends(require_admin)):
    return serialize(await advertising.list_ads(status))


@router.patch('/ads/{ad_id}')
async def update_ad_status(ad_id: str, payload: ReviewDecision, current_user=Depends(require_admin)):
    return serialize(await advertising.set_status(current_user, ad_id, payload.status))


######### Shop #########

@router.get('/products')
async def all_products(current_user=Depends(require_admin)):
    return serialize(await merch.list_products(include_hidden=True))


@router.post('/products', status_code=201)
async def create_product(payload: ProductSave, current_user=Depends(require_admin)):
    return serialize(await merch.create_product(current_user, payload.model_dump()))


@router.patch('/products/{product_id}')
async def update_product(product_id: str, payload: ProductUpdate, current_user=Depends(require_admin)):
    return serialize(await merch.update_product(current_user, product_id, payload.model_dump(exclude_none=True)))


@router.patch('/products/{product_id}/status')
async def product_status(product_id: str, payload: StatusUpdate, current_user=Depends(require_admin)):
    return serialize(await merch.set_product_status(current_user, product_id, payload.status))


@router.get('/merch-orders')
async def merch_orders(status: str | None = None, current_user=Depends(require_admin)):
    return serialize(await merch.list_orders(status))


@router.post('/merch-orders/pickup')
async def merch_pickup(payload: MerchPickup, current_user=Depends(require_admin)):
    return serialize(await merch.complete_pickup(current_user, payload.confirmation_code))


######### Audit logs #########

@router.get('/audit-logs')
async def audit_logs(action: str | None = None, target_type: str | None = None, target_id: str | None = None,
                     admin_name: str | None = None, start: str | None = None, end: str | None = None,
                     limit: int = 100, current_user=Depends(require_admin)):
    try:
        window = {'start': parse_iso(start), 'end': parse_iso(end)}
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize(await audit.list_audit_logs(
        limit=max(1, min(limit, 500)), action=action, target_type=target_type, target_id=target_id,
        admin_name=admin_name, **window,
    ))
