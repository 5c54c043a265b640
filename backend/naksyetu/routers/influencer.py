"""Influencer console router: campaigns, earnings and payouts."""
from fastapi import APIRouter, Depends, Header

from ..auth import require_roles
from ..enums import UserRole
from ..schemas import CampaignResponse, PayoutRequestIn
from ..services import payouts, promocodes, tracking
from ..utils import serialize

router = APIRouter()

require_influencer = require_roles(UserRole.influencer.value)


@router.get('/stats')
async def stats(current_user=Depends(require_influencer)):
    uid = str(current_user['_id'])
    data = await payouts.influencer_stats(uid)
    data['earnings_audit'] = await payouts.influencer_audit(uid)
    return serialize(data)


@router.get('/campaigns')
async def campaigns(current_user=Depends(require_influencer)):
    return serialize(await promocodes.list_campaigns(str(current_user['_id'])))


@router.post('/campaigns/{promocode_id}/respond')
async def respond(promocode_id: str, payload: CampaignResponse, current_user=Depends(require_influencer)):
    return serialize(await promocodes.respond_to_campaign(current_user, promocode_id, payload.accept))


@router.get('/tracking-links')
async def my_tracking_links(current_user=Depends(require_influencer)):
    return serialize(await tracking.list_tracking_links(created_by=str(current_user['_id'])))


@router.post('/payouts/request', status_code=201)
async def request_payout(payload: PayoutRequestIn,
                         idempotency_key: str | None = Header(None, alias='Idempotency-Key'),
                         current_user=Depends(require_influencer)):
    return serialize(await payouts.request_payout(
        current_user, UserRole.influencer.value, payload.amount, idempotency_key,
    ))


@router.get('/payouts/history')
async def payout_history(current_user=Depends(require_influencer)):
    return serialize(await payouts.payout_history(str(current_user['_id'])))
