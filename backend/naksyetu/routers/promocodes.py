"""Promocode validation at checkout and per-campaign tracking links."""
from fastapi import APIRouter, Depends, HTTPException

from ..auth import get_current_user, is_admin
from ..schemas import PromocodeValidate, TrackingLinkCreate
from ..services import promocodes, tracking
from ..utils import serialize

router = APIRouter()


@router.post('/validate')
async def validate(payload: PromocodeValidate):
    return await promocodes.validate_promocode(payload.code, payload.listing_id)


def _may_link(user: dict, promo: dict) -> bool:
    uid = str(user['_id'])
    return is_admin(user) or promo.get('organizer_id') == uid or promo.get('influencer_id') == uid


@router.get('/{promocode_id}/tracking-links')
async def list_links(promocode_id: str, current_user=Depends(get_current_user)):
    promo = await promocodes.get_promocode(promocode_id)
    if not _may_link(current_user, promo):
        raise HTTPException(status_code=403, detail='Permission denied.')
    return serialize(await tracking.list_tracking_links(promocode_id=str(promo['_id'])))


@router.post('/{promocode_id}/tracking-links', status_code=201)
async def create_link(promocode_id: str, payload: TrackingLinkCreate, current_user=Depends(get_current_user)):
    """Organizer of the code or the campaign influencer may mint links."""
    promo = await promocodes.get_promocode(promocode_id)
    if not _may_link(current_user, promo):
        raise HTTPException(status_code=403, detail='Permission denied.')
    listing_id = payload.listing_id or promo.get('listing_id') or 'all'
    return serialize(await tracking.create_tracking_link(
        current_user, payload.name, listing_id, payload.listing_type, promocode=promo,
    ))
