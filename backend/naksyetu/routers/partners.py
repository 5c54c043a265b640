"""Partner applications and self-serve advertising."""
from fastapi import APIRouter, Depends, HTTPException

from ..auth import get_current_user
from ..schemas import AdSubmissionIn, PartnerRequestIn
from ..services import advertising, partner_requests
from ..utils import serialize

router = APIRouter()


######### Partner requests #########

@router.post('/partner-requests', status_code=201)
async def request_partner_role(payload: PartnerRequestIn, current_user=Depends(get_current_user)):
    return serialize(await partner_requests.request_partner_role(current_user, payload.role))


@router.get('/partner-requests/mine')
async def my_partner_requests(current_user=Depends(get_current_user)):
    return serialize(await partner_requests.my_requests(str(current_user['_id'])))


######### Ads #########

@router.post('/ads', status_code=201)
async def submit_ad(payload: AdSubmissionIn, current_user=Depends(get_current_user)):
    return serialize(await advertising.submit_ad(current_user, payload.model_dump()))


@router.get('/ads/mine')
async def my_ads(current_user=Depends(get_current_user)):
    return serialize(await advertising.my_ads(str(current_user['_id'])))


@router.get('/ads')
async def approved_ads():
    return serialize(await advertising.approved_ads())


@router.post('/ads/{ad_id}/click', status_code=202)
async def track_ad_click(ad_id: str):
    if not await advertising.track_click(ad_id):
        raise HTTPException(status_code=404, detail='Ad not found.')
    return {'status': 'recorded'}


@router.post('/ads/{ad_id}/impression', status_code=202)
async def track_ad_impression(ad_id: str):
    if not await advertising.track_impression(ad_id):
        raise HTTPException(status_code=404, detail='Ad not found.')
    return {'status': 'recorded'}
