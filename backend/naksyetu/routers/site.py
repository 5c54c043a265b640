"""Public site-wide endpoints: fee settings and funnel event tracking."""
from fastapi import APIRouter, Depends

from ..auth import get_optional_user
from ..schemas import TrackEventIn
from ..services import analytics, site_settings

router = APIRouter()


@router.get('/settings')
async def public_settings():
    return await site_settings.get_site_settings()


@router.post('/events/track', status_code=202)
async def track_event(payload: TrackEventIn, current_user=Depends(get_optional_user)):
    await analytics.track_user_event(payload.action, payload.listing_id, current_user)
    return {'status': 'recorded'}
