"""Short link redirects (`/l/{short_id}`) with click attribution."""
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import RedirectResponse

from ..services import shortlinks, tracking
from ..settings import get_settings

logger = logging.getLogger('shortlinks')

router = APIRouter()


@router.get('/l/{short_id}', include_in_schema=False)
async def follow_short_link(short_id: str, request: Request, background_tasks: BackgroundTasks):
    link = await shortlinks.get_short_link(short_id)
    if not link:
        logger.info('shortlink.miss short_id=%s', short_id)
        return RedirectResponse(shortlinks.absolute_url('/not-found'), status_code=307)

    response = RedirectResponse(shortlinks.absolute_url(link['long_url']), status_code=307)
    if link.get('tracking_link_id'):
        background_tasks.add_task(tracking.track_link_click, link['tracking_link_id'])
        cfg = get_settings()
        response.set_cookie(
            cfg.tracker_cookie_name,
            json.dumps({'tracking_link_id': link['tracking_link_id'], 'promocode_id': link.get('promocode_id')}),
            max_age=cfg.tracker_cookie_max_age,
            path='/',
            samesite='lax',
        )
    elif link.get('invitation_id'):
        ip = getattr(request.state, 'client_ip', None) or (request.client.host if request.client else None)
        background_tasks.add_task(
            shortlinks.record_invitation_click, link['invitation_id'], ip, request.headers.get('user-agent'),
        )
    return response
