"""Banner ad campaigns submitted by users and moderated by admins."""
import logging

from fastapi import HTTPException

from .. import db as db_mod
from ..auth import display_name
from ..datetime_utils import now_utc
from ..enums import NotificationType, ReviewStatus
from ..utils import maybe_object_id, parse_object_id
from . import audit, notification_center

logger = logging.getLogger('advertising')


def _check_link(url: str) -> str:
    url = (url or '').strip()
    if not url.lower().startswith(('http://', 'https://', '/')):
        raise HTTPException(status_code=400, detail='The call-to-action link must be a web address.')
    return url


async def submit_ad(user: dict, data: dict) -> dict:
    doc = {
        'user_id': str(user['_id']),
        'campaign_name': data['campaign_name'].strip(),
        'image_urls': [u.strip() for u in data['image_urls'] if u and u.strip()],
        'cta_text': data['cta_text'].strip(),
        'cta_link': _check_link(data['cta_link']),
        'priority': int(data.get('priority') or 1),
        'duration': data.get('duration') or '7d',
        'is_adult_content': bool(data.get('is_adult_content')),
        'status': ReviewStatus.pending.value,
        'impressions': 0,
        'clicks': 0,
        'created_at': now_utc(),
    }
    if not doc['image_urls']:
        raise HTTPException(status_code=400, detail='At least one image is required.')
    await db_mod.db.ad_submissions.insert_one(doc)
    logger.info('ad.submitted id=%s user_id=%s', doc['_id'], doc['user_id'])
    await notification_center.notify_admins(
        NotificationType.ad_submission.value,
        f'{display_name(user)} submitted a new ad campaign "{doc["campaign_name"]}" for review.',
        '/admin/requests',
    )
    return doc


async def my_ads(user_id: str) -> list[dict]:
    return await db_mod.db.ad_submissions.find({'user_id': str(user_id)}).sort('created_at', -1).to_list(length=None)


async def list_ads(status: str | None = None) -> list[dict]:
    query = {}
    if status:
        try:
            query['status'] = ReviewStatus.normalize(status).value
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return await db_mod.db.ad_submissions.find(query).sort('created_at', -1).to_list(length=None)


async def approved_ads() -> list[dict]:
    """Ads currently eligible for display, highest priority first."""
    return await db_mod.db.ad_submissions.find(
        {'status': ReviewStatus.approved.value}
    ).sort('priority', -1).to_list(length=None)


async def set_status(actor: dict, ad_id, status: ReviewStatus) -> dict:
    if status not in (ReviewStatus.approved, ReviewStatus.rejected):
        raise HTTPException(status_code=400, detail='Status must be approved or rejected.')
    oid = parse_object_id(ad_id, 'ad id')
    ad = await db_mod.db.ad_submissions.find_one({'_id': oid})
    if not ad:
        raise HTTPException(status_code=404, detail='Ad not found.')
    update = {'status': status.value, 'reviewed_at': now_utc(), 'reviewer_id': str(actor['_id'])}
    await db_mod.db.ad_submissions.update_one({'_id': oid}, {'$set': update})
    logger.info('ad.status id=%s status=%s by=%s', oid, status.value, actor['_id'])
    await audit.log_admin_action(actor, 'update_ad_status', 'ad', oid, {'new_status': status.value})
    await notification_center.create_notification(
        NotificationType.ad_submission.value,
        f'Your ad campaign "{ad.get("campaign_name")}" was {status.value}.',
        '/advertising/dashboard',
        target_users=[ad.get('user_id')],
    )
    return {**ad, **update}


async def _bump(ad_id, field: str) -> bool:
    oid = maybe_object_id(ad_id)
    if oid is None:
        return False
    res = await db_mod.db.ad_submissions.update_one(
        {'_id': oid, 'status': ReviewStatus.approved.value}, {'$inc': {field: 1}},
    )
    return res.matched_count > 0


async def track_click(ad_id) -> bool:
    return await _bump(ad_id, 'clicks')


async def track_impression(ad_id) -> bool:
    return await _bump(ad_id, 'impressions')
