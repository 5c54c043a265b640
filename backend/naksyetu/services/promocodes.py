"""Promocodes and influencer campaigns."""
import logging

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from .. import db as db_mod
from .. import notifications as email_notifications
from ..auth import display_name, user_role
from ..datetime_utils import ensure_aware, now_utc, parse_iso
from ..enums import ADMIN_ROLES, CampaignStatus, DiscountType, NotificationType, UserRole
from ..utils import maybe_object_id, money, parse_object_id
from . import audit, notification_center

logger = logging.getLogger('promocodes')

COMMISSION_FIELDS = ('influencer_id', 'commission_type', 'commission_value')
INFLUENCER_LOOKUP_ROLES = {UserRole.influencer.value, *ADMIN_ROLES}


def commission_for(promocode: dict) -> float:
    """Influencer earnings on a campaign: per use for fixed, share of revenue for percentage."""
    value = float(promocode.get('commission_value') or 0)
    if not value:
        return 0.0
    if promocode.get('commission_type') == DiscountType.fixed.value:
        return money((promocode.get('usage_count') or 0) * value)
    if promocode.get('commission_type') == DiscountType.percentage.value:
        return money((promocode.get('revenue_generated') or 0) * value / 100)
    return 0.0


def _commission_label(promocode: dict) -> str:
    value = promocode.get('commission_value') or 0
    if promocode.get('commission_type') == DiscountType.percentage.value:
        return f'{value}% of revenue'
    return f'Ksh {float(value):,.2f} per ticket'


async def find_influencer_by_username(username: str) -> dict:
    username = (username or '').strip()
    if not username:
        raise HTTPException(status_code=400, detail='Username is required.')
    user = await db_mod.db.users.find_one({'name_lower': username.lower()})
    if not user:
        raise HTTPException(status_code=404, detail='No user found with that username.')
    if user_role(user) not in INFLUENCER_LOOKUP_ROLES:
        raise HTTPException(status_code=400, detail='This user is not an influencer.')
    return {'uid': str(user['_id']), 'name': user.get('name'), 'photo_url': user.get('photo_url')}


def _checked_discount(discount_type: DiscountType, value) -> float:
    discount_value = float(value or 0)
    if discount_value <= 0:
        raise HTTPException(status_code=400, detail='Discount value must be positive.')
    if discount_type is DiscountType.percentage and discount_value > 100:
        raise HTTPException(status_code=400, detail='A percentage discount cannot exceed 100.')
    return discount_value


async def create_promocode(actor: dict, data: dict) -> dict:
    code = (data.get('code') or '').strip().upper()
    if not code:
        raise HTTPException(status_code=400, detail='Promocode is required.')
    try:
        discount_type = DiscountType.normalize(data.get('discount_type')) or DiscountType.percentage
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    discount_value = _checked_discount(discount_type, data.get('discount_value'))

    now = now_utc()
    doc = {
        'organizer_id': str(data.get('organizer_id') or actor['_id']),
        'code': code,
        'discount_type': discount_type.value,
        'discount_value': discount_value,
        'usage_limit': max(int(data.get('usage_limit') or 0), 0),
        'usage_count': 0,
        'revenue_generated': 0.0,
        'expires_at': parse_iso(data.get('expires_at')),
        'listing_type': data.get('listing_type') or 'all',
        'listing_id': data.get('listing_id') or None,
        'listing_name': data.get('listing_name') or 'All Events',
        'user_id': data.get('user_id') or None,
        'is_active': True,
        'created_at': now,
        'updated_at': now,
    }
    influencer = None
    if data.get('influencer_id'):
        influencer = await db_mod.db.users.find_one({'_id': parse_object_id(data['influencer_id'], 'influencer id')})
        if not influencer:
            raise HTTPException(status_code=404, detail='Influencer not found.')
        if user_role(influencer) not in INFLUENCER_LOOKUP_ROLES:
            raise HTTPException(status_code=400, detail='This user is not an influencer.')
        try:
            commission_type = DiscountType.normalize(data.get('commission_type')) or DiscountType.percentage
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        doc.update({
            'influencer_id': str(influencer['_id']),
            'commission_type': commission_type.value,
            'commission_value': float(data.get('commission_value') or 0),
            'influencer_status': CampaignStatus.pending.value,
        })

    try:
        await db_mod.db.promocodes.insert_one(doc)
    except DuplicateKeyError as exc:
        raise HTTPException(status_code=400, detail='A promocode with this code already exists.') from exc

    logger.info('promocode.created id=%s code=%s influencer_id=%s', doc['_id'], code, doc.get('influencer_id'))
    await audit.log_admin_action(actor, 'create_promocode', 'promocode', doc['_id'], {
        'code': code,
        'listing_name': doc['listing_name'],
        'influencer_id': doc.get('influencer_id') or 'N/A',
    })
    if influencer:
        await notification_center.create_notification(
            NotificationType.partner_request.value,
            f"You have been invited to a new campaign for {doc['listing_name']}.",
            '/influencer/campaigns',
            target_roles=[UserRole.influencer.value],
            target_users=[doc['influencer_id']],
        )
        if influencer.get('email'):
            await email_notifications.send_campaign_invitation_email(
                influencer['email'], display_name(influencer), actor.get('organizer_name') or display_name(actor),
                doc['listing_name'], code, _commission_label(doc),
            )
    return doc


async def get_promocode(promocode_id) -> dict:
    promo = await db_mod.db.promocodes.find_one({'_id': parse_object_id(promocode_id, 'promocode id')})
    if not promo:
        raise HTTPException(status_code=404, detail='Promocode not found.')
    return promo


def _can_manage(actor: dict, promo: dict) -> bool:
    return user_role(actor) in ADMIN_ROLES or promo.get('organizer_id') == str(actor['_id'])


async def list_for_organizer(organizer_id: str) -> list[dict]:
    promos = await db_mod.db.promocodes.find({'organizer_id': str(organizer_id)}).sort('created_at', -1).to_list(length=None)
    influencer_ids = {maybe_object_id(p['influencer_id']) for p in promos if p.get('influencer_id')}
    influencer_ids.discard(None)
    names = {}
    if influencer_ids:
        async for user in db_mod.db.users.find({'_id': {'$in': list(influencer_ids)}}):
            names[str(user['_id'])] = user.get('name') or 'Unnamed Influencer'
    for promo in promos:
        promo['influencer_name'] = names.get(promo.get('influencer_id'), 'Unknown') if promo.get('influencer_id') else 'N/A'
        promo['influencer_payout'] = commission_for(promo)
    return promos


async def update_promocode(actor: dict, promocode_id, changes: dict) -> dict:
    promo = await get_promocode(promocode_id)
    if not _can_manage(actor, promo):
        raise HTTPException(status_code=403, detail='Permission denied.')
    allowed = {'discount_value', 'usage_limit', 'expires_at', 'is_active', 'listing_name'}
    update = {k: v for k, v in changes.items() if k in allowed and v is not None}
    if 'expires_at' in update:
        update['expires_at'] = parse_iso(update['expires_at'])
    if 'usage_limit' in update:
        update['usage_limit'] = max(int(update['usage_limit']), 0)
    if 'discount_value' in update:
        discount_type = DiscountType.normalize(promo.get('discount_type')) or DiscountType.percentage
        update['discount_value'] = _checked_discount(discount_type, update['discount_value'])
    update['updated_at'] = now_utc()
    await db_mod.db.promocodes.update_one({'_id': promo['_id']}, {'$set': update})
    logger.info('promocode.updated id=%s fields=%s', promo['_id'], sorted(update))
    return {**promo, **update}


async def deactivate_promocode(actor: dict, promocode_id) -> dict:
    return await update_promocode(actor, promocode_id, {'is_active': False})


async def list_campaigns(influencer_id: str) -> list[dict]:
    promos = await db_mod.db.promocodes.find({'influencer_id': str(influencer_id)}).sort('created_at', -1).to_list(length=None)
    for promo in promos:
        promo['earnings'] = commission_for(promo)
    return promos


async def respond_to_campaign(influencer: dict, promocode_id, accept: bool) -> dict:
    promo = await get_promocode(promocode_id)
    if promo.get('influencer_id') != str(influencer['_id']):
        raise HTTPException(status_code=403, detail='Permission denied.')
    status = CampaignStatus.accepted if accept else CampaignStatus.rejected
    res = await db_mod.db.promocodes.update_one(
        {'_id': promo['_id'], 'influencer_status': CampaignStatus.pending.value},
        {'$set': {'influencer_status': status.value, 'updated_at': now_utc()}},
    )
    if not res.matched_count:
        raise HTTPException(status_code=400, detail='This campaign has already been answered.')
    logger.info('campaign.responded id=%s influencer_id=%s status=%s', promo['_id'], influencer['_id'], status.value)
    return {**promo, 'influencer_status': status.value}


def _expired(promo: dict) -> bool:
    expires_at = promo.get('expires_at')
    return bool(expires_at) and ensure_aware(parse_iso(expires_at)) < now_utc()


def _exhausted(promo: dict) -> bool:
    limit = promo.get('usage_limit') or 0
    return limit > 0 and (promo.get('usage_count') or 0) >= limit


async def validate_promocode(code: str, listing_id: str | None) -> dict:
    """Check a code against a listing; raises 400 with the first failing rule."""
    promo = await db_mod.db.promocodes.find_one({'code': (code or '').strip().upper()}) if code else None
    if not promo:
        raise HTTPException(status_code=400, detail='This promocode is not valid.')
    if promo.get('listing_id') and promo['listing_id'] != 'all' and promo['listing_id'] != str(listing_id):
        raise HTTPException(status_code=400, detail='This promocode is not valid for this event.')
    if not promo.get('is_active'):
        raise HTTPException(status_code=400, detail='This promocode is no longer active.')
    if promo.get('influencer_id') and promo.get('influencer_status') != CampaignStatus.accepted.value:
        raise HTTPException(status_code=400, detail='This promocode is not ready yet.')
    if _expired(promo):
        raise HTTPException(status_code=400, detail='This promocode has expired.')
    if _exhausted(promo):
        raise HTTPException(status_code=400, detail='This promocode has reached its usage limit.')
    return {
        'promocode_id': str(promo['_id']),
        'code': promo['code'],
        'discount_type': promo['discount_type'],
        'discount_value': promo['discount_value'],
    }


async def user_coupons(user_id: str) -> list[dict]:
    promos = await db_mod.db.promocodes.find({'user_id': str(user_id), 'is_active': True}).to_list(length=None)
    return [p for p in promos if not _expired(p) and not _exhausted(p)]


async def record_redemption(promocode_id, order_total: float) -> None:
    oid = maybe_object_id(promocode_id)
    if oid is None:
        return
    await db_mod.db.promocodes.update_one(
        {'_id': oid},
        {'$inc': {'usage_count': 1, 'revenue_generated': money(order_total)}},
    )
    logger.info('promocode.redeemed id=%s amount=%s', oid, money(order_total))
