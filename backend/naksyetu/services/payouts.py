"""Payout ledger for organizers and influencers.

Balances are never stored: every request re-derives them from completed
orders, campaign counters and the caller's pending payout requests.

    organizer net = gross - platform fee - influencer commissions - processing (if organizer pays)
    available     = net (or influencer earnings) - pending requests
"""
import logging

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from .. import db as db_mod
from .. import notifications as email_notifications
from ..auth import display_name
from ..datetime_utils import now_utc
from ..enums import NotificationType, OrderStatus, PayoutStatus, ProcessingFeePayer, UserRole
from ..utils import maybe_object_id, money, parse_object_id
from . import audit, notification_center, site_settings
from .promocodes import commission_for

logger = logging.getLogger('payouts')

PAYOUT_ROLES = (UserRole.organizer.value, UserRole.influencer.value)
DEFAULT_REJECTION_REASON = 'No reason provided.'


async def pending_amount(user_id: str) -> float:
    total = 0.0
    async for req in db_mod.db.payout_requests.find({'user_id': str(user_id), 'status': PayoutStatus.pending.value}):
        total += float(req.get('amount_requested') or 0)
    return money(total)


async def organizer_stats(organizer_id: str) -> dict:
    organizer_id = str(organizer_id)
    orders = await db_mod.db.orders.find(
        {'organizer_id': organizer_id, 'status': OrderStatus.completed.value}
    ).to_list(length=None)
    promos = await db_mod.db.promocodes.find({'organizer_id': organizer_id}).to_list(length=None)
    fees = await site_settings.get_site_settings()

    gross = money(sum(float(o.get('total') or 0) for o in orders))
    platform_fee = money(gross * float(fees['platform_fee']) / 100)
    influencer_payouts = money(sum(commission_for(p) for p in promos if p.get('influencer_id')))
    processing_fee = 0.0
    if fees['processing_fee_payer'] == ProcessingFeePayer.organizer.value:
        processing_fee = money(sum(float(o.get('processing_fee') or 0) for o in orders))
    net = money(gross - platform_fee - influencer_payouts - processing_fee)
    pending = await pending_amount(organizer_id)
    return {
        'total_revenue': gross,
        'platform_fee': platform_fee,
        'influencer_payouts': influencer_payouts,
        'processing_fee': processing_fee,
        'net_revenue': net,
        'pending_amount': pending,
        'available_for_payout': money(net - pending),
    }


async def influencer_stats(influencer_id: str) -> dict:
    influencer_id = str(influencer_id)
    campaigns = await db_mod.db.promocodes.find({'influencer_id': influencer_id}).sort('created_at', -1).to_list(length=None)
    total = money(sum(commission_for(c) for c in campaigns))
    tickets_sold = sum(int(c.get('usage_count') or 0) for c in campaigns)
    clicks = 0
    if campaigns:
        clicks = await db_mod.db.promocode_clicks.count_documents(
            {'promocode_id': {'$in': [str(c['_id']) for c in campaigns]}}
        )
    pending = await pending_amount(influencer_id)
    return {
        'total_earnings': total,
        'total_clicks': clicks,
        'tickets_sold': tickets_sold,
        'pending_payouts': pending,
        'available_for_payout': money(total - pending),
        'recent_campaigns': campaigns[:5],
    }


def organizer_audit(stats: dict, processing_applies: bool) -> list[dict]:
    lines = [
        {'source_id': 'total_revenue', 'source_name': 'Gross Revenue from all listings',
         'amount': stats['total_revenue'], 'revenue': stats['total_revenue']},
        {'source_id': 'platform_fee', 'source_name': 'NaksYetu Platform Fee', 'amount': -stats['platform_fee']},
        {'source_id': 'influencer_payouts', 'source_name': 'Total Commissions Paid to Influencers',
         'amount': -stats['influencer_payouts']},
    ]
    if processing_applies:
        lines.append({'source_id': 'processing_fee', 'source_name': 'Payment Processing Fees',
                      'amount': -stats['processing_fee']})
    return lines


async def influencer_audit(influencer_id: str) -> list[dict]:
    lines = []
    async for campaign in db_mod.db.promocodes.find({'influencer_id': str(influencer_id)}):
        amount = commission_for(campaign)
        if amount > 0:
            lines.append({
                'source_id': str(campaign['_id']),
                'source_name': f"{campaign.get('code')} for {campaign.get('listing_name')}",
                'amount': amount,
                'tickets_sold': int(campaign.get('usage_count') or 0),
                'revenue': money(campaign.get('revenue_generated')),
            })
    return lines


async def request_payout(actor: dict, role: str, amount: float, idempotency_key: str | None = None) -> dict:
    user_id = str(actor['_id'])
    if role not in PAYOUT_ROLES:
        raise HTTPException(status_code=400, detail='Payouts are available to organizers and influencers only.')
    if idempotency_key:
        existing = await db_mod.db.payout_requests.find_one({'user_id': user_id, 'idempotency_key': idempotency_key})
        if existing:
            logger.info('payout.request.idempotent user_id=%s request_id=%s', user_id, existing['_id'])
            return existing

    amount = money(amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail='Payout amount must be greater than zero.')

    if role == UserRole.organizer.value:
        payee_name = actor.get('organizer_name')
        if not payee_name or not actor.get('phone'):
            logger.info('payout.request.rejected user_id=%s reason=incomplete_profile', user_id)
            raise HTTPException(status_code=400, detail='Please complete your profile with your organizer name and '
                                                        'M-Pesa phone number before requesting a payout.')
        stats = await organizer_stats(user_id)
        fees = await site_settings.get_site_settings()
        earnings_audit = organizer_audit(stats, fees['processing_fee_payer'] == ProcessingFeePayer.organizer.value)
    else:
        payee_name = actor.get('full_name')
        if not payee_name or not actor.get('phone'):
            logger.info('payout.request.rejected user_id=%s reason=incomplete_profile', user_id)
            raise HTTPException(status_code=400, detail='Please complete your profile with your full name and '
                                                        'M-Pesa phone number before requesting a payout.')
        stats = await influencer_stats(user_id)
        earnings_audit = await influencer_audit(user_id)

    available = stats['available_for_payout']
    if amount > available:
        logger.info('payout.request.rejected user_id=%s reason=insufficient_balance amount=%s available=%s',
                    user_id, amount, available)
        raise HTTPException(status_code=400, detail=f'Requested amount exceeds available balance of Ksh {available:.2f}.')

    doc = {
        'user_id': user_id,
        'user_role': role,
        'amount_requested': amount,
        'status': PayoutStatus.pending.value,
        'requested_at': now_utc(),
        'payout_details': {'full_name': payee_name, 'mpesa_number': actor.get('phone')},
        'earnings_audit': earnings_audit,
    }
    if idempotency_key:
        doc['idempotency_key'] = idempotency_key
    try:
        await db_mod.db.payout_requests.insert_one(doc)
    except DuplicateKeyError as exc:
        existing = await db_mod.db.payout_requests.find_one({'user_id': user_id, 'idempotency_key': idempotency_key})
        if existing:
            return existing
        logger.warning('payout.request.conflict user_id=%s error=%s', user_id, exc)
        raise HTTPException(status_code=409, detail='A conflicting payout request already exists.') from exc
    logger.info('payout.request.created user_id=%s role=%s amount=%s request_id=%s', user_id, role, amount, doc['_id'])
    await notification_center.notify_admins(
        NotificationType.payout_request.value,
        f"{display_name(actor)} requested a payout of Ksh {amount:,.2f}.",
        '/admin/payouts',
    )
    return doc


async def payout_history(user_id: str) -> list[dict]:
    return await db_mod.db.payout_requests.find({'user_id': str(user_id)}).sort('requested_at', -1).to_list(length=None)


async def list_payout_requests() -> list[dict]:
    requests = await db_mod.db.payout_requests.find({}).sort('requested_at', -1).to_list(length=None)
    user_ids = {maybe_object_id(r.get('user_id')) for r in requests}
    user_ids.discard(None)
    names = {}
    if user_ids:
        async for user in db_mod.db.users.find({'_id': {'$in': list(user_ids)}}):
            names[str(user['_id'])] = user.get('name') or 'Unknown User'
    for req in requests:
        req['user_name'] = names.get(req.get('user_id'), 'Unknown User')
    return requests


async def update_payout_status(actor: dict, request_id, status, amount_disbursed: float | None = None,
                               rejection_reason: str | None = None) -> dict:
    try:
        status = PayoutStatus.normalize(status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if status in (None, PayoutStatus.pending):
        raise HTTPException(status_code=400, detail='Status must be accepted, partially_accepted or rejected.')

    oid = parse_object_id(request_id, 'payout request id')
    request = await db_mod.db.payout_requests.find_one({'_id': oid})
    if not request:
        raise HTTPException(status_code=404, detail='Payout request not found.')
    requested = money(request.get('amount_requested'))

    if status is PayoutStatus.accepted:
        disbursed = requested
    elif status is PayoutStatus.partially_accepted:
        if amount_disbursed is None:
            raise HTTPException(status_code=400, detail='amount_disbursed is required for a partial acceptance.')
        disbursed = money(amount_disbursed)
        if not 0 < disbursed <= requested:
            raise HTTPException(status_code=400, detail='amount_disbursed must be greater than 0 and at most the requested amount.')
    else:
        disbursed = 0.0

    update = {
        'status': status.value,
        'amount_disbursed': disbursed,
        'processed_at': now_utc(),
        'processor_id': str(actor['_id']),
    }
    if status is PayoutStatus.rejected:
        update['rejection_reason'] = rejection_reason or DEFAULT_REJECTION_REASON
    res = await db_mod.db.payout_requests.update_one(
        {'_id': oid, 'status': PayoutStatus.pending.value}, {'$set': update},
    )
    if not res.matched_count:
        raise HTTPException(status_code=400, detail='Only pending payout requests can be updated.')
    logger.info('payout.decided request_id=%s status=%s disbursed=%s by=%s', oid, status.value, disbursed, actor['_id'])

    await audit.log_admin_action(actor, 'update_payout_status', 'payout', oid, {
        'new_status': status.value,
        'amount_disbursed': disbursed,
        'reason': update.get('rejection_reason'),
    })
    label = status.value.replace('_', ' ')
    await notification_center.create_notification(
        NotificationType.payout_update.value,
        f'Your payout request of Ksh {requested:,.2f} was {label}.',
        f"/{request.get('user_role') or 'organizer'}/payouts",
        target_users=[request.get('user_id')],
    )
    requester = await db_mod.db.users.find_one({'_id': maybe_object_id(request.get('user_id'))})
    if requester and requester.get('email'):
        await email_notifications.send_payout_status_email(
            requester['email'], display_name(requester), status.value, requested, disbursed,
            update.get('rejection_reason'),
        )
    return {**request, **update}
