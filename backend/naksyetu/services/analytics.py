"""Admin and organizer reporting, aggregated in application code."""
import datetime
import logging
from collections import defaultdict

from fastapi import HTTPException
from pymongo.errors import PyMongoError

from .. import db as db_mod
from ..datetime_utils import now_utc, parse_iso
from ..enums import ListingStatus, ListingType, OrderStatus, UserRole
from ..utils import maybe_object_id, money

logger = logging.getLogger('analytics')

TRACKED_ACTIONS = ('click_event', 'start_checkout')
ROLE_ORDER = ('attendee', 'organizer', 'influencer', 'club', 'verifier', 'admin', 'super-admin')
TIMING_BUCKETS = ('Early Bird (>14 days)', 'Standard (3-14 days)', 'Last Minute (<3 days)', 'Same Day')


def _day(value) -> str | None:
    try:
        dt = parse_iso(value)
    except ValueError:
        return None
    return dt.strftime('%Y-%m-%d') if dt else None


async def _completed_orders() -> list[dict]:
    return await db_mod.db.orders.find({'status': OrderStatus.completed.value}).sort('created_at', -1).to_list(length=None)


async def dashboard() -> dict:
    total_users = await db_mod.db.users.count_documents({})
    total_events = await db_mod.db[ListingType.event.collection].count_documents({})
    recent_users = await db_mod.db.users.find({}).sort('created_at', -1).limit(5).to_list(length=5)
    recent_orders = await db_mod.db.orders.find({}).sort('created_at', -1).limit(5).to_list(length=5)
    orders = await _completed_orders()

    sales = defaultdict(float)
    for order in orders:
        day = _day(order.get('created_at'))
        if day:
            sales[day] += float(order.get('total') or 0)
    return {
        'total_users': total_users,
        'total_revenue': money(sum(float(o.get('total') or 0) for o in orders)),
        'total_events': total_events,
        'recent_users': recent_users,
        'recent_orders': recent_orders,
        'sales_chart_data': [{'date': d, 'revenue': round(v)} for d, v in sorted(sales.items())],
    }


def purchase_timing_bucket(purchased_at, event_date) -> str | None:
    try:
        purchased, starts = parse_iso(purchased_at), parse_iso(event_date)
    except ValueError:
        return None
    if not purchased or not starts:
        return None
    days_before = (starts - purchased).days
    if days_before > 14:
        return TIMING_BUCKETS[0]
    if days_before > 2:
        return TIMING_BUCKETS[1]
    if days_before >= 1:
        return TIMING_BUCKETS[2]
    return TIMING_BUCKETS[3]


async def admin_analytics(days: int = 30) -> dict:
    now = now_utc()
    since = now - datetime.timedelta(days=days)

    signups = {(now - datetime.timedelta(days=i)).strftime('%Y-%m-%d'): 0 for i in range(days)}
    async for user in db_mod.db.users.find({'created_at': {'$gte': since}}):
        day = _day(user.get('created_at'))
        if day:
            signups[day] = signups.get(day, 0) + 1
    user_growth = [{'date': d, 'users': c} for d, c in sorted(signups.items())]

    role_counts = []
    for role in ROLE_ORDER:
        count = await db_mod.db.users.count_documents({'role': role})
        if role == UserRole.attendee.value:
            # users created without an explicit role are attendees
            count += await db_mod.db.users.count_documents({'role': {'$exists': False}})
        if count:
            role_counts.append({'role': role.capitalize(), 'count': count})

    events = {str(e['_id']): e async for e in db_mod.db[ListingType.event.collection].find({})}
    orders = await _completed_orders()
    revenue_by_category = defaultdict(float)
    traffic = defaultdict(int)
    spenders: dict[str, dict] = {}
    timing = {bucket: 0 for bucket in TIMING_BUCKETS}
    for order in orders:
        event = events.get(order.get('listing_id'))
        category = (event or {}).get('category') or order.get('listing_category')
        if category:
            revenue_by_category[category] += float(order.get('total') or 0)
        traffic[order.get('channel') or 'direct'] += 1
        if order.get('user_id'):
            entry = spenders.setdefault(order['user_id'], {
                'user_id': order['user_id'], 'user_name': order.get('user_name'), 'total_spent': 0.0, 'order_count': 0,
            })
            entry['total_spent'] = money(entry['total_spent'] + float(order.get('total') or 0))
            entry['order_count'] += 1
        if event:
            bucket = purchase_timing_bucket(order.get('created_at'), event.get('date'))
            if bucket:
                timing[bucket] += 1

    promos = await db_mod.db.promocodes.find({'usage_count': {'$gt': 0}}).sort('revenue_generated', -1).limit(10).to_list(length=10)
    influencer_ids = [oid for oid in (maybe_object_id(p.get('influencer_id')) for p in promos) if oid]
    influencer_names = {}
    if influencer_ids:
        async for user in db_mod.db.users.find({'_id': {'$in': influencer_ids}}):
            influencer_names[str(user['_id'])] = user.get('name')

    funnel = {
        'views': await db_mod.db.user_events.count_documents({'action': 'click_event'}),
        'checkouts': await db_mod.db.user_events.count_documents({'action': 'start_checkout'}),
        'purchases': len(orders),
    }

    return {
        'user_growth_data': user_growth,
        'user_roles_data': role_counts,
        'revenue_by_category_data': sorted(
            ({'category': c, 'revenue': round(v)} for c, v in revenue_by_category.items()),
            key=lambda r: r['revenue'], reverse=True,
        ),
        'traffic_source_data': sorted(
            ({'channel': c.capitalize(), 'count': n} for c, n in traffic.items()),
            key=lambda r: r['count'], reverse=True,
        ),
        'top_spenders_data': sorted(spenders.values(), key=lambda s: s['total_spent'], reverse=True)[:10],
        'top_promocodes_data': [{
            'code': p.get('code'),
            'influencer_name': influencer_names.get(p.get('influencer_id'), 'N/A'),
            'usage_count': p.get('usage_count') or 0,
            'revenue_generated': money(p.get('revenue_generated')),
        } for p in promos],
        'conversion_funnel': funnel,
        'purchase_timing_data': [{'category': b, 'count': c} for b, c in timing.items()],
    }


async def organizer_global_stats(organizer_id: str) -> dict:
    organizer_id = str(organizer_id)
    events = await db_mod.db[ListingType.event.collection].find(
        {'organizer_id': organizer_id, 'status': ListingStatus.published.value}
    ).to_list(length=None)
    orders = await db_mod.db.orders.find(
        {'organizer_id': organizer_id, 'status': OrderStatus.completed.value}
    ).to_list(length=None)

    def _tickets(order):
        return sum(int(t.get('quantity') or 0) for t in order.get('tickets') or [])

    per_event = []
    for event in events:
        event_orders = [o for o in orders if o.get('listing_id') == str(event['_id'])]
        per_event.append({
            'id': str(event['_id']),
            'name': event.get('name'),
            'revenue': money(sum(float(o.get('total') or 0) for o in event_orders)),
            'tickets_sold': sum(_tickets(o) for o in event_orders),
        })
    return {
        'total_revenue': money(sum(float(o.get('total') or 0) for o in orders)),
        'total_tickets_sold': sum(_tickets(o) for o in orders),
        'total_events': len(events),
        'top_events': sorted(per_event, key=lambda e: e['revenue'], reverse=True),
    }


async def track_user_event(action: str, listing_id: str | None, user: dict | None) -> None:
    if action not in TRACKED_ACTIONS:
        raise HTTPException(status_code=400, detail=f"action must be one of: {', '.join(TRACKED_ACTIONS)}")
    try:
        await db_mod.db.user_events.insert_one({
            'action': action,
            'listing_id': listing_id,
            'user_id': str(user['_id']) if user else None,
            'timestamp': now_utc(),
        })
    except PyMongoError as exc:
        logger.error('analytics.track_failed action=%s error=%s', action, exc)
