"""Checkout: order pricing, M-Pesa STK push and the payment callback.

Prices are always re-derived from the listing's ticket definitions; the
client only names ticket types and quantities. The callback moves a
transaction out of `pending` with a single conditional update, so Daraja
retries are acknowledged without issuing tickets twice.
"""
import datetime
import hmac
import json
import logging

from bson.objectid import ObjectId
from fastapi import HTTPException

from .. import db as db_mod
from .. import notifications as email_notifications
from ..datetime_utils import now_utc
from ..enums import ADMIN_ROLES, ListingStatus, ListingType, NotificationType, OrderStatus, PaymentType, ProcessingFeePayer, TicketStatus
from ..payments_providers import mpesa
from ..settings import get_settings
from ..utils import maybe_object_id, money, mpesa_msisdn, normalize_phone, parse_object_id
from . import listings, merch, notification_center, promocodes, site_settings, tracking

logger = logging.getLogger('orders')


######### Pricing #########

def price_tickets(listing: dict, selections: list[dict], payment_type: PaymentType) -> tuple[list[dict], float]:
    """Resolve ticket selections against the listing; returns (line items, subtotal)."""
    definitions = {t.get('name'): t for t in listing.get('tickets') or []}
    booking = payment_type is PaymentType.booking
    if booking and listing.get('type') != ListingType.tour.value:
        raise HTTPException(status_code=400, detail='Booking payments are only available for tours.')

    items = []
    subtotal = 0.0
    for selection in selections:
        quantity = int(selection.get('quantity') or 0)
        if quantity <= 0:
            continue
        definition = definitions.get(selection.get('name'))
        if definition is None:
            raise HTTPException(status_code=400, detail=f"Unknown ticket type: {selection.get('name')}")
        unit = money(listing.get('booking_fee')) if booking else money(definition.get('price'))
        items.append({'name': definition['name'], 'quantity': quantity, 'price': unit})
        subtotal += unit * quantity
    if not items:
        raise HTTPException(status_code=400, detail='Select at least one ticket.')
    return items, money(subtotal)


def discount_amount(subtotal: float, promo: dict | None) -> float:
    if not promo:
        return 0.0
    value = float(promo.get('discount_value') or 0)
    if promo.get('discount_type') == 'percentage':
        return money(subtotal * value / 100)
    return money(min(value, subtotal))


def compute_totals(subtotal: float, discount: float, fees: dict) -> dict:
    base = max(subtotal - discount, 0.0)
    processing_fee = money(base * float(fees['processing_fee']) / 100)
    platform_fee = money(base * float(fees['platform_fee']) / 100)
    customer_pays = fees.get('processing_fee_payer') == ProcessingFeePayer.customer.value
    return {
        'subtotal': money(subtotal),
        'discount': money(discount),
        'processing_fee': processing_fee,
        'platform_fee': platform_fee,
        'total': money(base + (processing_fee if customer_pays else 0)),
    }


def parse_tracker_cookie(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def attributed_tracking_link(tracker: dict, promocode_id: str | None) -> str | None:
    """Keep the cookie's tracking link only when it agrees with the order's promocode."""
    link_id = tracker.get('tracking_link_id')
    if not link_id:
        return None
    tracker_promo = tracker.get('promocode_id')
    if tracker_promo and tracker_promo != promocode_id:
        return None
    return link_id


######### Orders #########

async def create_order(payload: dict, user: dict | None, tracker_cookie: str | None = None,
                       client_ip: str | None = None, user_agent: str | None = None) -> dict:
    if not (payload.get('user_name') and payload.get('user_email') and payload.get('phone_number')):
        raise HTTPException(status_code=400, detail='User name, email, and phone number are required.')
    phone = normalize_phone(payload['phone_number'])
    try:
        payment_type = PaymentType.normalize(payload.get('payment_type')) or PaymentType.full
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    listing = await listings.get_listing(payload.get('listing_type'), payload.get('listing_id'))
    if listing.get('status') != ListingStatus.published.value:
        raise HTTPException(status_code=400, detail='This listing is not available for purchase.')
    items, subtotal = price_tickets(listing, payload.get('tickets') or [], payment_type)

    promo = None
    if payload.get('promocode'):
        promo = await promocodes.validate_promocode(payload['promocode'], str(listing['_id']))
    fees = await site_settings.get_site_settings()
    totals = compute_totals(subtotal, discount_amount(subtotal, promo), fees)
    promocode_id = promo['promocode_id'] if promo else None
    tracking_link_id = attributed_tracking_link(parse_tracker_cookie(tracker_cookie), promocode_id)

    now = now_utc()
    order = {
        'user_id': str(user['_id']) if user else None,
        'user_name': payload['user_name'],
        'user_email': payload['user_email'].lower(),
        'user_phone': phone,
        'listing_id': str(listing['_id']),
        'listing_type': listing['type'],
        'listing_name': listing.get('name'),
        'listing_category': listing.get('category'),
        'listing_date': listing.get('date'),
        'organizer_id': listing.get('organizer_id'),
        'payment_type': payment_type.value,
        'tickets': items,
        **totals,
        'processing_fee_payer': fees['processing_fee_payer'],
        'status': OrderStatus.pending.value,
        'channel': payload.get('channel') or 'direct',
        'device_info': {'user_agent': user_agent, 'ip_address': client_ip, **(payload.get('device_info') or {})},
        'created_at': now,
        'updated_at': now,
    }
    if promocode_id:
        order['promocode_id'] = promocode_id
    if tracking_link_id:
        order['tracking_link_id'] = tracking_link_id
    if listing.get('free_merch'):
        order['free_merch'] = listing['free_merch']
    await db_mod.db.orders.insert_one(order)

    transaction = await _new_transaction(order, client_ip)
    logger.info('order.created order_id=%s listing_id=%s total=%s promocode_id=%s tracking_link_id=%s',
                order['_id'], order['listing_id'], order['total'], promocode_id, tracking_link_id)
    await notification_center.create_notification(
        NotificationType.new_order.value,
        f"{order['user_name']} just placed an order for {order['listing_name'] or 'an event'} worth Ksh {order['total']}.",
        f"/admin/transactions/{transaction['_id']}",
        target_roles=ADMIN_ROLES,
        target_users=[order['organizer_id']],
    )
    transaction = await initiate_payment(order, transaction)
    return {'order': order, 'transaction': transaction}


async def _new_transaction(order: dict, client_ip: str | None = None, retry_count: int = 0) -> dict:
    now = now_utc()
    transaction = {
        'order_id': str(order['_id']),
        'user_id': order.get('user_id'),
        'amount': order['total'],
        'status': OrderStatus.pending.value,
        'method': 'mpesa',
        'retry_count': retry_count,
        'ip_address': client_ip,
        'created_at': now,
        'updated_at': now,
    }
    await db_mod.db.transactions.insert_one(transaction)
    return transaction


async def initiate_payment(order: dict, transaction: dict) -> dict:
    """Send the STK push; a rejection fails both the order and the transaction."""
    try:
        result = await mpesa.initiate_stk_push(
            phone=mpesa_msisdn(order['user_phone']), amount=order['total'], order_id=str(order['_id']),
        )
    except mpesa.MpesaError as exc:
        reason = str(exc)
        await db_mod.db.transactions.update_one(
            {'_id': transaction['_id']},
            {'$set': {'status': OrderStatus.failed.value, 'fail_reason': reason, 'updated_at': now_utc()}},
        )
        await db_mod.db.orders.update_one(
            {'_id': order['_id']},
            {'$set': {'status': OrderStatus.failed.value, 'fail_reason': reason, 'updated_at': now_utc()}},
        )
        logger.warning('order.stk_failed order_id=%s reason=%s', order['_id'], reason)
        return {**transaction, 'status': OrderStatus.failed.value, 'fail_reason': reason}

    checkout_request_id = result.get('CheckoutRequestID')
    await db_mod.db.transactions.update_one(
        {'_id': transaction['_id']},
        {'$set': {'checkout_request_id': checkout_request_id, 'updated_at': now_utc()}},
    )
    return {**transaction, 'checkout_request_id': checkout_request_id}


async def retry_payment(order_id, user: dict | None) -> dict:
    order = await db_mod.db.orders.find_one({'_id': parse_object_id(order_id, 'order id')})
    if not order:
        raise HTTPException(status_code=404, detail='Order not found.')
    if order.get('user_id') and (not user or str(user['_id']) != order['user_id']):
        raise HTTPException(status_code=403, detail='Permission denied.')
    if order.get('status') != OrderStatus.failed.value:
        raise HTTPException(status_code=400, detail='Only failed orders can be retried.')
    previous = await db_mod.db.transactions.find_one({'order_id': str(order['_id'])}, sort=[('created_at', -1)])
    await db_mod.db.orders.update_one(
        {'_id': order['_id']},
        {'$set': {'status': OrderStatus.pending.value, 'updated_at': now_utc()}, '$unset': {'fail_reason': ''}},
    )
    transaction = await _new_transaction(order, retry_count=(previous or {}).get('retry_count') or 0)
    logger.info('order.retry order_id=%s transaction_id=%s', order['_id'], transaction['_id'])
    return await initiate_payment(order, transaction)


######### Callback #########

def callback_secret_ok(secret: str) -> bool:
    expected = get_settings().mpesa_callback_secret
    return bool(expected) and hmac.compare_digest(str(secret).encode(), expected.encode())


def _metadata(stk_callback: dict) -> dict:
    items = ((stk_callback.get('CallbackMetadata') or {}).get('Item')) or []
    return {item.get('Name'): item.get('Value') for item in items if isinstance(item, dict)}


async def process_callback(body: dict) -> str:
    """Apply an STK callback; returns what happened (for logging and tests)."""
    stk = ((body or {}).get('Body') or {}).get('stkCallback') or {}
    checkout_request_id = stk.get('CheckoutRequestID')
    if not checkout_request_id:
        raise HTTPException(status_code=400, detail='Invalid callback data')
    result_code = stk.get('ResultCode')
    try:
        result_code = int(result_code)
    except (TypeError, ValueError):
        result_code = -1

    transaction = await db_mod.db.transactions.find_one({'checkout_request_id': checkout_request_id})
    if not transaction:
        logger.warning('mpesa.callback.unknown checkout_request_id=%s', checkout_request_id)
        return 'unknown'

    now = now_utc()
    if result_code == 0:
        meta = _metadata(stk)
        final = {
            'status': OrderStatus.completed.value,
            'mpesa_receipt_number': meta.get('MpesaReceiptNumber'),
            'transaction_date': meta.get('TransactionDate'),
            'phone_number': meta.get('PhoneNumber'),
            'fail_reason': None,
        }
        update = {'$set': {**final, 'callback': stk, 'updated_at': now}}
    else:
        update = {
            '$set': {'status': OrderStatus.failed.value, 'fail_reason': stk.get('ResultDesc'), 'callback': stk, 'updated_at': now},
            '$inc': {'retry_count': 1},
        }
    claimed = await db_mod.db.transactions.find_one_and_update(
        {'_id': transaction['_id'], 'status': OrderStatus.pending.value}, update,
    )
    if not claimed:
        logger.info('mpesa.callback.duplicate transaction_id=%s status=%s', transaction['_id'], transaction.get('status'))
        return 'duplicate'

    if transaction.get('order_kind') == merch.ORDER_KIND:
        return await merch.settle_payment(transaction, result_code == 0, stk.get('ResultDesc'))

    order = await db_mod.db.orders.find_one({'_id': maybe_object_id(transaction['order_id'])})
    if not order:
        logger.error('mpesa.callback.order_missing transaction_id=%s order_id=%s', transaction['_id'], transaction['order_id'])
        return 'order_missing'

    if result_code != 0:
        await db_mod.db.orders.update_one(
            {'_id': order['_id']},
            {'$set': {'status': OrderStatus.failed.value, 'fail_reason': stk.get('ResultDesc'), 'updated_at': now}},
        )
        logger.info('mpesa.callback.failed order_id=%s code=%s desc=%s', order['_id'], result_code, stk.get('ResultDesc'))
        return 'failed'

    await _complete_order(order)
    return 'completed'


async def _complete_order(order: dict) -> None:
    now = now_utc()
    await db_mod.db.orders.update_one(
        {'_id': order['_id']},
        {'$set': {'status': OrderStatus.completed.value, 'completed_at': now, 'updated_at': now}},
    )
    kind = listings.listing_type(order['listing_type'])
    listing_oid = maybe_object_id(order['listing_id'])
    if listing_oid:
        await db_mod.db[kind.collection].update_one({'_id': listing_oid}, {'$inc': {'total_revenue': order['total']}})
    user_oid = maybe_object_id(order.get('user_id'))
    if user_oid:
        await db_mod.db.users.update_one({'_id': user_oid}, {'$inc': {'total_purchases': order['total']}})

    tickets = []
    if order.get('payment_type') == PaymentType.full.value:
        for item in order.get('tickets') or []:
            for _ in range(int(item.get('quantity') or 0)):
                ticket_id = ObjectId()
                tickets.append({
                    '_id': ticket_id,
                    'order_id': str(order['_id']),
                    'user_id': order.get('user_id'),
                    'user_name': order.get('user_name'),
                    'listing_id': order['listing_id'],
                    'listing_type': order['listing_type'],
                    'ticket_type': item['name'],
                    'qr_code': str(ticket_id),
                    'status': TicketStatus.valid.value,
                    'generated_by': 'online_sale',
                    'created_at': now,
                })
        if tickets:
            await db_mod.db.tickets.insert_many(tickets)

    if order.get('promocode_id'):
        await promocodes.record_redemption(order['promocode_id'], order['total'])
    if order.get('tracking_link_id'):
        await tracking.record_purchase(order['tracking_link_id'])
    logger.info('order.completed order_id=%s tickets=%d total=%s', order['_id'], len(tickets), order['total'])

    if tickets:
        await email_notifications.send_ticket_email(
            order['user_email'], order['user_name'], str(order['_id']),
            order.get('listing_name') or 'Your Booking', tickets,
        )


######### Status / follow-ups #########

def translate_mpesa_error(reason: str | None) -> str:
    if not reason:
        return 'An unknown error occurred.'
    if '1032' in reason:
        return "You cancelled the M-Pesa request on your phone. Please try again when you're ready."
    if '1037' in reason:
        return 'Oops! The M-Pesa prompt on your phone timed out. Please try again and enter your PIN more quickly.'
    if '2001' in reason:
        return 'The M-Pesa PIN you entered was incorrect. Please try again.'
    if 'The transaction is already in process' in reason:
        return 'Another payment is already in progress for this order. Please wait a moment for it to complete.'
    return reason


async def transaction_status(transaction_id) -> dict:
    transaction = await db_mod.db.transactions.find_one({'_id': parse_object_id(transaction_id, 'transaction id')})
    if not transaction:
        raise HTTPException(status_code=404, detail='Transaction not found.')
    fail_reason = transaction.get('fail_reason')
    return {
        'status': transaction.get('status'),
        'order_id': transaction.get('order_id'),
        'fail_reason': translate_mpesa_error(fail_reason) if fail_reason else None,
        'retry_count': transaction.get('retry_count') or 0,
    }


async def recent_order(user: dict | None, listing_id: str) -> dict:
    if not user or not listing_id:
        return {'recent_order': False}
    since = now_utc() - datetime.timedelta(minutes=get_settings().recent_order_window_minutes)
    order = await db_mod.db.orders.find_one(
        {'user_id': str(user['_id']), 'listing_id': listing_id, 'status': OrderStatus.completed.value,
         'created_at': {'$gte': since}},
        sort=[('created_at', -1)],
    )
    if not order:
        return {'recent_order': False}
    return {'recent_order': True, 'order_id': str(order['_id'])}


async def log_feedback(user: dict | None, rating: int, reason: str | None, order_id: str | None) -> dict:
    if not 1 <= int(rating) <= 5:
        raise HTTPException(status_code=400, detail='Rating must be between 1 and 5.')
    feedback = {
        'order_id': order_id,
        'user_id': str(user['_id']) if user else None,
        'rating': int(rating),
        'created_at': now_utc(),
    }
    if reason:
        feedback['reason'] = reason
    await db_mod.db.checkout_feedback.insert_one(feedback)
    points = 0
    if user:
        points = get_settings().checkout_feedback_points
        await db_mod.db.users.update_one({'_id': user['_id']}, {'$inc': {'loyalty_points': points}})
    logger.info('checkout.feedback order_id=%s rating=%s points=%s', order_id, rating, points)
    return {'points_awarded': points}


async def orders_for_user(user: dict) -> list[dict]:
    return await db_mod.db.orders.find({'user_id': str(user['_id'])}).sort('created_at', -1).to_list(length=None)


async def tickets_for_user(user: dict) -> list[dict]:
    return await db_mod.db.tickets.find({'user_id': str(user['_id'])}).sort('created_at', -1).to_list(length=None)
