"""Merchandise shop: products, paid orders and pickup.

Stock is reserved when the order is created, with a conditional decrement
per item, and released again when the payment fails. A paid order waits
for pickup until staff redeem its confirmation code.
"""
import logging
import secrets

from fastapi import HTTPException

from .. import db as db_mod
from .. import notifications as email_notifications
from ..datetime_utils import now_utc
from ..enums import ADMIN_ROLES, MerchOrderStatus, NotificationType, OrderStatus, ProductStatus
from ..payments_providers import mpesa
from ..utils import maybe_object_id, money, mpesa_msisdn, normalize_phone, parse_object_id
from . import audit, notification_center

logger = logging.getLogger('merch')

ORDER_KIND = 'merch'
PRODUCT_FIELDS = ('name', 'description', 'price', 'discount_price', 'image_urls', 'sizes', 'colors', 'stock')


######### Products #########

def unit_price(product: dict) -> float:
    discount = product.get('discount_price')
    if discount and discount < product['price']:
        return money(discount)
    return money(product['price'])


async def create_product(actor: dict, data: dict) -> dict:
    now = now_utc()
    doc = {k: data.get(k) for k in PRODUCT_FIELDS}
    doc.update({'status': ProductStatus.active.value, 'created_at': now, 'updated_at': now})
    await db_mod.db.products.insert_one(doc)
    logger.info('product.created id=%s stock=%s', doc['_id'], doc['stock'])
    await audit.log_admin_action(actor, 'create_product', 'content', doc['_id'], {'name': doc['name']})
    return doc


async def get_product(product_id, include_hidden: bool = False) -> dict:
    product = await db_mod.db.products.find_one({'_id': parse_object_id(product_id, 'product id')})
    if not product or (not include_hidden and product.get('status') != ProductStatus.active.value):
        raise HTTPException(status_code=404, detail='Product not found.')
    return product


async def list_products(include_hidden: bool = False) -> list[dict]:
    query = {} if include_hidden else {'status': ProductStatus.active.value}
    return await db_mod.db.products.find(query).sort('created_at', -1).to_list(length=None)


async def update_product(actor: dict, product_id, changes: dict) -> dict:
    product = await get_product(product_id, include_hidden=True)
    update = {k: v for k, v in changes.items() if k in PRODUCT_FIELDS and v is not None}
    update['updated_at'] = now_utc()
    await db_mod.db.products.update_one({'_id': product['_id']}, {'$set': update})
    await audit.log_admin_action(actor, 'update_product', 'content', product['_id'], {
        'name': update.get('name', product.get('name')),
        'fields': sorted(k for k in update if k != 'updated_at'),
    })
    return {**product, **update}


async def set_product_status(actor: dict, product_id, status) -> dict:
    try:
        status = ProductStatus.normalize(status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if status is None:
        raise HTTPException(status_code=400, detail='Status is required.')
    product = await get_product(product_id, include_hidden=True)
    await db_mod.db.products.update_one(
        {'_id': product['_id']}, {'$set': {'status': status.value, 'updated_at': now_utc()}},
    )
    logger.info('product.status id=%s status=%s by=%s', product['_id'], status.value, actor['_id'])
    await audit.log_admin_action(actor, 'update_product_status', 'content', product['_id'], {
        'name': product.get('name'),
        'new_status': status.value,
    })
    return {**product, 'status': status.value}


######### Stock #########

async def _release(items: list[dict]) -> None:
    for item in items:
        oid = maybe_object_id(item.get('product_id'))
        if oid is not None:
            await db_mod.db.products.update_one({'_id': oid}, {'$inc': {'stock': int(item['quantity'])}})


async def _reserve(selections: list[dict]) -> list[dict]:
    """Price and reserve every selection; nothing stays reserved when one fails."""
    reserved: list[dict] = []
    try:
        for sel in selections:
            product = await get_product(sel.get('product_id'))
            quantity = int(sel.get('quantity') or 0)
            if quantity < 1:
                raise HTTPException(status_code=400, detail='Quantity must be at least 1.')
            for option, choices in (('size', product.get('sizes')), ('color', product.get('colors'))):
                if choices and sel.get(option) not in choices:
                    raise HTTPException(status_code=400, detail=f"Please choose a valid {option} for {product['name']}.")
            res = await db_mod.db.products.update_one(
                {'_id': product['_id'], 'status': ProductStatus.active.value, 'stock': {'$gte': quantity}},
                {'$inc': {'stock': -quantity}},
            )
            if not res.matched_count:
                raise HTTPException(status_code=400, detail=f"Insufficient stock for {product['name']}.")
            reserved.append({
                'product_id': str(product['_id']),
                'product_name': product['name'],
                'size': sel.get('size'),
                'color': sel.get('color'),
                'quantity': quantity,
                'price': unit_price(product),
            })
    except HTTPException:
        await _release(reserved)
        raise
    return reserved


######### Orders #########

async def _fail(order: dict, transaction_id, reason: str | None) -> None:
    now = now_utc()
    failed = await db_mod.db.merch_orders.update_one(
        {'_id': order['_id'], 'status': MerchOrderStatus.pending.value},
        {'$set': {'status': MerchOrderStatus.failed.value, 'fail_reason': reason, 'updated_at': now}},
    )
    if failed.matched_count:
        await _release(order['items'])
    if transaction_id is not None:
        await db_mod.db.transactions.update_one(
            {'_id': transaction_id, 'status': OrderStatus.pending.value},
            {'$set': {'status': OrderStatus.failed.value, 'fail_reason': reason, 'updated_at': now}},
        )


async def create_merch_order(payload: dict, user: dict | None, client_ip: str | None = None) -> dict:
    phone = normalize_phone(payload['phone_number'])
    items = await _reserve(payload['items'])
    now = now_utc()
    order = {
        'user_id': str(user['_id']) if user else None,
        'user_name': payload['user_name'],
        'user_email': str(payload['user_email']).lower(),
        'user_phone': phone,
        'items': items,
        'total': money(sum(i['price'] * i['quantity'] for i in items)),
        'status': MerchOrderStatus.pending.value,
        'confirmation_code': secrets.token_hex(4).upper(),
        'created_at': now,
        'updated_at': now,
    }
    await db_mod.db.merch_orders.insert_one(order)
    transaction = {
        'order_id': str(order['_id']),
        'order_kind': ORDER_KIND,
        'user_id': order['user_id'],
        'amount': order['total'],
        'status': OrderStatus.pending.value,
        'method': 'mpesa',
        'retry_count': 0,
        'ip_address': client_ip,
        'created_at': now,
        'updated_at': now,
    }
    await db_mod.db.transactions.insert_one(transaction)
    await db_mod.db.merch_orders.update_one({'_id': order['_id']}, {'$set': {'transaction_id': str(transaction['_id'])}})
    order['transaction_id'] = str(transaction['_id'])
    logger.info('merch.order.created order_id=%s total=%s items=%s', order['_id'], order['total'], len(items))

    try:
        result = await mpesa.initiate_stk_push(
            phone=mpesa_msisdn(order['user_phone']), amount=order['total'], order_id=str(order['_id']),
        )
    except mpesa.MpesaError as exc:
        reason = str(exc)
        await _fail(order, transaction['_id'], reason)
        logger.warning('merch.order.stk_failed order_id=%s reason=%s', order['_id'], reason)
        order.update({'status': MerchOrderStatus.failed.value, 'fail_reason': reason})
        transaction.update({'status': OrderStatus.failed.value, 'fail_reason': reason})
        return {'order': order, 'transaction': transaction}

    checkout_request_id = result.get('CheckoutRequestID')
    await db_mod.db.transactions.update_one(
        {'_id': transaction['_id']},
        {'$set': {'checkout_request_id': checkout_request_id, 'updated_at': now_utc()}},
    )
    transaction['checkout_request_id'] = checkout_request_id
    return {'order': order, 'transaction': transaction}


async def settle_payment(transaction: dict, paid: bool, reason: str | None = None) -> str:
    """Apply a claimed M-Pesa callback to the merch order behind `transaction`."""
    order = await db_mod.db.merch_orders.find_one({'_id': maybe_object_id(transaction.get('order_id'))})
    if not order:
        logger.error('merch.callback.order_missing transaction_id=%s', transaction['_id'])
        return 'order_missing'
    if not paid:
        await _fail(order, None, reason)
        logger.info('merch.order.failed order_id=%s reason=%s', order['_id'], reason)
        return 'failed'

    now = now_utc()
    await db_mod.db.merch_orders.update_one(
        {'_id': order['_id'], 'status': MerchOrderStatus.pending.value},
        {'$set': {'status': MerchOrderStatus.awaiting_pickup.value, 'paid_at': now, 'updated_at': now}},
    )
    logger.info('merch.order.paid order_id=%s total=%s', order['_id'], order['total'])
    await notification_center.create_notification(
        NotificationType.new_order.value,
        f"{order['user_name']} bought merchandise worth Ksh {order['total']}.",
        '/admin/shop/orders',
        target_roles=ADMIN_ROLES,
    )
    await email_notifications.send_merch_pickup_email(
        order['user_email'], order['user_name'], order['confirmation_code'], order['total'], order['items'],
    )
    return 'completed'


async def complete_pickup(actor: dict, confirmation_code: str) -> dict:
    code = (confirmation_code or '').strip().upper()
    order = await db_mod.db.merch_orders.find_one({'confirmation_code': code}) if code else None
    if not order:
        raise HTTPException(status_code=404, detail='No order found with that confirmation code.')
    now = now_utc()
    res = await db_mod.db.merch_orders.update_one(
        {'_id': order['_id'], 'status': MerchOrderStatus.awaiting_pickup.value},
        {'$set': {'status': MerchOrderStatus.completed.value, 'completed_at': now,
                  'completed_by': str(actor['_id']), 'updated_at': now}},
    )
    if not res.matched_count:
        if order.get('status') == MerchOrderStatus.completed.value:
            raise HTTPException(status_code=400, detail='This order has already been collected.')
        raise HTTPException(status_code=400, detail='This order has not been paid for.')
    logger.info('merch.order.collected order_id=%s by=%s', order['_id'], actor['_id'])
    await audit.log_admin_action(actor, 'complete_merch_order', 'merch_order', order['_id'], {'code': code})
    return {**order, 'status': MerchOrderStatus.completed.value, 'completed_at': now}


async def orders_for_user(user: dict) -> list[dict]:
    return await db_mod.db.merch_orders.find({'user_id': str(user['_id'])}).sort('created_at', -1).to_list(length=None)


async def list_orders(status: str | None = None) -> list[dict]:
    query = {}
    if status:
        try:
            query['status'] = MerchOrderStatus.normalize(status).value
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return await db_mod.db.merch_orders.find(query).sort('created_at', -1).to_list(length=None)
