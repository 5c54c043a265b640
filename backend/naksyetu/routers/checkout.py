"""Checkout router

Order creation with M-Pesa STK push, the Daraja callback, payment status
polling and post-purchase endpoints.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ..auth import get_current_user, get_optional_user
from ..schemas import FeedbackIn, OrderCreate
from ..services import orders
from ..settings import get_settings
from ..utils import serialize

logger = logging.getLogger('orders')

router = APIRouter()

CALLBACK_ACK = {'ResultCode': 0, 'ResultDesc': 'Accepted'}


def _client_ip(request: Request) -> str | None:
    ip = getattr(request.state, 'client_ip', None)
    if ip:
        return ip
    return request.client.host if request.client else None


@router.post('/checkout/orders', status_code=201)
async def create_order(payload: OrderCreate, request: Request, current_user=Depends(get_optional_user)):
    data = payload.model_dump()
    data['payment_type'] = payload.payment_type.value
    result = await orders.create_order(
        data,
        current_user,
        tracker_cookie=request.cookies.get(get_settings().tracker_cookie_name),
        client_ip=_client_ip(request),
        user_agent=request.headers.get('user-agent'),
    )
    return serialize(result)


@router.post('/checkout/mpesa/callback/{secret}')
async def mpesa_callback(secret: str, request: Request):
    """Daraja result callback; always acknowledged once authenticated."""
    if not orders.callback_secret_ok(secret):
        logger.warning('mpesa.callback.forbidden ip=%s', _client_ip(request))
        raise HTTPException(status_code=403, detail='Forbidden')
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid callback data') from exc
    outcome = await orders.process_callback(body)
    logger.info('mpesa.callback.processed outcome=%s', outcome)
    return CALLBACK_ACK


@router.get('/checkout/transactions/{transaction_id}')
async def transaction_status(transaction_id: str):
    return await orders.transaction_status(transaction_id)


@router.post('/checkout/orders/{order_id}/retry')
async def retry(order_id: str, current_user=Depends(get_optional_user)):
    return serialize(await orders.retry_payment(order_id, current_user))


@router.get('/checkout/recent-order')
async def recent_order(listing_id: str = '', current_user=Depends(get_optional_user)):
    return await orders.recent_order(current_user, listing_id)


@router.post('/checkout/feedback')
async def feedback(payload: FeedbackIn, current_user=Depends(get_optional_user)):
    return await orders.log_feedback(current_user, payload.rating, payload.reason, payload.order_id)


@router.get('/orders/mine')
async def my_orders(current_user=Depends(get_current_user)):
    return serialize(await orders.orders_for_user(current_user))


@router.get('/tickets/mine')
async def my_tickets(current_user=Depends(get_current_user)):
    return serialize(await orders.tickets_for_user(current_user))
