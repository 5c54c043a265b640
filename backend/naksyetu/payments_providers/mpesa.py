import base64
import datetime
import logging
from typing import Any, Dict

import httpx

from ..settings import get_settings

logger = logging.getLogger('payments.mpesa')


class MpesaError(RuntimeError):
    """Raised when Daraja rejects a request or is unreachable."""


def _mpesa_base() -> str:
    if get_settings().mpesa_env.lower() in ('live', 'production'):
        return 'https://api.safaricom.co.ke'
    return 'https://sandbox.safaricom.co.ke'


def is_configured() -> bool:
    cfg = get_settings()
    return bool(cfg.mpesa_consumer_key and cfg.mpesa_consumer_secret and cfg.mpesa_shortcode and cfg.mpesa_passkey)


def callback_url() -> str:
    cfg = get_settings()
    return f"{cfg.app_base_url.rstrip('/')}/checkout/mpesa/callback/{cfg.mpesa_callback_secret}"


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def _json(resp: httpx.Response, what: str) -> Dict[str, Any]:
    if not resp.content:
        return {}
    try:
        data = resp.json()
    except ValueError as exc:
        logger.error('mpesa.%s.bad_body status=%s body=%s', what, resp.status_code, resp.text[:200])
        raise MpesaError(f'M-Pesa returned an unreadable response (HTTP {resp.status_code}).') from exc
    if not isinstance(data, dict):
        raise MpesaError(f'M-Pesa returned an unreadable response (HTTP {resp.status_code}).')
    return data


def _timestamp() -> str:
    # Daraja expects local Nairobi time (UTC+3)
    nairobi = datetime.datetime.now(datetime.timezone(datetime.timedelta(hours=3)))
    return nairobi.strftime('%Y%m%d%H%M%S')


async def get_access_token() -> str:
    cfg = get_settings()
    if not is_configured():
        raise MpesaError('M-Pesa not configured')
    auth = base64.b64encode(f"{cfg.mpesa_consumer_key}:{cfg.mpesa_consumer_secret}".encode()).decode()
    url = f"{_mpesa_base()}/oauth/v1/generate"
    try:
        async with httpx.AsyncClient(timeout=20.0) as client:
            resp = await client.get(url, params={'grant_type': 'client_credentials'},
                                    headers={'Authorization': f'Basic {auth}'})
    except httpx.HTTPError as exc:
        logger.exception('mpesa.token.exception')
        raise MpesaError('Could not reach M-Pesa.') from exc
    if resp.status_code >= 300:
        logger.error('mpesa.token.error status=%s body=%s', resp.status_code, resp.text[:200])
        raise MpesaError(f'M-Pesa token error: {resp.text[:200]}')
    token = _json(resp, 'token').get('access_token')
    if not token:
        raise MpesaError('M-Pesa token error: no access token returned.')
    logger.debug('mpesa.token.ok len=%s', len(token) if token else 0)
    return token


async def initiate_stk_push(*, phone: str, amount: float, order_id: str) -> Dict[str, Any]:
    """Send an STK push prompt to `phone` (2547XXXXXXXX) for `order_id`.

    Returns the Daraja response; `CheckoutRequestID` identifies the
    transaction in the later callback.
    """
    cfg = get_settings()
    token = await get_access_token()
    timestamp = _timestamp()
    payload = {
        'BusinessShortCode': cfg.mpesa_shortcode,
        'Password': stk_password(cfg.mpesa_shortcode, cfg.mpesa_passkey, timestamp),
        'Timestamp': timestamp,
        'TransactionType': 'CustomerPayBillOnline',
        # Daraja accepts whole shillings only
        'Amount': max(int(round(amount)), 1),
        'PartyA': phone,
        'PartyB': cfg.mpesa_shortcode,
        'PhoneNumber': phone,
        'CallBackURL': callback_url(),
        'AccountReference': str(order_id),
        'TransactionDesc': f'Payment for order {order_id}',
    }
    logger.info('mpesa.stk_push.start order_id=%s amount=%s', order_id, payload['Amount'])
    try:
        async with httpx.AsyncClient(timeout=30.0) as client:
            resp = await client.post(
                f"{_mpesa_base()}/mpesa/stkpush/v1/processrequest",
                headers={'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'},
                json=payload,
            )
    except httpx.HTTPError as exc:
        logger.exception('mpesa.stk_push.exception order_id=%s', order_id)
        raise MpesaError('Could not reach M-Pesa.') from exc
    data = _json(resp, 'stk_push')
    if resp.status_code >= 300 or str(data.get('ResponseCode', '')) != '0':
        message = data.get('errorMessage') or data.get('ResponseDescription') or resp.text[:200]
        logger.error('mpesa.stk_push.error order_id=%s status=%s message=%s', order_id, resp.status_code, message)
        raise MpesaError(message or 'M-Pesa request failed.')
    logger.info('mpesa.stk_push.ok order_id=%s checkout_request_id=%s', order_id, data.get('CheckoutRequestID'))
    return data
