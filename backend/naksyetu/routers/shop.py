"""Merchandise shop router: product catalogue and merch checkout."""
from fastapi import APIRouter, Depends, Request

from ..auth import get_current_user, get_optional_user
from ..schemas import MerchOrderCreate
from ..services import merch
from ..utils import serialize
from .checkout import _client_ip

router = APIRouter()


@router.get('/products')
async def products():
    return serialize(await merch.list_products())


@router.get('/products/{product_id}')
async def product(product_id: str):
    return serialize(await merch.get_product(product_id))


@router.post('/orders', status_code=201)
async def create_merch_order(payload: MerchOrderCreate, request: Request, current_user=Depends(get_optional_user)):
    data = payload.model_dump()
    return serialize(await merch.create_merch_order(data, current_user, client_ip=_client_ip(request)))


@router.get('/orders/mine')
async def my_merch_orders(current_user=Depends(get_current_user)):
    return serialize(await merch.orders_for_user(current_user))
