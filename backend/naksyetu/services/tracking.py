"""Affiliate tracking links: named short links attributed to a listing and optionally a promocode."""
import logging

from bson.objectid import ObjectId
from fastapi import HTTPException
from pymongo.errors import PyMongoError

from .. import db as db_mod
from ..datetime_utils import now_utc
from ..utils import maybe_object_id
from . import shortlinks

logger = logging.getLogger('promocodes')


def build_destination(link_id, listing_type: str | None, listing_id: str | None, code: str | None = None) -> str:
    if not listing_type or listing_type == 'all' or not listing_id or listing_id == 'all':
        path = '/events'
    else:
        path = f'/{listing_type}s/{listing_id}'
    url = f'{path}?linkId={link_id}'
    if code:
        url += f'&coupon={code}'
    return url


async def create_tracking_link(actor: dict, name: str | None, listing_id: str | None,
                               listing_type: str | None = None, promocode: dict | None = None) -> dict:
    name = (name or '').strip()
    if not name or not listing_id:
        raise HTTPException(status_code=400, detail='Link name and listing are required.')
    if promocode:
        listing_type = listing_type or promocode.get('listing_type')

    link_id = ObjectId()
    long_url = build_destination(link_id, listing_type, listing_id, promocode.get('code') if promocode else None)
    promocode_id = str(promocode['_id']) if promocode else None
    short_id = await shortlinks.create_short_link(
        long_url,
        tracking_link_id=link_id,
        promocode_id=promocode_id,
        listing_id=listing_id,
    )
    doc = {
        '_id': link_id,
        'name': name,
        'clicks': 0,
        'purchases': 0,
        'long_url': long_url,
        'short_id': short_id,
        'short_url': shortlinks.short_url(short_id),
        'promocode_id': promocode_id,
        'listing_id': listing_id,
        'listing_type': listing_type or 'all',
        'created_by': str(actor['_id']),
        'created_at': now_utc(),
    }
    await db_mod.db.tracking_links.insert_one(doc)
    logger.info('tracking_link.created link_id=%s promocode_id=%s short_id=%s', link_id, promocode_id, short_id)
    return doc


async def list_tracking_links(*, promocode_id: str | None = None, created_by: str | None = None) -> list[dict]:
    query = {}
    if promocode_id:
        query['promocode_id'] = str(promocode_id)
    if created_by:
        query['created_by'] = str(created_by)
    return await db_mod.db.tracking_links.find(query).sort('created_at', -1).to_list(length=None)


async def track_link_click(tracking_link_id) -> None:
    """Count a click; links tied to a promocode also log a `promocode_clicks` entry."""
    oid = maybe_object_id(tracking_link_id)
    if oid is None:
        return
    try:
        link = await db_mod.db.tracking_links.find_one_and_update(
            {'_id': oid}, {'$inc': {'clicks': 1}}, return_document=True,
        )
        if not link:
            logger.info('tracking_link.click_unknown link_id=%s', tracking_link_id)
            return
        if link.get('promocode_id'):
            await db_mod.db.promocode_clicks.insert_one({
                'promocode_id': link['promocode_id'],
                'tracking_link_id': str(oid),
                'timestamp': now_utc(),
            })
        logger.info('tracking_link.click link_id=%s clicks=%s', oid, link.get('clicks'))
    except PyMongoError as exc:
        logger.error('tracking_link.click_failed link_id=%s error=%s', tracking_link_id, exc)


async def record_purchase(tracking_link_id) -> None:
    oid = maybe_object_id(tracking_link_id)
    if oid is None:
        return
    await db_mod.db.tracking_links.update_one({'_id': oid}, {'$inc': {'purchases': 1}})
