"""Platform-wide fee configuration stored in the `config` collection."""
import logging

from fastapi import HTTPException

from .. import db as db_mod
from ..datetime_utils import now_utc
from ..enums import ProcessingFeePayer
from . import audit

logger = logging.getLogger('audit')

SETTINGS_DOC_ID = 'site_settings'

DEFAULT_SITE_SETTINGS = {
    'platform_fee': 5.0,
    'processing_fee': 2.5,
    'processing_fee_payer': ProcessingFeePayer.customer.value,
    'influencer_cut': 10.0,
}

_PERCENT_FIELDS = ('platform_fee', 'processing_fee', 'influencer_cut')


async def get_site_settings() -> dict:
    """Stored settings merged over the defaults."""
    stored = await db_mod.db.config.find_one({'_id': SETTINGS_DOC_ID}) or {}
    merged = dict(DEFAULT_SITE_SETTINGS)
    merged.update({k: v for k, v in stored.items() if k in DEFAULT_SITE_SETTINGS and v is not None})
    return merged


async def update_site_settings(actor: dict, changes: dict) -> dict:
    changes = {k: v for k, v in changes.items() if k in DEFAULT_SITE_SETTINGS and v is not None}
    for field in _PERCENT_FIELDS:
        if field in changes:
            value = float(changes[field])
            if not 0 <= value <= 100:
                raise HTTPException(status_code=400, detail=f'{field} must be between 0 and 100')
            changes[field] = value
    if 'processing_fee_payer' in changes:
        try:
            changes['processing_fee_payer'] = ProcessingFeePayer.normalize(changes['processing_fee_payer']).value
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    current = await get_site_settings()
    merged = {**current, **changes}
    await db_mod.db.config.update_one(
        {'_id': SETTINGS_DOC_ID},
        {'$set': {**merged, 'updated_at': now_utc(), 'updated_by': actor.get('_id')}},
        upsert=True,
    )
    await audit.log_admin_action(actor, 'update_system_settings', 'settings', SETTINGS_DOC_ID, {'changes': changes})
    return merged
