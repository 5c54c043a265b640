"""Public listings router (events, tours, nightlife)."""
from fastapi import APIRouter, Depends

from ..auth import get_optional_user
from ..services import listings
from ..utils import serialize

router = APIRouter()


@router.get('/{listing_type}')
async def list_listings(listing_type: str, category: str | None = None, limit: int = 100):
    """Published listings of one type, soonest first."""
    return serialize(await listings.list_published(listing_type, category=category, limit=min(limit, 500)))


@router.get('/{listing_type}/{listing_id}')
async def get_listing(listing_type: str, listing_id: str, viewer=Depends(get_optional_user)):
    return serialize(await listings.get_public_listing(listing_type, listing_id, viewer))
