"""In-app notifications router."""
from fastapi import APIRouter, Depends, HTTPException

from ..auth import get_current_user
from ..services import notification_center
from ..utils import parse_object_id, serialize

router = APIRouter()


@router.get('')
async def list_notifications(limit: int = 50, current_user=Depends(get_current_user)):
    return serialize(await notification_center.list_for_user(current_user, limit=min(limit, 200)))


@router.post('/read-all')
async def read_all(current_user=Depends(get_current_user)):
    return {'updated': await notification_center.mark_all_read(current_user)}


@router.post('/{notification_id}/read')
async def read_one(notification_id: str, current_user=Depends(get_current_user)):
    found = await notification_center.mark_read(current_user, parse_object_id(notification_id, 'notification id'))
    if not found:
        raise HTTPException(status_code=404, detail='Notification not found.')
    return {'status': 'read'}
