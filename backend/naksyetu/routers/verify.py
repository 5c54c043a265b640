"""Gate scanning router for verifiers."""
from fastapi import APIRouter, Depends

from ..auth import get_current_user
from ..schemas import TicketScan
from ..services import verification
from ..utils import serialize

router = APIRouter()


@router.post('/scan')
async def scan_ticket(payload: TicketScan, current_user=Depends(get_current_user)):
    """Rejections come back as `{success: false, message}` with status 200."""
    return await verification.validate_ticket(current_user, payload.ticket_id, payload.event_id)


@router.get('/assigned-events')
async def assigned_events(current_user=Depends(get_current_user)):
    return serialize(await verification.assigned_events(current_user))


@router.get('/history')
async def history(limit: int = 100, current_user=Depends(get_current_user)):
    return serialize(await verification.history_for(current_user, limit=min(limit, 500)))
