"""Invitations router: public token lookup and acceptance."""
from fastapi import APIRouter, Depends

from ..auth import get_current_user
from ..services import invitations
from ..utils import serialize

router = APIRouter()


@router.get('/{token}')
async def get_invitation(token: str):
    invite = await invitations.get_invitation_by_token(token)
    return serialize(invitations.public_view(invite))


@router.post('/{token}/accept')
async def accept_invitation(token: str, current_user=Depends(get_current_user)):
    return await invitations.accept_invitation(token, current_user)
