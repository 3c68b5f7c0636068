"""
Account linking: POST /api/link ties a wallet to a Telegram account.

Called by the Telegram bot with the shared X-Link-Key; a wallet or Telegram
id that is already linked is never re-assigned.
"""
from typing import Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from facilitator.api.deps import require_link_key
from facilitator.features.users.service import link_wallet_telegram

router = APIRouter(prefix="/api", tags=["users"])


class LinkRequest(BaseModel):
    wallet: str
    telegram_id: Union[int, str]


@router.post("/link", dependencies=[Depends(require_link_key)])
def link(body: LinkRequest):
    user = link_wallet_telegram(body.wallet, body.telegram_id)
    return {"ok": True, "user": user}
