from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.db import get_db
from propai.core.errors import NotFoundError
from propai.schemas.common import ActionResult, success_result
from propai.schemas.line import LineChannelIn, LineChannelOut, LineWebhookOut
from propai.services.auth import Actor, get_actor
from propai.services.line_bot import (
    ChatCompleter,
    ReplySender,
    get_channel,
    get_chat_completer,
    get_reply_sender,
    handle_webhook,
    upsert_channel,
)

router = APIRouter()


@router.get("/line/channel", response_model=ActionResult[LineChannelOut])
async def read_channel(actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    channel = await get_channel(db, tenant_id=actor.tenant_id)
    if channel is None:
        raise NotFoundError("LINE channel is not configured")
    return success_result(LineChannelOut(channel_id=channel.channel_id, is_active=channel.is_active))


@router.put("/line/channel", response_model=ActionResult[LineChannelOut])
async def save_channel(
    payload: LineChannelIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    channel = await upsert_channel(
        db,
        tenant_id=actor.tenant_id,
        channel_id=payload.channel_id,
        channel_secret=payload.channel_secret,
        access_token=payload.access_token,
        is_active=payload.is_active,
    )
    out = LineChannelOut(channel_id=channel.channel_id, is_active=channel.is_active)
    await db.commit()
    return success_result(out, "LINE settings saved")


@router.post("/line/webhook", response_model=ActionResult[LineWebhookOut])
async def line_webhook(
    request: Request,
    x_line_signature: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    completer: ChatCompleter = Depends(get_chat_completer),
    sender: ReplySender = Depends(get_reply_sender),
):
    body = await request.body()
    summary = await handle_webhook(db, body=body, signature=x_line_signature, completer=completer, sender=sender)
    return success_result(
        LineWebhookOut(processed=summary.processed, replied=summary.replied, quota_blocked=summary.quota_blocked)
    )
