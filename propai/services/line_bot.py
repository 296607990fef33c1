from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol, Sequence

import openai
from openai import AsyncOpenAI
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.config import settings
from propai.core.crypto import decrypt_secret, encrypt_secret
from propai.core.errors import AuthError, ConflictError, NotFoundError, QuotaExceededError, UpstreamError, ValidationFailed
from propai.core.security import verify_line_signature
from propai.models.base import utcnow
from propai.models.line_channel import LineChannel, LineConversation
from propai.models.property import Property
from propai.services import usage_ledger
from propai.services.http_client import HttpClient
from propai.services.properties import search_properties

log = logging.getLogger(__name__)

UPGRADE_REPLY = "申し訳ございません。月間の利用上限に達しました。プランをアップグレードしてください。"
FALLBACK_REPLY = "申し訳ございません。現在システムに問題が発生しています。しばらくしてからもう一度お試しください。"
EMPTY_REPLY = "すみません、回答を生成できませんでした。"

CHAT_SYSTEM_PROMPT = """あなたは親切で丁寧な不動産会社のAIアシスタントです。
ユーザーからの物件に関する問い合わせに対して、適切な物件情報を提供します。
物件情報は簡潔にまとめ、LINEのメッセージとして読みやすい形式で返信してください。
敬語を使い、親しみやすい口調で対応してください。"""

CHAT_MAX_TOKENS = 500


@dataclass(frozen=True)
class ChatReply:
    text: str
    total_tokens: int


@dataclass
class WebhookSummary:
    processed: int = 0
    replied: int = 0
    quota_blocked: int = 0


class ChatCompleter(Protocol):
    async def complete(self, messages: Sequence[dict[str, str]]) -> ChatReply: ...


class ReplySender(Protocol):
    async def reply(self, *, reply_token: str, text: str, access_token: str) -> bool: ...


class OpenAIChatCompleter:
    def __init__(self, client: AsyncOpenAI | None = None):
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key.get_secret_value(),
            base_url=settings.openai_base_url,
            timeout=settings.openai_timeout_seconds,
        )

    async def complete(self, messages: Sequence[dict[str, str]]) -> ChatReply:
        try:
            completion = await self._client.chat.completions.create(
                model=settings.openai_chat_model,
                messages=list(messages),
                max_tokens=CHAT_MAX_TOKENS,
                temperature=0.7,
            )
        except openai.APIError as e:
            raise UpstreamError(f"chat completion failed: {e}") from e

        text = (completion.choices[0].message.content or "").strip() if completion.choices else ""
        tokens = completion.usage.total_tokens if completion.usage else 0
        return ChatReply(text=text or EMPTY_REPLY, total_tokens=tokens)


class LineReplySender:
    def __init__(self, http: HttpClient | None = None):
        self._http = http or HttpClient()

    async def reply(self, *, reply_token: str, text: str, access_token: str) -> bool:
        res = await self._http.post_json(
            url=settings.line_reply_url,
            headers={"Authorization": f"Bearer {access_token}"},
            json_body={"replyToken": reply_token, "messages": [{"type": "text", "text": text}]},
        )
        if not res.ok:
            log.warning("LINE reply failed status=%s code=%s detail=%s", res.status_code, res.error_code, res.detail)
        return res.ok


@lru_cache(maxsize=1)
def get_chat_completer() -> ChatCompleter:
    return OpenAIChatCompleter()


@lru_cache(maxsize=1)
def get_reply_sender() -> ReplySender:
    return LineReplySender()


# channel settings

async def get_channel(db: AsyncSession, *, tenant_id: str) -> LineChannel | None:
    return (await db.execute(select(LineChannel).where(LineChannel.tenant_id == tenant_id))).scalar_one_or_none()


async def upsert_channel(
    db: AsyncSession,
    *,
    tenant_id: str,
    channel_id: str,
    channel_secret: str,
    access_token: str,
    is_active: bool = True,
) -> LineChannel:
    channel = await get_channel(db, tenant_id=tenant_id)
    if channel is None:
        channel = LineChannel(tenant_id=tenant_id)
        db.add(channel)
    channel.channel_id = channel_id
    channel.channel_secret_ciphertext = encrypt_secret(channel_secret)
    channel.access_token_ciphertext = encrypt_secret(access_token)
    channel.is_active = is_active
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("This LINE channel is registered to another account")
    return channel


# webhook

def _property_block(p: Property) -> str:
    lines = [f"物件名: {p.name}", f"住所: {p.address}", f"種別: {p.property_type}"]
    if p.price is not None:
        lines.append(f"価格: {p.price:,.0f}円")
    if p.size is not None:
        lines.append(f"面積: {p.size:g}㎡")
    if p.rooms is not None:
        lines.append(f"部屋数: {p.rooms:g}")
    lines.append(f"説明: {p.ai_description or p.description or '詳細はお問い合わせください。'}")
    return "\n".join(lines)


def build_chat_messages(user_text: str, properties: Sequence[Property], history: Sequence[dict[str, Any]]) -> list[dict[str, str]]:
    if properties:
        found = "見つかった物件情報:\n" + "\n\n".join(_property_block(p) for p in properties)
    else:
        found = "該当する物件が見つかりませんでした。"
    user_prompt = f"ユーザーからの問い合わせ: {user_text}\n\n{found}\n\n適切な返信を生成してください。"

    msgs = [{"role": "system", "content": CHAT_SYSTEM_PROMPT}]
    msgs.extend({"role": m["role"], "content": m["content"]} for m in history if m.get("role") and m.get("content"))
    msgs.append({"role": "user", "content": user_prompt})
    return msgs


async def _get_or_create_conversation(db: AsyncSession, *, tenant_id: str, line_user_id: str) -> LineConversation:
    stmt = select(LineConversation).where(
        LineConversation.tenant_id == tenant_id,
        LineConversation.line_user_id == line_user_id,
    )
    conv = (await db.execute(stmt)).scalar_one_or_none()
    if conv is None:
        conv = LineConversation(tenant_id=tenant_id, line_user_id=line_user_id, messages=[], tokens_used=0)
        db.add(conv)
        await db.flush()
    return conv


async def _answer_and_settle(
    db: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    user_text: str,
    completer: ChatCompleter,
    reserve: int,
) -> ChatReply:
    keep = settings.line_history_turns * 2
    conv = await _get_or_create_conversation(db, tenant_id=tenant_id, line_user_id=user_id)
    history = list(conv.messages or [])[-keep:]
    properties = await search_properties(db, tenant_id=tenant_id, query=user_text)

    try:
        reply = await completer.complete(build_chat_messages(user_text, properties, history))
    except UpstreamError as e:
        log.error("chat completion failed tenant=%s err=%s", tenant_id, e.message)
        reply = ChatReply(text=FALLBACK_REPLY, total_tokens=0)

    await usage_ledger.settle(db, tenant_id=tenant_id, reserved=reserve, actual=reply.total_tokens)

    now = utcnow().isoformat()
    conv.messages = (
        history
        + [
            {"role": "user", "content": user_text, "timestamp": now},
            {"role": "assistant", "content": reply.text, "timestamp": now},
        ]
    )[-keep:]
    conv.tokens_used = (conv.tokens_used or 0) + reply.total_tokens
    await db.commit()
    return reply


def _is_text_message(ev: dict[str, Any]) -> bool:
    msg = ev.get("message") or {}
    return ev.get("type") == "message" and msg.get("type") == "text" and bool(ev.get("replyToken"))


async def handle_webhook(
    db: AsyncSession,
    *,
    body: bytes,
    signature: str | None,
    completer: ChatCompleter,
    sender: ReplySender,
) -> WebhookSummary:
    """
    Answer inbound LINE text messages for the channel named by `destination`.

    Per event: reserve tokens with the ledger (commit), then call the model and settle the
    reservation against real usage. An exhausted quota gets the upgrade reply and no model call.
    Commits per event so one failing event does not lose the others' accounting.
    """
    if not signature:
        raise AuthError("Missing signature")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationFailed("Malformed webhook body") from None
    if not isinstance(payload, dict):
        raise ValidationFailed("Malformed webhook body")

    destination = payload.get("destination")
    channel = None
    if destination:
        stmt = select(LineChannel).where(LineChannel.channel_id == destination, LineChannel.is_active.is_(True))
        channel = (await db.execute(stmt)).scalar_one_or_none()
    if channel is None:
        log.warning("LINE channel not found or inactive destination=%s", destination)
        raise NotFoundError("Channel not found")

    if not verify_line_signature(body, signature, decrypt_secret(channel.channel_secret_ciphertext)):
        log.warning("invalid LINE signature channel=%s", channel.channel_id)
        raise AuthError("Invalid signature")

    tenant_id = channel.tenant_id
    access_token = decrypt_secret(channel.access_token_ciphertext)
    reserve = settings.line_reply_token_reservation
    summary = WebhookSummary()

    for ev in payload.get("events") or []:
        if not isinstance(ev, dict) or not _is_text_message(ev):
            continue
        summary.processed += 1

        user_id = (ev.get("source") or {}).get("userId") or "unknown"
        user_text = ev["message"].get("text") or ""
        reply_token = ev["replyToken"]

        try:
            await usage_ledger.consume(db, tenant_id=tenant_id, amount=reserve)
            await db.commit()
        except QuotaExceededError:
            await db.rollback()
            summary.quota_blocked += 1
            if await sender.reply(reply_token=reply_token, text=UPGRADE_REPLY, access_token=access_token):
                summary.replied += 1
            continue

        try:
            reply = await _answer_and_settle(
                db, tenant_id=tenant_id, user_id=user_id, user_text=user_text, completer=completer, reserve=reserve
            )
        except Exception:
            # the reservation is already committed; hand it back before the error surfaces
            await db.rollback()
            await usage_ledger.release(db, tenant_id=tenant_id, amount=reserve)
            await db.commit()
            log.exception("webhook event failed tenant=%s, reservation released", tenant_id)
            raise

        if await sender.reply(reply_token=reply_token, text=reply.text, access_token=access_token):
            summary.replied += 1

    return summary
