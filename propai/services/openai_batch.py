from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from propai.core.config import settings
from propai.core.errors import UpstreamError
from propai.core.ids import correlation_id

log = logging.getLogger(__name__)

BATCH_ENDPOINT = "/v1/chat/completions"
COMPLETION_WINDOW = "24h"
TEMPERATURE = 0.7

SYSTEM_PROMPT = """あなたは不動産の専門家として、物件情報から魅力的な物件紹介文を作成してください。

以下の要件に従って紹介文を作成してください：
1. 物件の魅力を最大限に伝える
2. 具体的で読みやすい文章にする
3. 200文字以内で簡潔にまとめる
4. 顧客が興味を持つような表現を使う
5. 物件の特徴や立地の良さを強調する

紹介文のみを返してください。余計な説明は不要です。"""


@dataclass(frozen=True)
class CostEstimate:
    estimated_tokens: int
    estimated_cost: float


@dataclass(frozen=True)
class BatchSubmission:
    batch_id: str
    input_file_id: str
    status: str


@dataclass(frozen=True)
class BatchStatusSnapshot:
    status: str
    output_file_id: str | None = None
    error_file_id: str | None = None
    total: int | None = None
    completed: int | None = None
    failed: int | None = None


@dataclass(frozen=True)
class BatchOutcome:
    custom_id: str
    content: str | None = None
    error: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.content)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class BatchClient(Protocol):
    async def submit(self, requests: Sequence[dict[str, Any]]) -> BatchSubmission: ...

    async def get_status(self, batch_id: str) -> BatchStatusSnapshot: ...

    async def get_results(self, file_id: str) -> list[BatchOutcome]: ...

    async def cancel(self, batch_id: str) -> BatchStatusSnapshot: ...


def _num(v: float) -> str:
    return f"{v:g}"


def build_user_prompt(prop: Any) -> str:
    """Only fields that are present end up in the prompt; missing numbers are not zero-filled."""
    parts = [
        f"物件名: {prop.name}",
        f"住所: {prop.address}",
        f"物件種別: {prop.property_type}",
    ]
    if prop.price is not None:
        parts.append(f"価格: {prop.price:,.0f}円")
    if prop.size is not None:
        parts.append(f"面積: {_num(prop.size)}㎡")
    if prop.rooms is not None:
        parts.append(f"間取り: {_num(prop.rooms)}部屋")
    if prop.description:
        parts.append(f"既存の説明: {prop.description}")
    return "\n".join(parts)


def build_batch_requests(properties: Sequence[Any], *, model: str | None = None) -> list[dict[str, Any]]:
    model = model or settings.openai_batch_model
    return [
        {
            "custom_id": correlation_id(p.id),
            "method": "POST",
            "url": BATCH_ENDPOINT,
            "body": {
                "model": model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_user_prompt(p)},
                ],
                "max_tokens": settings.batch_max_completion_tokens,
                "temperature": TEMPERATURE,
            },
        }
        for p in properties
    ]


def _cost(prompt_tokens: int, completion_tokens: int) -> float:
    return (
        prompt_tokens / 1_000_000 * settings.batch_input_usd_per_1m
        + completion_tokens / 1_000_000 * settings.batch_output_usd_per_1m
    )


def estimate_cost(request_count: int) -> CostEstimate:
    prompt = settings.batch_avg_prompt_tokens * request_count
    completion = settings.batch_avg_completion_tokens * request_count
    return CostEstimate(estimated_tokens=prompt + completion, estimated_cost=_cost(prompt, completion))


def actual_cost(outcomes: Sequence[BatchOutcome]) -> float:
    return _cost(sum(o.prompt_tokens for o in outcomes), sum(o.completion_tokens for o in outcomes))


def parse_outcome(obj: dict[str, Any]) -> BatchOutcome:
    """One line of a batch output or error artifact."""
    custom_id = str(obj.get("custom_id") or "")

    err = obj.get("error")
    if err:
        msg = err.get("message") if isinstance(err, dict) else str(err)
        return BatchOutcome(custom_id=custom_id, error=msg or "unknown error")

    response = obj.get("response") or {}
    body = response.get("body") or {}
    status_code = response.get("status_code")
    usage = body.get("usage") or {}
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    completion_tokens = int(usage.get("completion_tokens") or 0)

    if status_code is not None and not 200 <= int(status_code) < 300:
        body_err = body.get("error") or {}
        return BatchOutcome(
            custom_id=custom_id,
            error=body_err.get("message") or f"HTTP {status_code}",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )

    choices = body.get("choices") or []
    content = None
    if choices:
        content = ((choices[0] or {}).get("message") or {}).get("content")
    content = content.strip() if isinstance(content, str) else None
    if not content:
        return BatchOutcome(
            custom_id=custom_id,
            error="empty completion",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )

    return BatchOutcome(
        custom_id=custom_id,
        content=content,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
    )


def parse_jsonl(text: str) -> list[BatchOutcome]:
    out: list[BatchOutcome] = []
    for n, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            log.warning("skipping malformed batch result line=%s", n)
            continue
        if isinstance(obj, dict):
            out.append(parse_outcome(obj))
    return out


def _snapshot(batch: Any) -> BatchStatusSnapshot:
    counts = batch.request_counts
    return BatchStatusSnapshot(
        status=batch.status,
        output_file_id=batch.output_file_id or None,
        error_file_id=batch.error_file_id or None,
        total=counts.total if counts else None,
        completed=counts.completed if counts else None,
        failed=counts.failed if counts else None,
    )


class OpenAIBatchClient:
    """
    Batch API adapter over AsyncOpenAI.

    - Timeouts / dropped connections on submit raise UpstreamError(outcome_unknown=True):
      the job may exist upstream without a local record.
    - Other API errors raise UpstreamError with outcome_unknown=False.
    """

    def __init__(self, client: AsyncOpenAI | None = None):
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key.get_secret_value(),
            base_url=settings.openai_base_url,
            timeout=settings.openai_timeout_seconds,
        )

    async def submit(self, requests: Sequence[dict[str, Any]]) -> BatchSubmission:
        payload = "\n".join(json.dumps(r, ensure_ascii=False) for r in requests).encode("utf-8")

        try:
            file_obj = await self._client.files.create(
                file=("batch_input.jsonl", payload, "application/jsonl"),
                purpose="batch",
            )
        except openai.APIConnectionError as e:
            # nothing but a file can be orphaned here; still unknown
            raise UpstreamError(f"batch input upload failed: {e}", outcome_unknown=True) from e
        except openai.APIError as e:
            raise UpstreamError(f"batch input upload failed: {e}") from e

        try:
            batch = await self._client.batches.create(
                input_file_id=file_obj.id,
                endpoint=BATCH_ENDPOINT,
                completion_window=COMPLETION_WINDOW,
                metadata={"description": "Property description generation"},
            )
        except openai.APIConnectionError as e:
            raise UpstreamError(f"batch create did not answer: {e}", outcome_unknown=True) from e
        except openai.APIError as e:
            raise UpstreamError(f"batch create failed: {e}") from e

        return BatchSubmission(batch_id=batch.id, input_file_id=file_obj.id, status=batch.status)

    async def get_status(self, batch_id: str) -> BatchStatusSnapshot:
        try:
            batch = await self._client.batches.retrieve(batch_id)
        except openai.APIError as e:
            raise UpstreamError(f"batch retrieve failed: {e}") from e
        return _snapshot(batch)

    async def get_results(self, file_id: str) -> list[BatchOutcome]:
        try:
            content = await self._client.files.content(file_id)
        except openai.APIError as e:
            raise UpstreamError(f"batch result download failed: {e}") from e
        return parse_jsonl(content.text)

    async def cancel(self, batch_id: str) -> BatchStatusSnapshot:
        try:
            batch = await self._client.batches.cancel(batch_id)
        except openai.APIError as e:
            raise UpstreamError(f"batch cancel failed: {e}") from e
        return _snapshot(batch)


@lru_cache(maxsize=1)
def _default_client() -> OpenAIBatchClient:
    return OpenAIBatchClient()


def get_batch_client() -> BatchClient:
    return _default_client()
