from __future__ import annotations

from typing import Any, Sequence

from propai.core.errors import UpstreamError
from propai.core.ids import correlation_id
from propai.services.line_bot import ChatReply
from propai.services.openai_batch import BatchOutcome, BatchStatusSnapshot, BatchSubmission


def ok_outcome(property_id: str, content: str, *, prompt_tokens: int = 120, completion_tokens: int = 80) -> BatchOutcome:
    return BatchOutcome(
        custom_id=correlation_id(property_id),
        content=content,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
    )


def error_outcome(property_id: str, message: str = "rate limited") -> BatchOutcome:
    return BatchOutcome(custom_id=correlation_id(property_id), error=message)


class FakeBatchClient:
    """Scripted batch API: tests set statuses / results / errors up front and inspect calls afterwards."""

    def __init__(self) -> None:
        self.submitted: list[list[dict[str, Any]]] = []
        self.statuses: dict[str, BatchStatusSnapshot] = {}
        self.results: dict[str, list[BatchOutcome]] = {}
        self.cancelled: list[str] = []
        self.status_calls = 0
        self.results_calls = 0

        self.submit_error: UpstreamError | None = None
        self.cancel_error: UpstreamError | None = None
        self.cancel_snapshot: BatchStatusSnapshot | None = None

    async def submit(self, requests: Sequence[dict[str, Any]]) -> BatchSubmission:
        if self.submit_error:
            raise self.submit_error
        self.submitted.append(list(requests))
        n = len(self.submitted)
        return BatchSubmission(batch_id=f"batch_{n}", input_file_id=f"file_in_{n}", status="validating")

    async def get_status(self, batch_id: str) -> BatchStatusSnapshot:
        self.status_calls += 1
        return self.statuses.get(batch_id, BatchStatusSnapshot(status="validating"))

    async def get_results(self, file_id: str) -> list[BatchOutcome]:
        self.results_calls += 1
        return list(self.results.get(file_id, []))

    async def cancel(self, batch_id: str) -> BatchStatusSnapshot:
        if self.cancel_error:
            raise self.cancel_error
        self.cancelled.append(batch_id)
        return self.cancel_snapshot or BatchStatusSnapshot(status="cancelling")

    def complete(self, batch_id: str, outcomes: list[BatchOutcome], errors: list[BatchOutcome] | None = None) -> None:
        out_id = f"{batch_id}_out"
        err_id = f"{batch_id}_err" if errors else None
        self.results[out_id] = outcomes
        if errors:
            self.results[err_id] = errors
        self.statuses[batch_id] = BatchStatusSnapshot(
            status="completed",
            output_file_id=out_id,
            error_file_id=err_id,
            total=len(outcomes) + len(errors or []),
            completed=len(outcomes),
            failed=len(errors or []),
        )


class FakeChatCompleter:
    def __init__(self, text: str = "おすすめの物件はこちらです。", total_tokens: int = 300) -> None:
        self.text = text
        self.total_tokens = total_tokens
        self.error: UpstreamError | None = None
        self.calls: list[list[dict[str, str]]] = []

    async def complete(self, messages: Sequence[dict[str, str]]) -> ChatReply:
        self.calls.append(list(messages))
        if self.error:
            raise self.error
        return ChatReply(text=self.text, total_tokens=self.total_tokens)


class FakeReplySender:
    def __init__(self) -> None:
        self.replies: list[dict[str, str]] = []

    async def reply(self, *, reply_token: str, text: str, access_token: str) -> bool:
        self.replies.append({"reply_token": reply_token, "text": text, "access_token": access_token})
        return True
