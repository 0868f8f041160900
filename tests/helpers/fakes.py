"""In-process doubles for the pipeline's external collaborators."""

import asyncio
import json
from unittest.mock import MagicMock

from pywebpush import WebPushException


class FakeLanguageModel:
    """LanguageModel double returning canned replies and recording calls."""

    def __init__(
        self,
        replies: list[str] | None = None,
        chunks: list[str] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.replies = list(replies or [])
        self.chunks = chunks
        self.error = error
        self.delay = delay
        self.calls: list[dict] = []

    async def complete(self, system: str, history: list[dict], max_tokens: int) -> str:
        self.calls.append({"system": system, "history": history, "max_tokens": max_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return "Thanks for sharing that with me."

    async def stream(self, system: str, history: list[dict], max_tokens: int):
        self.calls.append({"system": system, "history": history, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        for chunk in self.chunks if self.chunks is not None else ["Thanks ", "for ", "sharing."]:
            yield chunk


class RecordingTransport:
    """Stands in for pywebpush.webpush.

    Endpoints in `gone` answer 410; endpoints in `errors` raise the given
    exception the way requests does on a network failure.
    """

    def __init__(
        self, gone: tuple[str, ...] = (), errors: dict[str, Exception] | None = None
    ) -> None:
        self.gone = set(gone)
        self.errors = dict(errors or {})
        self.calls: list[dict] = []

    def __call__(self, subscription_info, data, vapid_private_key, vapid_claims):
        endpoint = subscription_info["endpoint"]
        self.calls.append(
            {
                "endpoint": endpoint,
                "payload": json.loads(data),
                "vapid_claims": dict(vapid_claims),
            }
        )
        if endpoint in self.errors:
            raise self.errors[endpoint]
        if endpoint in self.gone:
            raise WebPushException("Push failed: 410 Gone", response=MagicMock(status_code=410))
        return MagicMock(status_code=201)

    @property
    def payloads(self) -> list[dict]:
        return [call["payload"] for call in self.calls]


class FakeQueue:
    """TaskQueue double that records published payloads."""

    def __init__(self, configured: bool = True, error: Exception | None = None) -> None:
        self.is_configured = configured
        self.error = error
        self.published: list[tuple[str, dict]] = []

    async def enqueue(self, callback_path: str, payload: dict) -> str:
        if self.error is not None:
            raise self.error
        self.published.append((callback_path, payload))
        return f"msg-{len(self.published)}"
