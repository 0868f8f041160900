"""Language-model capability consumed by the generator.

The pipeline only needs two operations, full completion and incremental
streaming. AnthropicLanguageModel implements them with AsyncAnthropic
and translates provider exceptions into GeneratorFailure with an E-2xxx
code so callers handle a single error type.
"""

import logging
from collections.abc import AsyncIterator
from typing import Protocol

import anthropic
from anthropic import AsyncAnthropic

from journalcoach.cli.config import LLMConfig
from journalcoach.errors import GeneratorFailure

logger = logging.getLogger(__name__)

ChatTurn = dict[str, str]


class LanguageModel(Protocol):
    """Opaque text generation capability."""

    async def complete(
        self, system: str, history: list[ChatTurn], max_tokens: int
    ) -> str:
        """Return the full reply text."""
        ...

    def stream(
        self, system: str, history: list[ChatTurn], max_tokens: int
    ) -> AsyncIterator[str]:
        """Yield reply text chunks as they arrive."""
        ...


def classify_provider_error(exc: Exception) -> GeneratorFailure:
    """Map an Anthropic SDK exception to a coded GeneratorFailure."""
    if isinstance(exc, anthropic.APITimeoutError):
        return GeneratorFailure("E-2001", detail=str(exc))
    if isinstance(exc, anthropic.RateLimitError):
        return GeneratorFailure("E-2002", detail=str(exc))
    if isinstance(exc, anthropic.APIStatusError):
        return GeneratorFailure("E-2003", detail=f"HTTP {exc.status_code}: {exc.message}")
    if isinstance(exc, anthropic.APIConnectionError):
        return GeneratorFailure("E-2003", detail=str(exc))
    return GeneratorFailure("E-2003", detail=str(exc))


class AnthropicLanguageModel:
    """LanguageModel backed by the Anthropic Messages API."""

    def __init__(self, config: LLMConfig, client: AsyncAnthropic | None = None) -> None:
        self.config = config
        self.client = client or AsyncAnthropic(timeout=config.timeout_seconds)

    async def complete(
        self, system: str, history: list[ChatTurn], max_tokens: int
    ) -> str:
        try:
            response = await self.client.messages.create(
                model=self.config.model,
                max_tokens=max_tokens,
                system=system,
                messages=history,
            )
        except anthropic.APIError as e:
            raise classify_provider_error(e) from e

        text = "".join(
            block.text for block in response.content if block.type == "text"
        )
        if not text.strip():
            raise GeneratorFailure("E-2004")
        return text

    async def stream(
        self, system: str, history: list[ChatTurn], max_tokens: int
    ) -> AsyncIterator[str]:
        try:
            async with self.client.messages.stream(
                model=self.config.model,
                max_tokens=max_tokens,
                system=system,
                messages=history,
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic.APIError as e:
            raise classify_provider_error(e) from e
