"""LLM gateway: chat completion calls wrapped in the retry policy.

The transport is pluggable so the retry behaviour can be exercised with a fake
transport in tests.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Sequence

from loguru import logger
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field

from metadata_canvas.utils.config import Config, LLMConfig, RetryConfig
from metadata_canvas.utils.errors import GatewayError
from metadata_canvas.utils.llm_client import create_async_openai_client
from metadata_canvas.utils.retry import RetryPolicy, call_with_retry


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Wire request ``{messages, model, temperature, provider?}``."""

    model_config = ConfigDict(frozen=True)

    messages: List[ChatMessage]
    model: str
    temperature: float = 0.3
    max_tokens: Optional[int] = None
    provider: Optional[str] = None


class ChatChoice(BaseModel):
    message: ChatMessage


class ChatResponse(BaseModel):
    """Wire response ``{choices: [{message: {content}}]}``."""

    choices: List[ChatChoice] = Field(default_factory=list)

    @property
    def content(self) -> str:
        if not self.choices:
            return ""
        return (self.choices[0].message.content or "").strip()

    @classmethod
    def from_text(cls, text: str) -> ChatResponse:
        return cls(choices=[ChatChoice(message=ChatMessage(role="assistant", content=text))])


class ChatTransport(Protocol):
    """Sends one chat request without retrying."""

    async def complete(self, request: ChatRequest) -> ChatResponse: ...


class OpenAIChatTransport:
    """Transport backed by the ``openai`` SDK (OpenAI or compatible endpoints)."""

    def __init__(self, client: AsyncOpenAI) -> None:
        self.client = client

    @classmethod
    def from_config(cls, config: LLMConfig, api_key: str | None = None) -> OpenAIChatTransport:
        client = create_async_openai_client(
            api_key=api_key or config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            custom_header=config.custom_header,
        )
        return cls(client)

    async def complete(self, request: ChatRequest) -> ChatResponse:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": [message.model_dump() for message in request.messages],
            "temperature": request.temperature,
        }
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        if request.provider and request.provider != "openai":
            kwargs["extra_body"] = {"provider": request.provider}

        try:
            completion = await self.client.chat.completions.create(**kwargs)
        except APIStatusError as exc:
            raise GatewayError(
                f"LLM API error {exc.status_code}: {exc.message}", status_code=exc.status_code
            ) from exc
        except (APITimeoutError, APIConnectionError) as exc:
            raise GatewayError(f"LLM network error: {exc}", retriable=True) from exc

        choices = [
            ChatChoice(message=ChatMessage(role="assistant", content=choice.message.content or ""))
            for choice in completion.choices
        ]
        return ChatResponse(choices=choices)


MessagesInput = Sequence[ChatMessage | Dict[str, str]]


class LLMGateway:
    """Single entry point for LLM calls (extraction, normalization, classification)."""

    def __init__(
        self,
        transport: ChatTransport,
        config: LLMConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.transport = transport
        self.config = config or LLMConfig()
        self.retry_policy = retry_policy or RetryPolicy.from_config(RetryConfig())
        self._sleep = sleep or asyncio.sleep

        logger.info(
            "Initialized LLMGateway",
            provider=self.config.provider,
            model=self.config.model,
            max_retries=self.retry_policy.max_retries,
        )

    @classmethod
    def from_config(cls, config: Config) -> LLMGateway:
        transport = OpenAIChatTransport.from_config(config.llm, api_key=config.resolve_api_key())
        return cls(transport, config.llm, RetryPolicy.from_config(config.retry))

    async def invoke(
        self,
        messages: MessagesInput,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatResponse:
        """Send ``messages`` and return the response.

        Transient failures are retried; the last error propagates once retries are
        exhausted. Non-retriable errors propagate immediately.
        """
        request = ChatRequest(
            messages=[
                message if isinstance(message, ChatMessage) else ChatMessage(**message)
                for message in messages
            ],
            model=self.config.model,
            temperature=self.config.temperature if temperature is None else temperature,
            max_tokens=self.config.max_tokens if max_tokens is None else max_tokens,
            provider=self.config.provider,
        )

        async def _attempt() -> ChatResponse:
            return await self.transport.complete(request)

        return await call_with_retry(_attempt, self.retry_policy, sleep=self._sleep)

    async def ask(
        self,
        user: str,
        *,
        system: str = "",
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Convenience wrapper returning the first choice's content."""
        messages: List[ChatMessage] = []
        if system:
            messages.append(ChatMessage(role="system", content=system))
        messages.append(ChatMessage(role="user", content=user))
        response = await self.invoke(messages, temperature=temperature, max_tokens=max_tokens)
        return response.content
