"""OpenAI-compatible language model client (Ollama /v1, LM Studio)."""

import logging
from dataclasses import dataclass
from typing import Callable

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncOpenAI,
)

from backend_errors import BackendError, BackendUnreachableError, MalformedResponseError
from config import LanguageModelConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "language model server"

TokenCallback = Callable[[str], None]


@dataclass
class ChatResponse:
    """Result of one chat completion."""
    content: str
    model: str
    tokens_in: int | None = None
    tokens_out: int | None = None


class LanguageModelClient:
    """Stateless wrapper over one OpenAI-compatible chat endpoint.

    Calls are never retried: an unreachable server or a timeout fails the
    calling stage immediately.
    """

    def __init__(self, config: LanguageModelConfig, http_client: httpx.AsyncClient | None = None):
        """Initialize the client.

        Args:
            config: Language model server configuration
            http_client: Optional pre-built HTTP client (used in tests)
        """
        self.config = config
        self._client = AsyncOpenAI(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=config.timeout,
            max_retries=0,
            http_client=http_client,
        )

    @property
    def endpoint(self) -> str:
        return self.config.base_url

    def _translate_error(self, error: Exception) -> BackendError:
        if isinstance(error, APIConnectionError):
            # Includes APITimeoutError
            return BackendUnreachableError(SERVICE_NAME, self.endpoint, type(error).__name__)
        if isinstance(error, APIStatusError):
            return BackendError(
                f"{SERVICE_NAME} at {self.endpoint} returned HTTP {error.status_code}: {error.message}",
                self.endpoint,
            )
        return BackendError(f"{SERVICE_NAME} call failed: {error}", self.endpoint)

    async def chat(
        self,
        model: str,
        messages: list[dict[str, str]],
        *,
        json_mode: bool = False,
        max_tokens: int | None = None,
        temperature: float | None = None,
        on_token: TokenCallback | None = None,
    ) -> ChatResponse:
        """
        Run one chat completion.

        When on_token is given the response is streamed and every content
        delta is passed to it as it arrives.

        Args:
            model: Model id to use
            messages: Chat messages (role/content dicts)
            json_mode: Ask the server for a JSON object response
            max_tokens: Cap on generated tokens
            temperature: Sampling temperature (defaults to config)
            on_token: Callback for streamed content deltas

        Returns:
            The complete response text and token usage, when reported

        Raises:
            BackendUnreachableError: Connection refused or timed out
            BackendError: Non-2xx response
            MalformedResponseError: Response had no content
        """
        kwargs = {
            "model": model,
            "messages": messages,
            "temperature": self.config.temperature if temperature is None else temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        try:
            if on_token is not None:
                return await self._chat_stream(kwargs, on_token)
            response = await self._client.chat.completions.create(**kwargs)
        except (APIConnectionError, APIStatusError) as e:
            raise self._translate_error(e) from e
        except httpx.TransportError as e:
            # Connection dropped mid-stream
            raise BackendUnreachableError(SERVICE_NAME, self.endpoint, type(e).__name__) from e

        if not response.choices:
            raise MalformedResponseError(f"{SERVICE_NAME} returned no choices for model {model}", 0, self.endpoint)

        content = response.choices[0].message.content or ""
        usage = response.usage
        return ChatResponse(
            content=content,
            model=response.model or model,
            tokens_in=usage.prompt_tokens if usage else None,
            tokens_out=usage.completion_tokens if usage else None,
        )

    async def _chat_stream(self, kwargs: dict, on_token: TokenCallback) -> ChatResponse:
        stream = await self._client.chat.completions.create(
            stream=True,
            stream_options={"include_usage": True},
            **kwargs,
        )
        parts: list[str] = []
        tokens_in = tokens_out = None
        model = kwargs["model"]
        try:
            async for chunk in stream:
                if chunk.usage is not None:
                    tokens_in = chunk.usage.prompt_tokens
                    tokens_out = chunk.usage.completion_tokens
                if chunk.model:
                    model = chunk.model
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    parts.append(delta)
                    on_token(delta)
        finally:
            await stream.close()

        return ChatResponse(content="".join(parts), model=model, tokens_in=tokens_in, tokens_out=tokens_out)

    async def list_models(self) -> list[str]:
        """List model ids available on the server.

        Raises:
            BackendUnreachableError: Connection refused or timed out
            BackendError: Non-2xx response
        """
        try:
            page = await self._client.with_options(timeout=self.config.health_timeout).models.list()
        except (APIConnectionError, APIStatusError) as e:
            raise self._translate_error(e) from e
        return sorted(model.id for model in page.data)

    async def health_check(self) -> bool:
        """Return True if the server answers the models listing."""
        try:
            await self.list_models()
            return True
        except BackendError as e:
            logger.info(f"Language model health check failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.close()
