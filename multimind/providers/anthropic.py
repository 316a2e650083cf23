"""Anthropic invoker using the anthropic SDK with native async streaming."""

import logging
from collections.abc import AsyncIterator

import anthropic
from anthropic import AsyncAnthropic

from multimind.providers.base import (
    AUTH_ERROR,
    MODEL_NOT_FOUND_ERROR,
    NETWORK_ERROR,
    RATE_LIMIT_ERROR,
    TIMEOUT_ERROR,
    CategorizedError,
    InvocationRequest,
    ModelInvoker,
)

logger = logging.getLogger(__name__)

# Anthropic accepts temperatures in [0, 1].
_MAX_TEMPERATURE = 1.0


def build_content(request: InvocationRequest) -> str | list[dict]:
    if request.image_part is None:
        return request.prompt
    return [
        {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": request.image_part.mime_type,
                "data": request.image_part.base64_data,
            },
        },
        {"type": "text", "text": request.prompt},
    ]


class AnthropicInvoker(ModelInvoker):
    """Anthropic Messages API."""

    name = "anthropic"

    def __init__(self) -> None:
        self._clients: dict[tuple[str, str], AsyncAnthropic] = {}

    def _client(self, base_url: str, api_key: str) -> AsyncAnthropic:
        key = (base_url, api_key)
        if key not in self._clients:
            self._clients[key] = AsyncAnthropic(base_url=base_url or None, api_key=api_key, max_retries=0)
            logger.debug("Created Anthropic client for %s", base_url)
        return self._clients[key]

    async def _stream(self, request: InvocationRequest) -> AsyncIterator[str]:
        client = self._client(request.base_url, request.api_key)
        kwargs: dict = {
            "model": request.model_identifier,
            "max_tokens": request.max_tokens,
            "temperature": min(request.temperature, _MAX_TEMPERATURE),
            "messages": [{"role": "user", "content": build_content(request)}],
        }
        if request.system_instruction:
            kwargs["system"] = request.system_instruction
        async with client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                yield text

    def _categorize(self, exc: Exception, request: InvocationRequest) -> CategorizedError:
        if isinstance(exc, anthropic.AuthenticationError):
            return CategorizedError(
                AUTH_ERROR,
                "The API key is invalid or expired. Check the API key configured for this channel.",
            )
        if isinstance(exc, anthropic.RateLimitError):
            return CategorizedError(RATE_LIMIT_ERROR, "API rate limit exceeded, please retry later.")
        if isinstance(exc, anthropic.NotFoundError):
            return CategorizedError(
                MODEL_NOT_FOUND_ERROR,
                f"Model {request.model_identifier} does not exist or is not accessible. "
                "Check the model name or API permissions.",
            )
        if isinstance(exc, anthropic.APITimeoutError):
            return CategorizedError(TIMEOUT_ERROR, "The request to the API timed out.")
        if isinstance(exc, anthropic.APIConnectionError):
            return CategorizedError(NETWORK_ERROR, "Network connection error, check the connection and retry.")
        return super()._categorize(exc, request)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
