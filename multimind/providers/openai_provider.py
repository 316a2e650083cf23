"""OpenAI-compatible invoker using the openai SDK with native async streaming."""

import logging
from collections.abc import AsyncIterator

import openai
from openai import AsyncOpenAI

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


def build_messages(request: InvocationRequest) -> list[dict]:
    messages: list[dict] = []
    if request.system_instruction:
        messages.append({"role": "system", "content": request.system_instruction})
    if request.image_part is not None:
        image_url = f"data:{request.image_part.mime_type};base64,{request.image_part.base64_data}"
        messages.append({
            "role": "user",
            "content": [
                {"type": "text", "text": request.prompt},
                {"type": "image_url", "image_url": {"url": image_url, "detail": "auto"}},
            ],
        })
    else:
        messages.append({"role": "user", "content": request.prompt})
    return messages


class OpenAIInvoker(ModelInvoker):
    """Any OpenAI-compatible chat-completions endpoint (OpenAI, proxies, local servers)."""

    name = "openai"

    def __init__(self) -> None:
        self._clients: dict[tuple[str, str], AsyncOpenAI] = {}

    def _client(self, base_url: str, api_key: str) -> AsyncOpenAI:
        key = (base_url, api_key)
        if key not in self._clients:
            # No SDK-level retries: a failed turn ends the discussion.
            self._clients[key] = AsyncOpenAI(base_url=base_url, api_key=api_key, max_retries=0)
            logger.debug("Created OpenAI client for %s", base_url)
        return self._clients[key]

    async def _stream(self, request: InvocationRequest) -> AsyncIterator[str]:
        client = self._client(request.base_url, request.api_key)
        stream = await client.chat.completions.create(
            model=request.model_identifier,
            messages=build_messages(request),
            stream=True,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content

    def _categorize(self, exc: Exception, request: InvocationRequest) -> CategorizedError:
        if isinstance(exc, openai.AuthenticationError):
            return CategorizedError(
                AUTH_ERROR,
                "The API key is invalid or expired. Check the API key configured for this channel.",
            )
        if isinstance(exc, openai.RateLimitError):
            return CategorizedError(RATE_LIMIT_ERROR, "API rate limit exceeded, please retry later.")
        if isinstance(exc, openai.NotFoundError):
            return CategorizedError(
                MODEL_NOT_FOUND_ERROR,
                f"Model {request.model_identifier} does not exist or is not accessible. "
                "Check the model name or API permissions.",
            )
        if isinstance(exc, openai.APITimeoutError):
            return CategorizedError(TIMEOUT_ERROR, "The request to the API timed out.")
        if isinstance(exc, openai.APIConnectionError):
            return CategorizedError(NETWORK_ERROR, "Network connection error, check the connection and retry.")
        return super()._categorize(exc, request)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
