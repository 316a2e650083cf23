"""Gemini invoker using the google-genai SDK with native async streaming."""

import base64
import logging
from collections.abc import AsyncIterator

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from multimind.providers.base import (
    AUTH_ERROR,
    MODEL_NOT_FOUND_ERROR,
    RATE_LIMIT_ERROR,
    CategorizedError,
    InvocationRequest,
    ModelInvoker,
)

logger = logging.getLogger(__name__)


def build_contents(request: InvocationRequest) -> str | list:
    if request.image_part is None:
        return request.prompt
    image = genai_types.Part.from_bytes(
        data=base64.b64decode(request.image_part.base64_data),
        mime_type=request.image_part.mime_type,
    )
    return [request.prompt, image]


class GeminiInvoker(ModelInvoker):
    """Google Gemini via google-genai."""

    name = "gemini"

    def __init__(self) -> None:
        self._clients: dict[tuple[str, str], genai.Client] = {}

    def _client(self, base_url: str, api_key: str) -> genai.Client:
        key = (base_url, api_key)
        if key not in self._clients:
            http_options = genai_types.HttpOptions(base_url=base_url) if base_url else None
            self._clients[key] = genai.Client(api_key=api_key, http_options=http_options)
            logger.debug("Created Gemini client for %s", base_url)
        return self._clients[key]

    async def _stream(self, request: InvocationRequest) -> AsyncIterator[str]:
        client = self._client(request.base_url, request.api_key)
        stream = await client.aio.models.generate_content_stream(
            model=request.model_identifier,
            contents=build_contents(request),
            config=genai_types.GenerateContentConfig(
                system_instruction=request.system_instruction or None,
                max_output_tokens=request.max_tokens,
                temperature=request.temperature,
            ),
        )
        async for chunk in stream:
            if chunk.text:
                yield chunk.text

    def _categorize(self, exc: Exception, request: InvocationRequest) -> CategorizedError:
        if isinstance(exc, genai_errors.APIError):
            if exc.code in (401, 403):
                return CategorizedError(
                    AUTH_ERROR,
                    "The API key is invalid or expired. Check the API key configured for this channel.",
                )
            if exc.code == 429:
                return CategorizedError(RATE_LIMIT_ERROR, "API rate limit exceeded, please retry later.")
            if exc.code == 404:
                return CategorizedError(
                    MODEL_NOT_FOUND_ERROR,
                    f"Model {request.model_identifier} does not exist or is not accessible. "
                    "Check the model name or API permissions.",
                )
        return super()._categorize(exc, request)
