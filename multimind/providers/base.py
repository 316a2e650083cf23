"""Abstract base for model invokers: streaming, timeouts, error categories."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from multimind.models import ImagePart, InvocationResult

logger = logging.getLogger(__name__)

# Error categories; the engine matches on these substrings.
AUTH_ERROR = "API key not valid"
RATE_LIMIT_ERROR = "Rate limit exceeded"
MODEL_NOT_FOUND_ERROR = "Model not found"
NETWORK_ERROR = "Network error"
TIMEOUT_ERROR = "Request timed out"
EMPTY_RESPONSE_ERROR = "Empty response"

REDUCED_TEMPERATURE = 0.3
REDUCED_MAX_TOKENS = 1000

# (new_chunk, accumulated_text, is_complete)
ChunkCallback = Callable[[str, str, bool], None]


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class CategorizedError(Exception):
    """A provider failure already mapped to one of the error categories."""

    def __init__(self, category: str, user_text: str) -> None:
        self.category = category
        self.user_text = user_text
        super().__init__(f"{category}: {user_text}")


@dataclass(frozen=True)
class InvocationRequest:
    prompt: str
    model_identifier: str
    system_instruction: str | None
    image_part: ImagePart | None
    base_url: str
    api_key: str
    max_tokens: int
    temperature: float


def is_auth_error(error: str | None) -> bool:
    return bool(error) and (AUTH_ERROR in error or "401" in error)


def categorize_message(message: str, model_identifier: str) -> CategorizedError:
    """Map a raw failure message onto an error category by substring."""
    lowered = message.lower()
    if "401" in message or "unauthorized" in lowered or "api key" in lowered:
        return CategorizedError(
            AUTH_ERROR,
            "The API key is invalid or expired. Check the API key configured for this channel.",
        )
    if "429" in message or "rate limit" in lowered:
        return CategorizedError(RATE_LIMIT_ERROR, "API rate limit exceeded, please retry later.")
    if "404" in message or "not found" in lowered:
        return CategorizedError(
            MODEL_NOT_FOUND_ERROR,
            f"Model {model_identifier} does not exist or is not accessible. "
            "Check the model name or API permissions.",
        )
    if "connect" in lowered or "network" in lowered:
        return CategorizedError(NETWORK_ERROR, "Network connection error, check the connection and retry.")
    return CategorizedError(message, f"Error communicating with the API: {message}")


def sampling_params(max_tokens: int, temperature: float, use_reduced_capacity: bool) -> tuple[int, float]:
    """Return (max_tokens, temperature) after applying reduced-capacity mode."""
    if use_reduced_capacity:
        return min(max_tokens, REDUCED_MAX_TOKENS), REDUCED_TEMPERATURE
    return max_tokens, temperature


class ModelInvoker(ABC):
    """Base for all chat-completion invokers.

    Subclasses only implement ``_stream`` (yield text deltas) and may
    override ``_categorize`` to map SDK exception types. ``invoke`` never
    raises: every failure resolves to an InvocationResult with ``error`` set.
    """

    name = "base"

    @abstractmethod
    def _stream(self, request: InvocationRequest) -> AsyncIterator[str]:
        """Yield incremental text deltas for the request."""
        ...

    def _categorize(self, exc: Exception, request: InvocationRequest) -> CategorizedError:
        if isinstance(exc, CategorizedError):
            return exc
        return categorize_message(str(exc), request.model_identifier)

    async def invoke(
        self,
        prompt: str,
        model_identifier: str,
        system_instruction: str | None,
        use_reduced_capacity: bool,
        image_part: ImagePart | None,
        base_url: str,
        api_key: str,
        on_chunk: ChunkCallback | None = None,
        *,
        max_tokens: int = 4000,
        temperature: float = 0.7,
        timeout_sec: float = 30,
    ) -> InvocationResult:
        """Run one chat completion, streaming accumulated text to ``on_chunk``.

        Returns:
            InvocationResult whose ``text`` is the full response, or a
            user-facing explanation when ``error`` is set.

        Provider failures never raise. An exception from ``on_chunk`` is
        re-raised as is.
        """
        start = time.monotonic()

        def _elapsed_ms() -> float:
            return (time.monotonic() - start) * 1000

        if not api_key or not api_key.strip():
            return InvocationResult(
                text="API key is not set. Configure the API key for this channel.",
                duration_ms=_elapsed_ms(),
                error=AUTH_ERROR,
            )

        effective_max_tokens, effective_temperature = sampling_params(
            max_tokens, temperature, use_reduced_capacity
        )
        request = InvocationRequest(
            prompt=prompt,
            model_identifier=model_identifier,
            system_instruction=system_instruction,
            image_part=image_part,
            base_url=base_url,
            api_key=api_key,
            max_tokens=effective_max_tokens,
            temperature=effective_temperature,
        )

        accumulated = ""
        callback_error: Exception | None = None

        async def _consume() -> None:
            nonlocal accumulated, callback_error
            async for delta in self._stream(request):
                if not delta:
                    continue
                accumulated += delta
                if on_chunk is not None:
                    try:
                        on_chunk(delta, accumulated, False)
                    except Exception as exc:
                        callback_error = exc
                        raise

        try:
            await asyncio.wait_for(_consume(), timeout=timeout_sec)
        except TimeoutError:
            logger.warning("%s: %s timed out after %ss", self.name, model_identifier, timeout_sec)
            return InvocationResult(
                text=f"Request timed out after {timeout_sec}s.",
                duration_ms=_elapsed_ms(),
                error=TIMEOUT_ERROR,
            )
        except Exception as exc:
            if exc is callback_error:
                raise
            categorized = self._categorize(exc, request)
            logger.warning("%s: %s failed: %s", self.name, model_identifier, exc)
            return InvocationResult(
                text=categorized.user_text,
                duration_ms=_elapsed_ms(),
                error=categorized.category,
            )

        if on_chunk is not None:
            on_chunk("", accumulated, True)

        if not accumulated.strip():
            return InvocationResult(
                text="The AI response was empty; check the model configuration or retry.",
                duration_ms=_elapsed_ms(),
                error=EMPTY_RESPONSE_ERROR,
            )

        duration_ms = _elapsed_ms()
        logger.info("%s: %s responded in %.2fs", self.name, model_identifier, duration_ms / 1000)
        return InvocationResult(text=accumulated, duration_ms=duration_ms)

    async def close(self) -> None:
        """Release any SDK clients held by the invoker."""
        return None
