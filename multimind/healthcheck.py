"""Channel health checks — ping each channel used by the active roles before a discussion."""

import asyncio
import logging
from collections.abc import Callable

from multimind.models import ActiveRole, Channel
from multimind.providers.base import ModelInvoker

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0
_PING_MAX_TOKENS = 16


async def _check_one(role: ActiveRole, invoker: ModelInvoker) -> tuple[str, bool, str]:
    """Ping one channel through one of its models. Returns (channel_name, ok, error_message)."""
    channel = role.channel
    try:
        result = await invoker.invoke(
            _PING_PROMPT,
            role.model.api_name,
            None,
            False,
            None,
            channel.base_url,
            channel.api_key,
            max_tokens=_PING_MAX_TOKENS,
            temperature=0.0,
            timeout_sec=min(channel.timeout_sec, _TIMEOUT_SEC),
        )
    except Exception as exc:
        return channel.name, False, str(exc)
    if result.error:
        return channel.name, False, result.text
    return channel.name, True, ""


async def run_health_checks(
    roles: list[ActiveRole],
    invoker_for: Callable[[Channel], ModelInvoker],
) -> dict[str, tuple[bool, str]]:
    """Ping every distinct channel among the roles in parallel.

    Each channel is pinged once, using the model of the first role on it.

    Returns:
        Dict mapping channel name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    first_per_channel: dict[str, ActiveRole] = {}
    for role in roles:
        first_per_channel.setdefault(role.channel.id, role)

    results = await asyncio.gather(
        *(_check_one(role, invoker_for(role.channel)) for role in first_per_channel.values())
    )
    for name, ok, err in results:
        if not ok:
            logger.warning("Health check failed for channel %s: %s", name, err)
    return {name: (ok, err) for name, ok, err in results}
