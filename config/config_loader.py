"""Load settings.yaml into typed dataclasses. API keys come from the environment."""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from urllib.parse import urlparse

import yaml

from multimind.models import AiModel, Channel, DiscussionMode, Role

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

DEFAULT_MANUAL_FIXED_TURNS = 2
MIN_MANUAL_FIXED_TURNS = 1
MAX_MANUAL_FIXED_TURNS = 5
MAX_AI_DRIVEN_DISCUSSION_TURNS_PER_MODEL = 3

INITIAL_NOTEPAD_CONTENT = """This is a shared notepad.
AI roles can use it to collaborate on ideas, drafts, or key points.

Usage:
- AI models update this notepad by including a special block in their reply.
- The notepad content is included in the prompts sent to the AI afterwards.

Initial state: blank."""

_NOTEPAD_INSTRUCTION = """
You also have access to a shared notepad.
Current Notepad Content:
---
{notepad_content}
---
Instructions for Notepad:
1. To update the notepad, include a section at the very end of your response, formatted exactly as:
   <notepad_update>
   [YOUR NEW FULL NOTEPAD CONTENT HERE. THIS WILL REPLACE THE ENTIRE CURRENT NOTEPAD CONTENT.]
   </notepad_update>
2. If you do not want to change the notepad, do NOT include the <notepad_update> section at all.
3. Your primary spoken response to the ongoing discussion should come BEFORE any <notepad_update> section. Ensure you still provide a spoken response.
"""

_AI_DRIVEN_INSTRUCTION = """
Instruction for ending discussion: If you believe the current topic has been sufficiently explored between you and the other AI roles for the final synthesis, include the exact tag {stop_tag} at the very end of your current message (after any notepad update). Do not use this tag if you wish to continue the discussion or require more input from the other roles.
"""


@dataclass
class PromptsConfig:
    first: str = (
        'The user\'s query is: "{query}". {image_note} '
        "Please provide your initial thoughts or analysis on this query. "
        "This is a multi-AI collaborative environment; other AI roles will respond to "
        "and discuss your view afterwards.\n{instructions}"
    )
    peer_initial: str = (
        'The user\'s query is: "{query}". {image_note} '
        "Current discussion:\n{discussion_log}\n"
        "You are discussing this question together with {other_roles}. "
        "Please provide your own perspective and analysis.\n{instructions}"
    )
    peer_followup: str = (
        'The user\'s query is: "{query}". {image_note} '
        "Current discussion:\n{discussion_log}\n"
        "You are discussing this together with {other_roles}. "
        "Respond to the discussion so far with further insights or a different perspective. "
        "Keep it concise.\n{instructions}"
    )
    synthesis: str = (
        'The user\'s original query is: "{query}". {image_note} '
        "You and the other AI roles had the following discussion:\n{discussion_log}\n"
        "Based on the whole collaborative discussion and the final state of the shared notepad, "
        "combine all key points into a comprehensive, useful final answer for the user. "
        "Reply directly to the user with a well-structured answer that is easy to follow. "
        "You may reference the notepad content where relevant, and you may update the notepad "
        "one last time if needed.\n{instructions}"
    )
    image_note: str = (
        "The user also provided an image. Consider both the image and the text query "
        "in your analysis and reply."
    )
    notepad_instruction: str = _NOTEPAD_INSTRUCTION
    ai_driven_instruction: str = _AI_DRIVEN_INSTRUCTION
    stop_nudge: str = (
        "\nNote: another AI role has suggested ending the discussion. If you agree, "
        "include {stop_tag} in your reply. Otherwise, continue the discussion."
    )


@dataclass
class DefaultsConfig:
    mode: DiscussionMode = DiscussionMode.FIXED_TURNS
    fixed_turns: int = DEFAULT_MANUAL_FIXED_TURNS
    ai_driven_max_turns: int = MAX_AI_DRIVEN_DISCUSSION_TURNS_PER_MODEL
    reduced_capacity: bool = False
    output_dir: Path = Path("./output")
    initial_notepad: str = INITIAL_NOTEPAD_CONTENT


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    channels: list[Channel]
    models: list[AiModel]
    roles: list[Role]
    prompts: PromptsConfig = field(default_factory=PromptsConfig)

    def get_channels(self) -> list[Channel]:
        return list(self.channels)

    def get_models(self) -> list[AiModel]:
        return list(self.models)

    def get_active_roles(self) -> list[Role]:
        return [r for r in self.roles if r.is_active]

    def default_channel(self) -> Channel | None:
        return next((c for c in self.channels if c.is_default), self.channels[0] if self.channels else None)


def clamp_fixed_turns(value: int | None) -> int:
    """Clamp a requested fixed-turn count into the allowed inclusive range."""
    if value is None:
        return DEFAULT_MANUAL_FIXED_TURNS
    return max(MIN_MANUAL_FIXED_TURNS, min(MAX_MANUAL_FIXED_TURNS, int(value)))


def validate_channel(raw: dict) -> list[str]:
    """Return validation errors for a raw channel entry (empty list when valid)."""
    errors: list[str] = []
    if not str(raw.get("name", "")).strip():
        errors.append("Channel name must not be empty")
    base_url = str(raw.get("base_url", "")).strip()
    if not base_url:
        errors.append("API base URL must not be empty")
    else:
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            errors.append("API base URL is not a valid URL")
    timeout = raw.get("timeout_sec")
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout < 1):
        errors.append("Timeout must be a number of at least 1 second")
    if raw.get("sdk", "openai") not in ("openai", "anthropic", "gemini"):
        errors.append(f"Unknown sdk: {raw.get('sdk')}")
    return errors


def validate_model(raw: dict) -> list[str]:
    """Return validation errors for a raw model entry (empty list when valid)."""
    errors: list[str] = []
    if not str(raw.get("name", "")).strip():
        errors.append("Model name must not be empty")
    if not str(raw.get("api_name", "")).strip():
        errors.append("API model name must not be empty")
    if not str(raw.get("channel", "")).strip():
        errors.append("A channel must be selected")
    max_tokens = raw.get("max_tokens", 4000)
    if not isinstance(max_tokens, int) or max_tokens < 1:
        errors.append("Max tokens must be a number greater than 0")
    temperature = raw.get("temperature", 0.7)
    if not isinstance(temperature, (int, float)) or not 0 <= temperature <= 2:
        errors.append("Temperature must be between 0 and 2")
    return errors


def _load_channels(raw_channels: dict) -> list[Channel]:
    channels: list[Channel] = []
    for channel_id, raw in raw_channels.items():
        errors = validate_channel(raw)
        if errors:
            logger.warning("Channel skipped (invalid): %s — %s", channel_id, "; ".join(errors))
            continue
        api_key_env = raw.get("api_key_env", "")
        api_key = os.environ.get(api_key_env, "").strip() if api_key_env else ""
        if api_key:
            logger.info("Channel available: %s", channel_id)
        else:
            logger.info("Channel has no API key: %s — set %s in .env", channel_id, api_key_env)
        channels.append(
            Channel(
                id=channel_id,
                name=str(raw["name"]),
                base_url=str(raw["base_url"]).rstrip("/"),
                api_key=api_key,
                timeout_sec=int(raw.get("timeout_sec", 30)),
                is_default=bool(raw.get("default", False)),
                sdk=str(raw.get("sdk", "openai")),
            )
        )

    # Exactly one default channel: the first flagged one, else the first one.
    if channels and not any(c.is_default for c in channels):
        channels[0] = replace(channels[0], is_default=True)
    return channels


def _load_models(raw_models: dict) -> list[AiModel]:
    models: list[AiModel] = []
    for model_id, raw in raw_models.items():
        errors = validate_model(raw)
        if errors:
            logger.warning("Model skipped (invalid): %s — %s", model_id, "; ".join(errors))
            continue
        models.append(
            AiModel(
                id=model_id,
                name=str(raw["name"]),
                api_name=str(raw["api_name"]),
                channel_id=str(raw["channel"]),
                supports_images=bool(raw.get("supports_images", False)),
                supports_reduced_capacity=bool(raw.get("supports_reduced_capacity", False)),
                max_tokens=int(raw.get("max_tokens", 4000)),
                temperature=float(raw.get("temperature", 0.7)),
                category=str(raw.get("category", "")),
            )
        )
    return models


def _load_roles(raw_roles: dict) -> list[Role]:
    return [
        Role(
            id=role_id,
            name=str(raw["name"]),
            system_prompt=str(raw.get("system_prompt", "")).strip(),
            model_id=str(raw["model"]),
            is_active=bool(raw.get("active", True)),
        )
        for role_id, raw in raw_roles.items()
    ]


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Invalid channels and models are skipped with a warning; dangling
    role references are left for the discussion engine to exclude.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    defaults_raw = raw.get("defaults", {})
    defaults = DefaultsConfig(
        mode=DiscussionMode(defaults_raw.get("mode", DiscussionMode.FIXED_TURNS.value)),
        fixed_turns=clamp_fixed_turns(defaults_raw.get("fixed_turns")),
        ai_driven_max_turns=int(
            defaults_raw.get("ai_driven_max_turns", MAX_AI_DRIVEN_DISCUSSION_TURNS_PER_MODEL)
        ),
        reduced_capacity=bool(defaults_raw.get("reduced_capacity", False)),
        output_dir=Path(defaults_raw.get("output_dir", "./output")),
        initial_notepad=str(defaults_raw.get("initial_notepad", INITIAL_NOTEPAD_CONTENT)).strip(),
    )

    prompt_overrides = {
        k: str(v) for k, v in (raw.get("prompts") or {}).items()
        if k in PromptsConfig.__dataclass_fields__
    }
    prompts = PromptsConfig(**prompt_overrides)

    return AppConfig(
        defaults=defaults,
        channels=_load_channels(raw.get("channels") or {}),
        models=_load_models(raw.get("models") or {}),
        roles=_load_roles(raw.get("roles") or {}),
        prompts=prompts,
    )
