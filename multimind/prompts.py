"""Prompt construction for each discussion position.

Every builder is a pure function of the discussion state, the target role and
the live notepad value; none of them mutates the state.
"""

from config.config_loader import PromptsConfig
from multimind.models import ActiveRole, DiscussionMode, DiscussionState
from multimind.parser import DISCUSSION_COMPLETE_TAG


def build_notepad_instructions(prompts: PromptsConfig, notepad_content: str) -> str:
    return prompts.notepad_instruction.format(notepad_content=notepad_content)


def build_common_instructions(
    prompts: PromptsConfig,
    notepad_content: str,
    mode: DiscussionMode,
) -> str:
    """Instructions captured once at discussion start and reused in round zero."""
    instructions = build_notepad_instructions(prompts, notepad_content)
    if mode == DiscussionMode.AI_DRIVEN:
        instructions += prompts.ai_driven_instruction.format(stop_tag=DISCUSSION_COMPLETE_TAG)
    return instructions


def _image_note(prompts: PromptsConfig, state: DiscussionState) -> str:
    return prompts.image_note if state.image_part is not None else ""


def _other_role_names(state: DiscussionState, speaker: ActiveRole) -> str:
    return " and ".join(r.name for r in state.role_order if r.id != speaker.id)


def build_turn_prompt(
    state: DiscussionState,
    role: ActiveRole,
    notepad_content: str,
    prompts: PromptsConfig,
    mode: DiscussionMode,
) -> str:
    """Build the prompt for a non-final turn.

    Three shapes:
        - first message of the discussion: query + initial-analysis request.
        - round zero: query + log so far + other role names, with the
          instructions captured at discussion start.
        - later rounds: query + log + other role names, with notepad
          instructions rebuilt from ``notepad_content`` and the stop block
          or stop nudge for AI-driven mode.
    """
    image_note = _image_note(prompts, state)

    if state.is_first_message:
        return prompts.first.format(
            query=state.user_query,
            image_note=image_note,
            instructions=state.common_prompt_instructions,
        )

    discussion_log = "\n".join(state.discussion_log)
    other_roles = _other_role_names(state, role)

    if state.current_turn == 0:
        return prompts.peer_initial.format(
            query=state.user_query,
            image_note=image_note,
            discussion_log=discussion_log,
            other_roles=other_roles,
            instructions=state.common_prompt_instructions,
        )

    prompt = prompts.peer_followup.format(
        query=state.user_query,
        image_note=image_note,
        discussion_log=discussion_log,
        other_roles=other_roles,
        instructions=build_notepad_instructions(prompts, notepad_content),
    )
    if mode == DiscussionMode.AI_DRIVEN and state.previous_ai_signaled_stop:
        prompt += prompts.stop_nudge.format(stop_tag=DISCUSSION_COMPLETE_TAG)
    elif mode == DiscussionMode.AI_DRIVEN:
        prompt += prompts.ai_driven_instruction.format(stop_tag=DISCUSSION_COMPLETE_TAG)
    return prompt


def build_synthesis_prompt(
    state: DiscussionState,
    notepad_content: str,
    prompts: PromptsConfig,
) -> str:
    """Build the final synthesis prompt from the complete discussion log."""
    return prompts.synthesis.format(
        query=state.user_query,
        image_note=_image_note(prompts, state),
        discussion_log="\n".join(state.discussion_log),
        instructions=build_notepad_instructions(prompts, notepad_content),
    )
