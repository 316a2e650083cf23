"""Discussion orchestration: turn order, rounds, stop votes, synthesis.

One role speaks at a time. ``advance`` decides the next step synchronously;
``DiscussionEngine.run`` drives it in a loop, awaiting one model invocation
per step. Cancellation is cooperative: the flag is checked before every step
and again when each invocation resolves, so a straggling response is
discarded instead of applied.
"""

import logging
import math
import uuid
from collections.abc import Callable
from enum import Enum

from config.config_loader import PromptsConfig, clamp_fixed_turns
from multimind.models import (
    ActiveRole,
    AiModel,
    Channel,
    DiscussionEvent,
    DiscussionMode,
    DiscussionOutcome,
    DiscussionState,
    EventType,
    ImagePart,
    InvocationResult,
    Notepad,
    NotepadUpdate,
    OutcomeStatus,
    ParsedResponse,
    Role,
    TurnRecord,
)
from multimind.parser import parse_response
from multimind.prompts import build_synthesis_prompt, build_turn_prompt
from multimind.providers.base import ModelInvoker, is_auth_error

logger = logging.getLogger(__name__)

EventCallback = Callable[[DiscussionEvent], None]
InvokerFactory = Callable[[Channel], ModelInvoker]


class Action(str, Enum):
    SPEAK = "speak"
    SYNTHESIZE = "synthesize"


def resolve_active_roles(
    roles: list[Role],
    models: list[AiModel],
    channels: list[Channel],
) -> list[ActiveRole]:
    """Join each active role to its model and channel, preserving role order.

    Roles with a dangling model or channel reference are skipped with a warning.
    """
    models_by_id = {m.id: m for m in models}
    channels_by_id = {c.id: c for c in channels}
    active: list[ActiveRole] = []
    for role in roles:
        if not role.is_active:
            continue
        model = models_by_id.get(role.model_id)
        if model is None:
            logger.warning("Role %s references non-existent model %s", role.name, role.model_id)
            continue
        channel = channels_by_id.get(model.channel_id)
        if channel is None:
            logger.warning("Model %s references non-existent channel %s", model.name, model.channel_id)
            continue
        active.append(ActiveRole(role=role, model=model, channel=channel))
    return active


def max_turns_for(mode: DiscussionMode, fixed_turns: int | None, ai_driven_max_turns: int) -> int:
    if mode == DiscussionMode.AI_DRIVEN:
        return ai_driven_max_turns
    return clamp_fixed_turns(fixed_turns)


def _start_round(state: DiscussionState, turn: int) -> None:
    state.current_turn = turn
    state.current_role_index = 0
    state.discussion_end_count = 0


def advance(state: DiscussionState) -> Action:
    """Decide the next step, starting a new round when the current one is done.

    Round zero always lets every role speak once. Rounds 1..max_turns_for_loop
    follow unless a stop was agreed; an agreed stop or the last round ending
    moves on to synthesis.
    """
    role_count = len(state.role_order)

    if state.current_turn == 0:
        if state.current_role_index < role_count:
            return Action.SPEAK
        if state.previous_ai_signaled_stop or state.max_turns_for_loop <= 0:
            return Action.SYNTHESIZE
        _start_round(state, 1)
        return Action.SPEAK

    if state.previous_ai_signaled_stop:
        return Action.SYNTHESIZE
    if state.current_role_index >= role_count:
        if state.current_turn >= state.max_turns_for_loop:
            return Action.SYNTHESIZE
        _start_round(state, state.current_turn + 1)
    return Action.SPEAK


def register_stop_vote(state: DiscussionState) -> EventType:
    """Apply one stop vote from the role that just spoke.

    In round zero a single vote is authoritative. In later rounds a vote
    only ends the discussion once half the roles (rounded up) agree, or when
    a stop was already on the table.

    Returns:
        EventType.MAJORITY_STOP when the stop became binding in a later round,
        else EventType.STOP_SIGNALED.
    """
    if state.current_turn == 0:
        state.previous_ai_signaled_stop = True
        return EventType.STOP_SIGNALED

    state.discussion_end_count += 1
    majority = math.ceil(len(state.role_order) / 2)
    if state.previous_ai_signaled_stop or state.discussion_end_count >= majority:
        state.previous_ai_signaled_stop = True
        return EventType.MAJORITY_STOP
    return EventType.STOP_SIGNALED


def _new_message_id() -> str:
    return uuid.uuid4().hex


class DiscussionEngine:
    """Runs one discussion from round zero to synthesis.

    Attributes:
        notepad: Shared notepad, replaced wholesale by well-formed updates.
        invocations: Number of model invocations started so far.
        state: The live DiscussionState, or None once the discussion ended.
    """

    def __init__(
        self,
        invoker_for: InvokerFactory,
        notepad: Notepad,
        prompts: PromptsConfig,
        mode: DiscussionMode,
        reduced_capacity: bool = False,
        on_event: EventCallback | None = None,
    ) -> None:
        self._invoker_for = invoker_for
        self.notepad = notepad
        self.prompts = prompts
        self.mode = mode
        self.reduced_capacity = reduced_capacity
        self._on_event = on_event
        self._cancelled = False
        self.invocations = 0
        self.state: DiscussionState | None = None
        self._streamed: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Request cooperative cancellation. In-flight calls are not aborted."""
        self._cancelled = True

    def _emit(self, event: DiscussionEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    async def run(self, state: DiscussionState) -> DiscussionOutcome:
        """Drive the discussion to a terminal state.

        Raises:
            ValueError: If the state has no roles.
        """
        if not state.role_order:
            raise ValueError("A discussion needs at least one active role")

        self.state = state
        try:
            self._emit(DiscussionEvent(EventType.ROUND_STARTED, text="Initial round", turn=0))
            while True:
                if self._cancelled:
                    return self._interrupted(state)

                turn_before = state.current_turn
                action = advance(state)
                if state.current_turn != turn_before:
                    logger.info("Starting discussion round %d", state.current_turn)
                    self._emit(DiscussionEvent(
                        EventType.ROUND_STARTED,
                        text=f"Discussion round {state.current_turn}",
                        turn=state.current_turn,
                    ))

                if action is Action.SYNTHESIZE:
                    return await self._synthesize(state)

                outcome = await self._take_turn(state)
                if outcome is not None:
                    return outcome
        finally:
            self.state = None

    async def _take_turn(self, state: DiscussionState) -> DiscussionOutcome | None:
        """Run the role at current_role_index. Returns an outcome only when the discussion ends."""
        role = state.role_order[state.current_role_index]
        framing = "is analyzing the question" if state.current_turn == 0 else "is responding to the other roles"
        self._emit(DiscussionEvent(
            EventType.TURN_STARTED,
            text=f"{role.name} {framing} (using {role.model.name} - {role.channel.name})...",
            role_id=role.id,
            role_name=role.name,
            turn=state.current_turn,
        ))

        prompt = build_turn_prompt(state, role, self.notepad.content, self.prompts, self.mode)
        message_id = _new_message_id()
        result = await self._invoke(role, prompt, state.image_part, message_id, state.current_turn)

        if self._cancelled:
            logger.info("Discarding response from %s received after interruption", role.name)
            self._close_partial(role, message_id, result.duration_ms)
            return self._interrupted(state)
        if result.error:
            return self._failed(state, role, message_id, result)

        self._emit(DiscussionEvent(
            EventType.MESSAGE_COMPLETE,
            text=result.text,
            message_id=message_id,
            role_id=role.id,
            role_name=role.name,
            turn=state.current_turn,
            duration_ms=result.duration_ms,
        ))

        parsed = parse_response(result.text)
        self._apply_notepad(role, parsed)

        state.turns.append(TurnRecord(
            role_id=role.id,
            role_name=role.name,
            spoken_text=parsed.spoken_text,
            turn=state.current_turn,
            duration_ms=result.duration_ms,
        ))
        state.is_first_message = False
        state.current_role_index += 1

        if self.mode == DiscussionMode.AI_DRIVEN and parsed.discussion_should_end:
            kind = register_stop_vote(state)
            if kind is EventType.MAJORITY_STOP:
                text = "A majority of AI roles agreed to end the discussion."
            else:
                text = f"{role.name} suggested ending the discussion."
            logger.info(text)
            self._emit(DiscussionEvent(kind, text=text, role_id=role.id, role_name=role.name, turn=state.current_turn))
        return None

    async def _synthesize(self, state: DiscussionState) -> DiscussionOutcome:
        role = state.role_order[0]
        self._emit(DiscussionEvent(
            EventType.TURN_STARTED,
            text=(
                f"{role.name} is combining the discussion into a final answer "
                f"(using {role.model.name} - {role.channel.name})..."
            ),
            role_id=role.id,
            role_name=role.name,
            is_final=True,
        ))

        prompt = build_synthesis_prompt(state, self.notepad.content, self.prompts)
        message_id = _new_message_id()
        result = await self._invoke(role, prompt, state.image_part, message_id, None, is_final=True)

        if self._cancelled:
            logger.info("Discarding final answer from %s received after interruption", role.name)
            self._close_partial(role, message_id, result.duration_ms, is_final=True)
            return self._interrupted(state)
        if result.error:
            return self._failed(state, role, message_id, result, is_final=True)

        self._emit(DiscussionEvent(
            EventType.MESSAGE_COMPLETE,
            text=result.text,
            message_id=message_id,
            role_id=role.id,
            role_name=role.name,
            duration_ms=result.duration_ms,
            is_final=True,
        ))

        parsed = parse_response(result.text)
        self._apply_notepad(role, parsed)

        logger.info("Discussion complete after %d invocations", self.invocations)
        self._emit(DiscussionEvent(
            EventType.DISCUSSION_COMPLETE,
            text=parsed.spoken_text,
            message_id=message_id,
            role_id=role.id,
            role_name=role.name,
            duration_ms=result.duration_ms,
            is_final=True,
        ))
        return DiscussionOutcome(
            status=OutcomeStatus.COMPLETED,
            turns=list(state.turns),
            invocations=self.invocations,
            final_answer=parsed.spoken_text,
            final_role_id=role.id,
            final_duration_ms=result.duration_ms,
        )

    async def _invoke(
        self,
        role: ActiveRole,
        prompt: str,
        image_part: ImagePart | None,
        message_id: str,
        turn: int | None,
        is_final: bool = False,
    ) -> InvocationResult:
        """Call the role's invoker.

        Invoker failures become error results. Exceptions raised by the event
        callback propagate unchanged.
        """
        callback_error: Exception | None = None
        self._streamed = None

        def on_chunk(new_chunk: str, accumulated_text: str, is_complete: bool) -> None:
            nonlocal callback_error
            if self._cancelled or is_complete:
                return
            try:
                self._emit(DiscussionEvent(
                    EventType.MESSAGE_CHUNK,
                    text=accumulated_text,
                    message_id=message_id,
                    role_id=role.id,
                    role_name=role.name,
                    turn=turn,
                    is_final=is_final,
                ))
            except Exception as exc:
                callback_error = exc
                raise
            self._streamed = accumulated_text

        invoker = self._invoker_for(role.channel)
        use_reduced_capacity = self.reduced_capacity and role.model.supports_reduced_capacity
        self.invocations += 1
        logger.debug("Invoking %s (%s) for message %s", role.name, role.model.api_name, message_id)
        try:
            return await invoker.invoke(
                prompt,
                role.model.api_name,
                role.role.system_prompt or None,
                use_reduced_capacity,
                image_part if role.model.supports_images else None,
                role.channel.base_url,
                role.channel.api_key,
                on_chunk,
                max_tokens=role.model.max_tokens,
                temperature=role.model.temperature,
                timeout_sec=role.channel.timeout_sec,
            )
        except Exception as exc:
            if exc is callback_error:
                raise
            logger.warning("Invoker for %s failed unexpectedly: %s", role.name, exc)
            message = str(exc) or type(exc).__name__
            return InvocationResult(text=message, duration_ms=0.0, error=message)

    def _apply_notepad(self, role: ActiveRole, parsed: ParsedResponse) -> None:
        if parsed.new_notepad_content is None:
            return
        self.notepad.content = parsed.new_notepad_content
        self.notepad.last_updated_by = role.id
        self.notepad.updates.append(NotepadUpdate(
            role_id=role.id,
            role_name=role.name,
            content=parsed.new_notepad_content,
        ))
        self._emit(DiscussionEvent(
            EventType.NOTEPAD_UPDATED,
            text=parsed.new_notepad_content,
            role_id=role.id,
            role_name=role.name,
        ))

    def _close_partial(
        self,
        role: ActiveRole,
        message_id: str,
        duration_ms: float,
        is_final: bool = False,
    ) -> None:
        """Finish a message that streamed some text but never completed."""
        if self._streamed is None:
            return
        self._emit(DiscussionEvent(
            EventType.MESSAGE_COMPLETE,
            text=self._streamed,
            message_id=message_id,
            role_id=role.id,
            role_name=role.name,
            duration_ms=duration_ms,
            is_final=is_final,
        ))
        self._streamed = None

    def _failed(
        self,
        state: DiscussionState,
        role: ActiveRole,
        message_id: str,
        result: InvocationResult,
        is_final: bool = False,
    ) -> DiscussionOutcome:
        if is_auth_error(result.error):
            hint = (
                f"API key is invalid (channel: {role.channel.name}). "
                "Check the API key configured for this channel."
            )
            logger.warning("Authentication failed for %s on channel %s", role.name, role.channel.name)
            self._emit(DiscussionEvent(
                EventType.MESSAGE_COMPLETE,
                text=hint,
                message_id=message_id,
                role_id=role.id,
                role_name=role.name,
                duration_ms=result.duration_ms,
                is_final=is_final,
            ))
            return DiscussionOutcome(
                status=OutcomeStatus.AUTH_FAILED,
                turns=list(state.turns),
                invocations=self.invocations,
                error=hint,
            )

        message = f"Error: {role.name}: {result.text}"
        logger.error("Discussion halted: %s (%s)", message, result.error)
        self._close_partial(role, message_id, result.duration_ms, is_final=is_final)
        self._emit(DiscussionEvent(EventType.ERROR, text=message, role_id=role.id, role_name=role.name))
        return DiscussionOutcome(
            status=OutcomeStatus.FAILED,
            turns=list(state.turns),
            invocations=self.invocations,
            error=message,
        )

    def _interrupted(self, state: DiscussionState) -> DiscussionOutcome:
        logger.info("Discussion interrupted after %d invocations", self.invocations)
        return DiscussionOutcome(
            status=OutcomeStatus.INTERRUPTED,
            turns=list(state.turns),
            invocations=self.invocations,
        )
