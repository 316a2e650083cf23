"""Split one raw model response into spoken text, notepad update, and stop vote."""

from multimind.models import ParsedResponse

NOTEPAD_UPDATE_TAG_START = "<notepad_update>"
NOTEPAD_UPDATE_TAG_END = "</notepad_update>"
DISCUSSION_COMPLETE_TAG = "<discussion_complete />"

_NOTEPAD_UPDATED = "updated the notepad"
_NOTEPAD_EMPTY = "attempted to update the notepad but the content was empty"
_STOP_SUGGESTED = "suggested ending the discussion"
_NO_TEXT = "(AI provided no additional text reply)"


def _split_notepad_block(text: str) -> tuple[str, str | None]:
    """Return (text_before_block, block_content) for a well-formed trailing block.

    A block only counts when the end marker is the literal suffix of the
    response; otherwise the text is returned untouched and content is None.
    """
    start = text.rfind(NOTEPAD_UPDATE_TAG_START)
    end = text.rfind(NOTEPAD_UPDATE_TAG_END)
    if start == -1 or end == -1 or end <= start or not text.endswith(NOTEPAD_UPDATE_TAG_END):
        return text, None
    content = text[start + len(NOTEPAD_UPDATE_TAG_START):end].strip()
    return text[:start].strip(), content


def _placeholder(notepad_action: str, stop_action: str) -> str:
    if notepad_action and stop_action:
        return f"(AI {notepad_action} and {stop_action})"
    if notepad_action:
        return f"(AI {notepad_action})"
    if stop_action:
        return f"(AI {stop_action})"
    return _NO_TEXT


def parse_response(response_text: str) -> ParsedResponse:
    """Parse a role response.

    Args:
        response_text: Raw text returned by the model.

    Returns:
        ParsedResponse. ``new_notepad_content`` is None when no well-formed
        block is present and may be "" when the block was empty.
        ``spoken_text`` is never empty.
    """
    spoken_text, new_notepad_content = _split_notepad_block(response_text.strip())

    notepad_action = ""
    if new_notepad_content is not None:
        notepad_action = _NOTEPAD_UPDATED if new_notepad_content else _NOTEPAD_EMPTY

    discussion_should_end = DISCUSSION_COMPLETE_TAG in spoken_text
    stop_action = ""
    if discussion_should_end:
        spoken_text = spoken_text.replace(DISCUSSION_COMPLETE_TAG, "").strip()
        stop_action = _STOP_SUGGESTED

    if not spoken_text.strip():
        spoken_text = _placeholder(notepad_action, stop_action)

    return ParsedResponse(
        spoken_text=spoken_text.strip(),
        new_notepad_content=new_notepad_content,
        discussion_should_end=discussion_should_end,
    )
