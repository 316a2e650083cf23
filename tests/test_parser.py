"""Tests for multimind/parser.py."""

import pytest

from multimind.parser import DISCUSSION_COMPLETE_TAG, parse_response


def test_plain_text_passes_through():
    parsed = parse_response("  Use YAML for config.  ")
    assert parsed.spoken_text == "Use YAML for config."
    assert parsed.new_notepad_content is None
    assert parsed.discussion_should_end is False


def test_trailing_notepad_block_is_split_off():
    parsed = parse_response("My view.\n<notepad_update>\n- point one\n- point two\n</notepad_update>")
    assert parsed.spoken_text == "My view."
    assert parsed.new_notepad_content == "- point one\n- point two"


def test_block_must_end_the_response():
    text = "Before <notepad_update>notes</notepad_update> and after"
    parsed = parse_response(text)
    assert parsed.spoken_text == text
    assert parsed.new_notepad_content is None


def test_last_block_wins():
    parsed = parse_response(
        "Intro <notepad_update>old</notepad_update> middle <notepad_update>new</notepad_update>"
    )
    assert parsed.new_notepad_content == "new"
    assert parsed.spoken_text == "Intro <notepad_update>old</notepad_update> middle"


def test_unterminated_block_is_ignored():
    parsed = parse_response("Text <notepad_update>never closed")
    assert parsed.new_notepad_content is None
    assert parsed.spoken_text == "Text <notepad_update>never closed"


def test_end_marker_before_start_marker_is_ignored():
    parsed = parse_response("</notepad_update> stray <notepad_update>")
    assert parsed.new_notepad_content is None


def test_stop_tag_detected_and_removed():
    parsed = parse_response(f"I think we are done. {DISCUSSION_COMPLETE_TAG}")
    assert parsed.discussion_should_end is True
    assert parsed.spoken_text == "I think we are done."


def test_every_stop_tag_occurrence_removed():
    parsed = parse_response(f"{DISCUSSION_COMPLETE_TAG} Agreed. {DISCUSSION_COMPLETE_TAG}")
    assert parsed.spoken_text == "Agreed."
    assert DISCUSSION_COMPLETE_TAG not in parsed.spoken_text


def test_stop_tag_and_notepad_block_together():
    parsed = parse_response(f"Done here {DISCUSSION_COMPLETE_TAG}\n<notepad_update>Final list</notepad_update>")
    assert parsed.discussion_should_end is True
    assert parsed.new_notepad_content == "Final list"
    assert parsed.spoken_text == "Done here"


def test_stop_tag_after_block_leaves_block_unparsed():
    # The block only counts as the literal suffix of the response.
    parsed = parse_response(f"Text <notepad_update>n</notepad_update> {DISCUSSION_COMPLETE_TAG}")
    assert parsed.discussion_should_end is True
    assert parsed.new_notepad_content is None
    assert parsed.spoken_text == "Text <notepad_update>n</notepad_update>"


def test_empty_block_yields_empty_content():
    parsed = parse_response("Thoughts <notepad_update>   </notepad_update>")
    assert parsed.new_notepad_content == ""
    assert parsed.spoken_text == "Thoughts"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("<notepad_update>notes</notepad_update>", "(AI updated the notepad)"),
        ("<notepad_update></notepad_update>", "(AI attempted to update the notepad but the content was empty)"),
        (DISCUSSION_COMPLETE_TAG, "(AI suggested ending the discussion)"),
        (
            f"{DISCUSSION_COMPLETE_TAG}<notepad_update>notes</notepad_update>",
            "(AI updated the notepad and suggested ending the discussion)",
        ),
        ("   ", "(AI provided no additional text reply)"),
    ],
)
def test_placeholder_when_nothing_left_to_say(raw, expected):
    assert parse_response(raw).spoken_text == expected
