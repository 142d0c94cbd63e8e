"""Tests for the [TRACKER] block parser and formatter.

Covers the line-by-line mini-language rules: scalar keys, the characters
list and how it ends, tolerance for junk, and format/parse round trips.
"""

import pytest

from engine import (
    CharacterState,
    TrackerState,
    format_tracker_block,
    parse_character_line,
    parse_tracker_block,
    strip_tracker_blocks,
)


FULL_BLOCK = """Some narration here.

[TRACKER]
time: 9:58 PM; 5/1/2040 (Tuesday)
location: Corner booth, Blue Moon Cafe
weather: Light rain, 12°C
heart: 1200
characters:
- name: Alice | outfit: Blue dress | state: Amused | position: Across the table
- name: Bob | outfit: Apron | state: Busy | position: Behind the counter
[/TRACKER]"""


def test_reference_example():
    """The canonical small block parses to the documented record."""
    text = ("[TRACKER]\ntime: 10:30 AM\nheart: 15000\ncharacters:\n"
            "- name: Alice | outfit: Blue dress\n[/TRACKER]")
    result = parse_tracker_block(text)

    assert result.to_dict() == {
        "time": "10:30 AM",
        "location": None,
        "weather": None,
        "heart": "15000",
        "characters": [{"name": "Alice", "outfit": "Blue dress", "state": "", "position": ""}],
    }


def test_no_block_returns_none():
    """Text without markers is a normal 'no data' outcome."""
    assert parse_tracker_block("Just a reply, no tracker.") is None
    assert parse_tracker_block("") is None
    assert parse_tracker_block(None) is None


def test_full_block():
    result = parse_tracker_block(FULL_BLOCK)

    assert result.time == "9:58 PM; 5/1/2040 (Tuesday)"
    assert result.location == "Corner booth, Blue Moon Cafe"
    assert result.weather == "Light rain, 12°C"
    assert result.heart == "1200"
    assert [c.name for c in result.characters] == ["Alice", "Bob"]
    assert result.characters[1].position == "Behind the counter"


def test_markers_and_keys_are_case_insensitive():
    text = "[tracker]\nTIME: 1:00 PM\nLocation: Dock\nCharacters\n- NAME: Eve | Outfit: Coat\n[/Tracker]"
    result = parse_tracker_block(text)

    assert result.time == "1:00 PM"
    assert result.location == "Dock"
    assert result.characters == [CharacterState(name="Eve", outfit="Coat")]


def test_only_first_block_is_used():
    text = ("[TRACKER]\nlocation: First\n[/TRACKER]\n"
            "[TRACKER]\nlocation: Second\n[/TRACKER]")
    assert parse_tracker_block(text).location == "First"


def test_blank_line_ends_character_list():
    """Dashes after an interruption are not characters any more."""
    text = ("[TRACKER]\ncharacters:\n- name: Alice\n\n- name: Bob\n"
            "location: Park\n[/TRACKER]")
    result = parse_tracker_block(text)

    assert [c.name for c in result.characters] == ["Alice"]
    assert result.location == "Park"


def test_scalar_line_ends_character_list_and_still_counts():
    text = ("[TRACKER]\ncharacters:\n- name: Alice\nweather: Snow\n- name: Bob\n[/TRACKER]")
    result = parse_tracker_block(text)

    assert [c.name for c in result.characters] == ["Alice"]
    assert result.weather == "Snow"


def test_character_without_name_is_discarded():
    text = "[TRACKER]\ncharacters:\n- outfit: Cloak | state: Hidden\n- name: Zed\n[/TRACKER]"
    result = parse_tracker_block(text)

    assert [c.name for c in result.characters] == ["Zed"]


def test_unknown_keys_and_junk_lines_are_ignored():
    text = ("[TRACKER]\nmood: tense\nthis line has no colon\n: empty key\n"
            "location: Attic\ncharacters:\n- name: Ann | mood: sad | state: Tired\n[/TRACKER]")
    result = parse_tracker_block(text)

    assert result.location == "Attic"
    assert result.characters == [CharacterState(name="Ann", state="Tired")]


@pytest.mark.parametrize("heart_line", ["heart: lots", "heart:", "heart:    "])
def test_malformed_heart_is_dropped(heart_line):
    """A bad value drops that field only; the rest of the block still counts."""
    result = parse_tracker_block(f"[TRACKER]\n{heart_line}\nlocation: Hall\n[/TRACKER]")

    assert result.heart is None
    assert result.location == "Hall"


def test_empty_value_is_absent():
    result = parse_tracker_block("[TRACKER]\ntime:\nweather: Fog\n[/TRACKER]")

    assert result.time is None
    assert result.weather == "Fog"


def test_value_keeps_later_colons():
    result = parse_tracker_block("[TRACKER]\ntime: 10:30 AM; 1/2/2040\n[/TRACKER]")
    assert result.time == "10:30 AM; 1/2/2040"


def test_description_field_is_supported():
    char = parse_character_line("- name: Mira | description: Tall, silver hair")
    assert char.description == "Tall, silver hair"
    assert parse_character_line("- name: Mira").description is None


def test_empty_block_is_empty_state():
    result = parse_tracker_block("[TRACKER]\nheart: 500\n[/TRACKER]")

    assert result is not None
    assert result.is_empty()


def test_crlf_line_endings():
    result = parse_tracker_block("[TRACKER]\r\nlocation: Pier\r\ncharacters:\r\n- name: Kai\r\n[/TRACKER]")

    assert result.location == "Pier"
    assert [c.name for c in result.characters] == ["Kai"]


@pytest.mark.parametrize("text", [
    FULL_BLOCK,
    "[TRACKER]\nlocation: Library\ncharacters:\n- name: Sam | description: Bookish\n[/TRACKER]",
    "[TRACKER]\ntime: 6:00 AM\nheart: 0\ncharacters:\n[/TRACKER]",
    "[TRACKER]\nlocation: Cafe | back booth\nweather: Rain | 12C\ncharacters:\n- name: Ana\n[/TRACKER]",
])
def test_format_then_parse_reproduces_state(text):
    first = parse_tracker_block(text)
    second = parse_tracker_block(format_tracker_block(first))

    assert second == first


def test_format_sanitizes_delimiters():
    state = TrackerState(location="Hall\nEast wing",
                         characters=[CharacterState(name="A|B", outfit="x")])
    block = format_tracker_block(state)

    assert "location: Hall East wing" in block
    assert "- name: A/B | outfit: x | state:  | position: " in block
    assert parse_tracker_block(block).characters[0].name == "A/B"


def test_strip_tracker_blocks_removes_both_formats():
    text = 'Hello.\n[TRACKER]\nlocation: X\n[/TRACKER]\n<tracker>{"Time": "1"}</tracker>'
    assert strip_tracker_blocks(text) == "Hello."
    assert strip_tracker_blocks("") == ""


def test_format_keeps_pipes_in_scalar_values():
    block = format_tracker_block(TrackerState(weather="Rain | 12C"))

    assert "weather: Rain | 12C" in block
    assert parse_tracker_block(block).weather == "Rain | 12C"
