"""Tests for importing the third-party JSON tracker format.

The alternate format uses capitalized keys, a list of present characters
and a per-name detail lookup, either as a dict or as JSON embedded in
<tracker>...</tracker> tags inside message text.
"""

from engine import CharacterState, import_legacy


LEGACY = {
    "Time": "7:15 PM; 03/14/2041 (Thursday)",
    "Location": "Rooftop garden",
    "Weather": "Clear, 18°C",
    "Topics": {"PrimaryTopic": "stars"},
    "CharactersPresent": ["Alice", "Bob"],
    "Characters": {
        "Alice": {"Hair": "Long, black", "Outfit": "Green coat",
                  "StateOfDress": "Fully dressed", "PostureAndInteraction": "Leaning on the rail"},
        "Bob": {"outfit": "Suit", "State of Dress": "Tie loosened", "position": "By the door"},
        "Carol": {"Outfit": "Not present"},
    },
}


def test_dict_import_maps_aliases():
    state = import_legacy(LEGACY)

    assert state.time == "7:15 PM; 03/14/2041 (Thursday)"
    assert state.location == "Rooftop garden"
    assert state.weather == "Clear, 18°C"
    assert state.heart is None
    assert state.characters == [
        CharacterState(name="Alice", outfit="Green coat", state="Fully dressed",
                       position="Leaning on the rail", description="Long, black"),
        CharacterState(name="Bob", outfit="Suit", state="Tie loosened", position="By the door"),
    ]


def test_present_list_controls_who_is_included():
    """Carol has details but is not listed as present."""
    state = import_legacy(LEGACY)
    assert "Carol" not in [c.name for c in state.characters]


def test_lowercase_keys_and_missing_present_list():
    data = {
        "time": "8:00 AM",
        "heart": 4200,
        "characters": {"Dana": {"state": "Sleepy"}, "Eli": {}},
    }
    state = import_legacy(data)

    assert state.time == "8:00 AM"
    assert state.heart == "4200"
    assert [c.name for c in state.characters] == ["Dana", "Eli"]
    assert state.characters[0].state == "Sleepy"


def test_character_detail_list_with_names():
    data = {"Location": "Barn", "Characters": [{"Name": "Finn", "Outfit": "Overalls"}, {"Outfit": "?"}]}
    state = import_legacy(data)

    assert state.characters == [CharacterState(name="Finn", outfit="Overalls")]


def test_present_names_match_details_case_insensitively():
    data = {"CharactersPresent": ["gwen"], "Characters": {"Gwen": {"Outfit": "Robe"}}}
    state = import_legacy(data)

    assert state.characters == [CharacterState(name="gwen", outfit="Robe")]


def test_embedded_json_in_text():
    text = ('She smiled.\n<tracker>\n```json\n'
            '{"Time": "9:00 PM", "Location": "Kitchen", "CharactersPresent": ["Hal"],'
            ' "Characters": {"Hal": {"Outfit": "Pajamas"}}}\n```\n</tracker>')
    state = import_legacy(text)

    assert state.time == "9:00 PM"
    assert state.location == "Kitchen"
    assert state.characters == [CharacterState(name="Hal", outfit="Pajamas")]


def test_embedded_json_with_trailing_comma_is_repaired():
    text = '<TRACKER>{"Location": "Garage", "Weather": "Hot",}</TRACKER>'
    state = import_legacy(text)

    assert state.location == "Garage"
    assert state.weather == "Hot"


def test_unreadable_json_is_treated_as_absent():
    assert import_legacy("<tracker>{not json at all</tracker>") is None
    assert import_legacy("<tracker>[1, 2, 3]</tracker>") is None


def test_text_without_legacy_section():
    assert import_legacy("No tracker here.") is None
    assert import_legacy("[TRACKER]\nlocation: X\n[/TRACKER]") is None


def test_empty_results_are_none():
    """Heart alone, or nothing at all, carries no scene information."""
    assert import_legacy({}) is None
    assert import_legacy({"Heart": 300}) is None
    assert import_legacy({"Time": "   ", "Characters": {}}) is None


def test_unsupported_sources():
    assert import_legacy(None) is None
    assert import_legacy(42) is None
    assert import_legacy(["Time"]) is None


def test_non_numeric_heart_is_dropped():
    state = import_legacy({"Location": "Bridge", "Heart": "very high"})

    assert state.location == "Bridge"
    assert state.heart is None
