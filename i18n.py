#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Turbo Tracker - Narrative State Tracker
===================================================
Display strings and emoji shared by the engine and the UI layer.
English is the default/fallback; German is also available.

Usage:
    from i18n import t, E, DEFAULT_LANG
    t("populate.progress", "en", done=3, total=10)   # → "3 / 10 messages…"
"""

# ===============================================================
# EMOJI / UNICODE CONSTANTS (shared across all modules)
# ===============================================================

E = {
    "black_heart": "\U0001F5A4",
    "purple_heart": "\U0001F49C",
    "heart_blue": "\U0001F499",
    "green_heart": "\U0001F49A",
    "yellow_heart": "\U0001F49B",
    "orange_heart": "\U0001F9E1",
    "heart_red": "\u2764\uFE0F",
    "warn": "\u26A0\uFE0F",
}

DEFAULT_LANG = "en"
FALLBACK_LANG = "en"


# ===============================================================
# UI STRINGS
# ===============================================================

_STRINGS = {
    "en": {
        "populate.progress": "{done} / {total} messages…",
        "populate.done": "Done!",
        "populate.partial": "{done} / {total} messages have a tracker. " + E["warn"],
        "populate.no_chat": "No chat loaded.",
    },
    "de": {
        "populate.progress": "{done} / {total} Nachrichten…",
        "populate.done": "Fertig!",
        "populate.partial": "{done} / {total} Nachrichten haben einen Tracker. " + E["warn"],
        "populate.no_chat": "Kein Chat geladen.",
    },
}


# ===============================================================
# STRING LOOKUP
# ===============================================================

def t(key: str, lang: str = DEFAULT_LANG, **kwargs) -> str:
    """Look up a translated string. Falls back to English if key missing in target language."""
    text = _STRINGS.get(lang, {}).get(key)
    if text is None:
        text = _STRINGS.get(FALLBACK_LANG, {}).get(key, f"[{key}]")
    if kwargs:
        try:
            text = text.format(**kwargs)
        except (KeyError, IndexError):
            pass
    return text
