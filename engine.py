#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Turbo Tracker - Narrative State Tracker
========================================
Core Module (Framework-Independent)

Keeps a per-message snapshot of scene state (time, location, weather,
heart meter, characters present) for a linear chat. The UI layer supplies
the chat, a renderer and a persistence hook; this module decides which
state every message carries.
"""

import asyncio
import json
import math
import os
import re
import random
import logging
import sys
import time as _time
import uuid
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import anthropic

from i18n import E, DEFAULT_LANG, t as _t

# ===============================================================
# CONFIGURATION
# ===============================================================

TRACKER_MODEL = "claude-haiku-4-5-20251001"
_SCRIPT_DIR = Path(__file__).resolve().parent
SETTINGS_FILE = _SCRIPT_DIR / "settings.json"
LOG_DIR = _SCRIPT_DIR / "logs"

# --- Tuning constants ---
HEART_MAX = 69_999                 # Ceiling of the heart meter
DEFAULT_MAX_SHIFT = 10_000         # Fallback when a caller passes a bogus shift
MAX_SHIFT_CEILING = 10_000         # Hard cap on sensitivity-derived shift
SHIFT_PER_SENSITIVITY = 500        # Max shift = sensitivity * this
DEFAULT_SENSITIVITY = 5            # 1..10
CONTEXT_MESSAGES = 6               # Preceding messages sent with an inference request
NUDGE_MINUTES = (1, 3)             # Clock offset for inherited user-message states
GENERATION_MAX_TOKENS = 600

# Side-channel keys on message["extra"]
TRACKER_KEY = "tt_tracker"
LEGACY_EXTRA_KEY = "tracker"

USER_TAG = "{{user}}"
CHAR_TAG = "{{char}}"

# Upper bound (exclusive) -> emoji key; the last tier has no bound
HEART_TIERS = [
    (5_000, "black_heart"),
    (20_000, "purple_heart"),
    (30_000, "heart_blue"),
    (40_000, "green_heart"),
    (50_000, "yellow_heart"),
    (60_000, "orange_heart"),
    (None, "heart_red"),
]


# ===============================================================
# FILE LOGGING
# ===============================================================

def setup_file_logging():
    """Set up file logging to logs/ directory. One log file per day.
    Safe to call multiple times -- skips if handlers already exist.
    """
    logger = logging.getLogger("turbo_tracker")

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return

    logger.setLevel(logging.DEBUG)
    LOG_DIR.mkdir(exist_ok=True)

    today = datetime.now().strftime("%Y-%m-%d")
    log_path = LOG_DIR / f"turbo_tracker_{today}.log"

    fh = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-7s | %(message)s",
                                       datefmt="%Y-%m-%d %H:%M:%S"))

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter("%(message)s"))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info(f"=== Turbo Tracker session === Log: {log_path.name}")


def log(msg: str, level: str = "info"):
    """Log a message to both console and log file."""
    logger = logging.getLogger("turbo_tracker")
    if not logger.handlers:
        setup_file_logging()
    getattr(logger, level, logger.info)(msg)


# ===============================================================
# ENGINE CONFIGURATION
# ===============================================================

@dataclass
class EngineConfig:
    """Runtime settings read by the clamp, the prompt builder and the
    reconciliation functions. The UI layer edits this; see load_engine_config().
    """
    enabled: bool = True
    heart_max: int = HEART_MAX
    sensitivity: int = DEFAULT_SENSITIVITY   # 1..10
    default_heart: int = 0                    # Running value for a chat without states
    context_messages: int = CONTEXT_MESSAGES
    nudge_min: int = NUDGE_MINUTES[0]
    nudge_max: int = NUDGE_MINUTES[1]         # 0 disables the nudge
    lang: str = DEFAULT_LANG
    model: str = TRACKER_MODEL

    @property
    def max_shift(self) -> int:
        level = _coerce_int(self.sensitivity)
        level = DEFAULT_SENSITIVITY if level is None else max(1, min(10, level))
        return min(level * SHIFT_PER_SENSITIVITY, MAX_SHIFT_CEILING)


# Keys persisted in settings.json besides the running heart value
_CONFIG_FIELDS = ("enabled", "heart_max", "sensitivity", "default_heart",
                  "context_messages", "nudge_min", "nudge_max", "lang", "model")

_CONFIG_ENV_MAP = {
    "TRACKER_ENABLED": "enabled",
    "TRACKER_HEART_MAX": "heart_max",
    "TRACKER_SENSITIVITY": "sensitivity",
    "TRACKER_MODEL": "model",
    "TRACKER_LANG": "lang",
}


def load_settings(path: Path = SETTINGS_FILE) -> dict:
    """Load persisted tracker settings. Missing or corrupt files read as empty."""
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
        except (json.JSONDecodeError, OSError):
            pass
    return {}


def save_settings(cfg: dict, path: Path = SETTINGS_FILE):
    """Merge and save settings. Existing keys are preserved, passed keys are updated.
    Restricts file permissions to owner-only.
    """
    try:
        existing = load_settings(path)
        existing.update(cfg)
        path.write_text(json.dumps(existing, indent=2, ensure_ascii=False), encoding="utf-8")
        try:
            import stat
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600
        except OSError:
            pass  # Windows doesn't support Unix permissions
    except OSError as e:
        log(f"[Config] Could not write {path.name}: {e}", level="warning")


def _config_value(current, raw):
    """Coerce a raw settings/ENV value to the type of the current field value.
    Returns None when the value does not fit."""
    if isinstance(current, bool):
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return None
    if isinstance(current, int):
        return _coerce_int(raw)
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return None


def load_engine_config(path: Path = SETTINGS_FILE) -> EngineConfig:
    """Build the engine config with cascade: defaults -> settings.json -> ENV."""
    cfg = EngineConfig()
    file_cfg = load_settings(path)
    for key in _CONFIG_FIELDS:
        if key in file_cfg:
            value = _config_value(getattr(cfg, key), file_cfg[key])
            if value is not None:
                setattr(cfg, key, value)
    for env_key, cfg_key in _CONFIG_ENV_MAP.items():
        env_val = os.environ.get(env_key, "").strip()
        if env_val:
            value = _config_value(getattr(cfg, cfg_key), env_val)
            if value is not None:
                setattr(cfg, cfg_key, value)
    log(f"[Config] enabled={cfg.enabled}, heart_max={cfg.heart_max}, "
        f"sensitivity={cfg.sensitivity} (max shift {cfg.max_shift}), model={cfg.model}",
        level="debug")
    return cfg


# ===============================================================
# DATA MODELS
# ===============================================================

@dataclass
class CharacterState:
    name: str
    outfit: str = ""
    state: str = ""
    position: str = ""
    description: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"name": self.name, "outfit": self.outfit,
                "state": self.state, "position": self.position}
        if self.description is not None:
            data["description"] = self.description
        return data

    @staticmethod
    def from_dict(data) -> Optional["CharacterState"]:
        if not isinstance(data, dict):
            return None
        name = str(data.get("name") or "").strip()
        if not name:
            return None
        desc = data.get("description")
        return CharacterState(
            name=name,
            outfit=str(data.get("outfit") or ""),
            state=str(data.get("state") or ""),
            position=str(data.get("position") or ""),
            description=None if desc is None else str(desc),
        )


@dataclass
class TrackerState:
    """Scene state attached to one message.
    heart holds the raw text while a state is fresh from the parser;
    once it has been through the clamp it is an int.
    """
    time: Optional[str] = None
    location: Optional[str] = None
    weather: Optional[str] = None
    heart: Optional[int | str] = None
    characters: list = field(default_factory=list)  # list[CharacterState]

    def is_empty(self) -> bool:
        """No scene information at all. Heart alone does not count."""
        return (self.time is None and self.location is None
                and self.weather is None and not self.characters)

    def to_dict(self) -> dict:
        return {
            "time": self.time,
            "location": self.location,
            "weather": self.weather,
            "heart": self.heart,
            "characters": [c.to_dict() for c in self.characters],
        }

    @staticmethod
    def from_dict(data) -> Optional["TrackerState"]:
        """Rebuild a stored state. Returns None for anything that isn't a dict."""
        if not isinstance(data, dict):
            return None
        chars = data.get("characters")
        if not isinstance(chars, list):
            chars = []
        return TrackerState(
            time=_clean_text(data.get("time")),
            location=_clean_text(data.get("location")),
            weather=_clean_text(data.get("weather")),
            heart=_coerce_int(data.get("heart")),
            characters=[c for c in (CharacterState.from_dict(x) for x in chars) if c],
        )

    def copy(self) -> "TrackerState":
        return TrackerState(
            time=self.time, location=self.location, weather=self.weather,
            heart=self.heart,
            characters=[CharacterState(**c.to_dict()) for c in self.characters],
        )


def _clean_text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


_LEADING_INT_RE = re.compile(r'\s*[-+]?\d+')


def _coerce_int(value) -> Optional[int]:
    """Best-effort integer read: ints, finite floats and strings with a leading
    integer ("15,000", "42 points"). Everything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        m = _LEADING_INT_RE.match(value.replace(",", "").replace("_", ""))
        return int(m.group()) if m else None
    return None


# ===============================================================
# TRACKER BLOCK PARSER
# ===============================================================

_TRACKER_BLOCK_RE = re.compile(r'\[TRACKER\]([\s\S]*?)\[/TRACKER\]', re.IGNORECASE)
_CHARACTERS_HEADER_RE = re.compile(r'^characters\s*:?\s*$', re.IGNORECASE)
_SCALAR_KEYS = ("time", "location", "weather", "heart")
_CHARACTER_KEYS = ("name", "outfit", "state", "position", "description")


def _split_field(part: str) -> Optional[tuple[str, str]]:
    sep = part.find(":")
    if sep == -1:
        return None
    return part[:sep].strip().lower(), part[sep + 1:].strip()


def parse_character_line(line: str) -> Optional[CharacterState]:
    """Parse 'name: X | outfit: Y | ...' (leading dash optional).
    Returns None when the line carries no name."""
    body = line.strip()
    if body.startswith("-"):
        body = body[1:]
    values = {}
    for part in body.split("|"):
        kv = _split_field(part)
        if kv and kv[0] in _CHARACTER_KEYS:
            values[kv[0]] = kv[1]
    if not values.get("name"):
        return None
    return CharacterState(
        name=values["name"],
        outfit=values.get("outfit", ""),
        state=values.get("state", ""),
        position=values.get("position", ""),
        description=values.get("description"),
    )


def parse_tracker_block(text: str) -> Optional[TrackerState]:
    """Parse the first [TRACKER]...[/TRACKER] block in text.
    Returns None if there is no block. Never raises on malformed content:
    bad lines are skipped, an empty or non-numeric value drops only that field.
    """
    if not isinstance(text, str):
        return None
    match = _TRACKER_BLOCK_RE.search(text)
    if not match:
        return None

    result = TrackerState()
    in_chars = False
    for raw_line in match.group(1).split("\n"):
        line = raw_line.strip()

        if in_chars and line.startswith("-"):
            char = parse_character_line(line)
            if char:
                result.characters.append(char)
            continue

        # Any other line, blank ones included, ends the character list
        in_chars = False
        if not line:
            continue
        if _CHARACTERS_HEADER_RE.match(line):
            in_chars = True
            continue

        kv = _split_field(line)
        if kv is None:
            continue
        key, value = kv
        if key not in _SCALAR_KEYS or not value:
            continue
        if key == "heart" and _coerce_int(value) is None:
            continue
        setattr(result, key, value)

    return result


def _one_line(value) -> str:
    return re.sub(r'\s*[\r\n]+\s*', ' ', str(value)).strip()


def _wire_value(value) -> str:
    # "|" separates character fields
    return _one_line(value).replace("|", "/").strip()


def format_character_line(char: CharacterState) -> str:
    parts = [f"name: {_wire_value(char.name)}",
             f"outfit: {_wire_value(char.outfit)}",
             f"state: {_wire_value(char.state)}",
             f"position: {_wire_value(char.position)}"]
    if char.description is not None:
        parts.append(f"description: {_wire_value(char.description)}")
    return " | ".join(parts)


def format_tracker_block(state: TrackerState) -> str:
    """Render a state in the wire format parse_tracker_block() reads.
    Absent scalars are left out so they stay absent after a re-parse."""
    lines = ["[TRACKER]"]
    for key in _SCALAR_KEYS:
        value = getattr(state, key)
        if value is not None and _one_line(value):
            lines.append(f"{key}: {_one_line(value)}")
    lines.append("characters:")
    for char in state.characters:
        lines.append(f"- {format_character_line(char)}")
    lines.append("[/TRACKER]")
    return "\n".join(lines)


# ===============================================================
# LEGACY IMPORT (third-party JSON tracker format)
# ===============================================================

_LEGACY_BLOCK_RE = re.compile(r'<tracker>([\s\S]*?)</tracker>', re.IGNORECASE)
_JSON_FENCE_RE = re.compile(r'^```(?:json)?\s*([\s\S]*?)\s*```$', re.IGNORECASE)

_LEGACY_SCALAR_ALIASES = {
    "time": ("Time", "time"),
    "location": ("Location", "location"),
    "weather": ("Weather", "weather"),
    "heart": ("Heart", "heart", "HeartMeter", "heartMeter"),
}
_LEGACY_PRESENT_ALIASES = ("CharactersPresent", "charactersPresent", "characters_present")
_LEGACY_DETAIL_ALIASES = ("Characters", "characters")
_LEGACY_CHARACTER_ALIASES = {
    "name": ("Name", "name"),
    "outfit": ("Outfit", "outfit", "Clothing", "clothing"),
    "state": ("StateOfDress", "stateOfDress", "State of Dress", "state of dress",
              "State", "state"),
    "position": ("PostureAndInteraction", "postureAndInteraction", "Position", "position"),
    "description": ("Description", "description", "Hair", "hair"),
}


def strip_tracker_blocks(text: str) -> str:
    """Remove tracker markup (both formats) from message text for display."""
    if not text:
        return ""
    text = _TRACKER_BLOCK_RE.sub('', text)
    text = _LEGACY_BLOCK_RE.sub('', text)
    return text.strip()


def _repair_json(text: str) -> str:
    """Attempt to repair common LLM JSON errors before parsing.
    Only called after json.loads() already failed.

    Fixes:
    1. Unescaped control characters inside strings (newlines, tabs)
    2. Missing commas between fields / after any value type
    3. Trailing commas before } or ]
    """
    # --- Pass 1: Fix unescaped control chars inside strings ---
    result = []
    in_string = False
    escape_next = False
    for ch in text:
        if escape_next:
            result.append(ch)
            escape_next = False
            continue
        if ch == '\\':
            result.append(ch)
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            result.append(ch)
            continue
        if in_string and ch in '\n\r\t':
            result.append({'\n': '\\n', '\r': '\\r', '\t': '\\t'}[ch])
            continue
        result.append(ch)
    text = ''.join(result)

    # --- Pass 2: Fix missing commas ---
    text = re.sub(r'("\s*)\n(\s*")', r'\1,\n\2', text)
    text = re.sub(r'([\}\]]\s*)\n(\s*["\{\[])', r'\1,\n\2', text)
    text = re.sub(r'(\d\s*)\n(\s*")', r'\1,\n\2', text)
    text = re.sub(r'((?:true|false|null)\s*)\n(\s*")', r'\1,\n\2', text)

    # --- Pass 3: Fix trailing commas ---
    text = re.sub(r',(\s*[\}\]])', r'\1', text)

    return text


def _decode_legacy_json(text: str) -> Optional[dict]:
    match = _LEGACY_BLOCK_RE.search(text)
    if not match:
        return None
    payload = match.group(1).strip()
    fence = _JSON_FENCE_RE.match(payload)
    if fence:
        payload = fence.group(1)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        try:
            data = json.loads(_repair_json(payload))
        except json.JSONDecodeError as e:
            log(f"[Legacy] Embedded tracker JSON unreadable ({e}), ignoring", level="debug")
            return None
    return data if isinstance(data, dict) else None


def _first_alias(data: dict, aliases):
    for key in aliases:
        if data.get(key) is not None:
            return data[key]
    return None


def _legacy_text(value) -> Optional[str]:
    if isinstance(value, dict):
        return None
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v).strip() for v in value if v is not None and str(v).strip())
    return _clean_text(value)


def _legacy_characters(data: dict) -> list:
    details = _first_alias(data, _LEGACY_DETAIL_ALIASES)
    present = _first_alias(data, _LEGACY_PRESENT_ALIASES)

    lookup = {}
    order = []
    if isinstance(details, dict):
        for name, detail in details.items():
            name = str(name).strip()
            lookup[name] = detail if isinstance(detail, dict) else {}
            order.append(name)
    elif isinstance(details, list):
        for detail in details:
            if isinstance(detail, dict):
                name = _legacy_text(_first_alias(detail, _LEGACY_CHARACTER_ALIASES["name"]))
                if name:
                    lookup[name] = detail
                    order.append(name)

    if isinstance(present, str):
        present = present.split(",")
    if isinstance(present, list):
        order = [n for n in (_legacy_text(p) for p in present) if n]

    lookup_ci = {k.lower(): v for k, v in lookup.items()}
    chars = []
    for name in order:
        detail = lookup.get(name) or lookup_ci.get(name.lower()) or {}

        def pick(concept):
            return _legacy_text(_first_alias(detail, _LEGACY_CHARACTER_ALIASES[concept]))

        chars.append(CharacterState(
            name=name,
            outfit=pick("outfit") or "",
            state=pick("state") or "",
            position=pick("position") or "",
            description=pick("description"),
        ))
    return chars


def import_legacy(source) -> Optional[TrackerState]:
    """Convert a third-party tracker (a dict with capitalized keys, or text with
    a <tracker>{json}</tracker> section) into a TrackerState.
    Returns None when nothing usable is found.
    """
    if isinstance(source, str):
        data = _decode_legacy_json(source)
    elif isinstance(source, dict):
        data = source
    else:
        return None
    if not data:
        return None

    heart = _first_alias(data, _LEGACY_SCALAR_ALIASES["heart"])
    state = TrackerState(
        time=_legacy_text(_first_alias(data, _LEGACY_SCALAR_ALIASES["time"])),
        location=_legacy_text(_first_alias(data, _LEGACY_SCALAR_ALIASES["location"])),
        weather=_legacy_text(_first_alias(data, _LEGACY_SCALAR_ALIASES["weather"])),
        heart=_legacy_text(heart) if _coerce_int(heart) is not None else None,
        characters=_legacy_characters(data),
    )
    return None if state.is_empty() else state


# ===============================================================
# HEART METER
# ===============================================================

def _bounded_max(heart_max) -> int:
    ceiling = _coerce_int(heart_max)
    return HEART_MAX if ceiling is None or ceiling < 0 else ceiling


def clamp_heart(raw, previous, max_shift, heart_max: int = HEART_MAX) -> int:
    """Limit a proposed heart value to previous +/- max_shift within [0, heart_max].
    Total over any input: non-numeric raw keeps previous, non-numeric previous
    counts as 0, a non-positive or non-numeric shift uses DEFAULT_MAX_SHIFT.
    """
    ceiling = _bounded_max(heart_max)
    prev = _coerce_int(previous)
    prev = 0 if prev is None else max(0, min(ceiling, prev))
    shift = _coerce_int(max_shift)
    if shift is None or shift <= 0:
        shift = DEFAULT_MAX_SHIFT

    value = _coerce_int(raw)
    if value is None:
        return prev
    low = max(0, prev - shift)
    high = min(ceiling, prev + shift)
    return max(low, min(high, value))


def bound_heart(raw, fallback, heart_max: int = HEART_MAX) -> int:
    """Range check only, no per-step limit. Used for hand-edited values."""
    ceiling = _bounded_max(heart_max)
    value = _coerce_int(raw)
    if value is None:
        value = _coerce_int(fallback) or 0
    return max(0, min(ceiling, value))


def heart_emoji(points) -> str:
    value = _coerce_int(points) or 0
    for upper, key in HEART_TIERS:
        if upper is None or value < upper:
            return E[key]
    return E[HEART_TIERS[-1][1]]


# ===============================================================
# IN-FICTION CLOCK
# ===============================================================

_CLOCK_RE = re.compile(r'^\s*(\d{1,2}):(\d{2})\s*([AaPp])\.?\s*[Mm]\.?(?![A-Za-z])(.*)$',
                       re.DOTALL)


def advance_time(time_string: str, minutes: int) -> str:
    """Move a leading 'H:MM AM/PM' forward by minutes (wraps at midnight).
    Whatever follows the clock (date, weekday) is kept verbatim, so crossing
    midnight does not change the date. Unrecognized input is returned as is.
    """
    if not isinstance(time_string, str):
        return time_string
    m = _CLOCK_RE.match(time_string)
    if not m:
        return time_string
    hour, minute = int(m.group(1)), int(m.group(2))
    delta = _coerce_int(minutes)
    if not 1 <= hour <= 12 or minute > 59 or delta is None:
        return time_string

    hour24 = hour % 12 + (12 if m.group(3).lower() == "p" else 0)
    total = (hour24 * 60 + minute + delta) % (24 * 60)
    new_hour, new_minute = divmod(total, 60)
    meridiem = "PM" if new_hour >= 12 else "AM"
    return f"{new_hour % 12 or 12}:{new_minute:02d} {meridiem}{m.group(4)}"


# ===============================================================
# STATE LEDGER
# ===============================================================

def ensure_message_id(message: dict) -> str:
    """Give a message a stable id on first touch."""
    msg_id = str(message.get("id") or "").strip()
    if not msg_id:
        msg_id = uuid.uuid4().hex
        message["id"] = msg_id
    return msg_id


class StateLedger:
    """Per-message tracker states for a linear chat.

    Entries live on each message's side channel (message["extra"]), so they
    move with the message when earlier messages are deleted or inserted.
    Positions are only used for lookups; position_of() maps a stable
    message id back to the current position.
    """

    def __init__(self, chat: list):
        self.chat = chat

    def message(self, index) -> Optional[dict]:
        if isinstance(index, bool) or not isinstance(index, int):
            return None
        if index < 0 or index >= len(self.chat):
            return None
        msg = self.chat[index]
        return msg if isinstance(msg, dict) else None

    def get(self, index) -> Optional[TrackerState]:
        msg = self.message(index)
        if msg is None:
            return None
        extra = msg.get("extra")
        if not isinstance(extra, dict):
            return None
        state = TrackerState.from_dict(extra.get(TRACKER_KEY))
        if state is None or state.is_empty():
            return None
        return state

    def set(self, index, state: Optional[TrackerState]) -> bool:
        """Store a state. Empty states are refused."""
        msg = self.message(index)
        if msg is None or state is None or state.is_empty():
            return False
        ensure_message_id(msg)
        if not isinstance(msg.get("extra"), dict):
            msg["extra"] = {}
        msg["extra"][TRACKER_KEY] = state.to_dict()
        return True

    def most_recent_before(self, index) -> Optional[TrackerState]:
        if isinstance(index, bool) or not isinstance(index, int):
            return None
        for i in range(min(index, len(self.chat)) - 1, -1, -1):
            state = self.get(i)
            if state is not None:
                return state
        return None

    def has_state_after(self, index: int) -> bool:
        return any(self.get(i) is not None for i in range(index + 1, len(self.chat)))

    def indices(self) -> list[int]:
        return [i for i in range(len(self.chat)) if self.get(i) is not None]

    def last_state(self) -> Optional[TrackerState]:
        return self.most_recent_before(len(self.chat))

    def position_of(self, message_id: str) -> Optional[int]:
        for i, msg in enumerate(self.chat):
            if isinstance(msg, dict) and msg.get("id") == message_id:
                return i
        return None


# ===============================================================
# TRACKER SESSION
# ===============================================================

Renderer = Callable[[int, Optional[TrackerState], str], None]
Generator = Callable[[str], Awaitable[str]]
# Signature: callback(done: int, total: int, status_text: str)
ProgressCallback = Optional[Callable[[int, int, str], None]]


@dataclass
class TrackerSession:
    """Everything the reconciliation functions read and mutate.
    Replaces module-level globals: the running heart value and the busy flag
    belong to the session and are passed explicitly.
    """
    chat: list = field(default_factory=list)          # message dicts: id, is_user, mes, extra
    config: EngineConfig = field(default_factory=EngineConfig)
    heart_points: int = 0                              # Running heart value
    renderer: Optional[Renderer] = None
    on_save: Optional[Callable[[], None]] = None
    prompt_sink: Optional[Callable[[str], None]] = None
    clear_display: Optional[Callable[[], None]] = None
    rng: random.Random = field(default_factory=random.Random)
    populating: bool = False

    @property
    def ledger(self) -> StateLedger:
        return StateLedger(self.chat)


@dataclass
class PopulateResult:
    total: int = 0
    done: int = 0
    reused: int = 0
    parsed: int = 0
    imported: int = 0
    generated: int = 0
    failed: int = 0
    inherited: int = 0

    @property
    def resolved(self) -> int:
        return self.reused + self.parsed + self.imported + self.generated


def load_session(chat: Optional[list] = None, path: Path = SETTINGS_FILE,
                 **collaborators) -> TrackerSession:
    """Create a session from persisted settings (config + running heart value)."""
    config = load_engine_config(path)
    session = TrackerSession(chat=chat if chat is not None else [], config=config,
                             **collaborators)
    stored = _coerce_int(load_settings(path).get("heart_points"))
    session.heart_points = bound_heart(stored, config.default_heart, config.heart_max)
    return session


def save_session_settings(session: TrackerSession, path: Path = SETTINGS_FILE):
    cfg = {key: getattr(session.config, key) for key in _CONFIG_FIELDS}
    cfg["heart_points"] = session.heart_points
    save_settings(cfg, path)


def _save(session: TrackerSession):
    if session.on_save is not None:
        session.on_save()


def render_message_tracker(session: TrackerSession, index: int):
    """Hand a message's state (or None to clear) and display text to the renderer.
    Tracker markup is stripped from the text whenever a state is shown."""
    if session.renderer is None:
        return
    msg = session.ledger.message(index)
    if msg is None:
        return
    text = msg.get("mes") or ""
    state = session.ledger.get(index) if session.config.enabled else None
    if state is not None:
        text = strip_tracker_blocks(text)
    session.renderer(index, state, text)


def _render_all(session: TrackerSession):
    for index in session.ledger.indices():
        render_message_tracker(session, index)


# ===============================================================
# PROMPTS
# ===============================================================

TRACKER_TEMPLATE = """[TRACKER]
time: h:MM AM/PM; MM/DD/YYYY (DayOfWeek)
location: Full location description
weather: Weather description, Temperature
heart: integer_value
characters:
- name: CharacterName | outfit: Clothing description | state: Emotional/physical state | position: Where in the scene
[/TRACKER]"""

TRACKER_SYSTEM = ("You maintain scene-state trackers for a roleplay chat. "
                  "Answer with exactly one [TRACKER] block and nothing else.")


def _heart_legend(heart_max: int) -> str:
    parts = []
    low = 0
    for upper, key in HEART_TIERS:
        if upper is None:
            parts.append(f"{E[key]} {low:,}+")
            break
        if low > heart_max:
            break
        parts.append(f"{E[key]} {low:,}-{min(upper - 1, heart_max):,}")
        low = upper
    return "   ".join(parts)


def build_tracker_instructions(session: TrackerSession) -> str:
    cfg = session.config
    heart_max = _bounded_max(cfg.heart_max)
    return f"""[TurboTracker - mandatory instructions]
At the very end of EVERY response, after all narrative text, append a tracker block using exactly this format:

{TRACKER_TEMPLATE}

Heart Meter (current value: {session.heart_points}):
  Tracks the main character's romantic interest in {USER_TAG}. Range: 0-{heart_max:,}.
  Maximum shift per response: {cfg.max_shift:,} points.
  {_heart_legend(heart_max)}

Characters section:
  List every character currently present in the scene.
  Each line must use the pipe-separated format shown above.
  Include current outfit, emotional/physical state, and position in the scene.

Update only values that have changed from the previous block. Never omit the block."""


def inject_prompt(session: TrackerSession):
    """Push the instruction text to the prompt sink ('' when disabled)."""
    if session.prompt_sink is None:
        return
    text = build_tracker_instructions(session) if session.config.enabled else ""
    session.prompt_sink(text)


def build_generation_prompt(chat: list, index: int, anchor: Optional[TrackerState] = None,
                            context_messages: int = CONTEXT_MESSAGES) -> str:
    """OOC request asking the model to infer the tracker for chat[index]
    from that message and up to context_messages before it."""
    start = max(0, index - max(0, context_messages))
    lines = []
    for msg in chat[start:index + 1]:
        if not isinstance(msg, dict):
            continue
        speaker = USER_TAG if msg.get("is_user") else CHAR_TAG
        lines.append(f"{speaker}: {msg.get('mes') or ''}")
    excerpt = "\n\n".join(lines)

    anchor_block = ""
    if anchor is not None:
        anchor_block = ("\n\nTracker state before this excerpt (keep anything the excerpt "
                        f"does not change):\n{format_tracker_block(anchor)}")

    return f"""[OOC: Based only on the conversation excerpt below, infer the tracker state at the moment of the last message. Output ONLY the tracker block - no other text.]

{excerpt}{anchor_block}

{TRACKER_TEMPLATE}"""


# ===============================================================
# GENERATION BACKEND
# ===============================================================

class GenerationError(Exception):
    """The generation backend returned no usable text."""


def _api_create_with_retry(client: anthropic.Anthropic, max_retries: int = 2, **kwargs):
    """Wrapper around client.messages.create with retry on transient API errors.
    Handles rate limits (429), server errors (500/502/503), and overloaded (529)
    with exponential backoff."""
    for attempt in range(max_retries + 1):
        try:
            return client.messages.create(**kwargs)
        except anthropic.APIStatusError as e:
            if attempt < max_retries and e.status_code in (429, 500, 502, 503, 529):
                wait = 2 ** attempt
                log(f"[API] Error {e.status_code}, retry {attempt + 1}/{max_retries} in {wait}s",
                    level="warning")
                _time.sleep(wait)
                continue
            raise
        except anthropic.APIConnectionError as e:
            if attempt < max_retries:
                wait = 2 ** attempt
                log(f"[API] Connection error, retry {attempt + 1}/{max_retries} in {wait}s: {e}",
                    level="warning")
                _time.sleep(wait)
                continue
            raise


class AnthropicGenerator:
    """Default generation capability: await generator(prompt) -> text.
    The blocking SDK call runs in a worker thread."""

    def __init__(self, api_key: str = "", model: str = TRACKER_MODEL,
                 max_tokens: int = GENERATION_MAX_TOKENS,
                 client: Optional[anthropic.Anthropic] = None):
        self.client = client or anthropic.Anthropic(api_key=api_key or None)
        self.model = model
        self.max_tokens = max_tokens

    def complete(self, prompt: str) -> str:
        response = _api_create_with_retry(
            self.client,
            model=self.model, max_tokens=self.max_tokens,
            system=TRACKER_SYSTEM,
            messages=[{"role": "user", "content": prompt}],
        )
        if getattr(response, "stop_reason", None) == "max_tokens":
            log("[Generate] Response truncated (max_tokens)", level="warning")
        text = "".join(getattr(block, "text", "") or "" for block in response.content)
        if not text.strip():
            raise GenerationError("empty response")
        return text

    async def __call__(self, prompt: str) -> str:
        return await asyncio.to_thread(self.complete, prompt)


def create_generator(session: TrackerSession, path: Path = SETTINGS_FILE) -> AnthropicGenerator:
    """Default generator for a session. API key: settings.json, then ANTHROPIC_API_KEY."""
    api_key = str(load_settings(path).get("api_key") or "").strip()
    if not api_key:
        api_key = os.environ.get("ANTHROPIC_API_KEY", "").strip()
    if not api_key:
        log("[Generate] No API key configured", level="warning")
    return AnthropicGenerator(api_key=api_key, model=session.config.model)


async def _generate_state(generate: Generator, prompt: str, index: int) -> Optional[TrackerState]:
    """Run one inference request. Any failure is logged and reads as 'no answer'."""
    try:
        response = await generate(prompt)
    except Exception as e:
        log(f"[Generate] Message #{index}: generation failed: {e}", level="warning")
        return None
    state = parse_tracker_block(response) if isinstance(response, str) else None
    if state is None or state.is_empty():
        log(f"[Generate] Message #{index}: response had no usable tracker block",
            level="warning")
        return None
    return state


# ===============================================================
# RESOLVERS
# ===============================================================
# Each resolver returns a TrackerState or None. The first hit wins.

Resolver = Callable[[TrackerSession, int], Optional[TrackerState]]


def _resolve_existing(session: TrackerSession, index: int) -> Optional[TrackerState]:
    return session.ledger.get(index)


def _resolve_from_text(session: TrackerSession, index: int) -> Optional[TrackerState]:
    msg = session.ledger.message(index)
    state = parse_tracker_block(msg.get("mes") or "")
    if state is None or state.is_empty():
        return None
    return state


def _resolve_legacy(session: TrackerSession, index: int) -> Optional[TrackerState]:
    msg = session.ledger.message(index)
    extra = msg.get("extra")
    if isinstance(extra, dict) and isinstance(extra.get(LEGACY_EXTRA_KEY), dict):
        state = import_legacy(extra[LEGACY_EXTRA_KEY])
        if state is not None:
            return state
    return import_legacy(msg.get("mes") or "")


def _nudge_minutes(session: TrackerSession) -> int:
    low = max(0, session.config.nudge_min)
    high = max(low, session.config.nudge_max)
    return session.rng.randint(low, high) if high > 0 else 0


def _resolve_inherited(session: TrackerSession, index: int) -> Optional[TrackerState]:
    prior = session.ledger.most_recent_before(index)
    if prior is None:
        return None
    state = prior.copy()
    minutes = _nudge_minutes(session)
    if state.time and minutes:
        state.time = advance_time(state.time, minutes)
    return state


_ASSISTANT_RESOLVERS = (_resolve_existing, _resolve_from_text, _resolve_legacy)
_USER_RESOLVERS = (_resolve_existing, _resolve_inherited)
_EDIT_RESOLVERS = (_resolve_from_text, _resolve_legacy)

# Source names for log lines
_RESOLVER_LABELS = {
    _resolve_from_text: "own block",
    _resolve_legacy: "legacy import",
    _resolve_inherited: "inherited",
}


def _resolve(session: TrackerSession, index: int,
             resolvers) -> tuple[Optional[TrackerState], Optional[Resolver]]:
    for resolver in resolvers:
        state = resolver(session, index)
        if state is not None:
            return state, resolver
    return None, None


def _heart_baseline(session: TrackerSession, index: int) -> int:
    """Heart of the nearest earlier state, else the running value."""
    prior = session.ledger.most_recent_before(index)
    if prior is not None and prior.heart is not None:
        return prior.heart
    return session.heart_points


def _commit(session: TrackerSession, index: int, state: TrackerState) -> bool:
    """Write a state and move the running value if this is now the latest state."""
    if not session.ledger.set(index, state):
        return False
    if not session.ledger.has_state_after(index):
        session.heart_points = state.heart
    return True


def _store_state(session: TrackerSession, index: int, state: TrackerState,
                 lock_heart: bool = False) -> bool:
    """Clamp heart against the baseline and commit. lock_heart keeps the
    baseline as is (user-authored messages don't move the meter)."""
    cfg = session.config
    baseline = _heart_baseline(session, index)
    raw = baseline if lock_heart else state.heart
    state.heart = clamp_heart(raw, baseline, cfg.max_shift, cfg.heart_max)
    return _commit(session, index, state)


def _after_mutation(session: TrackerSession, index: int):
    _save(session)
    render_message_tracker(session, index)
    inject_prompt(session)


# ===============================================================
# LIFECYCLE EVENTS
# ===============================================================

def on_message_rendered(session: TrackerSession, index: int):
    """A message was produced or re-rendered.
    Assistant: stored -> own block -> legacy import -> nothing.
    User: stored -> inherited from the nearest earlier state, clock nudged forward.
    """
    msg = session.ledger.message(index)
    if msg is None or not session.config.enabled:
        return
    resolvers = _USER_RESOLVERS if msg.get("is_user") else _ASSISTANT_RESOLVERS
    state, resolver = _resolve(session, index, resolvers)
    if state is None:
        return
    if resolver is _resolve_existing:
        render_message_tracker(session, index)
        return
    if _store_state(session, index, state):
        log(f"[Render] Message #{index}: tracker from {_RESOLVER_LABELS[resolver]}",
            level="debug")
        _after_mutation(session, index)


def on_message_edited(session: TrackerSession, index: int):
    """Message text changed: re-read its own block (or legacy data), overwriting."""
    msg = session.ledger.message(index)
    if msg is None or msg.get("is_user") or not session.config.enabled:
        return
    state, _ = _resolve(session, index, _EDIT_RESOLVERS)
    if state is None:
        render_message_tracker(session, index)
        return
    if _store_state(session, index, state):
        log(f"[Render] Message #{index}: tracker re-read after edit", level="debug")
        _after_mutation(session, index)


def on_message_deleted(session: TrackerSession):
    """Refresh what is displayed. Entries travel with their messages, so nothing
    needs re-deriving."""
    if not session.config.enabled:
        return
    _render_all(session)


def on_chat_changed(session: TrackerSession, chat: Optional[list]):
    """Switch to another chat: clear the display, reset the running heart value
    from the new chat's last state, and show every stored tracker."""
    if session.clear_display is not None:
        session.clear_display()
    session.chat = chat if chat is not None else []
    cfg = session.config
    last = session.ledger.last_state()
    if last is not None and last.heart is not None:
        session.heart_points = bound_heart(last.heart, 0, cfg.heart_max)
    else:
        session.heart_points = bound_heart(cfg.default_heart, 0, cfg.heart_max)
    log(f"[Chat] Switched chat: {len(session.chat)} messages, heart={session.heart_points}")
    for index in session.ledger.indices():
        on_message_rendered(session, index)
    _save(session)
    inject_prompt(session)


def set_enabled(session: TrackerSession, enabled: bool):
    session.config.enabled = bool(enabled)
    if not session.config.enabled and session.clear_display is not None:
        session.clear_display()
    elif session.config.enabled:
        _render_all(session)
    _save(session)
    inject_prompt(session)


# ===============================================================
# EXPLICIT COMMANDS
# ===============================================================

async def regenerate_tracker(session: TrackerSession, index: int,
                             generate: Generator) -> Optional[TrackerState]:
    """Ask the model to infer a fresh tracker for one message and store it.
    Returns the stored state, or None if the message is gone or generation failed.
    """
    msg = session.ledger.message(index)
    if msg is None:
        return None
    msg_id = ensure_message_id(msg)
    anchor = session.ledger.most_recent_before(index)
    prompt = build_generation_prompt(session.chat, index, anchor,
                                     session.config.context_messages)
    log(f"[Regen] Message #{index}: requesting tracker inference")

    state = await _generate_state(generate, prompt, index)
    if state is None:
        return None

    # The chat may have changed while waiting
    index = session.ledger.position_of(msg_id)
    if index is None:
        log(f"[Regen] Message {msg_id} was removed during regeneration, dropping result",
            level="warning")
        return None
    if not _store_state(session, index, state, lock_heart=bool(msg.get("is_user"))):
        return None
    log(f"[Regen] Message #{index}: tracker regenerated (heart={state.heart})")
    _after_mutation(session, index)
    return state


def _edited_characters(value) -> list:
    if isinstance(value, str):
        return [c for c in (parse_character_line(line) for line in value.splitlines()
                            if line.strip()) if c]
    if not isinstance(value, (list, tuple)):
        return []
    chars = []
    for item in value:
        if isinstance(item, CharacterState):
            if isinstance(item.name, str) and item.name.strip():
                chars.append(item)
        else:
            char = CharacterState.from_dict(item)
            if char:
                chars.append(char)
    return chars


def save_edited_tracker(session: TrackerSession, index: int,
                        fields: dict) -> Optional[TrackerState]:
    """Store hand-edited tracker values for a message.
    Characters may be a list or one pipe-separated line per character.
    Heart is only held to [0, heart_max]; the per-step limit doesn't apply.
    """
    if session.ledger.message(index) is None or not isinstance(fields, dict):
        return None
    cfg = session.config
    previous = session.ledger.get(index)
    fallback = (previous.heart if previous is not None and previous.heart is not None
                else _heart_baseline(session, index))
    state = TrackerState(
        time=_clean_text(fields.get("time")),
        location=_clean_text(fields.get("location")),
        weather=_clean_text(fields.get("weather")),
        heart=bound_heart(fields.get("heart"), fallback, cfg.heart_max),
        characters=_edited_characters(fields.get("characters")),
    )
    if not _commit(session, index, state):
        log(f"[Edit] Message #{index}: edit left no tracker data, not stored")
        return None
    log(f"[Edit] Message #{index}: tracker saved (heart={state.heart})")
    _after_mutation(session, index)
    return state


def _report(progress: ProgressCallback, done: int, total: int, text: str):
    if progress is not None:
        progress(done, total, text)


async def populate_all_messages(session: TrackerSession, generate: Generator,
                                progress: ProgressCallback = None) -> Optional[PopulateResult]:
    """Backfill trackers for the whole chat.

    Assistant messages, in order: stored -> own block -> legacy -> inference.
    Inference calls run one at a time since each clamp baseline depends on the
    message before it. Then every user message still without a state inherits one.
    Returns None (and does nothing) if a run is already in progress.
    """
    if session.populating:
        log("[Populate] Already running, request ignored")
        return None
    session.populating = True
    try:
        cfg = session.config
        lang = cfg.lang
        if not session.chat:
            _report(progress, 0, 0, _t("populate.no_chat", lang))
            return PopulateResult()

        targets = [ensure_message_id(m) for m in session.chat
                   if isinstance(m, dict) and not m.get("is_user")]
        result = PopulateResult(total=len(targets))
        running = None
        log(f"[Populate] Starting: {result.total} assistant messages")
        _report(progress, 0, result.total,
                _t("populate.progress", lang, done=0, total=result.total))

        for msg_id in targets:
            index = session.ledger.position_of(msg_id)
            if index is None:
                log(f"[Populate] Message {msg_id} disappeared, skipping", level="warning")
                result.failed += 1
                result.done += 1
                continue

            if running is None:
                running = _heart_baseline(session, index)
            state, resolver = _resolve(session, index, _ASSISTANT_RESOLVERS)
            if resolver is _resolve_existing:
                if state.heart is not None:
                    running = state.heart
                result.reused += 1
            elif state is not None:
                state.heart = clamp_heart(state.heart, running, cfg.max_shift, cfg.heart_max)
                session.ledger.set(index, state)
                running = state.heart
                if resolver is _resolve_from_text:
                    result.parsed += 1
                else:
                    result.imported += 1
            else:
                anchor = session.ledger.most_recent_before(index)
                prompt = build_generation_prompt(session.chat, index, anchor,
                                                 cfg.context_messages)
                state = await _generate_state(generate, prompt, index)
                index = session.ledger.position_of(msg_id)
                if state is not None and index is not None:
                    state.heart = clamp_heart(state.heart, running, cfg.max_shift,
                                              cfg.heart_max)
                    session.ledger.set(index, state)
                    running = state.heart
                    result.generated += 1
                else:
                    state = None
                    result.failed += 1

            if state is not None and index is not None:
                render_message_tracker(session, index)
                session.heart_points = running
            result.done += 1
            _report(progress, result.resolved, result.total,
                    _t("populate.progress", lang, done=result.resolved, total=result.total))

        for index, msg in enumerate(session.chat):
            if not isinstance(msg, dict) or not msg.get("is_user"):
                continue
            if session.ledger.get(index) is not None:
                continue
            inherited = _resolve_inherited(session, index)
            if inherited is not None and session.ledger.set(index, inherited):
                result.inherited += 1
                render_message_tracker(session, index)

        _save(session)
        inject_prompt(session)
        if result.resolved == result.total:
            status = _t("populate.done", lang)
        else:
            status = _t("populate.partial", lang, done=result.resolved, total=result.total)
        _report(progress, result.resolved, result.total, status)
        log(f"[Populate] Finished: {result.resolved}/{result.total} resolved "
            f"(reused={result.reused}, parsed={result.parsed}, imported={result.imported}, "
            f"generated={result.generated}, failed={result.failed}, "
            f"inherited={result.inherited})")
        return result
    finally:
        session.populating = False
