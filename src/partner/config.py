from __future__ import annotations

"""Environment-backed settings for the partner core."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


SESSIONS_KEY = "sm-ai-partner-sessions-v4"
USAGE_KEY = "sm-ai-partner-usage"
PREFERENCES_KEY = "sm-ai-partner-prefs"
THEME_KEY = "theme"

APOLOGY_TEXT = (
    "Maafi chahta hoon, server se rabta nahi ho pa raha. "
    "Baraye meherbani dubara koshish karein."
)


@dataclass(frozen=True)
class PartnerSettings:
    history_turns: int = 10
    image_upload_limit: int = 3
    image_generation_limit: int = 3
    storage_impl: str = "memory"
    storage_file: str = ""
    redis_url: Optional[str] = None
    tts_max_chars: int = 1000
    tts_sample_rate: int = 24000
    tts_channels: int = 1
    audio_sink: str = "null"
    apology_text: str = APOLOGY_TEXT
    title_length: int = 30

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PartnerSettings":
        env = env if env is not None else os.environ
        root = Path(__file__).resolve().parents[2]
        default_file = root / "run" / "partner_state.json"
        return cls(
            history_turns=_env_int(env, "PARTNER_HISTORY_TURNS", 10),
            image_upload_limit=_env_int(env, "PARTNER_IMAGE_UPLOAD_LIMIT", 3),
            image_generation_limit=_env_int(env, "PARTNER_IMAGE_GENERATION_LIMIT", 3),
            storage_impl=(env.get("PARTNER_STORAGE_IMPL") or "memory").strip().lower(),
            storage_file=env.get("PARTNER_STORAGE_FILE") or str(default_file),
            redis_url=env.get("REDIS_URL") or None,
            tts_max_chars=_env_int(env, "PARTNER_TTS_MAX_CHARS", 1000),
            tts_sample_rate=_env_int(env, "PARTNER_TTS_SAMPLE_RATE", 24000),
            audio_sink=(env.get("PARTNER_AUDIO_SINK") or "null").strip().lower(),
            apology_text=env.get("PARTNER_APOLOGY_TEXT") or APOLOGY_TEXT,
        )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


_settings: PartnerSettings | None = None


def get_settings() -> PartnerSettings:
    global _settings
    if _settings is None:
        _settings = PartnerSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next call re-reads the environment (tests)."""

    global _settings
    _settings = None
