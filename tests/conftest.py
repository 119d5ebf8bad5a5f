import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


_PARTNER_ENV = [
    "PARTNER_HISTORY_TURNS",
    "PARTNER_IMAGE_UPLOAD_LIMIT",
    "PARTNER_IMAGE_GENERATION_LIMIT",
    "PARTNER_STORAGE_IMPL",
    "PARTNER_STORAGE_FILE",
    "PARTNER_TTS_MAX_CHARS",
    "PARTNER_TTS_SAMPLE_RATE",
    "PARTNER_AUDIO_SINK",
    "PARTNER_APOLOGY_TEXT",
    "PARTNER_MODEL_PROVIDER",
    "PARTNER_ENABLE_LOCAL_PROVIDER",
    "REDIS_URL",
]


@pytest.fixture(autouse=True)
def _isolated_partner(monkeypatch):
    """Every test starts from default settings, an empty telemetry buffer and no app singleton."""
    from src.partner.config import reset_settings
    from src.partner.services.partner_app import reset_partner_app
    from src.partner.services.telemetry_sink import clear_events

    for key in _PARTNER_ENV:
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    clear_events()
    reset_partner_app(None)
    yield
    reset_settings()
    reset_partner_app(None)


@pytest.fixture
def settings():
    from src.partner.config import PartnerSettings

    return PartnerSettings()


@pytest.fixture
def kv():
    from src.partner.infrastructure.kv_store import InMemoryKeyValueStore

    return InMemoryKeyValueStore()


@pytest.fixture
def make_app(kv, settings):
    """Build a PartnerApp wired to in-memory storage and scripted fakes."""
    from src.partner.services.partner_app import PartnerApp
    from tests.utils import FakeImages, FakeSpeech, RecordingSink, ScriptedClient

    def _make(**overrides):
        parts = {
            "kv": kv,
            "settings": settings,
            "client": ScriptedClient(["Hello", " there"]),
            "speech": FakeSpeech(),
            "sink": RecordingSink(),
            "images": FakeImages(),
        }
        parts.update(overrides)
        return PartnerApp(**parts)

    return _make
