from prometheus_client import REGISTRY

from src.partner.observability.metrics import (
    record_chunk,
    record_outcome,
    record_playback,
    sanitize_path,
)
from src.partner.services.telemetry_sink import (
    TelemetryEvent,
    clear_events,
    list_recent_events,
    record_event,
)


def _value(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_sanitize_path_collapses_ids():
    assert sanitize_path("/chat/sessions/abc-123") == "/chat"
    assert sanitize_path("/usage?x=1") == "/usage"
    assert sanitize_path("") == "/"


def test_counters_increment():
    before_chunks = _value("partner_stream_chunks_total")
    before_failed = _value("partner_stream_outcomes_total", {"phase": "failed"})
    before_play = _value("partner_playbacks_total", {"result": "started"})

    record_chunk()
    record_outcome("failed")
    record_playback("started")

    assert _value("partner_stream_chunks_total") == before_chunks + 1
    assert _value("partner_stream_outcomes_total", {"phase": "failed"}) == before_failed + 1
    assert _value("partner_playbacks_total", {"result": "started"}) == before_play + 1


def test_telemetry_buffer_is_bounded(caplog):
    clear_events()
    with caplog.at_level("INFO", logger="partner.telemetry"):
        for idx in range(205):
            record_event(TelemetryEvent(name=f"e{idx}", session_id="s"))
    recent = list_recent_events(limit=500)
    assert len(recent) == 200
    assert recent[0].name == "e5"
    assert list_recent_events(limit=0) == []
    assert any(getattr(rec, "telemetry_name", None) == "e204" for rec in caplog.records)
