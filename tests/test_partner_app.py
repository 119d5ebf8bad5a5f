import asyncio

import pytest

from src.partner.core.state_machine import StreamPhase
from src.partner.domain.chat_models import AppMode, MessageRole, PreferencesUpdate, SendRequest
from src.partner.domain.errors import ErrorKind, GenerationError, SessionBusy, SessionNotFound
from src.partner.services import partner_app
from tests.utils import FakeImages, RecordingSink, ScriptedClient


def test_text_send_is_never_gated(make_app):
    app = make_app()
    for _ in range(5):
        result = asyncio.run(app.send(SendRequest(prompt="hi")))
        assert result.approved
        assert result.outcome.phase == StreamPhase.COMPLETED
    assert app.gating.ledger.snapshot().images_sent_today == 0


def test_fourth_image_send_is_vetoed_before_streaming(make_app):
    client = ScriptedClient(["seen"])
    app = make_app(client=client)
    image = "data:image/jpeg;base64,AAAA"
    results = [asyncio.run(app.send(SendRequest(prompt="what is this", image=image))) for _ in range(4)]

    assert [r.approved for r in results] == [True, True, True, False]
    vetoed = results[-1]
    assert vetoed.decision.show_upgrade is True
    assert vetoed.outcome is None
    assert len(client.calls) == 3
    sid = app.state.active_session_id
    # The vetoed send left no trace in the session
    assert len(app.sessions.list_messages(sid)) == 6


def test_premium_lifts_the_veto(make_app):
    app = make_app()
    image = "data:image/jpeg;base64,AAAA"
    for _ in range(3):
        asyncio.run(app.send(SendRequest(prompt="x", image=image)))
    app.gating.ledger.set_premium(True)
    assert asyncio.run(app.send(SendRequest(prompt="x", image=image))).approved


def test_auto_speak_plays_completed_reply(make_app):
    sink = RecordingSink()
    app = make_app(sink=sink)
    app.preferences.update(PreferencesUpdate(auto_speak=True))

    result = asyncio.run(app.send(SendRequest(prompt="hi")))
    assert len(sink.played) == 1
    assert app.state.playback.playing_message_id == result.outcome.model_message_id
    assert app.audio._speech.calls == ["Hello there"]


def test_auto_speak_off_does_not_play(make_app):
    sink = RecordingSink()
    app = make_app(sink=sink)
    asyncio.run(app.send(SendRequest(prompt="hi")))
    assert sink.played == []


def test_unknown_session_is_rejected(make_app):
    app = make_app()
    with pytest.raises(SessionNotFound):
        asyncio.run(app.send(SendRequest(prompt="hi", session_id="missing")))


def test_busy_session_rejected_before_quota(make_app):
    app = make_app()
    sid = app.sessions.ensure_session(None, "Chat")
    app.state.begin_stream(sid)
    with pytest.raises(SessionBusy):
        app.admit(SendRequest(prompt="x", image="data:image/jpeg;base64,AA", session_id=sid))
    assert app.gating.ledger.snapshot().images_sent_today == 0


def test_generate_image_appends_prompt_and_image(make_app):
    images = FakeImages(data_url="data:image/png;base64,QUJD")
    app = make_app(images=images)
    result = asyncio.run(app.generate_image("a lighthouse at dusk"))

    assert result.approved
    outcome = result.outcome
    assert outcome.phase == StreamPhase.COMPLETED
    messages = app.sessions.list_messages(outcome.session_id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.MODEL]
    assert messages[0].text == "a lighthouse at dusk"
    assert messages[1].image == "data:image/png;base64,QUJD"
    assert app.gating.ledger.snapshot().images_generated_today == 1
    assert images.prompts == ["a lighthouse at dusk"]


def test_generate_image_failure_appends_apology(make_app, settings):
    app = make_app(images=FakeImages(error=GenerationError(ErrorKind.NETWORK, "unavailable")))
    result = asyncio.run(app.generate_image("kite"))
    outcome = result.outcome
    assert outcome.phase == StreamPhase.FAILED
    assert app.sessions.list_messages(outcome.session_id)[-1].text == settings.apology_text
    assert app.state.last_error.kind == ErrorKind.NETWORK
    assert app.state.is_loading is False


def test_image_generation_quota(make_app):
    app = make_app()
    results = [asyncio.run(app.generate_image(f"picture {i}")) for i in range(4)]
    assert [r.approved for r in results] == [True, True, True, False]


def test_image_mode_send_routes_to_generation(make_app):
    client = ScriptedClient(["text"])
    images = FakeImages()
    app = make_app(client=client, images=images)
    result = asyncio.run(app.send(SendRequest(prompt="a cat", mode=AppMode.IMAGE)))
    assert result.outcome.phase == StreamPhase.COMPLETED
    assert client.calls == []
    assert images.prompts == ["a cat"]


def test_submit_transcript_uses_preferences(make_app):
    client = ScriptedClient(["ok"])
    app = make_app(client=client)
    app.preferences.update(PreferencesUpdate(deep_think=True, mode=AppMode.CODING))

    assert asyncio.run(app.submit_transcript("   ")) is None
    assert client.calls == []

    result = asyncio.run(app.submit_transcript("  explain recursion "))
    assert result.outcome.phase == StreamPhase.COMPLETED
    assert client.calls[0]["turn"].text == "explain recursion"
    assert client.calls[0]["deep_think"] is True
    assert client.calls[0]["mode"] == AppMode.CODING


def test_regenerate_through_facade(make_app):
    app = make_app(client=ScriptedClient(["answer"]))
    first = asyncio.run(app.send(SendRequest(prompt="question")))
    result = asyncio.run(app.regenerate(first.outcome.session_id))
    texts = [m.text for m in app.sessions.list_messages(first.outcome.session_id)]
    assert result.approved
    assert texts == ["question", "answer"]


def test_speak_and_stop_audio(make_app):
    app = make_app()

    async def scenario():
        assert await app.speak("hello", "m1") is True
        app.stop_audio()

    asyncio.run(scenario())
    assert app.state.playback.playing_message_id is None


def test_get_partner_app_singleton(monkeypatch, make_app):
    injected = make_app()
    partner_app.reset_partner_app(injected)
    assert partner_app.get_partner_app() is injected
    partner_app.reset_partner_app(None)
    monkeypatch.setenv("PARTNER_STORAGE_IMPL", "memory")
    created = partner_app.get_partner_app()
    assert created is partner_app.get_partner_app()
    assert created is not injected


def test_quota_is_returned_when_session_is_taken_after_admission(make_app):
    app = make_app()
    sid = app.sessions.ensure_session(None, "Chat")
    request = SendRequest(prompt="x", image="data:image/jpeg;base64,AA", session_id=sid)
    assert app.admit(request).approved
    assert app.gating.ledger.snapshot().images_sent_today == 1

    app.state.begin_stream(sid)
    with pytest.raises(SessionBusy):
        asyncio.run(app.dispatch(request))
    assert app.gating.ledger.snapshot().images_sent_today == 0
    assert app.sessions.list_messages(sid) == []


def test_image_quota_is_returned_when_session_is_taken_after_admission(make_app):
    images = FakeImages()
    app = make_app(images=images)
    sid = app.sessions.ensure_session(None, "Chat")
    assert app.admit_image(sid).approved

    app.state.begin_stream(sid)
    with pytest.raises(SessionBusy):
        asyncio.run(app.dispatch(SendRequest(prompt="a cat", mode=AppMode.IMAGE, session_id=sid)))
    assert app.gating.ledger.snapshot().images_generated_today == 0
    assert images.prompts == []


def test_stop_targets_requested_session(make_app):
    app = make_app()
    sid_a = app.sessions.ensure_session(None, "A")
    sid_b = app.sessions.ensure_session(None, "B")
    token_a = app.state.begin_stream(sid_a)
    token_b = app.state.begin_stream(sid_b)

    assert app.stop(sid_a) is True
    assert token_a.cancelled and not token_b.cancelled
    assert app.stop("missing") is False
