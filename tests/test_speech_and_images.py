import asyncio

import pytest
import requests

from src.partner.config import PartnerSettings
from src.partner.domain.errors import ErrorKind, GenerationError
from src.partner.services.image_gen import ImageGenerationClient
from src.partner.services.model_router import ModelRouter
from src.partner.services.speech import SpeechClient, clean_text_for_speech
from tests.utils import FakeResponse, FakeSession


def _audio_body(data="AAAA"):
    return {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "audio/L16;rate=24000", "data": data}}]}}]}


def test_clean_text_strips_markdown():
    text = "# Title\n**Bold** and _soft_ words with `code` and [a link](http://x).\n- item one\n```py\nprint(1)\n```"
    cleaned = clean_text_for_speech(text)
    assert cleaned == "Title Bold and soft words with code and a link. item one"


def test_clean_text_caps_length_on_sentence_boundary():
    text = "First sentence here. " * 10
    cleaned = clean_text_for_speech(text, max_chars=50)
    assert len(cleaned) <= 50
    assert cleaned.endswith(".")


def test_clean_text_hard_cut_without_boundary():
    assert clean_text_for_speech("x" * 30, max_chars=10) == "x" * 10
    assert clean_text_for_speech("") == ""


def test_speech_request_shape_and_payload():
    session = FakeSession(FakeResponse(json_body=_audio_body("UENN")))
    client = SpeechClient(ModelRouter(env={"GEMINI_API_KEY": "k"}), PartnerSettings(), session=session)
    assert client.synthesize_sync("Hello **there**") == "UENN"

    req = session.requests[0]
    assert req["url"].endswith("/models/gemini-2.5-flash-preview-tts:generateContent")
    assert req["headers"] == {"x-goog-api-key": "k"}
    body = req["json"]
    assert body["contents"][0]["parts"][0]["text"] == "Hello there"
    assert body["generationConfig"]["responseModalities"] == ["AUDIO"]
    voice = body["generationConfig"]["speechConfig"]["voiceConfig"]["prebuiltVoiceConfig"]["voiceName"]
    assert voice == "Kore"


def test_speech_respects_character_cap():
    session = FakeSession(FakeResponse(json_body=_audio_body()))
    client = SpeechClient(ModelRouter(env={"GEMINI_API_KEY": "k"}), PartnerSettings(tts_max_chars=20), session=session)
    client.synthesize_sync("word " * 100)
    assert len(session.requests[0]["json"]["contents"][0]["parts"][0]["text"]) <= 20


def test_speech_without_audio_returns_none():
    session = FakeSession(FakeResponse(json_body={"candidates": [{"content": {"parts": [{"text": "no audio"}]}}]}))
    client = SpeechClient(ModelRouter(env={"GEMINI_API_KEY": "k"}), PartnerSettings(), session=session)
    assert asyncio.run(client.synthesize("hi")) is None


def test_speech_blank_text_skips_request():
    session = FakeSession()
    client = SpeechClient(ModelRouter(env={"GEMINI_API_KEY": "k"}), PartnerSettings(), session=session)
    assert client.synthesize_sync("   ") is None
    assert session.requests == []


def test_speech_errors_are_structured():
    no_key = SpeechClient(ModelRouter(env={}), PartnerSettings(), session=FakeSession())
    with pytest.raises(GenerationError) as exc:
        no_key.synthesize_sync("hi")
    assert exc.value.kind == ErrorKind.AUTH

    down = SpeechClient(
        ModelRouter(env={"GEMINI_API_KEY": "k"}),
        PartnerSettings(),
        session=FakeSession(error=requests.exceptions.Timeout("read timed out")),
    )
    with pytest.raises(GenerationError) as exc:
        down.synthesize_sync("hi")
    assert exc.value.kind == ErrorKind.NETWORK


def test_image_generation_returns_data_url():
    body = {"candidates": [{"content": {"parts": [{"text": "Here"}, {"inlineData": {"mimeType": "image/png", "data": "iVBOR"}}]}}]}
    session = FakeSession(FakeResponse(json_body=body))
    client = ImageGenerationClient(ModelRouter(env={"GEMINI_API_KEY": "k"}), session=session)
    assert asyncio.run(client.generate("a red kite")) == "data:image/png;base64,iVBOR"
    req = session.requests[0]
    assert req["url"].endswith("/models/gemini-2.5-flash-image:generateContent")
    assert req["json"]["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]


def test_image_generation_failures():
    no_image = FakeSession(FakeResponse(json_body={"candidates": []}))
    with pytest.raises(GenerationError) as exc:
        ImageGenerationClient(ModelRouter(env={"GEMINI_API_KEY": "k"}), session=no_image).generate_sync("kite")
    assert exc.value.kind == ErrorKind.EMPTY_RESPONSE

    forbidden = FakeSession(FakeResponse(status_code=403, json_body={"error": {"message": "denied"}}))
    with pytest.raises(GenerationError) as exc:
        ImageGenerationClient(ModelRouter(env={"GEMINI_API_KEY": "k"}), session=forbidden).generate_sync("kite")
    assert exc.value.kind == ErrorKind.AUTH

    with pytest.raises(GenerationError):
        ImageGenerationClient(ModelRouter(env={"GEMINI_API_KEY": "k"}), session=FakeSession()).generate_sync("  ")
