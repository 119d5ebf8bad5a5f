from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, Optional

import requests

from ..config import PartnerSettings, get_settings
from ..domain.errors import ErrorKind, GenerationError, classify_error
from .genai_client import build_retry_session, raise_for_response
from .model_router import ModelRouter


logger = logging.getLogger(__name__)

DEFAULT_VOICE = "Kore"


def clean_text_for_speech(text: str, max_chars: int = 1000) -> str:
    """Strip Markdown markup and cap the length of text sent to synthesis."""

    if not text:
        return ""
    text = re.sub(r"```.*?```", " ", text, flags=re.DOTALL)  # code blocks
    text = re.sub(r"!\[([^\]]*)\]\([^)]+\)", "", text)  # images
    text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)  # links
    text = re.sub(r"\*\*([^*]+)\*\*", r"\1", text)
    text = re.sub(r"__([^_]+)__", r"\1", text)
    text = re.sub(r"(?<!\w)[*_]([^*_]+)[*_](?!\w)", r"\1", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = re.sub(r"^#{1,6}\s*", "", text, flags=re.MULTILINE)
    text = re.sub(r"^\s*(?:[-*+]|\d+[.)])\s+", "", text, flags=re.MULTILINE)
    text = re.sub(r"<[^>]+>", "", text)
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) > max_chars:
        cut = text[:max_chars]
        # Prefer ending on a sentence boundary
        boundary = max(cut.rfind(". "), cut.rfind("? "), cut.rfind("! "))
        text = cut[: boundary + 1] if boundary > max_chars // 2 else cut
    return text


class SpeechClient:
    """Requests synthesized speech (base64 PCM16 mono) from Gemini TTS."""

    def __init__(
        self,
        router: Optional[ModelRouter] = None,
        settings: Optional[PartnerSettings] = None,
        session: Optional[requests.Session] = None,
        voice: str = DEFAULT_VOICE,
    ) -> None:
        self._router = router or ModelRouter()
        self._settings = settings or get_settings()
        self._session = session
        self.voice = voice

    def _http(self) -> requests.Session:
        if self._session is None:
            self._session = build_retry_session()
        return self._session

    def build_payload(self, text: str) -> Dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice}}},
            },
        }

    def synthesize_sync(self, text: str) -> Optional[str]:
        cleaned = clean_text_for_speech(text, self._settings.tts_max_chars)
        if not cleaned:
            return None
        try:
            selection = self._router.select_provider("speech")
        except RuntimeError as exc:
            raise GenerationError(ErrorKind.AUTH, str(exc)) from exc
        api_key = self._router.api_key(selection) or ""
        url = f"{selection.base_url}/models/{selection.model}:generateContent"
        try:
            resp = self._http().post(
                url,
                headers={"x-goog-api-key": api_key},
                json=self.build_payload(cleaned),
                timeout=(5, 60),
            )
        except requests.exceptions.RequestException as exc:
            raise GenerationError(classify_error(exc), str(exc)) from exc
        raise_for_response(resp)
        data = resp.json()
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or {}
                if inline.get("data"):
                    return inline["data"]
        logger.info("speech_no_audio_payload model=%s", selection.model)
        return None

    async def synthesize(self, text: str) -> Optional[str]:
        return await asyncio.to_thread(self.synthesize_sync, text)
