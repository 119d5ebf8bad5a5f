from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from ..domain.errors import ErrorKind, GenerationError, classify_error
from .genai_client import build_retry_session, raise_for_response
from .model_router import ModelRouter


logger = logging.getLogger(__name__)


class ImageGenerationClient:
    """Generates a still image from a text prompt and returns it as a data URL."""

    def __init__(self, router: Optional[ModelRouter] = None, session: Optional[requests.Session] = None) -> None:
        self._router = router or ModelRouter()
        self._session = session

    def _http(self) -> requests.Session:
        if self._session is None:
            self._session = build_retry_session()
        return self._session

    @staticmethod
    def build_payload(prompt: str) -> Dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": prompt.strip()}]}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }

    def generate_sync(self, prompt: str) -> str:
        if not prompt.strip():
            raise GenerationError(ErrorKind.OTHER, "empty image prompt")
        try:
            selection = self._router.select_provider("image")
        except RuntimeError as exc:
            raise GenerationError(ErrorKind.AUTH, str(exc)) from exc
        api_key = self._router.api_key(selection) or ""
        url = f"{selection.base_url}/models/{selection.model}:generateContent"
        try:
            resp = self._http().post(
                url,
                headers={"x-goog-api-key": api_key},
                json=self.build_payload(prompt),
                timeout=(5, 120),
            )
        except requests.exceptions.RequestException as exc:
            raise GenerationError(classify_error(exc), str(exc)) from exc
        raise_for_response(resp)
        data = resp.json()
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or {}
                if inline.get("data"):
                    mime = inline.get("mimeType") or "image/png"
                    return f"data:{mime};base64,{inline['data']}"
        logger.info("image_generation_no_image model=%s", selection.model)
        raise GenerationError(ErrorKind.EMPTY_RESPONSE, "EMPTY_RESPONSE: no image returned")

    async def generate(self, prompt: str) -> str:
        return await asyncio.to_thread(self.generate_sync, prompt)
