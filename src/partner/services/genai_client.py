from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.chat_models import AppMode, Message, MessageRole
from ..domain.errors import ErrorKind, GenerationError, classify_error, kind_for_status
from .model_router import ModelRouter, ProviderSelection
from .streaming import iter_as_async

# Optional import: langchain-openai
try:
    from langchain_openai import ChatOpenAI  # type: ignore
except Exception:  # pragma: no cover - optional import
    ChatOpenAI = None  # type: ignore


logger = logging.getLogger(__name__)
LOG = logging.getLogger("partner.llm")

IMAGE_PLACEHOLDER = "Attached Image"
EMPTY_PROMPT_TEXT = "Hi"
TEMPERATURE = 0.7
THINKING_BUDGET = 4000
_STREAM_TIMEOUT = (5, 120)

EDUCATION_INSTRUCTION = """
You are "SM AI Partner", a world-class educational AI assistant created by SM Gaming Studio.
Your goal is to help students with Math, Science, Coding, Islamic Studies (Islamiyat), and general academic subjects.

CORE PRINCIPLES:
1. Be professional, encouraging, and academically rigorous.
2. Provide step-by-step explanations for complex problems (especially Math and Science).
3. If the user speaks in Urdu, Roman Urdu, or Sindhi, reply in the same language.
4. For Islamiyat questions, provide authentic and respectful information.
5. Keep responses clear, well-formatted using Markdown, and easy to read for students.
6. Encourage critical thinking: don't just give answers; explain the 'why'.
""".strip()

CODING_INSTRUCTION = """
You are "SM AI Partner" in Coding Assistant mode, created by SM Gaming Studio.
Help students write, read, and debug code.

CORE PRINCIPLES:
1. Give complete, runnable examples in fenced Markdown code blocks with the language tag.
2. Explain what the code does line by line when the student is a beginner.
3. When fixing a bug, show the cause first and then the corrected code.
4. If the user speaks in Urdu, Roman Urdu, or Sindhi, reply in the same language.
""".strip()

SYSTEM_INSTRUCTIONS: Dict[AppMode, str] = {
    AppMode.EDUCATION: EDUCATION_INSTRUCTION,
    AppMode.CODING: CODING_INSTRUCTION,
    AppMode.IMAGE: EDUCATION_INSTRUCTION,
}


@dataclass(frozen=True)
class HistoryTurn:
    role: str  # "user" or "model"
    text: str


@dataclass(frozen=True)
class UserTurn:
    text: str
    image: Optional[str] = None


class GenerativeClient(Protocol):
    def stream(
        self,
        history: Sequence[HistoryTurn],
        turn: UserTurn,
        *,
        deep_think: bool = False,
        mode: AppMode = AppMode.EDUCATION,
    ) -> AsyncIterator[str]: ...


def build_history(messages: Sequence[Message], limit: int) -> List[HistoryTurn]:
    """Map stored messages to outbound turns.

    Messages with no text fall back to an image placeholder when they carry
    an image and are dropped otherwise. Only the most recent ``limit`` turns
    are kept.
    """

    turns: List[HistoryTurn] = []
    for m in messages:
        text = m.text
        if not text:
            if not m.image:
                continue
            text = IMAGE_PLACEHOLDER
        turns.append(HistoryTurn(role=m.role.value, text=text))
    if limit <= 0:
        return []
    return turns[-limit:]


def split_data_url(image: str, default_mime: str = "image/jpeg") -> Tuple[str, str]:
    """Return ``(mime_type, base64_data)`` for a data URL or bare base64 string."""

    if image.startswith("data:") and "base64," in image:
        header, data = image.split("base64,", 1)
        mime = header[len("data:"):].rstrip(";") or default_mime
        return mime, data
    if "base64," in image:
        return default_mime, image.split("base64,", 1)[1]
    return default_mime, image


def build_retry_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def raise_for_response(resp: requests.Response) -> None:
    if resp.status_code < 400:
        return
    try:
        detail = resp.json().get("error", {}).get("message") or resp.text
    except ValueError:
        detail = resp.text
    kind = kind_for_status(resp.status_code) or ErrorKind.OTHER
    raise GenerationError(kind, f"HTTP {resp.status_code}: {detail[:300]}")


class GeminiStreamClient:
    """Streams replies from the Gemini REST API over Server-Sent Events."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise GenerationError(ErrorKind.AUTH, "API_KEY_MISSING")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._session = session or build_retry_session()

    def build_payload(
        self,
        history: Sequence[HistoryTurn],
        turn: UserTurn,
        *,
        deep_think: bool,
        mode: AppMode,
    ) -> Dict[str, Any]:
        contents: List[Dict[str, Any]] = [
            {"role": h.role, "parts": [{"text": h.text}]} for h in history
        ]
        parts: List[Dict[str, Any]] = []
        if turn.image:
            mime, data = split_data_url(turn.image)
            parts.append({"inlineData": {"mimeType": mime, "data": data}})
        parts.append({"text": turn.text.strip() or EMPTY_PROMPT_TEXT})
        contents.append({"role": "user", "parts": parts})

        generation_config: Dict[str, Any] = {"temperature": TEMPERATURE}
        if deep_think:
            generation_config["thinkingConfig"] = {"thinkingBudget": THINKING_BUDGET}
        return {
            "contents": contents,
            "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTIONS[mode]}]},
            "generationConfig": generation_config,
        }

    def iter_chunks(self, payload: Dict[str, Any]) -> Iterator[str]:
        url = f"{self.base_url}/models/{self.model}:streamGenerateContent"
        LOG.debug("gemini_stream_open", extra={"model": self.model})
        try:
            with self._session.post(
                url,
                params={"alt": "sse"},
                headers={"x-goog-api-key": self.api_key},
                json=payload,
                timeout=_STREAM_TIMEOUT,
                stream=True,
            ) as resp:
                raise_for_response(resp)
                for raw_line in resp.iter_lines():
                    if not raw_line:
                        continue
                    line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if not data or data == "[DONE]":
                        continue
                    try:
                        parsed = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    text = _gemini_chunk_text(parsed)
                    if text:
                        yield text
        except requests.exceptions.RequestException as exc:
            raise GenerationError(classify_error(exc), str(exc)) from exc

    def stream(
        self,
        history: Sequence[HistoryTurn],
        turn: UserTurn,
        *,
        deep_think: bool = False,
        mode: AppMode = AppMode.EDUCATION,
    ) -> AsyncIterator[str]:
        payload = self.build_payload(history, turn, deep_think=deep_think, mode=mode)
        return iter_as_async(self.iter_chunks(payload))


def _gemini_chunk_text(parsed: Dict[str, Any]) -> str:
    candidates = parsed.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    pieces: List[str] = []
    for part in parts:
        if part.get("thought"):
            continue
        text = part.get("text")
        if text:
            pieces.append(text)
    return "".join(pieces)


class OpenAICompatibleStreamClient:
    """Streams replies through ``langchain_openai.ChatOpenAI``."""

    def __init__(self, api_key: Optional[str], model: str, base_url: Optional[str] = None) -> None:
        if not ChatOpenAI:
            raise GenerationError(ErrorKind.OTHER, "LLM client not available")
        self.model = model
        self._llm = ChatOpenAI(
            api_key=api_key or "not-needed",
            base_url=base_url,
            model=model,
            temperature=TEMPERATURE,
            streaming=True,
        )

    @staticmethod
    def build_messages(history: Sequence[HistoryTurn], turn: UserTurn, mode: AppMode) -> List[Dict[str, Any]]:
        msgs: List[Dict[str, Any]] = [{"role": "system", "content": SYSTEM_INSTRUCTIONS[mode]}]
        for h in history:
            msgs.append({"role": "assistant" if h.role == MessageRole.MODEL.value else "user", "content": h.text})
        text = turn.text.strip() or EMPTY_PROMPT_TEXT
        if turn.image:
            mime, data = split_data_url(turn.image)
            msgs.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{data}"}},
                        {"type": "text", "text": text},
                    ],
                }
            )
        else:
            msgs.append({"role": "user", "content": text})
        return msgs

    async def _astream(self, msgs: List[Dict[str, Any]]) -> AsyncIterator[str]:
        try:
            async for chunk in self._llm.astream(msgs):
                content = chunk.content
                if isinstance(content, list):
                    content = "".join(
                        part.get("text", "") if isinstance(part, dict) else str(part) for part in content
                    )
                if content:
                    yield content
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(classify_error(exc), str(exc)) from exc

    def stream(
        self,
        history: Sequence[HistoryTurn],
        turn: UserTurn,
        *,
        deep_think: bool = False,
        mode: AppMode = AppMode.EDUCATION,
    ) -> AsyncIterator[str]:
        return self._astream(self.build_messages(history, turn, mode))


class RoutedGenerativeClient:
    """Picks provider and model per request (deep think selects the pro model)."""

    def __init__(self, router: Optional[ModelRouter] = None) -> None:
        self._router = router or ModelRouter()

    def _client_for(self, deep_think: bool) -> Tuple[GenerativeClient, ProviderSelection]:
        purpose = "deep_reasoning" if deep_think else "conversation"
        try:
            selection = self._router.select_provider(purpose)
        except RuntimeError as exc:
            raise GenerationError(ErrorKind.AUTH, str(exc)) from exc
        api_key = self._router.api_key(selection)
        logger.info("Using generative provider name=%s model=%s", selection.name, selection.model)
        if selection.name == "gemini":
            client: GenerativeClient = GeminiStreamClient(
                api_key=api_key or "",
                model=selection.model,
                base_url=selection.base_url or "https://generativelanguage.googleapis.com/v1beta",
            )
        else:
            client = OpenAICompatibleStreamClient(api_key=api_key, model=selection.model, base_url=selection.base_url)
        return client, selection

    async def _stream(
        self,
        history: Sequence[HistoryTurn],
        turn: UserTurn,
        deep_think: bool,
        mode: AppMode,
    ) -> AsyncIterator[str]:
        client, _selection = self._client_for(deep_think)
        async for piece in client.stream(history, turn, deep_think=deep_think, mode=mode):
            yield piece

    def stream(
        self,
        history: Sequence[HistoryTurn],
        turn: UserTurn,
        *,
        deep_think: bool = False,
        mode: AppMode = AppMode.EDUCATION,
    ) -> AsyncIterator[str]:
        return self._stream(history, turn, deep_think, mode)
