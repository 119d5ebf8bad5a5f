from __future__ import annotations

import asyncio
import base64
import struct
from typing import Any, Callable, Dict, List, Optional, Sequence

from src.partner.domain.chat_models import AppMode


class ScriptedClient:
    """GenerativeClient double yielding scripted chunks, then optionally raising."""

    def __init__(
        self,
        chunks: Sequence[str] = (),
        error: Optional[Exception] = None,
        before_chunk: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.chunks = list(chunks)
        self.error = error
        self.before_chunk = before_chunk
        self.calls: List[Dict[str, Any]] = []
        self.closed = 0

    def stream(self, history, turn, *, deep_think=False, mode=AppMode.EDUCATION):
        self.calls.append({"history": list(history), "turn": turn, "deep_think": deep_think, "mode": mode})
        return self._gen()

    async def _gen(self):
        try:
            for idx, chunk in enumerate(self.chunks):
                if self.before_chunk is not None:
                    self.before_chunk(idx)
                await asyncio.sleep(0)
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed += 1


class PausingClient(ScriptedClient):
    """Holds the stream before chunk ``pause_at`` until ``resume`` is set."""

    def __init__(self, chunks: Sequence[str], pause_at: int) -> None:
        super().__init__(chunks)
        self.pause_at = pause_at
        self.paused = asyncio.Event()
        self.resume = asyncio.Event()

    async def _gen(self):
        for idx, chunk in enumerate(self.chunks):
            if idx == self.pause_at:
                self.paused.set()
                await self.resume.wait()
            yield chunk


def pcm16_b64(samples: Sequence[int]) -> str:
    return base64.b64encode(struct.pack(f"<{len(samples)}h", *samples)).decode("ascii")


class FakeSpeech:
    """SpeechClient double; ``gate`` holds the fetch open until released."""

    def __init__(self, payload: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self.payload = payload if payload is not None else pcm16_b64([0, 16384, -16384, 32767])
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[str] = []

    async def synthesize(self, text: str) -> Optional[str]:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.payload


class RecordingHandle:
    def __init__(self, index: int) -> None:
        self.index = index
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class RecordingSink:
    """AudioSink double; tests fire ``on_ended`` by hand."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.played: List[Any] = []
        self.handles: List[RecordingHandle] = []
        self.callbacks: List[Callable[[], None]] = []

    def play(self, buffer, on_ended):
        if self.error is not None:
            raise self.error
        handle = RecordingHandle(len(self.handles))
        self.played.append(buffer)
        self.handles.append(handle)
        self.callbacks.append(on_ended)
        return handle


class FakeImages:
    def __init__(self, data_url: str = "data:image/png;base64,iVBORw0KGgo=", error: Optional[Exception] = None) -> None:
        self.data_url = data_url
        self.error = error
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.data_url


class FakeResponse:
    """Minimal stand-in for ``requests.Response`` used by the boundary clients."""

    def __init__(self, status_code: int = 200, json_body: Any = None, lines: Sequence[Any] = (), text: str = "") -> None:
        self.status_code = status_code
        self._json = json_body
        self._lines = list(lines)
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def iter_lines(self):
        return iter(self._lines)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None) -> None:
        self.response = response or FakeResponse()
        self.error = error
        self.requests: List[Dict[str, Any]] = []

    def post(self, url, **kwargs):
        self.requests.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response
