from __future__ import annotations

"""Speech playback: PCM16 decoding and single-source playback lifecycle."""

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import numpy as np

from ..config import PartnerSettings, get_settings
from ..core.app_state import AppState
from ..observability.metrics import record_playback
from .speech import SpeechClient

# Optional import: sounddevice (needs PortAudio on the host)
try:
    import sounddevice as sd  # type: ignore
except Exception:  # pragma: no cover - optional import
    sd = None  # type: ignore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioBuffer:
    samples: np.ndarray  # float32, shape (frames, channels), range [-1, 1]
    sample_rate: int
    channels: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / float(self.sample_rate) if self.sample_rate else 0.0


def decode_pcm16(payload: str, sample_rate: int = 24000, channels: int = 1) -> AudioBuffer:
    """Decode base64 signed 16-bit little-endian PCM into a float buffer.

    Each sample is divided by 32768 and the result grouped into
    ``channels`` columns. A trailing odd byte or incomplete frame is dropped.
    """

    raw = base64.b64decode(payload)
    if len(raw) % 2:
        raw = raw[:-1]
    pcm = np.frombuffer(raw, dtype="<i2")
    floats = pcm.astype(np.float32) / 32768.0
    frames = floats.size // channels
    floats = floats[: frames * channels].reshape(frames, channels)
    return AudioBuffer(samples=floats, sample_rate=sample_rate, channels=channels)


class PlaybackHandle(Protocol):
    def stop(self) -> None: ...


class AudioSink(Protocol):
    def play(self, buffer: AudioBuffer, on_ended: Callable[[], None]) -> PlaybackHandle: ...


class _TimerHandle:
    def __init__(self, timer: asyncio.TimerHandle) -> None:
        self._timer = timer

    def stop(self) -> None:
        self._timer.cancel()


class NullSink:
    """Silent sink for headless hosts; reports the end after the buffer duration."""

    def play(self, buffer: AudioBuffer, on_ended: Callable[[], None]) -> PlaybackHandle:
        loop = asyncio.get_running_loop()
        return _TimerHandle(loop.call_later(buffer.duration, on_ended))


class _StreamHandle:
    def __init__(self, stream) -> None:
        self._stream = stream

    def stop(self) -> None:
        self._stream.abort()
        self._stream.close()


class SoundDeviceSink:
    """Plays through the default output device via ``sounddevice``."""

    def __init__(self) -> None:
        if sd is None:
            raise RuntimeError("sounddevice is not installed")

    def play(self, buffer: AudioBuffer, on_ended: Callable[[], None]) -> PlaybackHandle:
        loop = asyncio.get_running_loop()
        samples = buffer.samples
        position = 0

        def callback(outdata, nframes, _time, _status) -> None:
            nonlocal position
            chunk = samples[position : position + nframes]
            outdata[: len(chunk)] = chunk
            if len(chunk) < nframes:
                outdata[len(chunk):] = 0
                raise sd.CallbackStop
            position += nframes

        def finished() -> None:
            # PortAudio thread; hand the end-of-stream back to the loop
            loop.call_soon_threadsafe(on_ended)

        stream = sd.OutputStream(
            samplerate=buffer.sample_rate,
            channels=buffer.channels,
            dtype="float32",
            callback=callback,
            finished_callback=finished,
        )
        stream.start()
        return _StreamHandle(stream)


def build_audio_sink(settings: Optional[PartnerSettings] = None) -> AudioSink:
    settings = settings or get_settings()
    if settings.audio_sink == "sounddevice":
        try:
            return SoundDeviceSink()
        except RuntimeError as exc:
            logger.warning("audio_sink_unavailable err=%s; using silent sink", exc)
    return NullSink()


class AudioPlaybackPipeline:
    """Turns a message into sound with at most one active source.

    ``AppState.playback.playing_message_id`` names the message that is
    playing or pending. A request sequence number guards every asynchronous
    resumption so superseded fetches and stale end-of-stream callbacks never
    touch newer playback.
    """

    def __init__(
        self,
        speech: SpeechClient,
        sink: AudioSink,
        state: AppState,
        settings: Optional[PartnerSettings] = None,
    ) -> None:
        self._speech = speech
        self._sink = sink
        self._state = state
        self._settings = settings or get_settings()
        self._source: Optional[PlaybackHandle] = None
        self._seq = 0

    @property
    def playing_message_id(self) -> Optional[str]:
        return self._state.playback.playing_message_id

    def _superseded(self, seq: int, message_id: str) -> bool:
        return seq != self._seq or self._state.playback.playing_message_id != message_id

    def stop(self) -> None:
        self._seq += 1
        source, self._source = self._source, None
        if source is not None:
            try:
                source.stop()
            except Exception:
                logger.exception("audio_source_stop_failed")
        self._state.playback.playing_message_id = None

    async def speak(self, text: str, message_id: str) -> bool:
        """Toggle playback for ``message_id``; returns True when playback started."""

        if self._state.playback.playing_message_id == message_id:
            self.stop()
            return False

        self.stop()
        seq = self._seq
        self._state.playback.playing_message_id = message_id
        try:
            payload = await self._speech.synthesize(text)
            if self._superseded(seq, message_id):
                return False
            if not payload:
                raise ValueError("speech service returned no audio")
            buffer = await asyncio.to_thread(
                decode_pcm16,
                payload,
                self._settings.tts_sample_rate,
                self._settings.tts_channels,
            )
            if self._superseded(seq, message_id):
                return False

            def _ended() -> None:
                if self._superseded(seq, message_id):
                    return
                self._source = None
                self._state.playback.playing_message_id = None

            self._source = self._sink.play(buffer, _ended)
        except Exception as exc:
            logger.warning("speech_playback_failed message=%s err=%s", message_id, exc)
            record_playback("failed")
            if not self._superseded(seq, message_id):
                self._state.playback.playing_message_id = None
            return False
        record_playback("started")
        return True
