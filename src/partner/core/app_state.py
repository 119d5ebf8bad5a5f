from __future__ import annotations

"""Per-application mutable state.

Holds the active session pointer, one cooperative cancellation token per
streaming session, the playback pointer and the error side channel.
Components receive one ``AppState`` by reference so tests can build
independent instances.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from ..domain.errors import ErrorSignal, SessionBusy


class CancellationToken:
    """Polled cancellation flag checked once per streamed chunk."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class PlaybackState:
    playing_message_id: Optional[str] = None


@dataclass
class AppState:
    active_session_id: Optional[str] = None
    playback: PlaybackState = field(default_factory=PlaybackState)
    last_error: Optional[ErrorSignal] = None
    streams: Dict[str, CancellationToken] = field(default_factory=dict)

    @property
    def is_loading(self) -> bool:
        return bool(self.streams)

    def is_streaming(self, session_id: Optional[str]) -> bool:
        return bool(session_id) and session_id in self.streams

    def begin_stream(self, session_id: str, token: Optional[CancellationToken] = None) -> CancellationToken:
        """Register a cycle for ``session_id``; a session runs one cycle at a time."""

        if session_id in self.streams:
            raise SessionBusy(session_id)
        token = token if token is not None else CancellationToken()
        self.streams[session_id] = token
        return token

    def end_stream(self, session_id: str, token: CancellationToken) -> None:
        if self.streams.get(session_id) is token:
            del self.streams[session_id]

    def cancel(self, session_id: Optional[str] = None) -> bool:
        """Cancel the cycle on ``session_id``, or on the active session when omitted."""

        target = session_id or self.active_session_id
        token = self.streams.get(target) if target else None
        if token is None:
            return False
        token.cancel()
        return True

    def clear_error(self) -> None:
        self.last_error = None
