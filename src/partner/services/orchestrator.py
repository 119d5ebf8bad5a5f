from __future__ import annotations

"""Drives one request/response cycle against the generative service.

A cycle resolves the session, appends the user message, streams the reply
into a placeholder model message and finishes as completed, cancelled or
failed. Each cycle registers its own cancellation token on the shared
``AppState`` under its session id; the token is polled once per chunk and
text applied before the stop is kept.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Union

from ..config import PartnerSettings, get_settings
from ..core.app_state import AppState, CancellationToken
from ..core.state_machine import PhaseTracker, StreamPhase
from ..domain.chat_models import AppMode, Message, MessageRole, SendRequest
from ..domain.errors import ErrorKind, ErrorSignal, GenerationError, classify_error
from ..infrastructure.session_store import SessionStore
from ..observability.metrics import record_chunk, record_outcome
from .genai_client import GenerativeClient, UserTurn, build_history
from .telemetry_sink import TelemetryEvent, record_event


logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str, str], Union[None, Awaitable[None]]]
CompleteCallback = Callable[[str, str], Union[None, Awaitable[None]]]

_BANNER_KINDS = frozenset({ErrorKind.AUTH, ErrorKind.NETWORK})


@dataclass
class StreamOutcome:
    session_id: Optional[str]
    phase: StreamPhase
    user_message_id: Optional[str] = None
    model_message_id: Optional[str] = None
    text: str = ""
    error: Optional[ErrorSignal] = None
    phases: List[StreamPhase] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.phase == StreamPhase.CANCELLED


async def _maybe_await(result: Union[None, Awaitable[None]]) -> None:
    if inspect.isawaitable(result):
        await result


def seed_title(request: SendRequest, length: int = 30) -> str:
    text = (request.prompt or "").strip()
    if text:
        return text[:length]
    return request.mode.label


class StreamingOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        client: GenerativeClient,
        state: Optional[AppState] = None,
        settings: Optional[PartnerSettings] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._state = state if state is not None else store.state
        self._settings = settings or get_settings()

    @property
    def state(self) -> AppState:
        return self._state

    def stop(self, session_id: Optional[str] = None) -> bool:
        """Request cooperative cancellation of one session's in-flight stream.

        Without ``session_id`` the active session is targeted. Returns whether
        a running cycle was found.
        """

        return self._state.cancel(session_id)

    async def send(
        self,
        request: SendRequest,
        *,
        auto_speak: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> StreamOutcome:
        tracker = PhaseTracker()
        target = request.session_id or self._state.active_session_id
        session_id = self._store.ensure_session(target, seed_title(request, self._settings.title_length))
        token = self._state.begin_stream(session_id, token)
        try:
            tracker.advance(StreamPhase.SESSION_RESOLVED)

            prior = self._store.list_messages(session_id)
            user_msg = Message(role=MessageRole.USER, text=request.prompt, image=request.image)
            self._store.append_message(session_id, user_msg)
            history = build_history(prior, self._settings.history_turns)
            tracker.advance(StreamPhase.USER_MESSAGE_APPENDED)

            outcome = await self._stream_reply(
                session_id,
                history,
                UserTurn(text=request.prompt, image=request.image),
                request,
                tracker,
                token,
                auto_speak=auto_speak,
                on_chunk=on_chunk,
                on_complete=on_complete,
            )
        finally:
            self._state.end_stream(session_id, token)
        outcome.user_message_id = user_msg.id
        return outcome

    async def regenerate(
        self,
        session_id: Optional[str] = None,
        *,
        deep_think: bool = False,
        mode: Optional[AppMode] = None,
        auto_speak: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[StreamOutcome]:
        """Discard the reply to the latest user prompt and resend that prompt.

        Returns ``None`` when the session has no user message to resend.
        """

        session_id = session_id or self._state.active_session_id
        if not session_id or self._store.get_session(session_id) is None:
            return None
        token = self._state.begin_stream(session_id, token)
        try:
            messages = self._store.list_messages(session_id)
            user_index = next(
                (i for i in range(len(messages) - 1, -1, -1) if messages[i].role == MessageRole.USER),
                None,
            )
            if user_index is None:
                return None
            last_user = messages[user_index]
            # Answers to earlier prompts are kept
            for stale in messages[user_index + 1:]:
                if stale.role == MessageRole.MODEL:
                    self._store.remove_message(session_id, stale.id)

            request = SendRequest(
                prompt=last_user.text,
                image=last_user.image,
                deep_think=deep_think,
                session_id=session_id,
                **({"mode": mode} if mode is not None else {}),
            )
            tracker = PhaseTracker()
            tracker.advance(StreamPhase.SESSION_RESOLVED)
            history = build_history(messages[:user_index], self._settings.history_turns)
            # The prompt is already stored; it is resent, not re-appended
            tracker.advance(StreamPhase.USER_MESSAGE_APPENDED)
            outcome = await self._stream_reply(
                session_id,
                history,
                UserTurn(text=last_user.text, image=last_user.image),
                request,
                tracker,
                token,
                auto_speak=auto_speak,
                on_chunk=on_chunk,
                on_complete=on_complete,
            )
        finally:
            self._state.end_stream(session_id, token)
        outcome.user_message_id = last_user.id
        return outcome

    async def _stream_reply(
        self,
        session_id: str,
        history,
        turn: UserTurn,
        request: SendRequest,
        tracker: PhaseTracker,
        token: CancellationToken,
        *,
        auto_speak: bool,
        on_chunk: Optional[ChunkCallback],
        on_complete: Optional[CompleteCallback],
    ) -> StreamOutcome:
        state = self._state
        state.clear_error()

        placeholder = Message(role=MessageRole.MODEL, text="")
        self._store.append_message(session_id, placeholder)
        tracker.advance(StreamPhase.STREAMING)
        record_event(
            TelemetryEvent(
                name="stream_started",
                session_id=session_id,
                properties={"mode": request.mode.value, "deep_think": request.deep_think, "history": len(history)},
            )
        )

        accumulated = ""
        stream = None
        try:
            stream = self._client.stream(history, turn, deep_think=request.deep_think, mode=request.mode)
            async for piece in stream:
                if token.cancelled:
                    break
                if not piece:
                    continue
                accumulated += piece
                self._store.update_message_text(session_id, placeholder.id, accumulated)
                record_chunk()
                if on_chunk is not None:
                    await _maybe_await(on_chunk(placeholder.id, accumulated))

            if not accumulated and not token.cancelled:
                raise GenerationError(ErrorKind.EMPTY_RESPONSE, "EMPTY_RESPONSE")
        except Exception as exc:
            return self._fail(session_id, placeholder, accumulated, exc, tracker)
        finally:
            if stream is not None and hasattr(stream, "aclose"):
                await stream.aclose()
            state.end_stream(session_id, token)

        if token.cancelled:
            if not accumulated:
                self._store.remove_message(session_id, placeholder.id)
            tracker.advance(StreamPhase.CANCELLED)
            logger.info("stream_cancelled session=%s chars=%d", session_id, len(accumulated))
            record_event(TelemetryEvent(name="stream_cancelled", session_id=session_id, properties={"chars": len(accumulated)}))
            return self._finish(tracker, session_id, placeholder.id if accumulated else None, accumulated)

        tracker.advance(StreamPhase.COMPLETED)
        record_event(TelemetryEvent(name="stream_completed", session_id=session_id, properties={"chars": len(accumulated)}))
        outcome = self._finish(tracker, session_id, placeholder.id, accumulated)
        if auto_speak and on_complete is not None:
            try:
                await _maybe_await(on_complete(accumulated, placeholder.id))
            except Exception:
                logger.exception("auto_speak_failed message=%s", placeholder.id)
        return outcome

    def _fail(
        self,
        session_id: str,
        placeholder: Message,
        accumulated: str,
        exc: Exception,
        tracker: PhaseTracker,
    ) -> StreamOutcome:
        kind = classify_error(exc)
        signal = ErrorSignal(kind=kind, message=str(exc), banner=kind in _BANNER_KINDS)
        self._state.last_error = signal
        logger.warning("stream_failed session=%s kind=%s err=%s", session_id, kind.value, exc)
        self._store.update_message_text(session_id, placeholder.id, self._settings.apology_text)
        tracker.advance(StreamPhase.FAILED)
        record_event(
            TelemetryEvent(
                name="stream_failed",
                session_id=session_id,
                properties={"kind": kind.value, "partial_chars": len(accumulated)},
            )
        )
        outcome = self._finish(tracker, session_id, placeholder.id, self._settings.apology_text)
        outcome.error = signal
        return outcome

    def _finish(
        self,
        tracker: PhaseTracker,
        session_id: str,
        model_message_id: Optional[str],
        text: str,
    ) -> StreamOutcome:
        final_phase = tracker.current
        record_outcome(final_phase.value)
        tracker.advance(StreamPhase.IDLE)
        return StreamOutcome(
            session_id=session_id,
            phase=final_phase,
            model_message_id=model_message_id,
            text=text,
            phases=list(tracker.history),
        )
