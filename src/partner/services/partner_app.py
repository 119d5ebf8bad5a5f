from __future__ import annotations

"""In-process facade that wires the partner components together.

A UI layer (the HTTP routers, the console client, tests) talks to one
``PartnerApp``. Sends are admitted first (busy session, unknown session,
quota gate) and only then streamed, so callers can report a veto before any
reply starts.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Optional, TypeVar

from ..config import PartnerSettings, get_settings
from ..core.app_state import AppState, CancellationToken
from ..core.state_machine import StreamPhase
from ..domain.chat_models import AppMode, Message, MessageRole, SendRequest
from ..domain.errors import ErrorKind, ErrorSignal, SessionBusy, SessionNotFound, classify_error
from ..domain.usage_models import GateDecision
from ..infrastructure.kv_store import KeyValueStore, build_kv_store
from ..infrastructure.preferences import PreferenceStore
from ..infrastructure.session_store import SessionStore
from ..observability.metrics import record_outcome
from ..security.gating import GatingFacade
from ..security.quota import QuotaLedger
from .audio import AudioPlaybackPipeline, AudioSink, build_audio_sink
from .genai_client import GenerativeClient, RoutedGenerativeClient
from .image_gen import ImageGenerationClient
from .model_router import ModelRouter
from .orchestrator import ChunkCallback, StreamingOrchestrator, StreamOutcome
from .speech import SpeechClient
from .telemetry_sink import TelemetryEvent, record_event


logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@dataclass
class SendResult:
    decision: GateDecision
    outcome: Optional[StreamOutcome] = None

    @property
    def approved(self) -> bool:
        return self.decision.approved


class PartnerApp:
    def __init__(
        self,
        kv: Optional[KeyValueStore] = None,
        settings: Optional[PartnerSettings] = None,
        client: Optional[GenerativeClient] = None,
        speech: Optional[SpeechClient] = None,
        sink: Optional[AudioSink] = None,
        images: Optional[ImageGenerationClient] = None,
        router: Optional[ModelRouter] = None,
        ledger: Optional[QuotaLedger] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.kv = kv if kv is not None else build_kv_store(self.settings)
        router = router or ModelRouter()
        self.state = AppState()
        self.sessions = SessionStore(self.kv, self.state)
        self.preferences = PreferenceStore(self.kv)
        self.gating = GatingFacade(ledger or QuotaLedger(self.kv, self.settings))
        self.orchestrator = StreamingOrchestrator(
            self.sessions,
            client or RoutedGenerativeClient(router),
            self.state,
            self.settings,
        )
        self.audio = AudioPlaybackPipeline(
            speech or SpeechClient(router, self.settings),
            sink or build_audio_sink(self.settings),
            self.state,
            self.settings,
        )
        self.images = images or ImageGenerationClient(router)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def _check_target(self, session_id: Optional[str]) -> Optional[str]:
        if session_id and self.sessions.get_session(session_id) is None:
            raise SessionNotFound(session_id)
        target = session_id or self.state.active_session_id
        if self.state.is_streaming(target):
            raise SessionBusy(target)
        return target

    async def _run_admitted(self, mode: AppMode, has_image: bool, cycle: Awaitable[_T]) -> _T:
        try:
            return await cycle
        except SessionBusy:
            # Another cycle took the session after admission; nothing was attempted
            self.gating.release(mode, has_image)
            raise

    def admit(self, request: SendRequest) -> GateDecision:
        """Reject busy or unknown sessions, then consult the quota gate."""

        self._check_target(request.session_id)
        return self.gating.evaluate(request.mode, bool(request.image))

    async def dispatch(
        self,
        request: SendRequest,
        on_chunk: Optional[ChunkCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> StreamOutcome:
        """Run an already admitted send."""

        if request.mode == AppMode.IMAGE:
            cycle = self._generate_image(request.prompt, request.session_id)
        else:
            prefs = self.preferences.load()
            cycle = self.orchestrator.send(
                request,
                auto_speak=prefs.auto_speak,
                on_chunk=on_chunk,
                on_complete=self._speak_reply,
                token=token,
            )
        return await self._run_admitted(request.mode, bool(request.image), cycle)

    async def send(self, request: SendRequest, on_chunk: Optional[ChunkCallback] = None) -> SendResult:
        decision = self.admit(request)
        if not decision.approved:
            return SendResult(decision=decision)
        return SendResult(decision=decision, outcome=await self.dispatch(request, on_chunk))

    def stop(self, session_id: Optional[str] = None) -> bool:
        """Stop the stream on ``session_id``, or on the active session."""

        return self.orchestrator.stop(session_id)

    def _regenerate_has_image(self, target: Optional[str]) -> bool:
        if not target:
            return False
        last_user = next(
            (m for m in reversed(self.sessions.list_messages(target)) if m.role == MessageRole.USER),
            None,
        )
        return bool(last_user and last_user.image)

    def admit_regenerate(self, session_id: Optional[str] = None) -> GateDecision:
        target = self._check_target(session_id)
        return self.gating.evaluate(self._text_mode(), self._regenerate_has_image(target))

    async def dispatch_regenerate(
        self,
        session_id: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[StreamOutcome]:
        prefs = self.preferences.load()
        mode = self._text_mode()
        has_image = self._regenerate_has_image(session_id or self.state.active_session_id)
        cycle = self.orchestrator.regenerate(
            session_id,
            deep_think=prefs.deep_think,
            mode=mode,
            auto_speak=prefs.auto_speak,
            on_chunk=on_chunk,
            on_complete=self._speak_reply,
            token=token,
        )
        return await self._run_admitted(mode, has_image, cycle)

    async def regenerate(self, session_id: Optional[str] = None, on_chunk: Optional[ChunkCallback] = None) -> SendResult:
        decision = self.admit_regenerate(session_id)
        if not decision.approved:
            return SendResult(decision=decision)
        return SendResult(decision=decision, outcome=await self.dispatch_regenerate(session_id, on_chunk))

    def _text_mode(self) -> AppMode:
        mode = self.preferences.load().mode
        return AppMode.EDUCATION if mode == AppMode.IMAGE else mode

    # ------------------------------------------------------------------
    # Dictation
    # ------------------------------------------------------------------
    def transcript_request(self, transcript: str, session_id: Optional[str] = None) -> Optional[SendRequest]:
        text = (transcript or "").strip()
        if not text:
            return None
        prefs = self.preferences.load()
        return SendRequest(
            prompt=text,
            deep_think=prefs.deep_think,
            mode=prefs.mode,
            session_id=session_id,
        )

    async def submit_transcript(
        self,
        transcript: str,
        session_id: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> Optional[SendResult]:
        """Send a speech-to-text transcript as typed input; blank input is ignored."""

        request = self.transcript_request(transcript, session_id)
        if request is None:
            return None
        return await self.send(request, on_chunk)

    # ------------------------------------------------------------------
    # Image generation
    # ------------------------------------------------------------------
    def admit_image(self, session_id: Optional[str] = None) -> GateDecision:
        self._check_target(session_id)
        return self.gating.evaluate(AppMode.IMAGE)

    async def generate_image(self, prompt: str, session_id: Optional[str] = None) -> SendResult:
        decision = self.admit_image(session_id)
        if not decision.approved:
            return SendResult(decision=decision)
        outcome = await self._run_admitted(AppMode.IMAGE, False, self._generate_image(prompt, session_id))
        return SendResult(decision=decision, outcome=outcome)

    async def _generate_image(self, prompt: str, session_id: Optional[str]) -> StreamOutcome:
        target = session_id or self.state.active_session_id
        title = (prompt or "").strip()[: self.settings.title_length] or AppMode.IMAGE.label
        sid = self.sessions.ensure_session(target, title)
        token = self.state.begin_stream(sid)
        user_msg = Message(role=MessageRole.USER, text=prompt)
        self.sessions.append_message(sid, user_msg)
        self.state.clear_error()
        try:
            data_url = await self.images.generate(prompt)
        except Exception as exc:
            kind = classify_error(exc)
            signal = ErrorSignal(
                kind=kind,
                message=str(exc),
                banner=kind in (ErrorKind.AUTH, ErrorKind.NETWORK),
            )
            self.state.last_error = signal
            logger.warning("image_generation_failed session=%s kind=%s err=%s", sid, kind.value, exc)
            reply = Message(role=MessageRole.MODEL, text=self.settings.apology_text)
            self.sessions.append_message(sid, reply)
            record_outcome(StreamPhase.FAILED.value)
            record_event(TelemetryEvent(name="image_failed", session_id=sid, properties={"kind": kind.value}))
            return StreamOutcome(
                session_id=sid,
                phase=StreamPhase.FAILED,
                user_message_id=user_msg.id,
                model_message_id=reply.id,
                text=reply.text,
                error=signal,
            )
        finally:
            self.state.end_stream(sid, token)

        reply = Message(role=MessageRole.MODEL, text="", image=data_url)
        self.sessions.append_message(sid, reply)
        record_outcome(StreamPhase.COMPLETED.value)
        record_event(TelemetryEvent(name="image_generated", session_id=sid))
        return StreamOutcome(
            session_id=sid,
            phase=StreamPhase.COMPLETED,
            user_message_id=user_msg.id,
            model_message_id=reply.id,
        )

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------
    async def _speak_reply(self, text: str, message_id: str) -> None:
        await self.audio.speak(text, message_id)

    async def speak(self, text: str, message_id: str) -> bool:
        return await self.audio.speak(text, message_id)

    def stop_audio(self) -> None:
        self.audio.stop()


_app: Optional[PartnerApp] = None


def get_partner_app() -> PartnerApp:
    global _app
    if _app is None:
        _app = PartnerApp()
    return _app


def reset_partner_app(app: Optional[PartnerApp] = None) -> None:
    """Replace the process-wide app (tests inject fakes through this)."""

    global _app
    _app = app
