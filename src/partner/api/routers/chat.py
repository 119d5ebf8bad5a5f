from __future__ import annotations

from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, HTTPException, Response, status

from ...domain.chat_models import (
    ChatSession,
    ChatSessionSummary,
    RegenerateRequest,
    SendRequest,
    TranscriptRequest,
)
from ...domain.errors import SessionBusy, SessionNotFound
from ...domain.usage_models import GateDecision
from ...services.partner_app import get_partner_app
from ..sse import sse_response


router = APIRouter(prefix="/chat", tags=["chat"])


def raise_for_admission(exc: Exception) -> NoReturn:
    if isinstance(exc, SessionNotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found") from exc
    if isinstance(exc, SessionBusy):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


def raise_for_veto(decision: GateDecision) -> None:
    if decision.approved:
        return
    raise HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "show_upgrade": True,
            "action": decision.action.value if decision.action else None,
            "reason": decision.reason,
        },
    )


@router.get("/sessions", response_model=List[ChatSessionSummary])
def list_sessions() -> List[ChatSessionSummary]:
    return get_partner_app().sessions.list_summaries()


@router.get("/sessions/{session_id}", response_model=ChatSession)
def get_session(session_id: str) -> ChatSession:
    sess = get_partner_app().sessions.get_session(session_id)
    if not sess:
        raise HTTPException(status_code=404, detail="Session not found")
    return sess


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_session(session_id: str) -> Response:
    if not get_partner_app().sessions.delete_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sessions/{session_id}/select")
def select_session(session_id: str) -> Dict[str, Any]:
    partner = get_partner_app()
    if not partner.sessions.select_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"active_session_id": partner.state.active_session_id}


@router.post("/new")
def new_chat() -> Dict[str, Any]:
    partner = get_partner_app()
    partner.sessions.new_chat()
    return {"active_session_id": None}


@router.get("/state")
def get_state() -> Dict[str, Any]:
    state = get_partner_app().state
    return {
        "active_session_id": state.active_session_id,
        "is_loading": state.is_loading,
        "playing_message_id": state.playback.playing_message_id,
        "last_error": state.last_error.model_dump(mode="json") if state.last_error else None,
    }


@router.post("/send")
async def send_message(req: SendRequest):
    partner = get_partner_app()
    try:
        decision = partner.admit(req)
    except (SessionNotFound, SessionBusy) as exc:
        raise_for_admission(exc)
    raise_for_veto(decision)
    return sse_response(lambda on_chunk, token: partner.dispatch(req, on_chunk, token))


@router.post("/regenerate")
async def regenerate(req: RegenerateRequest):
    partner = get_partner_app()
    try:
        decision = partner.admit_regenerate(req.session_id)
    except (SessionNotFound, SessionBusy) as exc:
        raise_for_admission(exc)
    raise_for_veto(decision)
    return sse_response(lambda on_chunk, token: partner.dispatch_regenerate(req.session_id, on_chunk, token))


@router.post("/dictation")
async def submit_transcript(req: TranscriptRequest):
    partner = get_partner_app()
    send_req = partner.transcript_request(req.transcript, req.session_id)
    if send_req is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    try:
        decision = partner.admit(send_req)
    except (SessionNotFound, SessionBusy) as exc:
        raise_for_admission(exc)
    raise_for_veto(decision)
    return sse_response(lambda on_chunk, token: partner.dispatch(send_req, on_chunk, token))


@router.post("/stop")
def stop_stream(session_id: Optional[str] = None) -> Dict[str, Any]:
    """Stop the stream on ``session_id``, or on the active session."""
    partner = get_partner_app()
    stopped = partner.stop(session_id)
    return {"stopped": stopped, "is_loading": partner.state.is_loading}
