from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter

from ...domain.chat_models import ImageGenerationRequest, SpeakRequest
from ...domain.errors import SessionBusy, SessionNotFound
from ...services.partner_app import get_partner_app
from ..sse import outcome_payload
from .chat import raise_for_admission, raise_for_veto


router = APIRouter(prefix="/media", tags=["media"])


@router.post("/speak")
async def speak(req: SpeakRequest) -> Dict[str, Any]:
    """Toggle speech playback for a message."""
    partner = get_partner_app()
    playing = await partner.speak(req.text, req.message_id)
    return {"playing": playing, "playing_message_id": partner.state.playback.playing_message_id}


@router.post("/stop")
def stop_audio() -> Dict[str, Any]:
    partner = get_partner_app()
    partner.stop_audio()
    return {"playing": False, "playing_message_id": None}


@router.post("/images")
async def generate_image(req: ImageGenerationRequest) -> Dict[str, Any]:
    partner = get_partner_app()
    try:
        result = await partner.generate_image(req.prompt, req.session_id)
    except (SessionNotFound, SessionBusy) as exc:
        raise_for_admission(exc)
    raise_for_veto(result.decision)
    payload = outcome_payload(result.outcome)
    message = None
    if result.outcome and result.outcome.model_message_id:
        found = partner.sessions.get_message(result.outcome.session_id, result.outcome.model_message_id)
        message = found.model_dump(mode="json") if found else None
    payload["message"] = message
    payload["remaining"] = result.decision.remaining
    return payload
