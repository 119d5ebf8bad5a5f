from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel

from ...domain.chat_models import AppMode
from ...domain.usage_models import GateDecision, UsageLedger
from ...services.partner_app import get_partner_app


router = APIRouter(prefix="/usage", tags=["usage"])


class UpgradeRequest(BaseModel):
    is_premium: bool = True


@router.get("", response_model=UsageLedger)
def get_usage() -> UsageLedger:
    return get_partner_app().gating.ledger.snapshot()


@router.get("/gate", response_model=GateDecision)
def preview_gate(
    mode: AppMode = Query(AppMode.EDUCATION),
    has_image: bool = Query(False),
) -> GateDecision:
    """Report whether a send would be approved without consuming quota."""
    return get_partner_app().gating.preview(mode, has_image)


@router.post("/upgrade", response_model=UsageLedger)
def upgrade(req: UpgradeRequest) -> UsageLedger:
    return get_partner_app().gating.ledger.set_premium(req.is_premium)
