from __future__ import annotations

import logging
from typing import Optional

from ..domain.chat_models import AppMode
from ..domain.usage_models import GateDecision, QuotaAction
from ..services.telemetry_sink import TelemetryEvent, record_event
from .quota import QuotaLedger


logger = logging.getLogger(__name__)


def action_for(mode: AppMode, has_image: bool) -> Optional[QuotaAction]:
    """Return the constrained action a send maps to, if any."""

    if mode == AppMode.IMAGE:
        return QuotaAction.IMAGE_GENERATION
    if has_image:
        return QuotaAction.IMAGE_UPLOAD
    return None


class GatingFacade:
    """Pre-flight approval for send and generate actions."""

    def __init__(self, ledger: QuotaLedger) -> None:
        self._ledger = ledger

    @property
    def ledger(self) -> QuotaLedger:
        return self._ledger

    def evaluate(self, mode: AppMode, has_image: bool = False) -> GateDecision:
        action = action_for(mode, has_image)
        if action is None:
            return GateDecision(approved=True)
        decision = self._ledger.consume(action)
        if not decision.approved:
            logger.info("gate_vetoed action=%s", action.value)
            record_event(
                TelemetryEvent(
                    name="gate_vetoed",
                    properties={"action": action.value, "mode": mode.value},
                )
            )
        return decision

    def release(self, mode: AppMode, has_image: bool = False) -> None:
        action = action_for(mode, has_image)
        if action is not None:
            logger.info("gate_released action=%s", action.value)
            self._ledger.release(action)

    def preview(self, mode: AppMode, has_image: bool = False) -> GateDecision:
        action = action_for(mode, has_image)
        if action is None:
            return GateDecision(approved=True)
        return self._ledger.check(action)
