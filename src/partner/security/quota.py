from __future__ import annotations

"""Daily usage quota ledger for image uploads and image generation."""

import logging
from datetime import date
from threading import RLock
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from ..config import USAGE_KEY, PartnerSettings, get_settings
from ..domain.usage_models import GateDecision, QuotaAction, UsageLedger
from ..infrastructure.kv_store import KeyValueStore


logger = logging.getLogger(__name__)

_COUNTER_FIELDS: Dict[QuotaAction, str] = {
    QuotaAction.IMAGE_UPLOAD: "images_sent_today",
    QuotaAction.IMAGE_GENERATION: "images_generated_today",
}


def _today() -> str:
    return date.today().isoformat()


class QuotaLedger:
    """Tracks daily counters and the premium flag.

    Every read rolls the ledger over first: when the stored reset date is not
    today, all counters go back to zero before any threshold comparison.
    Quota is consumed on attempt, not on successful completion.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        settings: Optional[PartnerSettings] = None,
        today: Callable[[], str] = _today,
    ) -> None:
        self._kv = kv
        self._settings = settings or get_settings()
        self._today = today
        self._lock = RLock()

    def limit_for(self, action: QuotaAction) -> int:
        if action == QuotaAction.IMAGE_UPLOAD:
            return self._settings.image_upload_limit
        return self._settings.image_generation_limit

    def _load(self) -> UsageLedger:
        raw = self._kv.get(USAGE_KEY)
        if not raw:
            return UsageLedger(last_reset_date=self._today())
        try:
            return UsageLedger.model_validate_json(raw)
        except (ValueError, ValidationError) as exc:
            logger.warning("usage_ledger_discarded_malformed_data err=%s", exc)
            return UsageLedger(last_reset_date=self._today())

    def _save(self, ledger: UsageLedger) -> None:
        self._kv.set(USAGE_KEY, ledger.model_dump_json(by_alias=True))

    def _rolled_over(self) -> UsageLedger:
        ledger = self._load()
        today = self._today()
        if ledger.last_reset_date != today:
            if ledger.images_sent_today or ledger.images_generated_today:
                logger.info("usage_ledger_rollover from=%s to=%s", ledger.last_reset_date, today)
            ledger = UsageLedger(last_reset_date=today, is_premium=ledger.is_premium)
            self._save(ledger)
        return ledger

    def snapshot(self) -> UsageLedger:
        with self._lock:
            return self._rolled_over()

    def _decide(self, ledger: UsageLedger, action: QuotaAction) -> GateDecision:
        if ledger.is_premium:
            return GateDecision(approved=True, action=action)
        limit = self.limit_for(action)
        used = getattr(ledger, _COUNTER_FIELDS[action])
        if used >= limit:
            return GateDecision(
                approved=False,
                action=action,
                show_upgrade=True,
                remaining=0,
                reason=f"Daily {action.value} limit of {limit} reached",
            )
        return GateDecision(approved=True, action=action, remaining=limit - used)

    def check(self, action: QuotaAction) -> GateDecision:
        with self._lock:
            return self._decide(self._rolled_over(), action)

    def consume(self, action: QuotaAction) -> GateDecision:
        with self._lock:
            ledger = self._rolled_over()
            decision = self._decide(ledger, action)
            if not decision.approved:
                return decision
            field = _COUNTER_FIELDS[action]
            updated = ledger.model_copy(update={field: getattr(ledger, field) + 1})
            self._save(updated)
            if decision.remaining is not None:
                decision.remaining -= 1
            return decision

    def release(self, action: QuotaAction) -> UsageLedger:
        """Return one unit taken by ``consume`` for an attempt that never started."""

        with self._lock:
            ledger = self._rolled_over()
            field = _COUNTER_FIELDS[action]
            used = getattr(ledger, field)
            if used:
                ledger = ledger.model_copy(update={field: used - 1})
                self._save(ledger)
            return ledger

    def set_premium(self, is_premium: bool) -> UsageLedger:
        with self._lock:
            ledger = self._rolled_over().model_copy(update={"is_premium": is_premium})
            self._save(ledger)
            return ledger
