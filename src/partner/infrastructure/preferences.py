from __future__ import annotations

import json
import logging
from typing import Optional

from pydantic import ValidationError

from ..config import PREFERENCES_KEY, THEME_KEY
from ..domain.chat_models import Preferences, PreferencesUpdate
from .kv_store import KeyValueStore


logger = logging.getLogger(__name__)


class PreferenceStore:
    """Scalar preference flags (theme, auto-speak, deep think, mode)."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    def load(self) -> Preferences:
        raw = self._kv.get(PREFERENCES_KEY)
        prefs = Preferences()
        if raw:
            try:
                prefs = Preferences.model_validate(json.loads(raw))
            except (ValueError, ValidationError) as exc:
                logger.warning("preferences_discarded_malformed_data err=%s", exc)
                prefs = Preferences()
        theme = self._kv.get(THEME_KEY)
        if theme in ("light", "dark"):
            prefs.theme = theme  # type: ignore[assignment]
        return prefs

    def save(self, prefs: Preferences) -> Preferences:
        self._kv.set(PREFERENCES_KEY, prefs.model_dump_json())
        self._kv.set(THEME_KEY, prefs.theme)
        return prefs

    def update(self, patch: PreferencesUpdate) -> Preferences:
        current = self.load()
        changes = patch.model_dump(exclude_none=True)
        updated = current.model_copy(update=changes)
        return self.save(updated)

    def toggle(self, flag: str) -> Optional[Preferences]:
        if flag not in ("auto_speak", "deep_think"):
            return None
        current = self.load()
        return self.save(current.model_copy(update={flag: not getattr(current, flag)}))
