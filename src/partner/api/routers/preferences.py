from __future__ import annotations

from fastapi import APIRouter, HTTPException

from ...domain.chat_models import Preferences, PreferencesUpdate
from ...services.partner_app import get_partner_app


router = APIRouter(prefix="/preferences", tags=["preferences"])


@router.get("", response_model=Preferences)
def get_preferences() -> Preferences:
    return get_partner_app().preferences.load()


@router.patch("", response_model=Preferences)
def update_preferences(patch: PreferencesUpdate) -> Preferences:
    return get_partner_app().preferences.update(patch)


@router.post("/toggle/{flag}", response_model=Preferences)
def toggle_preference(flag: str) -> Preferences:
    prefs = get_partner_app().preferences.toggle(flag)
    if prefs is None:
        raise HTTPException(status_code=404, detail=f"Unknown preference flag: {flag}")
    return prefs
