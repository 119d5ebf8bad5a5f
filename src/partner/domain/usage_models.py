from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class QuotaAction(str, Enum):
    IMAGE_UPLOAD = "image_upload"
    IMAGE_GENERATION = "image_generation"


class UsageLedger(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    images_sent_today: int = Field(default=0, ge=0, alias="imagesSentToday")
    images_generated_today: int = Field(default=0, ge=0, alias="imagesGeneratedToday")
    last_reset_date: str = Field(default="", alias="lastImageDate")
    is_premium: bool = Field(default=False, alias="isPremium")


class GateDecision(BaseModel):
    approved: bool
    action: Optional[QuotaAction] = None
    show_upgrade: bool = False
    remaining: Optional[int] = None
    reason: Optional[str] = None
