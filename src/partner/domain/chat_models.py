from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    # Creation-time prefix keeps ids roughly ordered; the suffix keeps them unique.
    return f"{now_ms()}-{uuid.uuid4().hex[:8]}"


def new_session_id() -> str:
    return f"{now_ms()}-{uuid.uuid4().hex[:6]}"


class MessageRole(str, Enum):
    USER = "user"
    MODEL = "model"


class AppMode(str, Enum):
    EDUCATION = "education"
    CODING = "coding"
    IMAGE = "image"

    @property
    def label(self) -> str:
        return _MODE_LABELS[self]


_MODE_LABELS: Dict[AppMode, str] = {
    AppMode.EDUCATION: "Education Chat",
    AppMode.CODING: "Coding Assistant",
    AppMode.IMAGE: "Image Studio",
}


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_message_id)
    role: MessageRole
    text: str = ""
    timestamp: int = Field(default_factory=now_ms)
    image: Optional[str] = None


class ChatSession(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_session_id)
    title: str
    messages: List[Message] = Field(default_factory=list)
    last_updated: int = Field(default_factory=now_ms, alias="lastUpdated")


class ChatSessionSummary(BaseModel):
    id: str
    title: str
    last_updated: int
    message_count: int
    active: bool = False


class SendRequest(BaseModel):
    prompt: str = ""
    image: Optional[str] = None
    deep_think: bool = False
    mode: AppMode = AppMode.EDUCATION
    session_id: Optional[str] = None


class ImageGenerationRequest(BaseModel):
    prompt: str = Field(min_length=1)
    session_id: Optional[str] = None


class RegenerateRequest(BaseModel):
    session_id: Optional[str] = None


class SpeakRequest(BaseModel):
    text: str
    message_id: str


class TranscriptRequest(BaseModel):
    transcript: str
    session_id: Optional[str] = None


class Preferences(BaseModel):
    theme: Literal["light", "dark"] = "light"
    auto_speak: bool = False
    deep_think: bool = False
    mode: AppMode = AppMode.EDUCATION


class PreferencesUpdate(BaseModel):
    theme: Optional[Literal["light", "dark"]] = None
    auto_speak: Optional[bool] = None
    deep_think: Optional[bool] = None
    mode: Optional[AppMode] = None
