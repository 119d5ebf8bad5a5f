from __future__ import annotations

"""Error taxonomy shared by the boundary clients and the orchestrator."""

from enum import Enum
from typing import Optional

import requests

from pydantic import BaseModel


class ErrorKind(str, Enum):
    AUTH = "AUTH"
    NETWORK = "NETWORK"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    STORAGE_PARSE = "STORAGE_PARSE"
    OTHER = "OTHER"


class GenerationError(Exception):
    """Raised by boundary services with a structured kind attached."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class SessionBusy(Exception):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} already has a reply in flight")
        self.session_id = session_id


class SessionNotFound(KeyError):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id


class ErrorSignal(BaseModel):
    kind: ErrorKind
    message: str
    banner: bool = False


_AUTH_MARKERS = ("api_key", "401", "403", "permission", "unauthenticated", "unauthorized")
_NETWORK_MARKERS = ("network", "fetch", "timeout", "timed out", "connection", "unavailable", "502", "503", "504")


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception to an :class:`ErrorKind`.

    Structured errors carry their own kind. Transport exceptions are mapped by
    type; anything else falls back to substring matching on the message.
    """

    if isinstance(exc, GenerationError):
        return exc.kind
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return ErrorKind.NETWORK
    if isinstance(exc, requests.exceptions.HTTPError):
        status = getattr(exc.response, "status_code", None)
        kind = kind_for_status(status)
        if kind is not None:
            return kind
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.NETWORK
    text = str(exc).lower()
    if "empty_response" in text:
        return ErrorKind.EMPTY_RESPONSE
    if any(marker in text for marker in _AUTH_MARKERS):
        return ErrorKind.AUTH
    if any(marker in text for marker in _NETWORK_MARKERS):
        return ErrorKind.NETWORK
    return ErrorKind.OTHER


def kind_for_status(status: Optional[int]) -> Optional[ErrorKind]:
    if status in (401, 403):
        return ErrorKind.AUTH
    if status is not None and (status == 429 or status >= 500):
        return ErrorKind.NETWORK
    return None
