"""Command and response models exchanged over the daemon socket.

Frames are newline-delimited JSON objects. A command is ``{"id", "action",
...fields}``; the daemon answers with ``{"id", "success": true, "data"}`` or
``{"id", "success": false, "error"}`` echoing the command id. Error responses
may also carry a ``details`` object with structured data (for example the
text and buttons of a blocking alert).
"""

from __future__ import annotations

import json
import secrets
import time
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

UNKNOWN_COMMAND_ID = "unknown"
FRAME_DELIMITER = b"\n"
DEFAULT_WAIT_TIMEOUT_MS = 10000


class SwipeDirection(str, Enum):
    """Directions accepted by the swipe command."""

    up = "up"
    down = "down"
    left = "left"
    right = "right"


class SnapshotFormat(str, Enum):
    """Output formats for the snapshot command."""

    json = "json"
    yaml = "yaml"


class _CommandBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str


class StartSessionCommand(_CommandBase):
    action: Literal["start-session"] = "start-session"
    sim: Optional[str] = None


class StopSessionCommand(_CommandBase):
    action: Literal["stop-session"] = "stop-session"


class StatusCommand(_CommandBase):
    action: Literal["status"] = "status"


class ListSimsCommand(_CommandBase):
    action: Literal["list-sims"] = "list-sims"


class SnapshotCommand(_CommandBase):
    action: Literal["snapshot"] = "snapshot"
    format: SnapshotFormat = SnapshotFormat.json


class ScreenshotCommand(_CommandBase):
    action: Literal["screenshot"] = "screenshot"
    out: Optional[str] = Field(None, description="Output file path; base64 is returned when omitted.")


class TapCommand(_CommandBase):
    action: Literal["tap"] = "tap"
    ref: str


class TypeCommand(_CommandBase):
    action: Literal["type"] = "type"
    ref: str
    text: str


class ClearCommand(_CommandBase):
    action: Literal["clear"] = "clear"
    ref: str


class SwipeCommand(_CommandBase):
    action: Literal["swipe"] = "swipe"
    ref: Optional[str] = Field(None, description="Element to swipe on; the whole screen when omitted.")
    direction: SwipeDirection


class WaitCommand(_CommandBase):
    action: Literal["wait"] = "wait"
    ref: str
    timeout: int = Field(DEFAULT_WAIT_TIMEOUT_MS, ge=0, description="Milliseconds.")


class AlertAcceptCommand(_CommandBase):
    action: Literal["alert-accept"] = "alert-accept"


class AlertDismissCommand(_CommandBase):
    action: Literal["alert-dismiss"] = "alert-dismiss"


class AlertButtonCommand(_CommandBase):
    action: Literal["alert-button"] = "alert-button"
    button: str


class AlertInfoCommand(_CommandBase):
    action: Literal["alert-info"] = "alert-info"


class LaunchCommand(_CommandBase):
    action: Literal["launch"] = "launch"
    bundle_id: str = Field(..., alias="bundleId")


class TerminateCommand(_CommandBase):
    action: Literal["terminate"] = "terminate"
    bundle_id: str = Field(..., alias="bundleId")


class InstallCommand(_CommandBase):
    action: Literal["install"] = "install"
    app_path: str = Field(..., alias="appPath")


COMMAND_TYPES: Tuple[Type[_CommandBase], ...] = (
    StartSessionCommand,
    StopSessionCommand,
    StatusCommand,
    ListSimsCommand,
    SnapshotCommand,
    ScreenshotCommand,
    TapCommand,
    TypeCommand,
    ClearCommand,
    SwipeCommand,
    WaitCommand,
    AlertAcceptCommand,
    AlertDismissCommand,
    AlertButtonCommand,
    AlertInfoCommand,
    LaunchCommand,
    TerminateCommand,
    InstallCommand,
)

Command = Annotated[
    Union[
        StartSessionCommand,
        StopSessionCommand,
        StatusCommand,
        ListSimsCommand,
        SnapshotCommand,
        ScreenshotCommand,
        TapCommand,
        TypeCommand,
        ClearCommand,
        SwipeCommand,
        WaitCommand,
        AlertAcceptCommand,
        AlertDismissCommand,
        AlertButtonCommand,
        AlertInfoCommand,
        LaunchCommand,
        TerminateCommand,
        InstallCommand,
    ],
    Field(discriminator="action"),
]

# Commands that only read state and may bypass the session's writer lock.
READ_ONLY_ACTIONS = frozenset({"status", "list-sims"})

_COMMAND_ADAPTER: TypeAdapter = TypeAdapter(Command)


class SuccessResponse(BaseModel):
    id: str
    success: Literal[True] = True
    data: Any = None


class ErrorResponse(BaseModel):
    id: str
    success: Literal[False] = False
    error: str
    details: Optional[Dict[str, Any]] = None


Response = Union[SuccessResponse, ErrorResponse]

_RESPONSE_ADAPTER: TypeAdapter = TypeAdapter(Response)


def success_response(command_id: str, data: Any) -> SuccessResponse:
    return SuccessResponse(id=command_id, data=data)


def error_response(
    command_id: str, error: str, details: Optional[Dict[str, Any]] = None
) -> ErrorResponse:
    return ErrorResponse(id=command_id, error=error, details=details)


def parse_command(raw: str | bytes) -> Optional[Command]:
    """Return the command encoded in ``raw`` or ``None`` when it is invalid."""

    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return _COMMAND_ADAPTER.validate_python(payload)
    except ValidationError:
        return None


def parse_response(raw: str | bytes) -> Response:
    """Decode a response frame, raising ``ValueError`` when it is malformed."""

    payload = json.loads(raw)
    return _RESPONSE_ADAPTER.validate_python(payload)


def encode_command(command: _CommandBase) -> bytes:
    """Serialise ``command`` into one newline-terminated frame."""

    payload = command.model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(payload).encode("utf-8") + FRAME_DELIMITER


def response_payload(response: Response) -> Dict[str, Any]:
    """Return the JSON-ready dictionary for ``response``."""

    payload = response.model_dump(mode="json")
    if isinstance(response, ErrorResponse) and response.details is None:
        payload.pop("details", None)
    return payload


def encode_response(response: Response) -> bytes:
    """Serialise ``response`` into one newline-terminated frame."""

    return json.dumps(response_payload(response)).encode("utf-8") + FRAME_DELIMITER


def generate_id() -> str:
    """Return a unique command id."""

    return f"cmd_{int(time.time() * 1000)}_{secrets.token_hex(3)}"
