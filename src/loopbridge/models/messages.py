"""Bridge message types plus validation and serialization helpers.

Every message on the wire is a JSON object ``{type, payload, timestamp}``.
``type`` is a closed set; each type has a payload model listing the fields
the bridge relies on. Anything else in a payload is carried through untouched.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


class MessageType(str, Enum):
    START_SESSION = "start_session"
    SESSION_RESULT = "session_result"
    CONTROLLER_READY = "controller_ready"
    AGENT_READY = "agent_ready"
    CONTROLLER_ERROR = "controller_error"


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class StartSessionPayload(_Payload):
    plan_id: str = Field(alias="planId", min_length=1)
    plan: dict[str, Any] = Field(default_factory=dict)
    criteria: list[str] = Field(default_factory=list)
    triggered_by: str | None = Field(default=None, alias="triggeredBy")


class SessionResult(_Payload):
    """Outcome of one session, as reported by the agent."""

    plan_id: str = Field(alias="planId", min_length=1)
    passed: bool
    summary: str = ""
    steps: list[dict[str, Any]] = Field(default_factory=list)
    duration: float = 0
    timestamp: int | None = None


class ControllerReadyPayload(_Payload):
    controller_version: str = Field(alias="controllerVersion")
    transport: str | None = None


class AgentReadyPayload(_Payload):
    agent_version: str = Field(alias="agentVersion")


class ControllerErrorPayload(_Payload):
    code: str
    message: str
    details: Any = None


PAYLOAD_MODELS: dict[MessageType, type[_Payload]] = {
    MessageType.START_SESSION: StartSessionPayload,
    MessageType.SESSION_RESULT: SessionResult,
    MessageType.CONTROLLER_READY: ControllerReadyPayload,
    MessageType.AGENT_READY: AgentReadyPayload,
    MessageType.CONTROLLER_ERROR: ControllerErrorPayload,
}


def _describe_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "message"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class BridgeMessage(BaseModel):
    """A single message exchanged between controller and agent."""

    model_config = ConfigDict(frozen=True)

    type: MessageType
    payload: dict[str, Any]
    timestamp: int

    @model_validator(mode="after")
    def _check_payload(self) -> BridgeMessage:
        try:
            PAYLOAD_MODELS[self.type].model_validate(self.payload)
        except ValidationError as e:
            raise ValueError(
                f"invalid {self.type.value} payload ({_describe_errors(e)})"
            ) from None
        return self

    def parsed_payload(self) -> _Payload:
        """Return the payload as the model registered for this message type."""
        return PAYLOAD_MODELS[self.type].model_validate(self.payload)


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    message: BridgeMessage | None = None
    error: str | None = None


def now_ms() -> int:
    return int(time.time() * 1000)


def create_message(
    message_type: MessageType | str,
    payload: BaseModel | dict[str, Any],
) -> BridgeMessage:
    """Build a message of *message_type* stamped with the current time.

    Raises ``pydantic.ValidationError`` if the payload does not fit the type.
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    return BridgeMessage(type=message_type, payload=payload, timestamp=now_ms())


def validate_message(value: Any) -> ValidationResult:
    """Validate an untrusted value as a ``BridgeMessage``.

    Accepts a decoded JSON object or a JSON string. Never raises; the
    returned result carries either the message or a readable error.
    """
    if value is None:
        return ValidationResult(valid=False, error="Message is empty")

    if isinstance(value, BridgeMessage):
        return ValidationResult(valid=True, message=value)

    if isinstance(value, (str, bytes)):
        try:
            parsed = json.loads(value)
        except ValueError:
            return ValidationResult(valid=False, error="Message is not valid JSON")
        return validate_message(parsed)

    if not isinstance(value, dict):
        return ValidationResult(
            valid=False, error=f"Expected object, got {type(value).__name__}"
        )

    try:
        message = BridgeMessage.model_validate(value)
    except ValidationError as e:
        return ValidationResult(
            valid=False, error=f"Invalid message structure: {_describe_errors(e)}"
        )
    return ValidationResult(valid=True, message=message)


def serialize_message(message: BridgeMessage) -> str:
    return message.model_dump_json()


def deserialize_message(text: str | bytes) -> ValidationResult:
    return validate_message(text)


def is_known_message_type(value: str) -> bool:
    try:
        MessageType(value)
    except ValueError:
        return False
    return True
