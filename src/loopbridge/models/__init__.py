from .credentials import CacheEntry, Credential
from .messages import (
    PAYLOAD_MODELS,
    AgentReadyPayload,
    BridgeMessage,
    ControllerErrorPayload,
    ControllerReadyPayload,
    MessageType,
    SessionResult,
    StartSessionPayload,
    ValidationResult,
    create_message,
    deserialize_message,
    is_known_message_type,
    serialize_message,
    validate_message,
)

__all__ = [
    # Wire messages
    "PAYLOAD_MODELS",
    "AgentReadyPayload",
    "BridgeMessage",
    "ControllerErrorPayload",
    "ControllerReadyPayload",
    "MessageType",
    "SessionResult",
    "StartSessionPayload",
    "ValidationResult",
    "create_message",
    "deserialize_message",
    "is_known_message_type",
    "serialize_message",
    "validate_message",
    # Credentials
    "CacheEntry",
    "Credential",
]
