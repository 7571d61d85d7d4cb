"""Message bridge between a local controller and a browser-embedded agent."""

from loopbridge.agent import AgentPoller, ConnectionState, ConnectionStatus
from loopbridge.client import BridgeClient
from loopbridge.config import Settings, load_settings
from loopbridge.discovery import Discovery, FileCache, MemoryCache
from loopbridge.errors import (
    BridgeError,
    DisconnectedError,
    DuplicateRequestError,
    NotConnectedError,
    PortRangeExhaustedError,
    RequestTimeoutError,
)
from loopbridge.file_transport import FileTransport
from loopbridge.message_queue import MessageQueue
from loopbridge.models import (
    BridgeMessage,
    MessageType,
    SessionResult,
    create_message,
    validate_message,
)
from loopbridge.server import ControlServer

__all__ = [
    "AgentPoller",
    "BridgeClient",
    "BridgeError",
    "BridgeMessage",
    "ConnectionState",
    "ConnectionStatus",
    "ControlServer",
    "Discovery",
    "DisconnectedError",
    "DuplicateRequestError",
    "FileCache",
    "FileTransport",
    "MemoryCache",
    "MessageQueue",
    "MessageType",
    "NotConnectedError",
    "PortRangeExhaustedError",
    "RequestTimeoutError",
    "SessionResult",
    "Settings",
    "create_message",
    "load_settings",
    "validate_message",
]
