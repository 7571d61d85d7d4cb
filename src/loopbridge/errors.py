"""Exceptions raised by the bridge."""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class NotConnectedError(BridgeError):
    """An operation needed an active transport but connect() was never called."""

    def __init__(self, message: str = "Not connected. Call connect() first.") -> None:
        super().__init__(message)


class DisconnectedError(BridgeError):
    """A pending request was abandoned because the client disconnected."""

    def __init__(self, message: str = "Client disconnected") -> None:
        super().__init__(message)


class RequestTimeoutError(BridgeError):
    """No result arrived for a request within its timeout."""

    def __init__(self, plan_id: str, timeout: float) -> None:
        self.plan_id = plan_id
        self.timeout = timeout
        super().__init__(f"Session timed out after {timeout}s for plan: {plan_id}")


class DuplicateRequestError(BridgeError):
    """A request for this plan id is already waiting for its result."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"A request for plan {plan_id!r} is already pending")


class PortRangeExhaustedError(BridgeError):
    """Every port in the candidate range failed to bind."""

    def __init__(self, start: int, end: int) -> None:
        self.start = start
        self.end = end
        super().__init__(f"Could not find an available port in range {start}-{end}")
