"""Error taxonomy for the Kiwi TCMS MCP bridge.

Every failure a caller can observe is a distinct subclass of BridgeError,
so the HTTP layer and the client can tell them apart.
"""

from typing import Any


class BridgeError(Exception):
    """Base exception for bridge errors."""

    status_code: int = 500
    error: str = "Kiwi TCMS MCP request failed"

    def __init__(self, message: str, request_id: Any = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class ConfigurationMissing(BridgeError):
    """Required worker environment is not set. Fatal at startup."""

    error = "Kiwi TCMS MCP configuration missing"

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing required configuration: {', '.join(missing)}")
        self.missing = missing


class WorkerUnavailable(BridgeError):
    """No ready worker to send the request to."""

    status_code = 503
    error = "Kiwi TCMS MCP not ready"


class WorkerCrashed(BridgeError):
    """The worker exited while the call was in flight."""

    status_code = 502
    error = "Kiwi TCMS MCP worker crashed"

    def __init__(
        self,
        message: str,
        request_id: Any = None,
        returncode: int | None = None,
    ) -> None:
        super().__init__(message, request_id=request_id)
        self.returncode = returncode


class CallTimeout(BridgeError):
    """No correlated response arrived before the deadline."""

    status_code = 504
    error = "Kiwi TCMS MCP request timeout"

    def __init__(
        self,
        message: str,
        request_id: Any = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(message, request_id=request_id)
        self.timeout_seconds = timeout_seconds


class DuplicateId(BridgeError):
    """A call with the same id is already in flight."""

    status_code = 409
    error = "Duplicate request id"


class MalformedMessage(BridgeError):
    """A worker output line is not a JSON object.

    Never reaches a caller: the line cannot be attributed to a request.
    """

    status_code = 502
    error = "Malformed worker message"

    def __init__(self, message: str, line: str) -> None:
        super().__init__(message)
        self.line = line
