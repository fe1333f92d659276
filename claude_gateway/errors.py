from __future__ import annotations


class GatewayError(RuntimeError):
    """Base class for failures that abort a single request."""

    status_code: int = 500
    error_type: str = "proxy_error"


class InvalidRequestError(GatewayError):
    """Request body is unusable; raised before any process is spawned."""

    status_code = 400
    error_type = "invalid_request_error"


class SpawnError(GatewayError):
    """The agent process could not be started."""

    status_code = 502


class AgentProcessError(GatewayError):
    """The agent process exited with a non-zero status."""

    status_code = 502

    def __init__(self, exit_code: int, stderr: str) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"claude exited with code {exit_code}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class AgentTimeoutError(GatewayError, TimeoutError):
    """The agent process exceeded the wall-clock limit and was terminated."""

    status_code = 504
    error_type = "timeout_error"

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"claude CLI timed out after {timeout_seconds:g} s")
