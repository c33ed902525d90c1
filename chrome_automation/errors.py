"""Exception taxonomy for session, process, connection and script failures.

Controller and runner code raise these; the MCP tool layer turns any
``BrowserAutomationError`` into a plain ``Error: ...`` text result.
"""

from __future__ import annotations

from typing import Optional


class BrowserAutomationError(RuntimeError):
    """Base class for every error surfaced to a tool caller."""


class InvalidArgumentError(BrowserAutomationError):
    """A tool was called with missing or malformed arguments."""


class ResourceUnavailableError(BrowserAutomationError):
    """No browser, page or session is available for the operation."""

    def __init__(self, operation: str, hint: str = "Launch or connect to browser first."):
        self.operation = operation
        super().__init__(f"{operation}: No browser page available. {hint}")


class SessionNotFoundError(BrowserAutomationError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class StaleSessionError(BrowserAutomationError):
    """The registry knows the session but its processes no longer respond."""

    def __init__(self, session_id: str, reason: str = ""):
        self.session_id = session_id
        detail = f": {reason}" if reason else ""
        super().__init__(f"Session {session_id} is no longer active{detail}")


class ConnectionFailedError(BrowserAutomationError):
    """CDP connection failed after exhausting every attempt."""

    def __init__(self, port: int, attempts: int, last_error: Optional[BaseException]):
        self.port = port
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to connect to browser on port {port} after {attempts} attempts: "
            f"{last_error}"
        )


class ProcessConflictError(BrowserAutomationError):
    """A port could not be freed from the processes holding it."""


class ScriptError(BrowserAutomationError):
    """Base class for user-script failures."""


class ScriptNotFoundError(ScriptError):
    pass


class ScriptFetchError(ScriptError):
    pass


class ScriptExecutionError(ScriptError):
    pass


class BrowserDisconnectedError(ScriptError):
    """The browser went away before the script function could be invoked."""
