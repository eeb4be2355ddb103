"""Error taxonomy shared by the daemon, its collaborators and the CLI.

Every error carries a message that tells an automated caller what to do next,
because nobody is around to interpret a bare failure.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class AgentError(RuntimeError):
    """Base class for failures reported to ios-agent callers."""

    def __init__(
        self,
        message: str,
        *,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.details = details

    def with_context(self, prefix: str) -> "AgentError":
        """Prefix the message with ``prefix`` and return the same error."""

        self.message = f"{prefix}{self.message}"
        self.args = (self.message,)
        return self


class ProtocolError(AgentError):
    """Raised when a frame on the local socket cannot be understood."""


class DaemonUnavailableError(AgentError):
    """Raised when the daemon cannot be reached over its socket."""


class DaemonNotRunningError(DaemonUnavailableError):
    def __init__(self) -> None:
        super().__init__(
            "Daemon not running. Start with: ios-agent start-session",
            suggestion="start-session",
        )


class DaemonUnresponsiveError(DaemonUnavailableError):
    def __init__(self) -> None:
        super().__init__(
            "Daemon not responding. Try: ios-agent stop-session && ios-agent start-session",
            suggestion="stop-session",
        )


class CommandTimeoutError(AgentError):
    """Raised by the client when the daemon does not answer in time.

    The daemon keeps executing the command; it may still complete and change
    the session state after this error is reported.
    """


class BackendUnavailableError(AgentError):
    """Raised when WebDriverAgent cannot be reached at all."""


class BackendRequestError(AgentError):
    """Raised when WebDriverAgent answers with a non-success status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"WDA request failed: {status_code} {body}")
        self.status_code = status_code
        self.body = body


class StartupTimeoutError(AgentError):
    """Raised when the backend does not become ready in time."""


class WDANotFoundError(AgentError):
    """Raised when the WebDriverAgent project is missing on disk."""


class SessionStateError(AgentError):
    """Raised when a command is not valid in the current session state."""


class ExternalToolError(AgentError):
    """Raised when ``xcrun simctl`` or another external tool fails."""

    def __init__(self, message: str, *, returncode: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class SnapshotParseError(AgentError):
    """Raised when the accessibility tree source cannot be parsed."""


class RefResolutionError(AgentError):
    """Raised when an element reference cannot be turned into a live element."""

    def __init__(self, message: str, ref: str, suggestion: Optional[str] = None) -> None:
        super().__init__(message, suggestion=suggestion)
        self.ref = ref


class ReferenceNotFoundError(RefResolutionError):
    """The reference is malformed or absent from the current reference table."""


class ElementNotFoundError(RefResolutionError):
    """The reference is known but no live element matches its descriptor."""


class AlertBlockingError(AgentError):
    """A system alert intercepts the requested action."""

    def __init__(self, text: str, buttons: List[str]) -> None:
        button_list = ", ".join(buttons) if buttons else "none reported"
        super().__init__(
            f"An alert is blocking the action: {text!r}. Buttons: {button_list}. "
            "Handle it with alert-accept, alert-dismiss or alert-button first.",
            suggestion="alert-accept",
            details={"alert": {"text": text, "buttons": list(buttons)}},
        )
        self.text = text
        self.buttons = list(buttons)
