"""Exception taxonomy surfaced by the agent bridge."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from thoughttree.acp.session import SessionPhase


class ThoughtTreeError(Exception):
    """Base class for all user-facing bridge errors."""


class ConfigurationError(ThoughtTreeError):
    """Settings are missing or invalid; the user must fix them."""


class ResolutionError(ThoughtTreeError):
    """A provider executable could not be located or failed validation."""

    def __init__(self, provider: str, message: str, hint: str = "") -> None:
        self.provider = provider
        self.message = message
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\n{self.hint}"
        return self.message


class ProtocolError(ThoughtTreeError):
    """The agent session failed during a specific lifecycle phase."""

    def __init__(self, phase: SessionPhase, message: str) -> None:
        self.phase = phase
        self.message = message
        super().__init__(f"[{phase}] {message}")


class EmptyPromptError(ThoughtTreeError):
    """The composed prompt has no text and no images."""

    def __init__(self) -> None:
        super().__init__("Cannot send empty prompt")


class PermissionRequestNotFound(ThoughtTreeError):
    """No pending permission request exists for the given identifier."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"No pending permission request with ID: {request_id}")


def user_message(exc: BaseException) -> str:
    """Render an exception as a message suitable for showing to the user."""
    if isinstance(exc, ProtocolError):
        return f"Agent session failed while {exc.phase.describe()}: {exc.message}"
    if isinstance(exc, ThoughtTreeError):
        return str(exc)
    return f"Unexpected error: {exc}"


__all__ = [
    "ConfigurationError",
    "EmptyPromptError",
    "PermissionRequestNotFound",
    "ProtocolError",
    "ResolutionError",
    "ThoughtTreeError",
    "user_message",
]
