"""Error taxonomy shared by the executor, reasoning bridge and protocol layers."""

from __future__ import annotations


class MinionError(Exception):
    """Base error carrying a stable taxonomy ``kind`` and a human-readable detail."""

    kind = "MinionError"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ActionError(MinionError):
    """Failure of a single action; recorded in the transcript, never task-fatal."""


class AccessDenied(ActionError):
    kind = "AccessDenied"


class NotFound(ActionError):
    kind = "NotFound"


class FileIOError(ActionError):
    kind = "IOError"


class CommandTimeout(ActionError):
    kind = "Timeout"


class SpawnError(ActionError):
    kind = "SpawnError"


class GitError(ActionError):
    kind = "GitError"


class BackendUnavailable(MinionError):
    kind = "BackendUnavailable"


class ParseError(MinionError):
    """The backend answered, but not with a usable action."""

    kind = "ParseError"

    def __init__(self, detail: str, *, raw: str | None = None) -> None:
        super().__init__(detail)
        self.raw = raw


class MalformedMessage(MinionError):
    kind = "MalformedMessage"


class ProtocolClosed(MinionError):
    """The orchestrator channel reached end-of-stream."""

    kind = "ProtocolClosed"
