"""Data models used by the agent loop."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import ClassVar, Literal

from minion.errors import MinionError

FailureCategory = Literal["technical-issues", "task-issues", "problem-solving"]
FinishStatus = Literal["complete", "failure"]

FAILURE_CATEGORIES: tuple[FailureCategory, ...] = (
    "technical-issues",
    "task-issues",
    "problem-solving",
)


@dataclass(frozen=True, slots=True)
class Task:
    """Unit of work assigned by the orchestrator."""

    id: str
    goal: str
    repo_root: str
    step_budget: int


@dataclass(frozen=True, slots=True)
class ReadFile:
    kind: ClassVar[str] = "read-file"

    path: str


@dataclass(frozen=True, slots=True)
class WriteFile:
    kind: ClassVar[str] = "write-file"

    path: str
    content: str


@dataclass(frozen=True, slots=True)
class RunCommand:
    kind: ClassVar[str] = "run-command"

    command: str
    timeout_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class Finish:
    """Terminal proposal; intercepted by the loop and never executed."""

    kind: ClassVar[str] = "finish"

    message: str
    status: FinishStatus = "complete"
    failure_category: FailureCategory | None = None


ActionRequest = ReadFile | WriteFile | RunCommand | Finish
ACTION_KINDS = (ReadFile.kind, WriteFile.kind, RunCommand.kind, Finish.kind)


@dataclass(frozen=True, slots=True)
class ActionResult:
    """Outcome of one executed (or rejected) action."""

    success: bool
    output: str = ""
    stderr: str = ""
    exit_code: int | None = None
    error_kind: str | None = None
    error_detail: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def ok(
        cls,
        output: str = "",
        *,
        stderr: str = "",
        exit_code: int | None = None,
        duration_seconds: float = 0.0,
    ) -> ActionResult:
        return cls(
            success=True,
            output=output,
            stderr=stderr,
            exit_code=exit_code,
            duration_seconds=duration_seconds,
        )

    @classmethod
    def failure(
        cls,
        error: MinionError,
        *,
        output: str = "",
        stderr: str = "",
        duration_seconds: float = 0.0,
    ) -> ActionResult:
        return cls(
            success=False,
            output=output,
            stderr=stderr,
            error_kind=error.kind,
            error_detail=error.detail,
            duration_seconds=duration_seconds,
        )


@dataclass(frozen=True, slots=True)
class TranscriptEntry:
    """One (request, result) pair; ``request`` is None for an unparseable proposal."""

    step: int
    request: ActionRequest | None
    result: ActionResult
    raw_response: str | None = None


@dataclass(slots=True)
class Transcript:
    """Append-only history of actions for a single task."""

    _entries: list[TranscriptEntry] = field(default_factory=list)

    def append(self, entry: TranscriptEntry) -> None:
        self._entries.append(entry)

    @property
    def entries(self) -> tuple[TranscriptEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TranscriptEntry]:
        return iter(tuple(self._entries))


@dataclass(frozen=True, slots=True)
class Completed:
    status: ClassVar[str] = "completed"

    message: str


@dataclass(frozen=True, slots=True)
class Failed:
    status: ClassVar[str] = "failed"

    reason: str
    category: FailureCategory | None = None


@dataclass(frozen=True, slots=True)
class Aborted:
    status: ClassVar[str] = "aborted"

    reason: str


TaskOutcome = Completed | Failed | Aborted
