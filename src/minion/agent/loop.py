"""Task state machine: decide, execute, record, until a terminal outcome."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from minion.actions.executor import ActionExecutor
from minion.agent.models import (
    Aborted,
    ActionRequest,
    ActionResult,
    Completed,
    Failed,
    Finish,
    Task,
    TaskOutcome,
    Transcript,
    TranscriptEntry,
)
from minion.errors import (
    ActionError,
    BackendUnavailable,
    FileIOError,
    ParseError,
    ProtocolClosed,
)
from minion.llm.client import ReasoningBackend
from minion.protocol.codec import action_to_dict, result_to_dict
from minion.shell import BashAdapter

LOGGER = logging.getLogger(__name__)

ExecutorFactory = Callable[[str, float], ActionExecutor]
ProgressNotifier = Callable[[Task, TranscriptEntry], None]


@dataclass(frozen=True, slots=True)
class LoopConfig:
    """Process-wide defaults handed to the loop explicitly."""

    default_step_budget: int = 30
    command_timeout_seconds: float = 120.0


@dataclass(frozen=True, slots=True)
class TaskRun:
    outcome: TaskOutcome
    transcript: Transcript


def default_executor_factory(repo_root: str, command_timeout_seconds: float) -> ActionExecutor:
    return ActionExecutor(
        repo_root,
        shell=BashAdapter(),
        command_timeout_seconds=command_timeout_seconds,
    )


class AgentLoop:
    """Runs the decide/execute/record cycle for one task until it terminates.

    The transcript never grows past the task's step budget. Action failures
    and unparseable proposals are recorded and fed back to the backend; only
    an unreachable backend or a closed orchestrator channel ends the task
    early with :class:`Failed`.
    """

    def __init__(
        self,
        *,
        backend: ReasoningBackend,
        config: LoopConfig | None = None,
        executor_factory: ExecutorFactory = default_executor_factory,
        log_dir: str | Path | None = None,
        notify: ProgressNotifier | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or LoopConfig()
        self.executor_factory = executor_factory
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.notify = notify

    def run(self, task: Task) -> TaskOutcome:
        return self.run_task(task).outcome

    def run_task(self, task: Task) -> TaskRun:
        transcript = Transcript()
        executor = self.executor_factory(task.repo_root, self.config.command_timeout_seconds)
        LOGGER.info(
            "task_started",
            extra={
                "task_id": task.id,
                "repo_root": task.repo_root,
                "step_budget": task.step_budget,
            },
        )
        outcome = self._drive(task, transcript, executor)
        LOGGER.info(
            "task_finished",
            extra={"task_id": task.id, "status": outcome.status, "steps": len(transcript)},
        )
        self._append_log(task, step_index=len(transcript), outcome=outcome)
        return TaskRun(outcome=outcome, transcript=transcript)

    def _drive(
        self, task: Task, transcript: Transcript, executor: ActionExecutor
    ) -> TaskOutcome:
        while True:
            if len(transcript) >= task.step_budget:
                LOGGER.warning(
                    "step_budget_exhausted",
                    extra={"task_id": task.id, "step_budget": task.step_budget},
                )
                return Aborted(f"step budget of {task.step_budget} actions exhausted")

            step = len(transcript) + 1
            try:
                decision = self.backend.decide(task.goal, transcript)
            except ParseError as exc:
                LOGGER.warning(
                    "decision_unparseable",
                    extra={"task_id": task.id, "step": step, "error": exc.detail},
                )
                entry = TranscriptEntry(
                    step=step,
                    request=None,
                    result=ActionResult.failure(exc),
                    raw_response=exc.raw,
                )
            except BackendUnavailable as exc:
                LOGGER.error(
                    "backend_unavailable",
                    extra={"task_id": task.id, "step": step, "error": exc.detail},
                )
                return Failed(f"reasoning backend unavailable: {exc.detail}", "technical-issues")
            else:
                if isinstance(decision, Finish):
                    if decision.status == "failure":
                        return Failed(decision.message, decision.failure_category)
                    return Completed(decision.message)
                entry = TranscriptEntry(
                    step=step,
                    request=decision,
                    result=self._dispatch(executor, decision, task=task, step=step),
                )

            transcript.append(entry)
            self._append_log(task, step_index=step, entry=entry)
            try:
                self._notify(task, entry)
            except ProtocolClosed as exc:
                LOGGER.error("orchestrator_channel_closed", extra={"task_id": task.id})
                return Failed(f"orchestrator channel closed: {exc.detail}", "technical-issues")

    @staticmethod
    def _dispatch(
        executor: ActionExecutor, request: ActionRequest, *, task: Task, step: int
    ) -> ActionResult:
        try:
            return executor.execute(request)
        except ActionError as exc:
            LOGGER.warning(
                "action_failed",
                extra={
                    "task_id": task.id,
                    "step": step,
                    "kind": request.kind,
                    "error_kind": exc.kind,
                    "error": exc.detail,
                },
            )
            return ActionResult.failure(exc)
        except (OSError, UnicodeError) as exc:
            LOGGER.warning(
                "action_io_error",
                extra={"task_id": task.id, "step": step, "kind": request.kind, "error": str(exc)},
            )
            return ActionResult.failure(FileIOError(str(exc)))

    def _notify(self, task: Task, entry: TranscriptEntry) -> None:
        if self.notify is None:
            return
        try:
            self.notify(task, entry)
        except ProtocolClosed:
            raise
        except (OSError, ValueError) as exc:
            LOGGER.warning(
                "progress_notification_failed",
                extra={"task_id": task.id, "step": entry.step, "error": str(exc)},
            )

    def _append_log(
        self,
        task: Task,
        *,
        step_index: int,
        entry: TranscriptEntry | None = None,
        outcome: TaskOutcome | None = None,
    ) -> None:
        if self.log_dir is None:
            return
        log_entry: dict[str, object] = {
            "log_version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task_id": task.id,
            "goal": task.goal,
            "model": getattr(self.backend, "model", None),
            "repo_root": task.repo_root,
            "step_index": step_index,
            "step_budget": task.step_budget,
            "action": None,
            "result": None,
            "raw_response": None,
            "outcome": None,
        }
        if entry is not None:
            log_entry["action"] = action_to_dict(entry.request) if entry.request else None
            log_entry["result"] = result_to_dict(entry.result)
            log_entry["raw_response"] = entry.raw_response
        if outcome is not None:
            log_entry["outcome"] = {"status": outcome.status, **_outcome_fields(outcome)}
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            day_file = (
                self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
            )
            with day_file.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(log_entry, ensure_ascii=False) + "\n")
        except OSError as exc:
            LOGGER.warning("session_log_write_failed", extra={"error": str(exc)})


def _outcome_fields(outcome: TaskOutcome) -> dict[str, object]:
    if isinstance(outcome, Completed):
        return {"message": outcome.message}
    if isinstance(outcome, Failed):
        return {"reason": outcome.reason, "failure_category": outcome.category}
    return {"reason": outcome.reason}
