"""Process entry point: one task in over the orchestrator channel, one outcome out."""

from __future__ import annotations

import logging
import os
import sys

from .actions.executor import ActionExecutor
from .actions.git import GitRepo
from .agent.loop import AgentLoop
from .agent.models import Completed, Failed, Task, TaskOutcome, TranscriptEntry
from .config import AppConfig
from .errors import ActionError, MalformedMessage, ProtocolClosed
from .llm.client import LLMClient, ReasoningBackend
from .protocol import codec
from .protocol.transport import FramedTransport
from .shell import ShellAdapter, create_shell_adapter

LOGGER = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_NOT_COMPLETED = 1
EXIT_STARTUP_FAILURE = 2


def run_session(
    transport: FramedTransport,
    *,
    config: AppConfig,
    backend: ReasoningBackend,
    shell: ShellAdapter | None = None,
) -> TaskOutcome:
    """Serve a single task assignment and report exactly one outcome for it.

    ``MalformedMessage`` and ``ProtocolClosed`` raised while receiving the
    assignment propagate untouched: without a task there is nobody to report to.
    """
    loop_config = config.loop_config()
    task = codec.decode_task(
        transport.receive(), default_step_budget=loop_config.default_step_budget
    )

    steps = 0
    crash: Exception | None = None
    outcome: TaskOutcome
    try:
        shell_adapter = shell or create_shell_adapter(config.shell)
    except ValueError as exc:
        LOGGER.error("shell_adapter_unavailable", extra={"task_id": task.id, "error": str(exc)})
        outcome = Failed(f"cannot run commands: {exc}", "technical-issues")
        _send_outcome(transport, task, outcome, steps=steps)
        return outcome

    def executor_factory(repo_root: str, command_timeout_seconds: float) -> ActionExecutor:
        return ActionExecutor(
            repo_root,
            shell=shell_adapter,
            command_timeout_seconds=command_timeout_seconds,
            git=GitRepo(
                os.path.realpath(repo_root),
                user_name=config.git_user_name,
                user_email=config.git_user_email,
            ),
        )

    def notify(current: Task, entry: TranscriptEntry) -> None:
        transport.send(codec.encode_progress(current.id, entry))

    loop = AgentLoop(
        backend=backend,
        config=loop_config,
        executor_factory=executor_factory,
        log_dir=config.log_dir,
        notify=notify,
    )

    if not os.path.isdir(task.repo_root):
        outcome = Failed(f"repository root {task.repo_root} does not exist", "task-issues")
    else:
        try:
            task_run = loop.run_task(task)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("task_crashed", extra={"task_id": task.id})
            outcome = Failed(f"internal error: {exc}", "technical-issues")
            crash = exc
        else:
            outcome = task_run.outcome
            steps = len(task_run.transcript)
            if isinstance(outcome, Completed) and config.commit_on_complete:
                outcome = _commit_changes(
                    executor_factory(task.repo_root, loop_config.command_timeout_seconds),
                    outcome,
                    config,
                )

    _send_outcome(transport, task, outcome, steps=steps)
    if crash is not None:
        raise crash
    return outcome


def _send_outcome(
    transport: FramedTransport, task: Task, outcome: TaskOutcome, *, steps: int
) -> None:
    transport.send(codec.encode_outcome(task.id, outcome, steps=steps))
    LOGGER.info(
        "task_outcome_sent",
        extra={"task_id": task.id, "status": outcome.status, "steps": steps},
    )


def _commit_changes(
    executor: ActionExecutor, outcome: Completed, config: AppConfig
) -> TaskOutcome:
    try:
        sha = executor.commit(config.commit_message)
    except ActionError as exc:
        LOGGER.error("commit_failed", extra={"error_kind": exc.kind, "error": exc.detail})
        return Failed(f"task completed but committing failed: {exc.detail}", "technical-issues")
    if sha is None:
        return outcome
    return Completed(f"{outcome.message}\n\nCommitted as {sha}")


def build_backend(config: AppConfig) -> LLMClient:
    return LLMClient(
        api_key=config.api_key,
        model=config.model,
        system_prompt=config.system_prompt,
        max_context_chars=config.max_context_chars,
        full_history_actions=config.full_history_actions,
        reasoning_effort=config.reasoning_effort,
        api_url=config.api_url,
        timeout=config.backend_timeout_seconds,
    )


def main() -> int:
    config = AppConfig.from_env()
    level = getattr(logging, config.log_level, logging.INFO)
    # stdout carries the protocol frames.
    logging.basicConfig(
        stream=sys.stderr,
        level=level if isinstance(level, int) else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    transport = FramedTransport.from_stdio()
    try:
        outcome = run_session(transport, config=config, backend=build_backend(config))
    except (MalformedMessage, ProtocolClosed) as exc:
        LOGGER.error("session_aborted", extra={"error_kind": exc.kind, "error": exc.detail})
        return EXIT_STARTUP_FAILURE
    return EXIT_COMPLETED if isinstance(outcome, Completed) else EXIT_NOT_COMPLETED


if __name__ == "__main__":
    raise SystemExit(main())
