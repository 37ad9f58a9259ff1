"""Wire codec for orchestrator messages.

Every frame body is a compact UTF-8 JSON object tagged with the protocol
``version`` and a message ``type``. Encoders are total and deterministic
(keys are sorted). Decoders only ever raise :class:`MalformedMessage`,
whatever bytes they are handed.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import cast

from minion.agent.models import (
    FAILURE_CATEGORIES,
    Aborted,
    ActionRequest,
    ActionResult,
    Completed,
    Failed,
    FailureCategory,
    Finish,
    FinishStatus,
    ReadFile,
    RunCommand,
    Task,
    TaskOutcome,
    TranscriptEntry,
    WriteFile,
)
from minion.errors import MalformedMessage

PROTOCOL_VERSION = 1
TASK_ASSIGNMENT = "task_assignment"
TASK_OUTCOME = "task_outcome"
PROGRESS = "progress"

JsonObject = dict[str, object]


def encode_task(task: Task) -> bytes:
    return _dump(
        TASK_ASSIGNMENT,
        {
            "id": task.id,
            "goal": task.goal,
            "repo_root": task.repo_root,
            "step_budget": task.step_budget,
        },
    )


def decode_task(payload: bytes, *, default_step_budget: int | None = None) -> Task:
    message = _load(payload, TASK_ASSIGNMENT)
    step_budget = message.get("step_budget")
    if step_budget is None and default_step_budget is not None:
        step_budget = default_step_budget
    if not _is_int(step_budget) or cast(int, step_budget) < 0:
        raise MalformedMessage("step_budget must be a non-negative integer")
    return Task(
        id=_require_str(message, "id"),
        goal=_require_str(message, "goal"),
        repo_root=_require_str(message, "repo_root"),
        step_budget=cast(int, step_budget),
    )


def encode_outcome(task_id: str, outcome: TaskOutcome, *, steps: int) -> bytes:
    body: JsonObject = {"task_id": task_id, "status": outcome.status, "steps": steps}
    if isinstance(outcome, Completed):
        body["message"] = outcome.message
    elif isinstance(outcome, Failed):
        body["reason"] = outcome.reason
        body["failure_category"] = outcome.category
    elif isinstance(outcome, Aborted):
        body["reason"] = outcome.reason
    else:
        raise TypeError(f"unknown task outcome: {outcome!r}")
    return _dump(TASK_OUTCOME, body)


def decode_outcome(payload: bytes) -> tuple[str, TaskOutcome, int]:
    """Decode a ``task_outcome`` frame into ``(task_id, outcome, steps)``."""
    message = _load(payload, TASK_OUTCOME)
    task_id = _require_str(message, "task_id")
    steps = message.get("steps")
    if not _is_int(steps):
        raise MalformedMessage("steps must be an integer")
    status = message.get("status")
    outcome: TaskOutcome
    if status == Completed.status:
        outcome = Completed(_require_str(message, "message"))
    elif status == Failed.status:
        outcome = Failed(
            _require_str(message, "reason"),
            _optional_category(message.get("failure_category")),
        )
    elif status == Aborted.status:
        outcome = Aborted(_require_str(message, "reason"))
    else:
        raise MalformedMessage(f"unknown outcome status: {status!r}")
    return task_id, outcome, cast(int, steps)


def encode_progress(task_id: str, entry: TranscriptEntry) -> bytes:
    return _dump(
        PROGRESS,
        {
            "task_id": task_id,
            "step": entry.step,
            "action": action_to_dict(entry.request) if entry.request is not None else None,
            "result": result_to_dict(entry.result),
        },
    )


def decode_progress(payload: bytes) -> tuple[str, TranscriptEntry]:
    message = _load(payload, PROGRESS)
    step = message.get("step")
    if not _is_int(step):
        raise MalformedMessage("step must be an integer")
    action = message.get("action")
    if action is not None and not isinstance(action, dict):
        raise MalformedMessage("action must be an object or null")
    result = message.get("result")
    if not isinstance(result, dict):
        raise MalformedMessage("result must be an object")
    entry = TranscriptEntry(
        step=cast(int, step),
        request=action_from_dict(action) if action is not None else None,
        result=result_from_dict(result),
    )
    return _require_str(message, "task_id"), entry


def action_to_dict(request: ActionRequest) -> JsonObject:
    if isinstance(request, ReadFile):
        return {"kind": request.kind, "path": request.path}
    if isinstance(request, WriteFile):
        return {"kind": request.kind, "path": request.path, "content": request.content}
    if isinstance(request, RunCommand):
        return {
            "kind": request.kind,
            "command": request.command,
            "timeout_seconds": request.timeout_seconds,
        }
    if isinstance(request, Finish):
        return {
            "kind": request.kind,
            "message": request.message,
            "status": request.status,
            "failure_category": request.failure_category,
        }
    raise TypeError(f"unknown action request: {request!r}")


def action_from_dict(data: Mapping[str, object]) -> ActionRequest:
    """Map a decoded JSON object onto an action; raises MalformedMessage."""
    kind = data.get("kind")
    if kind == ReadFile.kind:
        return ReadFile(path=_require_str(data, "path"))
    if kind == WriteFile.kind:
        return WriteFile(
            path=_require_str(data, "path"),
            content=_require_str(data, "content", allow_empty=True),
        )
    if kind == RunCommand.kind:
        timeout = data.get("timeout_seconds")
        timeout_seconds = None if timeout is None else _as_float(timeout, "timeout_seconds")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise MalformedMessage("timeout_seconds must be a positive number or null")
        return RunCommand(command=_require_str(data, "command"), timeout_seconds=timeout_seconds)
    if kind == Finish.kind:
        status = data.get("status") or "complete"
        if status not in ("complete", "failure"):
            raise MalformedMessage(f"unknown finish status: {status!r}")
        return Finish(
            message=_require_str(data, "message", allow_empty=True),
            status=cast(FinishStatus, status),
            failure_category=_optional_category(data.get("failure_category")),
        )
    raise MalformedMessage(f"unknown action kind: {kind!r}")


def result_to_dict(result: ActionResult) -> JsonObject:
    error: JsonObject | None = None
    if result.error_kind is not None:
        error = {"kind": result.error_kind, "detail": result.error_detail}
    return {
        "success": result.success,
        "output": result.output,
        "stderr": result.stderr,
        "exit_code": result.exit_code,
        "error": error,
        "duration_seconds": round(result.duration_seconds, 4),
    }


def result_from_dict(data: Mapping[str, object]) -> ActionResult:
    success = data.get("success")
    if not isinstance(success, bool):
        raise MalformedMessage("success must be a boolean")
    exit_code = data.get("exit_code")
    if exit_code is not None and not _is_int(exit_code):
        raise MalformedMessage("exit_code must be an integer or null")
    duration = _as_float(data.get("duration_seconds", 0.0), "duration_seconds")
    error_kind: str | None = None
    error_detail: str | None = None
    error = data.get("error")
    if error is not None:
        if not isinstance(error, dict):
            raise MalformedMessage("error must be an object or null")
        error_kind = _require_str(error, "kind")
        detail = error.get("detail")
        if detail is not None and not isinstance(detail, str):
            raise MalformedMessage("error.detail must be a string or null")
        error_detail = detail
    return ActionResult(
        success=success,
        output=_require_str(data, "output", allow_empty=True),
        stderr=_require_str(data, "stderr", allow_empty=True),
        exit_code=cast("int | None", exit_code),
        error_kind=error_kind,
        error_detail=error_detail,
        duration_seconds=duration,
    )


def _dump(message_type: str, body: JsonObject) -> bytes:
    message = {"version": PROTOCOL_VERSION, "type": message_type, **body}
    return json.dumps(
        message, ensure_ascii=False, sort_keys=True, separators=(",", ":")
    ).encode("utf-8")


def _load(payload: bytes, expected_type: str) -> JsonObject:
    try:
        message = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedMessage(f"frame is not valid UTF-8 JSON: {exc}") from exc
    except RecursionError as exc:
        raise MalformedMessage("frame is nested too deeply") from exc
    if not isinstance(message, dict):
        raise MalformedMessage("frame must be a JSON object")
    version = message.get("version")
    if not _is_int(version) or version != PROTOCOL_VERSION:
        raise MalformedMessage(f"unsupported protocol version: {version!r}")
    if message.get("type") != expected_type:
        raise MalformedMessage(
            f"expected a {expected_type} message, got {message.get('type')!r}"
        )
    return message


def _require_str(data: Mapping[str, object], key: str, *, allow_empty: bool = False) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise MalformedMessage(f"{key} must be a string")
    if not allow_empty and not value.strip():
        raise MalformedMessage(f"{key} must not be empty")
    return value


def _optional_category(value: object) -> FailureCategory | None:
    if value is None:
        return None
    if value not in FAILURE_CATEGORIES:
        raise MalformedMessage(f"unknown failure category: {value!r}")
    return cast(FailureCategory, value)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _as_float(value: object, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedMessage(f"{key} must be a number")
    try:
        converted = float(value)
    except OverflowError as exc:
        raise MalformedMessage(f"{key} is out of range") from exc
    if not math.isfinite(converted):
        raise MalformedMessage(f"{key} must be finite")
    return converted
