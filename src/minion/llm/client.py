"""Reasoning bridge: asks the model for the next repository action."""

from __future__ import annotations

import copy
import json
import logging
from http.client import HTTPException
from typing import Protocol
from urllib import request
from urllib.error import HTTPError, URLError

from minion.actions.markdown import strip_wrapping_markdown_code_fences
from minion.agent.models import (
    ACTION_KINDS,
    FAILURE_CATEGORIES,
    ActionRequest,
    Transcript,
    TranscriptEntry,
)
from minion.errors import BackendUnavailable, MalformedMessage, ParseError
from minion.protocol.codec import action_from_dict, action_to_dict, result_to_dict

BASE_SYSTEM_PROMPT_PARTS = [
    "You are an autonomous agent that solves coding tasks in a git repository.",
    "You keep your explanations as concise as possible.",
    (
        "You are connected to a Linux-based development environment and every"
        " path and command is relative to the repository root."
    ),
    (
        "Each turn, choose exactly one action: read-file (path), write-file"
        " (path, content; the whole file is overwritten), run-command (command,"
        " optional timeout_seconds) or finish (message)."
    ),
    (
        "Use finish with status complete once the task is done, or status failure"
        " with a failure_category (technical-issues|task-issues|problem-solving)"
        " when an insurmountable issue prevents completion."
    ),
    "Do not wrap file contents or commands in Markdown code fences.",
    (
        "Always return strict JSON with keys: kind, path, content, command,"
        " timeout_seconds, message, status, failure_category and notes; set"
        " keys that do not apply to the chosen kind to null."
    ),
]

DEFAULT_SYSTEM_PROMPT = " ".join(BASE_SYSTEM_PROMPT_PARTS)
LOGGER = logging.getLogger(__name__)

_CLIPPABLE_FIELDS = (("result", "output"), ("result", "stderr"), ("action", "content"))


class ReasoningBackend(Protocol):
    """Anything that can propose the next action for a goal and its history."""

    def decide(self, goal: str, transcript: Transcript) -> ActionRequest: ...


class LLMClient:
    """Small HTTP client for action-oriented model calls.

    Raises :class:`BackendUnavailable` when the endpoint cannot be reached and
    :class:`ParseError` when the reply is not a usable action. It never retries.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_context_chars: int = 24000,
        full_history_actions: int = 5,
        max_output_chars: int = 8000,
        reasoning_effort: str | None = None,
        api_url: str = "https://api.openai.com/v1/responses",
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.system_prompt = system_prompt
        self.max_context_chars = max_context_chars
        self.full_history_actions = full_history_actions
        self.max_output_chars = max_output_chars
        self.reasoning_effort = reasoning_effort
        self.api_url = api_url
        self.timeout = timeout

    def decide(self, goal: str, transcript: Transcript) -> ActionRequest:
        session_context = self._build_context(transcript)
        payload = self._build_payload(goal, session_context)
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "payload_bytes": len(body),
                "context_events": len(session_context),
                "reasoning_effort": self.reasoning_effort,
            },
        )

        req = request.Request(self.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_body = resp.read()
        except HTTPError as exc:
            body_excerpt = self._read_error_body_excerpt(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "http_status": exc.code,
                    "reason": exc.reason,
                    "response_excerpt": body_excerpt,
                },
            )
            details = f"Model request failed with HTTP {exc.code}: {exc.reason}"
            if body_excerpt:
                details = f"{details}. Response body: {body_excerpt}"
            raise BackendUnavailable(details) from exc
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "model": self.model, "reason": str(exc.reason)},
            )
            raise BackendUnavailable(f"Model request transport error: {exc.reason}") from exc
        except TimeoutError as exc:
            LOGGER.error(
                "llm_request_timeout",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "timeout_seconds": self.timeout,
                },
            )
            raise BackendUnavailable(
                f"Model request timed out after {self.timeout:.1f}s"
            ) from exc
        except (HTTPException, OSError) as exc:
            LOGGER.error(
                "llm_request_connection_error",
                extra={"api_url": self.api_url, "model": self.model, "error": str(exc)},
            )
            raise BackendUnavailable(f"Model connection error: {exc}") from exc

        return self.parse_response(raw_body)

    @classmethod
    def parse_response(cls, raw_body: bytes) -> ActionRequest:
        try:
            raw_response = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError, RecursionError) as exc:
            LOGGER.error("llm_response_parse_error", extra={"error": str(exc)})
            raise ParseError(
                f"Model response parsing error: {exc}", raw=_excerpt(raw_body)
            ) from exc

        raw = cls._coerce_object_dict(raw_response)
        if raw is None:
            raise ParseError("Model response parsing error: expected top-level object")

        output_text = cls._extract_output_text(raw)
        if output_text is None:
            raise ParseError("Model returned no structured output")
        try:
            parsed = cls._coerce_object_dict(json.loads(output_text))
        except (ValueError, RecursionError) as exc:
            raise ParseError(
                f"Model structured output parsing error: {exc}", raw=output_text
            ) from exc
        if parsed is None:
            raise ParseError("Model structured output is not an object", raw=output_text)
        return cls._to_action_request(parsed, raw=output_text)

    def _build_context(self, transcript: Transcript) -> list[dict[str, object]]:
        entries = transcript.entries
        keep_from = max(len(entries) - self.full_history_actions, 0)
        context: list[dict[str, object]] = []
        for index, entry in enumerate(entries):
            if index < keep_from:
                context.append({"step": entry.step, "summary": self._summarize_entry(entry)})
            else:
                context.append(self._serialize_entry(entry))
        return context

    def _serialize_entry(self, entry: TranscriptEntry) -> dict[str, object]:
        result = result_to_dict(entry.result)
        result["output"] = _clip(entry.result.output, self.max_output_chars)
        result["stderr"] = _clip(entry.result.stderr, self.max_output_chars)
        action: dict[str, object] | None = None
        if entry.request is not None:
            action = action_to_dict(entry.request)
            if "content" in action:
                action["content"] = _clip(str(action["content"]), self.max_output_chars)
        event: dict[str, object] = {"step": entry.step, "action": action, "result": result}
        if entry.request is None and entry.raw_response is not None:
            event["rejected_response"] = _clip(entry.raw_response, 500)
        return event

    @staticmethod
    def _summarize_entry(entry: TranscriptEntry) -> str:
        request_obj = entry.request
        if request_obj is None:
            target = "unparseable response"
        else:
            details = action_to_dict(request_obj)
            target = f"{request_obj.kind} {details.get('path') or details.get('command') or ''}"
        result = entry.result
        if not result.success:
            status = f"failed ({result.error_kind}: {result.error_detail})"
        elif result.exit_code is not None:
            status = f"exit {result.exit_code}"
        else:
            status = "ok"
        return f"{target.strip()} -> {status}"

    def _build_payload(
        self, goal: str, session_context: list[dict[str, object]]
    ) -> dict[str, object]:
        nullable_string = {"type": ["string", "null"]}
        schema_properties: dict[str, object] = {
            "kind": {"type": "string", "enum": list(ACTION_KINDS)},
            "path": nullable_string,
            "content": nullable_string,
            "command": nullable_string,
            "timeout_seconds": {"type": ["number", "null"]},
            "message": nullable_string,
            "status": {"type": ["string", "null"], "enum": ["complete", "failure", None]},
            "failure_category": {
                "type": ["string", "null"],
                "enum": [*FAILURE_CATEGORIES, None],
            },
            "notes": nullable_string,
        }

        payload: dict[str, object] = {
            "model": self.model,
            "input": [
                {"role": "system", "content": self.system_prompt},
                {
                    "role": "user",
                    "content": self._build_user_message(
                        goal,
                        session_context,
                        max_context_chars=self.max_context_chars,
                    ),
                },
            ],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "repository_action",
                    "strict": True,
                    "schema": {
                        "type": "object",
                        "properties": schema_properties,
                        "required": list(schema_properties),
                        "additionalProperties": False,
                    },
                }
            },
        }
        if self.reasoning_effort:
            payload["reasoning"] = {"effort": self.reasoning_effort}
        return payload

    @staticmethod
    def _build_user_message(
        goal: str,
        session_context: list[dict[str, object]],
        *,
        max_context_chars: int,
    ) -> str:
        """Build a clear prompt containing goal and serialized transcript."""
        context_json = LLMClient._serialize_context_with_limit(
            session_context,
            max_context_chars=max_context_chars,
        )
        return (
            "Task:\n"
            f"{goal}\n\n"
            "Actions so far (ordered oldest to newest):\n"
            f"{context_json}\n\n"
            "Use both the task and the action history to choose the next action."
            " A result with an error shows what went wrong; adjust instead of repeating it."
        )

    @staticmethod
    def _serialize_context_with_limit(
        session_context: list[dict[str, object]],
        *,
        max_context_chars: int,
    ) -> str:
        if max_context_chars <= 0 or not session_context:
            return "[]"

        # The newest event is always kept, shrunk if it alone exceeds the limit.
        selected = [_fit_event(session_context[-1], max_chars=max_context_chars)]
        for event in reversed(session_context[:-1]):
            candidate = [event, *selected]
            serialized = json.dumps(candidate, indent=2, ensure_ascii=False)
            if len(serialized) > max_context_chars:
                break
            selected = candidate

        return json.dumps(selected, indent=2, ensure_ascii=False)

    @staticmethod
    def _coerce_object_dict(value: object) -> dict[str, object] | None:
        if not isinstance(value, dict):
            return None
        return {str(key): raw_value for key, raw_value in value.items()}

    @classmethod
    def _extract_output_text(cls, payload: dict[str, object]) -> str | None:
        output_items = payload.get("output")
        if not isinstance(output_items, list):
            return None

        for item in output_items:
            item_object = cls._coerce_object_dict(item)
            if item_object is None:
                continue
            content_items = item_object.get("content")
            if not isinstance(content_items, list):
                continue
            for content in content_items:
                content_object = cls._coerce_object_dict(content)
                if content_object is None:
                    continue
                content_text = content_object.get("text")
                if content_object.get("type") == "output_text" and isinstance(content_text, str):
                    return content_text
        return None

    @staticmethod
    def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None

        if not raw:
            return None
        return _excerpt(raw, max_chars=max_chars)

    @staticmethod
    def _to_action_request(parsed: dict[str, object], *, raw: str) -> ActionRequest:
        fields = {key: value for key, value in parsed.items() if value is not None}
        kind = fields.get("kind")
        if kind == "write-file" and isinstance(fields.get("content"), str):
            fields["content"] = strip_wrapping_markdown_code_fences(str(fields["content"]))
        if kind == "run-command" and isinstance(fields.get("command"), str):
            fields["command"] = strip_wrapping_markdown_code_fences(str(fields["command"]))
        if kind == "finish" and "message" not in fields and isinstance(fields.get("notes"), str):
            fields["message"] = fields["notes"]
        try:
            return action_from_dict(fields)
        except MalformedMessage as exc:
            LOGGER.warning("llm_action_rejected", extra={"kind": kind, "error": exc.detail})
            raise ParseError(f"Model proposed an invalid action: {exc.detail}", raw=raw) from exc


def _clip(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return f"[{len(text) - limit} characters truncated]\n{text[-limit:]}"


def _excerpt(raw: bytes, *, max_chars: int = 500) -> str:
    excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
    if len(excerpt) > max_chars:
        return f"{excerpt[:max_chars]}..."
    return excerpt


def _fit_event(event: dict[str, object], *, max_chars: int) -> dict[str, object]:
    """Clip the bulky text fields of ``event`` until it serializes within ``max_chars``."""
    limit = max_chars
    while True:
        fitted = copy.deepcopy(event)
        for section, field in _CLIPPABLE_FIELDS:
            container = fitted.get(section)
            if isinstance(container, dict) and isinstance(container.get(field), str):
                container[field] = _clip(container[field], limit)
        serialized = json.dumps([fitted], indent=2, ensure_ascii=False)
        if len(serialized) <= max_chars or limit <= 1:
            return fitted
        limit //= 2
