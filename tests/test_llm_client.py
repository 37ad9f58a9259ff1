import io
import json
import socket
from urllib.error import HTTPError, URLError

import pytest

from minion.agent.models import (
    ActionResult,
    Finish,
    ReadFile,
    RunCommand,
    Transcript,
    TranscriptEntry,
    WriteFile,
)
from minion.errors import BackendUnavailable, NotFound, ParseError
from minion.llm.client import DEFAULT_SYSTEM_PROMPT, LLMClient


def _response_body(action: dict[str, object]) -> bytes:
    text = json.dumps(action)
    return json.dumps(
        {"output": [{"content": [{"type": "output_text", "text": text}]}]}
    ).encode("utf-8")


def _action(**fields: object) -> dict[str, object]:
    base: dict[str, object] = {
        "kind": None,
        "path": None,
        "content": None,
        "command": None,
        "timeout_seconds": None,
        "message": None,
        "status": None,
        "failure_category": None,
        "notes": None,
    }
    base.update(fields)
    return base


class FakeResponse:
    def __init__(self, body: bytes) -> None:
        self.body = body

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None

    def read(self):
        return self.body


def _transcript(count: int) -> Transcript:
    transcript = Transcript()
    for step in range(1, count + 1):
        transcript.append(
            TranscriptEntry(
                step=step,
                request=RunCommand(f"echo step-{step}"),
                result=ActionResult.ok(f"step-{step}\n", exit_code=0),
            )
        )
    return transcript


def test_parse_response_read_file() -> None:
    request = LLMClient.parse_response(_response_body(_action(kind="read-file", path="a.py")))

    assert request == ReadFile("a.py")


def test_parse_response_run_command_with_timeout() -> None:
    body = _response_body(_action(kind="run-command", command="pytest -q", timeout_seconds=90))

    assert LLMClient.parse_response(body) == RunCommand("pytest -q", timeout_seconds=90.0)


def test_parse_response_strips_code_fences_from_written_content() -> None:
    body = _response_body(
        _action(kind="write-file", path="hello.py", content="```python\nprint('hi')\n```")
    )

    assert LLMClient.parse_response(body) == WriteFile("hello.py", "print('hi')\n")


def test_parse_response_strips_code_fences_from_commands() -> None:
    body = _response_body(_action(kind="run-command", command="```bash\nls -la\n```"))

    assert LLMClient.parse_response(body) == RunCommand("ls -la\n")


def test_parse_response_finish_falls_back_to_notes() -> None:
    body = _response_body(_action(kind="finish", notes="README added"))

    assert LLMClient.parse_response(body) == Finish("README added")


def test_parse_response_finish_with_failure() -> None:
    body = _response_body(
        _action(
            kind="finish",
            message="the goal contradicts itself",
            status="failure",
            failure_category="task-issues",
        )
    )

    assert LLMClient.parse_response(body) == Finish(
        "the goal contradicts itself", status="failure", failure_category="task-issues"
    )


@pytest.mark.parametrize(
    "action",
    [
        _action(kind="dance"),
        _action(kind="read-file"),
        _action(kind="run-command", command="ls", timeout_seconds=-1),
        _action(kind="finish", message="x", failure_category="boredom"),
    ],
)
def test_parse_response_invalid_action_is_parse_error(action: dict[str, object]) -> None:
    with pytest.raises(ParseError) as excinfo:
        LLMClient.parse_response(_response_body(action))

    assert excinfo.value.raw == json.dumps(action)


@pytest.mark.parametrize(
    ("body", "message"),
    [
        (b"not-json", "parsing error"),
        (b"[]", "top-level object"),
        (b'{"output":[{"content":[{"type":"reasoning","text":"ignored"}]}]}', "no structured"),
        (
            b'{"output":[{"content":[{"type":"output_text","text":"nope"}]}]}',
            "structured output parsing error",
        ),
        (
            b'{"output":[{"content":[{"type":"output_text","text":"[1]"}]}]}',
            "not an object",
        ),
    ],
)
def test_parse_response_unusable_bodies(body: bytes, message: str) -> None:
    with pytest.raises(ParseError, match=message):
        LLMClient.parse_response(body)


def test_decide_posts_goal_and_history(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["headers"] = dict(req.header_items())
        captured["payload"] = json.loads(req.data)
        captured["timeout"] = timeout
        return FakeResponse(_response_body(_action(kind="finish", message="done")))

    monkeypatch.setattr("minion.llm.client.request.urlopen", fake_urlopen)
    client = LLMClient(api_key="sk-test", model="gpt-4.1", timeout=12.0)

    decision = client.decide("add README", _transcript(1))

    assert decision == Finish("done")
    assert captured["url"] == "https://api.openai.com/v1/responses"
    assert captured["headers"]["Authorization"] == "Bearer sk-test"
    assert captured["timeout"] == 12.0
    user_message = captured["payload"]["input"][1]["content"]
    assert "add README" in user_message
    assert "echo step-1" in user_message


def test_payload_schema_is_strict_and_complete() -> None:
    client = LLMClient(api_key=None, model="gpt-4.1")

    payload = client._build_payload("test goal", [])

    text_format = payload["text"]["format"]
    assert text_format["type"] == "json_schema"
    assert text_format["strict"] is True
    schema = text_format["schema"]
    assert schema["additionalProperties"] is False
    assert sorted(schema["required"]) == sorted(schema["properties"])
    assert schema["properties"]["kind"]["enum"] == [
        "read-file",
        "write-file",
        "run-command",
        "finish",
    ]
    assert payload["input"][0]["content"] == DEFAULT_SYSTEM_PROMPT


def test_payload_includes_reasoning_effort_when_configured() -> None:
    client = LLMClient(api_key=None, model="gpt-5.2", reasoning_effort="medium")

    payload = client._build_payload("test goal", [])

    assert payload["reasoning"] == {"effort": "medium"}


def test_payload_omits_reasoning_effort_when_unset() -> None:
    client = LLMClient(api_key=None, model="gpt-4.1-mini")

    assert "reasoning" not in client._build_payload("test goal", [])


def test_payload_uses_custom_system_prompt() -> None:
    client = LLMClient(api_key=None, model="gpt-4.1", system_prompt="be careful")

    payload = client._build_payload("test goal", [])

    assert payload["input"][0]["content"] == "be careful"


def test_payload_user_message_formats_goal_and_context() -> None:
    client = LLMClient(api_key=None, model="gpt-4.1")

    payload = client._build_payload("find large files", [{"step": 1, "summary": "ls -> exit 0"}])

    user_message = payload["input"][-1]["content"]
    assert user_message.startswith("Task:\nfind large files")
    assert "Actions so far (ordered oldest to newest):" in user_message
    assert '"summary": "ls -> exit 0"' in user_message


def test_payload_trims_context_to_max_chars_keeping_newest() -> None:
    client = LLMClient(api_key=None, model="gpt-4.1", max_context_chars=120)

    payload = client._build_payload(
        "test",
        [{"step": 1, "summary": "a" * 120}, {"step": 2, "summary": "b" * 40}],
    )

    user_message = payload["input"][-1]["content"]
    assert '"step": 1' not in user_message
    assert '"step": 2' in user_message


def test_payload_empty_context_when_limit_non_positive() -> None:
    client = LLMClient(api_key=None, model="gpt-4.1", max_context_chars=0)

    payload = client._build_payload("test", [{"step": 1, "summary": "x"}])

    assert "Actions so far (ordered oldest to newest):\n[]" in payload["input"][-1]["content"]


def test_older_history_is_summarized() -> None:
    client = LLMClient(api_key=None, model="gpt-4.1", full_history_actions=5)

    context = client._build_context(_transcript(7))

    assert context[0] == {"step": 1, "summary": "run-command echo step-1 -> exit 0"}
    assert context[1] == {"step": 2, "summary": "run-command echo step-2 -> exit 0"}
    assert [event["step"] for event in context[2:]] == [3, 4, 5, 6, 7]
    assert context[2]["action"] == {
        "kind": "run-command",
        "command": "echo step-3",
        "timeout_seconds": None,
    }
    assert context[2]["result"]["output"] == "step-3\n"


def test_failed_and_rejected_entries_are_described() -> None:
    transcript = Transcript()
    transcript.append(
        TranscriptEntry(
            step=1,
            request=ReadFile("missing.txt"),
            result=ActionResult.failure(NotFound("file does not exist: missing.txt")),
        )
    )
    transcript.append(
        TranscriptEntry(
            step=2,
            request=None,
            result=ActionResult.failure(ParseError("unknown action kind: 'dance'")),
            raw_response='{"kind": "dance"}',
        )
    )
    client = LLMClient(api_key=None, model="gpt-4.1", full_history_actions=1)

    context = client._build_context(transcript)

    assert context[0]["summary"] == (
        "read-file missing.txt -> failed (NotFound: file does not exist: missing.txt)"
    )
    assert context[1]["action"] is None
    assert context[1]["rejected_response"] == '{"kind": "dance"}'
    assert context[1]["result"]["error"]["kind"] == "ParseError"


def test_long_output_is_clipped_to_the_tail() -> None:
    transcript = Transcript()
    transcript.append(
        TranscriptEntry(
            step=1,
            request=RunCommand("make"),
            result=ActionResult.ok("x" * 50 + "END", exit_code=0),
        )
    )
    client = LLMClient(api_key=None, model="gpt-4.1", max_output_chars=10)

    output = client._build_context(transcript)[0]["result"]["output"]

    assert output.endswith("xxxxxxxEND")
    assert "43 characters truncated" in output


def test_decide_http_error_is_backend_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(*_args, **_kwargs):
        raise HTTPError(
            url="https://example.com",
            code=503,
            msg="Service Unavailable",
            hdrs=None,
            fp=None,
        )

    monkeypatch.setattr("minion.llm.client.request.urlopen", fake_urlopen)
    client = LLMClient(api_key=None, model="gpt-4.1")

    with pytest.raises(BackendUnavailable, match="HTTP 503"):
        client.decide("test", Transcript())


def test_decide_http_error_includes_response_excerpt(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeHTTPError(HTTPError):
        def __init__(self):
            super().__init__(
                url="https://example.com",
                code=400,
                msg="Bad Request",
                hdrs=None,
                fp=io.BytesIO(b'{"error":{"message":"invalid schema"}}'),
            )

    def fake_urlopen(*_args, **_kwargs):
        raise FakeHTTPError()

    monkeypatch.setattr("minion.llm.client.request.urlopen", fake_urlopen)
    client = LLMClient(api_key=None, model="gpt-4.1")

    with pytest.raises(BackendUnavailable) as excinfo:
        client.decide("test", Transcript())

    assert "HTTP 400" in excinfo.value.detail
    assert "invalid schema" in excinfo.value.detail


@pytest.mark.parametrize(
    ("error", "message"),
    [
        (URLError("connection refused"), "transport error"),
        (socket.timeout("timed out"), "timed out after"),
        (ConnectionResetError(104, "reset by peer"), "connection error"),
    ],
)
def test_decide_transport_failures_are_backend_unavailable(
    monkeypatch: pytest.MonkeyPatch, error: Exception, message: str
) -> None:
    def fake_urlopen(*_args, **_kwargs):
        raise error

    monkeypatch.setattr("minion.llm.client.request.urlopen", fake_urlopen)
    client = LLMClient(api_key=None, model="gpt-4.1")

    with pytest.raises(BackendUnavailable, match=message):
        client.decide("test", Transcript())


def test_decide_invalid_body_is_parse_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "minion.llm.client.request.urlopen", lambda *_a, **_k: FakeResponse(b"not-json")
    )
    client = LLMClient(api_key=None, model="gpt-4.1")

    with pytest.raises(ParseError, match="parsing error") as excinfo:
        client.decide("test", Transcript())

    assert excinfo.value.raw == "not-json"


def test_oversized_newest_entry_is_shrunk_not_dropped() -> None:
    transcript = Transcript()
    transcript.append(
        TranscriptEntry(
            step=1,
            request=RunCommand("cat big.log"),
            result=ActionResult.ok("\n" * 8000, stderr='"' * 8000, exit_code=0),
        )
    )
    client = LLMClient(api_key=None, model="gpt-4.1")

    payload = client._build_payload("test", client._build_context(transcript))

    user_message = payload["input"][-1]["content"]
    assert "Actions so far (ordered oldest to newest):\n[]" not in user_message
    context_json = user_message.split("Actions so far (ordered oldest to newest):\n", 1)[1]
    context_json = context_json.split("\n\nUse both the task", 1)[0]
    context = json.loads(context_json)
    assert len(context_json) <= client.max_context_chars
    assert context[0]["step"] == 1
    assert context[0]["action"]["command"] == "cat big.log"
    assert "characters truncated" in context[0]["result"]["output"]
    assert context[0]["result"]["exit_code"] == 0


def test_newest_entry_kept_while_older_ones_are_trimmed() -> None:
    client = LLMClient(api_key=None, model="gpt-4.1", max_context_chars=400)

    serialized = client._serialize_context_with_limit(
        [
            {"step": 1, "summary": "o" * 100},
            {"step": 2, "action": None, "result": {"output": "x" * 2000, "stderr": ""}},
        ],
        max_context_chars=400,
    )

    context = json.loads(serialized)
    assert [event["step"] for event in context] == [2]
    assert len(serialized) <= 400
    assert context[0]["result"]["output"].endswith("xxxx")
