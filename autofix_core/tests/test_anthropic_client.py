import json

import httpx
import pytest
from pydantic import SecretStr

from autofix_core.domain.exceptions import (
    AuthenticationFailed,
    InvalidRequest,
    MisconfiguredEndpoint,
    NetworkFailure,
    RateLimited,
    UpstreamServerError,
)
from autofix_core.domain.models import (
    BackendKind,
    ConversationMessage,
    ConversationRequest,
    StopReason,
    ToolInvocationRequest,
    ToolInvocationResult,
    assemble_fragments,
)
from autofix_core.providers.anthropic_client import AnthropicClient
from autofix_core.providers.registry import build_backend_config
from autofix_core.tools.definitions import CODE_EDITOR

API_KEY = "sk-ant-REDACTED"


def make_client(**overrides):
    cfg = build_backend_config(BackendKind.CLAUDE, credential=SecretStr(API_KEY), **overrides)
    return AnthropicClient(cfg)


def make_request(**kwargs):
    return ConversationRequest(messages=(ConversationMessage.user("fix the test"),), system="be careful", **kwargs)


class Resp:
    def __init__(self, status_code=200, data=None, text=None, headers=None):
        self.status_code = status_code
        self._data = data
        self.text = text if text is not None else json.dumps(data or {})
        self.headers = headers or {}

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


def install_client(monkeypatch, resp, captured=None):
    class Client:
        def __init__(self, *a, **kw):
            if captured is not None:
                captured["client_kwargs"] = kw

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            if captured is not None:
                captured.update(url=url, payload=json, headers=headers)
            if isinstance(resp, Exception):
                raise resp
            return resp

    monkeypatch.setattr("httpx.Client", Client)


def test_complete_text_response(monkeypatch):
    captured = {}
    install_client(
        monkeypatch,
        Resp(
            data={
                "content": [{"type": "text", "text": "Fixed the null check."}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 120, "output_tokens": 30},
            }
        ),
        captured,
    )
    res = make_client().complete(make_request(max_tokens=256))
    assert res.text == "Fixed the null check."
    assert res.stop_reason is StopReason.NATURAL_STOP
    assert res.usage.input_tokens == 120
    assert res.usage.total_tokens == res.usage.input_tokens + res.usage.output_tokens
    assert res.usage.estimated is False
    assert captured["url"] == "https://api.anthropic.com/v1/messages"
    assert captured["headers"]["x-api-key"] == API_KEY
    assert captured["headers"]["anthropic-version"] == "2023-06-01"
    assert captured["payload"]["system"] == "be careful"
    assert captured["payload"]["max_tokens"] == 256
    assert captured["client_kwargs"]["trust_env"] is False


def test_complete_tool_use_response(monkeypatch):
    install_client(
        monkeypatch,
        Resp(
            data={
                "content": [
                    {"type": "text", "text": "I'll read the file."},
                    {"type": "tool_use", "id": "toolu_1", "name": "directory_inspector", "input": {"operation": "read", "path": "a.py"}},
                    {"type": "tool_use", "id": "toolu_2", "name": "directory_inspector", "input": {"operation": "read", "path": "b.py"}},
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 10, "output_tokens": 5},
            }
        ),
    )
    res = make_client().complete(make_request())
    assert res.stop_reason is StopReason.TOOL_USE
    assert res.text is None
    assert [c.id for c in res.invocations] == ["toolu_1", "toolu_2"]
    assert res.invocations[1].arguments == {"operation": "read", "path": "b.py"}


def test_unknown_or_missing_stop_reason_maps_to_error(monkeypatch):
    install_client(monkeypatch, Resp(data={"content": [{"type": "text", "text": "hm"}], "stop_reason": "refusal_v9"}))
    res = make_client().complete(make_request())
    assert res.stop_reason is StopReason.ERROR
    # 没有 usage 时由适配器估算
    assert res.usage.estimated is True
    assert res.usage.total_tokens == res.usage.input_tokens + res.usage.output_tokens

    install_client(monkeypatch, Resp(data={"content": [{"type": "text", "text": "hm"}]}))
    assert make_client().complete(make_request()).stop_reason is StopReason.ERROR


def test_payload_merges_tool_results_into_one_user_turn(monkeypatch):
    captured = {}
    install_client(
        monkeypatch,
        Resp(data={"content": [{"type": "text", "text": "ok"}], "stop_reason": "end_turn", "usage": {"input_tokens": 1, "output_tokens": 1}}),
        captured,
    )
    calls = (
        ToolInvocationRequest(id="t1", name="code_editor", arguments={"file_path": "a.py"}),
        ToolInvocationRequest(id="t2", name="code_editor", arguments={"file_path": "b.py"}),
    )
    req = ConversationRequest(
        messages=(
            ConversationMessage.user("fix it"),
            ConversationMessage.assistant("", calls),
            ConversationMessage.tool_result(ToolInvocationResult(id="t1", success=True, output="Edited a.py")),
            ConversationMessage.tool_result(ToolInvocationResult(id="t2", success=False, output="rejected")),
        ),
        tools=(CODE_EDITOR,),
    )
    make_client().complete(req)
    messages = captured["payload"]["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[1]["content"][0]["type"] == "tool_use"
    results = messages[2]["content"]
    assert [b["tool_use_id"] for b in results] == ["t1", "t2"]
    assert results[1]["is_error"] is True
    tool = captured["payload"]["tools"][0]
    assert tool["name"] == "code_editor"
    assert tool["input_schema"]["required"] == ["file_path", "old_content", "new_content"]


def test_error_text_is_scrubbed(monkeypatch):
    body = json.dumps({"error": {"message": f"invalid x-api-key: {API_KEY}"}})
    install_client(monkeypatch, Resp(status_code=401, text=body))
    with pytest.raises(AuthenticationFailed) as exc_info:
        make_client().complete(make_request())
    assert API_KEY not in str(exc_info.value)
    assert "SECRETSECRET" not in exc_info.value.message


def test_status_code_mapping(monkeypatch):
    install_client(monkeypatch, Resp(status_code=429, text="slow down", headers={"retry-after": "12"}))
    with pytest.raises(RateLimited) as exc_info:
        make_client().complete(make_request())
    assert exc_info.value.retry_after == 12.0
    assert exc_info.value.transient is True

    install_client(monkeypatch, Resp(status_code=529, text="overloaded"))
    with pytest.raises(UpstreamServerError):
        make_client().complete(make_request())

    install_client(monkeypatch, Resp(status_code=400, text="bad"))
    with pytest.raises(InvalidRequest):
        make_client().complete(make_request())

    install_client(monkeypatch, Resp(status_code=404, text="no such model"))
    with pytest.raises(MisconfiguredEndpoint):
        make_client().complete(make_request())


def test_network_error(monkeypatch):
    install_client(monkeypatch, httpx.ConnectError("connection refused"))
    with pytest.raises(NetworkFailure):
        make_client().complete(make_request())


def test_empty_messages_rejected():
    with pytest.raises(InvalidRequest):
        make_client().complete(ConversationRequest(messages=()))


def test_validate():
    AnthropicClient.validate(build_backend_config(BackendKind.CLAUDE, credential=SecretStr(API_KEY)))
    with pytest.raises(MisconfiguredEndpoint):
        AnthropicClient.validate(
            build_backend_config(BackendKind.CLAUDE, credential=SecretStr(API_KEY), endpoint="http://api.anthropic.com")
        )
    with pytest.raises(AuthenticationFailed):
        AnthropicClient.validate(build_backend_config(BackendKind.CLAUDE))


def test_capabilities():
    client = make_client()
    assert client.kind() is BackendKind.CLAUDE
    assert client.max_context_length() == 200000
    assert make_client(model="claude-2.1").max_context_length() == 100000
    assert client.supports_tools() and client.supports_streaming()


def test_estimate_tokens_counts_tools_and_output():
    client = make_client()
    base = client.estimate_tokens(make_request(max_tokens=100))
    with_tools = client.estimate_tokens(make_request(max_tokens=100, tools=(CODE_EDITOR,)))
    assert base == len("be careful" + "fix the test") // 4 + 100
    assert with_tools > base
    assert client.estimate_tokens(make_request()) >= 1000


def test_streaming_events(monkeypatch):
    events = [
        {"type": "message_start", "message": {"usage": {"input_tokens": 40, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": "toolu_9", "name": "test_runner", "input": {}}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": '{"operation": '}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": '"test"}'}},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 22}},
        {"type": "message_stop"},
    ]
    lines = []
    for event in events:
        lines.append(f"event: {event['type']}")
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")

    class StreamResp:
        status_code = 200
        headers = {}
        text = ""

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def read(self):
            return b""

        def iter_lines(self):
            return iter(lines)

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, json=None, headers=None, **_):
            assert json["stream"] is True
            return StreamResp()

    monkeypatch.setattr("httpx.Client", Client)
    res = assemble_fragments(make_client().complete_streaming(make_request()))
    assert res.stop_reason is StopReason.TOOL_USE
    assert res.invocations[0].id == "toolu_9"
    assert res.invocations[0].arguments == {"operation": "test"}
    assert res.usage.input_tokens == 40
    assert res.usage.output_tokens == 22
    assert res.usage.total_tokens == 62
