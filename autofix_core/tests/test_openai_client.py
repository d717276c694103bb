import json

import pytest
from pydantic import SecretStr

from autofix_core.domain.exceptions import AuthenticationFailed, MisconfiguredEndpoint, UpstreamServerError
from autofix_core.domain.models import (
    BackendKind,
    ConversationMessage,
    ConversationRequest,
    StopReason,
    ToolInvocationRequest,
    ToolInvocationResult,
    assemble_fragments,
)
from autofix_core.providers.openai_client import OpenAIClient, map_finish_reason
from autofix_core.providers.registry import build_backend_config
from autofix_core.tools.definitions import DIRECTORY_INSPECTOR

API_KEY = "sk-proj-0123456789abcdefghij"


def make_client(**overrides):
    return OpenAIClient(build_backend_config(BackendKind.OPENAI, credential=SecretStr(API_KEY), **overrides))


def make_request(**kwargs):
    return ConversationRequest(messages=(ConversationMessage.user("hi"),), **kwargs)


class Resp:
    def __init__(self, status_code=200, data=None, text=None):
        self.status_code = status_code
        self._data = data
        self.text = text if text is not None else json.dumps(data or {})
        self.headers = {}

    def json(self):
        if self._data is None:
            raise ValueError("not json")
        return self._data


def install_client(monkeypatch, resp, captured=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            if captured is not None:
                captured.update(url=url, payload=json, headers=headers)
            return resp

    monkeypatch.setattr("httpx.Client", Client)


def test_complete_parses_text_and_usage(monkeypatch):
    captured = {}
    install_client(
        monkeypatch,
        Resp(
            data={
                "choices": [{"message": {"role": "assistant", "content": "done"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 11, "completion_tokens": 4, "total_tokens": 99},
            }
        ),
        captured,
    )
    res = make_client().complete(make_request(system="sys", temperature=0.2))
    assert res.text == "done"
    assert res.stop_reason is StopReason.NATURAL_STOP
    # total 由 input + output 推导，不采信上游的 total_tokens
    assert res.usage.total_tokens == 15
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["headers"]["Authorization"] == f"Bearer {API_KEY}"
    assert captured["payload"]["messages"][0] == {"role": "system", "content": "sys"}
    assert captured["payload"]["temperature"] == 0.2


def test_complete_parses_tool_calls(monkeypatch):
    install_client(
        monkeypatch,
        Resp(
            data={
                "choices": [
                    {
                        "message": {
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [
                                {"id": "call_1", "type": "function", "function": {"name": "directory_inspector", "arguments": '{"operation": "list", "path": "."}'}},
                                {"id": "call_1", "type": "function", "function": {"name": "directory_inspector", "arguments": "not json"}},
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 5, "completion_tokens": 5},
            }
        ),
    )
    res = make_client().complete(make_request())
    assert res.stop_reason is StopReason.TOOL_USE
    assert res.invocations[0].arguments == {"operation": "list", "path": "."}
    assert res.invocations[1].arguments == {"_raw": "not json"}
    # 重复的 id 会被改写为唯一值
    assert len({c.id for c in res.invocations}) == 2


def test_finish_reason_mapping():
    assert map_finish_reason("stop") is StopReason.NATURAL_STOP
    assert map_finish_reason("length") is StopReason.MAX_TOKENS
    assert map_finish_reason("function_call") is StopReason.TOOL_USE
    assert map_finish_reason("content_filter") is StopReason.ERROR
    assert map_finish_reason(None) is StopReason.ERROR
    assert map_finish_reason("something_new") is StopReason.ERROR


def test_missing_usage_is_estimated(monkeypatch):
    install_client(
        monkeypatch,
        Resp(data={"choices": [{"message": {"content": "a longer answer text"}, "finish_reason": "stop"}]}),
    )
    res = make_client().complete(make_request())
    assert res.usage.estimated is True
    assert res.usage.output_tokens == len("a longer answer text") // 4
    assert res.usage.total_tokens == res.usage.input_tokens + res.usage.output_tokens


def test_undecodable_body_is_upstream_error(monkeypatch):
    install_client(monkeypatch, Resp(status_code=200, data=None, text="<html>gateway</html>"))
    with pytest.raises(UpstreamServerError):
        make_client().complete(make_request())


def test_error_text_scrubbed(monkeypatch):
    install_client(monkeypatch, Resp(status_code=403, text=f"Incorrect API key provided: {API_KEY}"))
    with pytest.raises(AuthenticationFailed) as exc_info:
        make_client().complete(make_request())
    assert API_KEY not in exc_info.value.message


def test_tool_results_serialized_in_order(monkeypatch):
    captured = {}
    install_client(
        monkeypatch,
        Resp(data={"choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}], "usage": {"prompt_tokens": 1, "completion_tokens": 1}}),
        captured,
    )
    call = ToolInvocationRequest(id="c1", name="directory_inspector", arguments={"operation": "list", "path": "."})
    req = ConversationRequest(
        messages=(
            ConversationMessage.user("go"),
            ConversationMessage.assistant("", (call,)),
            ConversationMessage.tool_result(ToolInvocationResult(id="c1", success=False, output="invalid path")),
        ),
        tools=(DIRECTORY_INSPECTOR,),
    )
    make_client().complete(req)
    msgs = captured["payload"]["messages"]
    assert msgs[1]["tool_calls"][0]["function"]["arguments"] == json.dumps(call.arguments)
    assert msgs[2] == {"role": "tool", "tool_call_id": "c1", "content": "ERROR: invalid path"}
    assert captured["payload"]["tool_choice"] == "auto"
    assert captured["payload"]["tools"][0]["function"]["name"] == "directory_inspector"


def test_validate_and_context_lengths():
    OpenAIClient.validate(build_backend_config(BackendKind.OPENAI, credential=SecretStr(API_KEY)))
    with pytest.raises(AuthenticationFailed):
        OpenAIClient.validate(build_backend_config(BackendKind.OPENAI))
    with pytest.raises(MisconfiguredEndpoint):
        OpenAIClient.validate(build_backend_config(BackendKind.OPENAI, credential=SecretStr(API_KEY), endpoint="ftp://x"))
    assert make_client(model="gpt-4o-mini").max_context_length() == 128000
    assert make_client(model="gpt-4").max_context_length() == 8192
    assert make_client(model="gpt-3.5-turbo").max_context_length() == 16385
    assert make_client(model="deepseek-coder").max_context_length() == 8192


def test_streaming_assembles_tool_call_deltas(monkeypatch):
    chunks = [
        {"choices": [{"index": 0, "delta": {"role": "assistant", "content": None, "tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "code_editor", "arguments": ""}}]}}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"file_path": "src/a.py",'}}]}}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": ' "old_content": "x", "new_content": "y"}'}}]}}]},
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 20, "completion_tokens": 8}},
    ]
    lines = [f"data: {json.dumps(c)}" for c in chunks] + ["data: [DONE]"]

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
            return StreamResp()

    monkeypatch.setattr("httpx.Client", Client)
    res = assemble_fragments(make_client().complete_streaming(make_request()))
    assert res.stop_reason is StopReason.TOOL_USE
    assert res.invocations[0].name == "code_editor"
    assert res.invocations[0].arguments == {"file_path": "src/a.py", "old_content": "x", "new_content": "y"}
    assert res.usage.total_tokens == 28
