import json

import pytest
from pydantic import SecretStr

from autofix_core.domain.exceptions import MisconfiguredEndpoint
from autofix_core.domain.models import BackendKind, ConversationMessage, ConversationRequest, StopReason
from autofix_core.providers.ollama_client import OllamaClient
from autofix_core.providers.registry import build_backend_config
from autofix_core.tools.definitions import default_tool_defs


def make_client(**overrides):
    return OllamaClient(build_backend_config(BackendKind.OLLAMA, **overrides))


def install_client(monkeypatch, data, captured):
    class Resp:
        status_code = 200
        headers = {}
        text = json.dumps(data)

        def json(self):
            return data

    class Client:
        def __init__(self, *a, **kw):
            captured["timeout"] = kw.get("timeout")

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            captured.update(url=url, payload=json, headers=headers)
            return Resp()

    monkeypatch.setattr("httpx.Client", Client)


def test_complete_without_credential_and_tools_disabled(monkeypatch):
    captured = {}
    install_client(
        monkeypatch,
        {
            "choices": [{"message": {"role": "assistant", "content": "patched"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 9, "completion_tokens": 3},
        },
        captured,
    )
    client = make_client()
    req = ConversationRequest(messages=(ConversationMessage.user("fix"),), tools=tuple(default_tool_defs()))
    res = client.complete(req)
    assert res.text == "patched"
    assert res.stop_reason is StopReason.NATURAL_STOP
    assert res.usage.total_tokens == 12
    assert captured["url"] == "http://localhost:11434/v1/chat/completions"
    assert "Authorization" not in captured["headers"]
    assert "tools" not in captured["payload"]
    assert captured["timeout"] == 120.0


def test_tools_can_be_enabled(monkeypatch):
    captured = {}
    install_client(
        monkeypatch,
        {"choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}], "usage": {"prompt_tokens": 1, "completion_tokens": 1}},
        captured,
    )
    client = make_client(tools_enabled=True, credential=SecretStr("local-token"))
    assert client.supports_tools()
    client.complete(ConversationRequest(messages=(ConversationMessage.user("fix"),), tools=tuple(default_tool_defs())))
    assert len(captured["payload"]["tools"]) == 3
    assert captured["headers"]["Authorization"] == "Bearer local-token"


def test_missing_finish_reason_fails_closed(monkeypatch):
    captured = {}
    install_client(monkeypatch, {"choices": [{"message": {"content": "maybe"}}]}, captured)
    res = make_client().complete(ConversationRequest(messages=(ConversationMessage.user("fix"),)))
    assert res.stop_reason is StopReason.ERROR
    assert res.usage.estimated is True


def test_validate_requires_loopback():
    OllamaClient.validate(build_backend_config(BackendKind.OLLAMA))
    OllamaClient.validate(build_backend_config(BackendKind.OLLAMA, endpoint="http://127.0.0.1:11434/v1"))
    with pytest.raises(MisconfiguredEndpoint):
        OllamaClient.validate(build_backend_config(BackendKind.OLLAMA, endpoint="http://10.0.0.5:11434/v1"))


def test_context_lengths():
    assert make_client().max_context_length() == 4096
    assert make_client(model="codellama:13b").max_context_length() == 16384
    assert make_client(model="mistral").max_context_length() == 32768
    assert make_client(model="llama3:8b").max_context_length() == 8192
    assert make_client(model="qwen2").max_context_length() == 4096
