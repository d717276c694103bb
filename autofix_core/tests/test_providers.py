import pytest
from pydantic import SecretStr

from autofix_core.domain.exceptions import AuthenticationFailed, MisconfiguredEndpoint
from autofix_core.domain.models import BackendKind
from autofix_core.providers import AnthropicClient, OllamaClient, OpenAIClient, create_backend
from autofix_core.providers.registry import build_backend_config


def test_create_backend_per_kind():
    claude = create_backend(build_backend_config(BackendKind.CLAUDE, credential=SecretStr("sk-ant-0123456789")))
    openai = create_backend(build_backend_config(BackendKind.OPENAI, credential=SecretStr("sk-0123456789abcdef")))
    ollama = create_backend(build_backend_config(BackendKind.OLLAMA))
    assert isinstance(claude, AnthropicClient)
    assert isinstance(openai, OpenAIClient)
    assert isinstance(ollama, OllamaClient)
    assert ollama.kind() is BackendKind.OLLAMA


def test_create_backend_validates_before_construction():
    with pytest.raises(AuthenticationFailed):
        create_backend(build_backend_config(BackendKind.OPENAI))
    with pytest.raises(MisconfiguredEndpoint):
        create_backend(build_backend_config(BackendKind.OPENAI, credential=SecretStr("sk-0123456789abcdef"), model=" "))


def test_compatible_endpoint_override():
    backend = create_backend(
        build_backend_config(
            BackendKind.OPENAI,
            credential=SecretStr("sk-0123456789abcdef"),
            endpoint="https://api.deepseek.com/v1/",
            model="deepseek-chat",
        )
    )
    assert backend.config.endpoint == "https://api.deepseek.com/v1"
    assert backend.config.model == "deepseek-chat"


def test_create_backend_from_settings(monkeypatch):
    class DummySettings:
        provider = "ollama"
        api_base = None
        model = "codellama"
        timeout_secs = None
        max_retries = 2
        rate_limit_tpm = None
        ollama_tools_enabled = True

        def credential_for(self, provider):
            return None

    monkeypatch.setattr("autofix_core.config.settings.settings", DummySettings())
    backend = create_backend()
    assert isinstance(backend, OllamaClient)
    assert backend.config.max_retries == 2
    assert backend.supports_tools()
