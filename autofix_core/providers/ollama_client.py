"""本地 Ollama 适配器。

Ollama 提供 OpenAI 兼容的 /v1/chat/completions 接口，因此直接复用 OpenAIClient，
只在以下几点上不同：

- endpoint 必须是回环地址（localhost / 127.0.0.1 / ::1）；
- 凭证可选；
- 工具调用默认关闭，取决于具体模型，由 BackendConfig.tools_enabled 打开。
"""

from urllib.parse import urlparse

from autofix_core.domain.exceptions import MisconfiguredEndpoint
from autofix_core.domain.models import BackendKind
from autofix_core.providers.openai_client import OpenAIClient
from autofix_core.providers.registry import BackendConfig

LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")

CONTEXT_LENGTHS = (
    ("codellama", 16384),
    ("mistral", 32768),
    ("llama2", 4096),
    ("llama3", 8192),
    ("phi", 2048),
)
DEFAULT_CONTEXT_LENGTH = 4096


class OllamaClient(OpenAIClient):
    name = "ollama"
    backend_kind = BackendKind.OLLAMA
    requires_credential = False

    @classmethod
    def validate(cls, config: BackendConfig) -> None:
        super().validate(config)
        host = urlparse(config.endpoint).hostname
        if host not in LOOPBACK_HOSTS:
            raise MisconfiguredEndpoint(
                code="NOT_LOOPBACK",
                message=f"Ollama base URL must point to localhost, got {config.endpoint}",
                backend=config.kind.value,
            )

    def supports_tools(self) -> bool:
        return self._config.tools_enabled

    def max_context_length(self) -> int:
        model = self._config.model.lower()
        for prefix, length in CONTEXT_LENGTHS:
            if prefix in model:
                return length
        return DEFAULT_CONTEXT_LENGTH

