"""ModelBackend 集成层。

该包下的模块负责：
- 定义 ModelBackend 抽象接口 (base)。
- 维护后端默认配置与 BackendConfig (registry)。
- 提供各厂商的具体实现 (anthropic_client、openai_client、ollama_client)。

不存在“当前 Provider”这样的全局状态：调用方用 create_backend 显式构造实例，
再把它交给 ConversationEngine；切换后端意味着构造新的引擎。
"""

from typing import Dict, Optional, Type

from autofix_core.domain.models import BackendKind
from autofix_core.infrastructure.logging.logger import logger
from autofix_core.providers.anthropic_client import AnthropicClient
from autofix_core.providers.base import HttpBackend, ModelBackend
from autofix_core.providers.ollama_client import OllamaClient
from autofix_core.providers.openai_client import OpenAIClient
from autofix_core.providers.registry import BackendConfig, backend_config_from_settings

BACKEND_CLASSES: Dict[BackendKind, Type[HttpBackend]] = {
    BackendKind.CLAUDE: AnthropicClient,
    BackendKind.OPENAI: OpenAIClient,
    BackendKind.OLLAMA: OllamaClient,
}


def create_backend(config: Optional[BackendConfig] = None) -> ModelBackend:
    """根据 BackendConfig 构造后端实例；未提供时从全局 Settings 合并。

    先校验再构造，配置错误（缺失凭证、URL 非法、模型为空）在引擎创建之前就抛出。
    """

    if config is None:
        from autofix_core.config.settings import settings

        config = backend_config_from_settings(settings)
    backend_cls = BACKEND_CLASSES[config.kind]
    backend_cls.validate(config)
    backend = backend_cls(config)
    logger.info("backend created", extra={"extra": {"backend": config.describe()}})
    return backend


__all__ = [
    "AnthropicClient",
    "BackendConfig",
    "ModelBackend",
    "OllamaClient",
    "OpenAIClient",
    "create_backend",
]
