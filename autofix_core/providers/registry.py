"""后端默认配置与 BackendConfig 构建。

本模块把“配置来源里的可选覆盖项”与“每种后端的默认值”合并为一个不可变的
BackendConfig，由调用方在构造引擎之前一次性生成，整个会话期间不再修改。
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from pydantic import SecretStr

from autofix_core.domain.models import BackendKind


@dataclass(frozen=True)
class ProviderDefaults:
    """某种后端的默认配置。"""

    kind: BackendKind
    base_url: str
    model: str
    timeout_secs: float
    max_retries: int
    rate_limit_tpm: int
    requires_credential: bool


PROVIDER_DEFAULTS: Mapping[BackendKind, ProviderDefaults] = {
    BackendKind.CLAUDE: ProviderDefaults(
        kind=BackendKind.CLAUDE,
        base_url="https://api.anthropic.com",
        model="claude-sonnet-4",
        timeout_secs=30.0,
        max_retries=3,
        rate_limit_tpm=30000,
        requires_credential=True,
    ),
    BackendKind.OPENAI: ProviderDefaults(
        kind=BackendKind.OPENAI,
        base_url="https://api.openai.com/v1",
        model="gpt-4",
        timeout_secs=30.0,
        max_retries=3,
        rate_limit_tpm=90000,
        requires_credential=True,
    ),
    # 本地模型可能较慢，默认不限流
    BackendKind.OLLAMA: ProviderDefaults(
        kind=BackendKind.OLLAMA,
        base_url="http://localhost:11434/v1",
        model="llama2",
        timeout_secs=120.0,
        max_retries=3,
        rate_limit_tpm=0,
        requires_credential=False,
    ),
}


@dataclass(frozen=True)
class BackendConfig:
    """单个后端的完整配置（不可变）。

    credential 使用 SecretStr，repr/str 中只显示 '**********'。
    """

    kind: BackendKind
    credential: SecretStr
    endpoint: str
    model: str
    timeout: float = 30.0
    max_retries: int = 3
    rate_limit_tpm: int = 0
    tools_enabled: bool = True

    @property
    def api_key(self) -> str:
        return self.credential.get_secret_value()

    def describe(self) -> Dict[str, object]:
        """可安全写入日志的配置摘要（不含凭证）。"""

        return {
            "kind": self.kind.value,
            "endpoint": self.endpoint,
            "model": self.model,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "rate_limit_tpm": self.rate_limit_tpm,
            "tools_enabled": self.tools_enabled,
            "has_credential": bool(self.api_key),
        }


def get_provider_defaults(kind: BackendKind) -> ProviderDefaults:
    return PROVIDER_DEFAULTS[kind]


def build_backend_config(
    kind: BackendKind,
    *,
    credential: Optional[SecretStr] = None,
    endpoint: Optional[str] = None,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
    rate_limit_tpm: Optional[int] = None,
    tools_enabled: Optional[bool] = None,
) -> BackendConfig:
    """用默认值补全未提供的字段。"""

    defaults = get_provider_defaults(kind)
    if tools_enabled is None:
        tools_enabled = kind is not BackendKind.OLLAMA
    return BackendConfig(
        kind=kind,
        credential=credential or SecretStr(""),
        endpoint=(endpoint or defaults.base_url).rstrip("/"),
        model=model or defaults.model,
        timeout=timeout if timeout is not None else defaults.timeout_secs,
        max_retries=max_retries if max_retries is not None else defaults.max_retries,
        rate_limit_tpm=rate_limit_tpm if rate_limit_tpm is not None else defaults.rate_limit_tpm,
        tools_enabled=tools_enabled,
    )


def backend_config_from_settings(cfg) -> BackendConfig:
    """从 Settings 合并出 BackendConfig。"""

    kind = BackendKind.parse(cfg.provider)
    return build_backend_config(
        kind,
        credential=cfg.credential_for(kind.value),
        endpoint=cfg.api_base,
        model=cfg.model,
        timeout=cfg.timeout_secs,
        max_retries=cfg.max_retries,
        rate_limit_tpm=cfg.rate_limit_tpm,
        tools_enabled=cfg.ollama_tools_enabled if kind is BackendKind.OLLAMA else True,
    )
