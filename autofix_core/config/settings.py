"""配置管理模块。

支持从环境变量、.env、config.yaml 加载配置，优先级依次降低。
凭证字段使用 SecretStr，打印配置时不会泄露明文。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TEST_PATH_PATTERNS = [
    "tests/*",
    "test/*",
    "*/tests/*",
    "*/test/*",
    "test_*.py",
    "*_test.py",
    "*_test.go",
    "*.test.js",
    "*.test.ts",
    "*.spec.js",
    "*.spec.ts",
    "*Tests/*",
    "*Tests.swift",
    "*Test.java",
    "*Test.kt",
]


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("AUTOFIX_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置。

    provider/api_base/model/timeout_secs/max_retries/rate_limit_tpm 为空时，
    使用 providers.registry 中对应后端的默认值。
    """

    # ---- Backend 相关配置 ----
    provider: str = Field(default="claude", description="后端种类：claude、openai、ollama")
    anthropic_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("anthropic_api_key", "ANTHROPIC_API_KEY"),
        description="Anthropic API 密钥",
    )
    openai_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("openai_api_key", "OPENAI_API_KEY"),
        description="OpenAI 或兼容服务的 API 密钥",
    )
    ollama_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("ollama_api_key", "OLLAMA_API_KEY"),
        description="本地 Ollama 的可选密钥",
    )
    api_base: Optional[str] = Field(default=None, description="覆盖默认 base URL")
    model: Optional[str] = Field(default=None, description="模型 ID，不做枚举校验")
    timeout_secs: Optional[float] = Field(default=None, ge=1.0, description="单次请求超时（秒）")
    max_retries: Optional[int] = Field(default=None, ge=0, le=10, description="暂时性错误的重试上限")
    rate_limit_tpm: Optional[int] = Field(default=None, ge=0, description="每分钟 token 上限，0 表示不限")
    ollama_tools_enabled: bool = Field(default=False, description="本地模型是否开启工具调用")

    # ---- 会话循环 ----
    max_iterations: int = Field(default=20, ge=1, le=50, description="单次修复的最大模型请求轮数")
    max_output_tokens: int = Field(default=1024, ge=1, description="每轮最大输出 token")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="生成温度")
    stream_responses: bool = Field(default=False, description="后端支持时使用流式调用")
    poll_interval: float = Field(default=0.5, gt=0.0, le=5.0, description="取消检查的轮询间隔（秒）")

    # ---- 验证与工具 ----
    verification_command: Optional[str] = Field(default=None, description="验证用的测试命令")
    build_command: Optional[str] = Field(default=None, description="test_runner 的构建命令")
    verification_timeout_secs: float = Field(default=600.0, ge=1.0, description="验证命令超时（秒）")
    verification_output_limit: int = Field(default=8000, ge=256, description="失败详情回传给模型的最大字符数")
    test_path_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_TEST_PATH_PATTERNS),
        description="判定测试源文件的 glob 列表",
    )
    workspace_root: str = Field(
        default_factory=lambda: str(Path.cwd()),
        description="工具可访问的项目根目录",
    )

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否截断日志内容")

    model_config = SettingsConfigDict(
        env_prefix="AUTOFIX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
        protected_namespaces=(),
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("anthropic_api_key", "openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        if v is not None and 0 < len(v.get_secret_value()) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return (v or "claude").strip().lower()

    def credential_for(self, provider: str) -> Optional[SecretStr]:
        """返回指定后端对应的凭证字段。"""

        return {
            "claude": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "ollama": self.ollama_api_key,
        }.get(provider.lower())

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
