"""Task-level 自动修复入口。

build_engine 负责把各组件显式组装起来：后端（工厂校验后构造）、RateGovernor、
本地工具与 ToolDispatcher、验证命令。没有任何全局的“当前后端”，
切换后端就是重新构造一个引擎。

RateGovernor 跟随后端：传入同一个后端实例的多个引擎共用该后端的 governor，
同一窗口内的 admit 在它的锁内串行；也可以显式传入 governor 在多个后端之间共享。
"""

from __future__ import annotations

from typing import Optional

from autofix_core.agents.cancellation import CancellationToken
from autofix_core.agents.engine import ConversationEngine, ConversationOutcome, EngineConfig
from autofix_core.config.settings import Settings, settings as default_settings
from autofix_core.domain.exceptions import BusinessError
from autofix_core.infrastructure.logging.logger import logger
from autofix_core.infrastructure.rate_governor import RateGovernor
from autofix_core.providers import create_backend
from autofix_core.providers.base import ModelBackend
from autofix_core.providers.registry import BackendConfig, backend_config_from_settings, get_provider_defaults
from autofix_core.tools.definitions import default_tool_defs
from autofix_core.tools.dispatcher import ToolDispatcher
from autofix_core.tools.local_tools import default_local_tools
from autofix_core.tools.policy import SourceClassifier
from autofix_core.verification.runner import CommandVerificationRunner, VerificationRunner

from .config import TaskConfig


def build_engine(
    config: TaskConfig,
    cfg: Optional[Settings] = None,
    *,
    backend: Optional[ModelBackend] = None,
    verifier: Optional[VerificationRunner] = None,
    governor: Optional[RateGovernor] = None,
) -> ConversationEngine:
    """按 Settings 与 TaskConfig 组装一个 ConversationEngine。"""

    cfg = cfg or default_settings
    if backend is None:
        backend = create_backend(backend_config_from_settings(cfg))
    backend_config = getattr(backend, "config", None)
    if not isinstance(backend_config, BackendConfig):
        backend_config = backend_config_from_settings(cfg)
    if governor is None:
        governor = getattr(backend, "governor", None) or _governor_for(backend, backend_config, cfg)
    tools = default_local_tools(
        config.project_root,
        build_command=cfg.build_command,
        test_command=cfg.verification_command,
        timeout=cfg.verification_timeout_secs,
    )
    dispatcher = ToolDispatcher(
        tools,
        tool_defs=default_tool_defs(),
        classifier=SourceClassifier(cfg.test_path_patterns),
        workspace_root=config.project_root,
    )
    if verifier is None:
        if not cfg.verification_command:
            raise BusinessError(
                code="MISSING_VERIFICATION_COMMAND",
                message="AUTOFIX_VERIFICATION_COMMAND must be set to verify fixes",
            )
        verifier = CommandVerificationRunner(
            cfg.verification_command,
            cwd=config.project_root,
            timeout=cfg.verification_timeout_secs,
            output_limit=cfg.verification_output_limit,
            poll_interval=cfg.poll_interval,
        )
    engine_config = EngineConfig(
        max_output_tokens=cfg.max_output_tokens,
        temperature=cfg.temperature,
        stream=cfg.stream_responses,
        poll_interval=cfg.poll_interval,
        verification_output_limit=cfg.verification_output_limit,
        max_retries=backend_config.max_retries,
    )
    return ConversationEngine(
        backend,
        dispatcher,
        verifier,
        governor=governor,
        config=engine_config,
    )


def _governor_for(backend: ModelBackend, backend_config: BackendConfig, cfg: Settings) -> RateGovernor:
    """后端自身没有 governor 时，按后端种类新建一个。"""

    kind = backend.kind()
    ceiling = (
        backend_config.rate_limit_tpm
        if backend_config.kind is kind
        else get_provider_defaults(kind).rate_limit_tpm
    )
    return RateGovernor(backend=kind.value, ceiling=ceiling, poll_interval=cfg.poll_interval)


def run_autofix(
    failure_report: str,
    config: TaskConfig,
    cfg: Optional[Settings] = None,
    *,
    backend: Optional[ModelBackend] = None,
    verifier: Optional[VerificationRunner] = None,
    cancel_token: Optional[CancellationToken] = None,
    governor: Optional[RateGovernor] = None,
) -> ConversationOutcome:
    """对一份失败报告执行一次自动修复。"""

    trace_id = config.ensure_trace_id()
    engine = build_engine(config, cfg, backend=backend, verifier=verifier, governor=governor)
    logger.info(
        "autofix task started",
        extra={
            "extra": {
                "trace_id": trace_id,
                "policy": config.policy.value,
                "max_iterations": config.max_iterations_clamped,
                "project_root": config.project_root,
            }
        },
    )
    return engine.run_conversation(
        failure_report,
        config.policy,
        config.max_iterations_clamped,
        cancel_token=cancel_token,
        trace_id=trace_id,
        verification_scope=config.verification_scope,
    )
