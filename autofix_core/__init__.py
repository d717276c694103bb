"""Autofix Core 顶层包。

该包提供自动修复 Agent 的核心实现：配置加载、领域模型、ModelBackend 适配、
按后端的速率控制、工具分发与编辑范围策略、会话引擎、验证与任务级入口。
"""

from autofix_core.tasks import TaskConfig, run_autofix

__all__ = ["TaskConfig", "run_autofix"]
