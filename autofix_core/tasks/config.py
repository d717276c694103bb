"""Task-scoped configuration models."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
from uuid import uuid4

from autofix_core.tools.policy import EditScopePolicy


MAX_TASK_ITERATIONS = 50


@dataclass
class TaskConfig:
    """单次自动修复任务的设置。

    Attributes:
        policy: 编辑范围策略，决定本次只能改应用代码还是只能改测试代码。
        max_iterations: 模型请求的最大轮数（硬上限 50）。
        project_root: 当前项目根目录，所有文件操作都必须局限在这里。
        trace_id: 可选外部 trace 标识；为空时会自动生成。
        verification_scope: 传给验证命令的附加参数，例如失败测试的标识。
    """

    policy: Union[EditScopePolicy, str]
    max_iterations: int
    project_root: str
    trace_id: Optional[str] = None
    verification_scope: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.policy, EditScopePolicy):
            self.policy = EditScopePolicy.parse(str(self.policy))
        if self.max_iterations < 1:
            self.max_iterations = 1
        self.project_root = str(Path(self.project_root).expanduser().resolve())

    @property
    def max_iterations_clamped(self) -> int:
        """防止超过硬上限。"""

        return min(self.max_iterations, MAX_TASK_ITERATIONS)

    def ensure_trace_id(self) -> str:
        if not self.trace_id:
            self.trace_id = f"task-{uuid4().hex}"
        return self.trace_id

    @property
    def root_path(self) -> Path:
        return Path(self.project_root)
