"""工具调用分发。

ToolDispatcher 把模型请求的一次 ToolInvocationRequest 交给对应的 ToolCollaborator，
并保证：

- 会修改文件的调用在执行之前先过编辑范围策略，违规的调用直接返回失败结果，
  工具本身不会被调用；
- 未注册的工具、参数缺失、工具内部抛出的异常都转换为 success=False 的结果，
  不会中断会话循环，模型可以据此自行修正。
- 传入 cancel_token 时，已取消的运行不会再调用任何工具。
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from autofix_core.domain.models import ToolInvocationRequest, ToolInvocationResult
from autofix_core.infrastructure.logging.logger import logger
from autofix_core.tools.definitions import ToolDef, default_tool_defs
from autofix_core.tools.policy import EditScopePolicy, SourceClassifier

MAX_TOOL_OUTPUT = 20000


@dataclass(frozen=True)
class ToolOutput:
    success: bool
    output: str


class ToolCollaborator(Protocol):
    """外部工具协议：execute(action_name, arguments) -> ToolOutput。"""

    def execute(self, action_name: str, arguments: Dict[str, Any]) -> ToolOutput:
        ...


class ToolDispatcher:
    def __init__(
        self,
        collaborators: Dict[str, ToolCollaborator],
        tool_defs: Optional[Iterable[ToolDef]] = None,
        classifier: Optional[SourceClassifier] = None,
        workspace_root: Optional[str] = None,
    ):
        self._collaborators = dict(collaborators)
        defs = list(tool_defs) if tool_defs is not None else default_tool_defs()
        self._defs: Dict[str, ToolDef] = {d.name: d for d in defs}
        self._classifier = classifier or SourceClassifier()
        self._root = Path(workspace_root).expanduser().resolve() if workspace_root else None

    @property
    def tool_defs(self) -> List[ToolDef]:
        """只暴露已注册了实现的工具。"""

        return [d for name, d in self._defs.items() if name in self._collaborators]

    def dispatch(
        self,
        call: ToolInvocationRequest,
        policy: EditScopePolicy,
        log_ctx: Optional[Dict[str, Any]] = None,
        cancel_token=None,
    ) -> ToolInvocationResult:
        ctx = dict(log_ctx or {})
        ctx.update(tool=call.name, call_id=call.id)
        collaborator = self._collaborators.get(call.name)
        if collaborator is None:
            return self._fail(call, f"Tool not registered: {call.name}", ctx)

        tool_def = self._defs.get(call.name)
        if tool_def is not None and tool_def.mutating:
            rejection = self._check_scope(tool_def, call.arguments, policy)
            if rejection:
                ctx["policy"] = policy.value
                return self._fail(call, rejection, ctx, level=logging.WARNING)

        # 取消之后不再启动新的工具调用，已在执行中的写入无法撤回
        if cancel_token is not None and cancel_token.is_cancelled:
            return self._fail(call, f"Tool {call.name} not started: run cancelled", ctx)

        try:
            result = collaborator.execute(call.name, dict(call.arguments))
        except Exception as exc:
            return self._fail(call, f"Tool {call.name} raised {type(exc).__name__}: {exc}", ctx)
        output = result.output or ""
        if len(output) > MAX_TOOL_OUTPUT:
            output = output[:MAX_TOOL_OUTPUT] + "\n... truncated ..."
        logger.info("tool executed", extra={"extra": {**ctx, "success": result.success, "output_chars": len(output)}})
        return ToolInvocationResult(id=call.id, success=bool(result.success), output=output)

    def _check_scope(self, tool_def: ToolDef, arguments: Dict[str, Any], policy: EditScopePolicy) -> Optional[str]:
        for param in tool_def.path_params:
            raw = arguments.get(param)
            if not isinstance(raw, str) or not raw.strip():
                return f"Missing required path argument: {param}"
            relative = self._relative(raw)
            if relative is None:
                return f"Edit rejected: {raw} resolves outside the workspace"
            reason = self._classifier.violation(policy, relative)
            if reason:
                return reason
        return None

    def _relative(self, raw: str) -> Optional[str]:
        """按工具实际写入的位置解析路径，返回相对 workspace 根目录的 posix 路径。

        路径中的 `..` 与符号链接都先解析再分类；解析失败或越出根目录时返回 None。
        """

        root = self._root or Path.cwd().resolve()
        try:
            resolved = (root / Path(raw).expanduser()).resolve()
            return resolved.relative_to(root).as_posix()
        except (OSError, RuntimeError, ValueError):
            return None

    @staticmethod
    def _fail(call: ToolInvocationRequest, message: str, ctx: Dict[str, Any], level: int = logging.INFO) -> ToolInvocationResult:
        logger.log(level, "tool invocation failed", extra={"extra": {**ctx, "error": message}})
        return ToolInvocationResult(id=call.id, success=False, output=message)
