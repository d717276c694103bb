"""统一的对话与结果数据模型。

本模块定义了 Agent 内部在不同 ModelBackend 之间共享的标准数据结构：

- ConversationMessage: 一条对话消息（user/assistant/tool_result）。
- ConversationRequest: 每一轮发给 ModelBackend 的完整请求。
- NormalizedResponse: 从各家响应解析后的统一结果。
- ResponseFragment: 流式返回中的一个增量片段。

所有 Provider 适配器（如 AnthropicClient）都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换，厂商类型不得越过适配层。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from autofix_core.tools.definitions import ToolDef


# 对话消息角色（tool_result 在各家 API 中分别映射为 tool / user 角色）
Role = Literal["user", "assistant", "tool_result"]


class BackendKind(str, Enum):
    """ModelBackend 的种类。"""

    CLAUDE = "claude"
    OPENAI = "openai"
    OLLAMA = "ollama"

    @classmethod
    def parse(cls, raw: str) -> "BackendKind":
        """大小写不敏感地解析种类名称。"""

        key = (raw or "").strip().lower()
        for kind in cls:
            if kind.value == key:
                return kind
        raise ValueError(f"Unknown provider type: {raw!r}")


class StopReason(str, Enum):
    """模型一轮输出停止的原因（终止原因）。"""

    NATURAL_STOP = "natural_stop"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    TOOL_USE = "tool_use"
    ERROR = "error"


@dataclass(frozen=True)
class TokenUsage:
    """token 统计（统一格式）。

    - estimated: 上游没有返回 usage 时由适配器估算，置为 True。
    """

    input_tokens: int
    output_tokens: int
    total_tokens: int = -1
    estimated: bool = False

    def __post_init__(self) -> None:
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts must be non-negative")
        # total 永远由 input + output 推导，忽略上游给出的不一致数值
        object.__setattr__(self, "total_tokens", self.input_tokens + self.output_tokens)

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            estimated=self.estimated or other.estimated,
        )

    @classmethod
    def zero(cls) -> "TokenUsage":
        return cls(input_tokens=0, output_tokens=0)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "input": self.input_tokens,
            "output": self.output_tokens,
            "total": self.total_tokens,
            "estimated": self.estimated,
        }


@dataclass(frozen=True)
class ToolInvocationRequest:
    """模型发起的一次工具调用请求。id 在同一轮内唯一。"""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolInvocationResult:
    """工具执行结果（文本形式），id 与请求一一对应。"""

    id: str
    success: bool
    output: str


@dataclass(frozen=True)
class ConversationMessage:
    """一条对话消息。

    - role: user / assistant / tool_result。
    - content: 纯文本内容。
    - tool_invocations: 当 role 为 "assistant" 且模型触发了工具调用时，保存调用列表，
      后续轮次需要原样回放给 Provider。
    - tool_call_id / success: 当 role 为 "tool_result" 时，关联对应的调用及其成败。
    """

    role: Role
    content: str
    tool_invocations: Tuple[ToolInvocationRequest, ...] = ()
    tool_call_id: Optional[str] = None
    success: bool = True

    @classmethod
    def user(cls, content: str) -> "ConversationMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls, content: str, invocations: Iterable[ToolInvocationRequest] = ()
    ) -> "ConversationMessage":
        return cls(role="assistant", content=content, tool_invocations=tuple(invocations))

    @classmethod
    def tool_result(cls, result: ToolInvocationResult) -> "ConversationMessage":
        return cls(
            role="tool_result",
            content=result.output,
            tool_call_id=result.id,
            success=result.success,
        )


@dataclass(frozen=True)
class ConversationRequest:
    """一次完整的模型请求，每轮新建、只消费一次。"""

    messages: Tuple[ConversationMessage, ...]
    system: Optional[str] = None
    tools: Tuple["ToolDef", ...] = ()
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    stream: bool = False


@dataclass(frozen=True)
class NormalizedResponse:
    """一次模型调用解析后的统一结果。

    不变式（构造时校验）：
    - text 非空 与 invocations 非空 二者恰有其一；
    - usage.total == usage.input + usage.output（由 TokenUsage 保证）。
    """

    text: Optional[str]
    invocations: Tuple[ToolInvocationRequest, ...]
    stop_reason: StopReason
    usage: TokenUsage

    def __post_init__(self) -> None:
        has_text = bool(self.text)
        has_calls = bool(self.invocations)
        if has_text == has_calls:
            raise ValueError("NormalizedResponse needs exactly one of text or invocations")
        ids = [call.id for call in self.invocations]
        if len(ids) != len(set(ids)):
            raise ValueError("tool invocation ids must be unique within a turn")

    @property
    def requests_tools(self) -> bool:
        return bool(self.invocations)


@dataclass(frozen=True)
class ResponseFragment:
    """流式返回中的一个增量片段。

    一个片段可以只携带文本增量，也可以携带一次已完整拼装的工具调用，
    最后一个片段通常携带 stop_reason 与 usage。
    """

    text_delta: str = ""
    invocation: Optional[ToolInvocationRequest] = None
    stop_reason: Optional[StopReason] = None
    usage: Optional[TokenUsage] = None


def build_response(
    text: Optional[str],
    invocations: Iterable[ToolInvocationRequest],
    stop_reason: StopReason,
    usage: TokenUsage,
) -> NormalizedResponse:
    """按统一规则构造 NormalizedResponse。

    - 有工具调用时终止原因一律视为 tool_use，伴随的文本不进入结果；
    - 既无文本也无调用时，用占位文本说明终止原因，保证不变式成立。
    """

    calls = tuple(invocations)
    if calls:
        return NormalizedResponse(text=None, invocations=calls, stop_reason=StopReason.TOOL_USE, usage=usage)
    body = (text or "").strip()
    if not body:
        body = f"[empty response: {stop_reason.value}]"
    return NormalizedResponse(text=body, invocations=(), stop_reason=stop_reason, usage=usage)


def assemble_fragments(
    fragments: Iterable[ResponseFragment],
    fallback_usage: Optional[TokenUsage] = None,
) -> NormalizedResponse:
    """把一串流式片段归并为一个 NormalizedResponse。

    流中没有终止原因时按失败处理（StopReason.ERROR），不会默认成正常结束。
    """

    pieces: List[str] = []
    calls: List[ToolInvocationRequest] = []
    stop_reason: Optional[StopReason] = None
    usage: Optional[TokenUsage] = None
    for fragment in fragments:
        if fragment.text_delta:
            pieces.append(fragment.text_delta)
        if fragment.invocation is not None:
            calls.append(fragment.invocation)
        if fragment.stop_reason is not None:
            stop_reason = fragment.stop_reason
        if fragment.usage is not None:
            usage = fragment.usage
    text = "".join(pieces)
    if usage is None:
        usage = fallback_usage or TokenUsage(input_tokens=0, output_tokens=len(text) // 4, estimated=True)
    return build_response(text, calls, stop_reason or StopReason.ERROR, usage)
