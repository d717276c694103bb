"""Anthropic Messages API 适配器。

与 chat completions 协议的主要差异：

- system 指令是顶层字段，不在 messages 里；
- 工具结果以 user 角色的 tool_result 内容块回传，并且相邻同角色消息必须合并；
- 工具调用是 assistant 消息里的 tool_use 内容块；
- 流式事件按 content block 下发，工具参数以 input_json_delta 分片到达。
"""

from typing import Any, Dict, Iterator, List, Optional

from autofix_core.domain.exceptions import MisconfiguredEndpoint
from autofix_core.domain.models import (
    BackendKind,
    ConversationMessage,
    ConversationRequest,
    NormalizedResponse,
    ResponseFragment,
    StopReason,
    TokenUsage,
    ToolInvocationRequest,
    build_response,
)
from autofix_core.infrastructure.logging.logger import logger
from autofix_core.providers.base import HttpBackend, unique_call_id
from autofix_core.providers.registry import BackendConfig
from autofix_core.tools.definitions import ToolDef

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

STOP_REASONS = {
    "end_turn": StopReason.NATURAL_STOP,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
    "tool_use": StopReason.TOOL_USE,
}

# 当前模型家族都是 200k 上下文
LARGE_CONTEXT_FAMILIES = ("sonnet", "haiku", "opus")


def map_stop_reason(raw: Optional[str]) -> StopReason:
    if raw is None:
        return StopReason.ERROR
    return STOP_REASONS.get(raw, StopReason.ERROR)


class AnthropicClient(HttpBackend):
    """Anthropic Messages API 客户端。"""

    name = "claude"
    backend_kind = BackendKind.CLAUDE

    @classmethod
    def validate(cls, config: BackendConfig) -> None:
        super().validate(config)
        if not config.endpoint.startswith("https://"):
            raise MisconfiguredEndpoint(
                code="INSECURE_ENDPOINT",
                message=f"Claude API base URL must use HTTPS: {config.endpoint}",
                backend=config.kind.value,
            )
        cls._require_credential(config, "ANTHROPIC_API_KEY")

    def max_context_length(self) -> int:
        model = self._config.model.lower()
        if any(family in model for family in LARGE_CONTEXT_FAMILIES):
            return 200000
        return 100000

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    @property
    def _url(self) -> str:
        return f"{self._config.endpoint}/v1/messages"

    def complete(self, req: ConversationRequest) -> NormalizedResponse:
        self._require_messages(req)
        data = self._post_json(self._url, self._build_payload(req))
        return self._parse_response(data, req)

    def complete_streaming(self, req: ConversationRequest) -> Iterator[ResponseFragment]:
        """解析 message_start / content_block_* / message_delta 事件。"""

        self._ensure_streaming()
        self._require_messages(req)
        payload = self._build_payload(req)
        payload["stream"] = True

        input_tokens = 0
        output_tokens: Optional[int] = None
        stop_reason: Optional[StopReason] = None
        blocks: Dict[int, Dict[str, Any]] = {}
        seen: set = set()
        text_chars = 0
        for event in self._stream_events(self._url, payload):
            etype = event.get("type")
            if etype == "message_start":
                usage = (event.get("message") or {}).get("usage") or {}
                input_tokens = int(usage.get("input_tokens") or 0)
            elif etype == "content_block_start":
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    blocks[event.get("index", len(blocks))] = {
                        "id": block.get("id"),
                        "name": block.get("name") or "",
                        "json": "",
                    }
                elif block.get("text"):
                    text_chars += len(block["text"])
                    yield ResponseFragment(text_delta=block["text"])
            elif etype == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    text_chars += len(delta["text"])
                    yield ResponseFragment(text_delta=delta["text"])
                elif delta.get("type") == "input_json_delta":
                    slot = blocks.get(event.get("index"))
                    if slot is not None:
                        slot["json"] += delta.get("partial_json") or ""
            elif etype == "content_block_stop":
                slot = blocks.pop(event.get("index"), None)
                if slot is not None:
                    yield ResponseFragment(
                        invocation=ToolInvocationRequest(
                            id=unique_call_id(slot["id"], event.get("index", 0), seen),
                            name=slot["name"],
                            arguments=self._parse_arguments(slot["json"]),
                        )
                    )
            elif etype == "message_delta":
                delta = event.get("delta") or {}
                if "stop_reason" in delta:
                    stop_reason = map_stop_reason(delta.get("stop_reason"))
                usage = event.get("usage") or {}
                if usage.get("output_tokens") is not None:
                    output_tokens = int(usage["output_tokens"])
            elif etype == "error":
                stop_reason = StopReason.ERROR

        if output_tokens is None:
            usage = TokenUsage(
                input_tokens=input_tokens or self._estimate_usage(req, "").input_tokens,
                output_tokens=text_chars // 4,
                estimated=True,
            )
        else:
            usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        yield ResponseFragment(stop_reason=stop_reason or StopReason.ERROR, usage=usage)

    def _build_payload(self, req: ConversationRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._config.model,
            "max_tokens": req.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": self._convert_messages(req.messages),
        }
        if req.system:
            payload["system"] = req.system
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = {"type": "auto"}
        return payload

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.json_schema(),
        }

    @staticmethod
    def _convert_messages(messages) -> List[Dict[str, Any]]:
        """转换为 content block 形式，并合并相邻同角色消息（API 要求角色交替）。"""

        converted: List[Dict[str, Any]] = []
        for message in messages:
            role, blocks = AnthropicClient._message_blocks(message)
            if not blocks:
                continue
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})
        return converted

    @staticmethod
    def _message_blocks(message: ConversationMessage):
        if message.role == "tool_result":
            block: Dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.content,
            }
            if not message.success:
                block["is_error"] = True
            return "user", [block]
        blocks: List[Dict[str, Any]] = []
        if message.content:
            blocks.append({"type": "text", "text": message.content})
        for call in message.tool_invocations:
            blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
        return message.role, blocks

    def _parse_response(self, data: Dict[str, Any], req: ConversationRequest) -> NormalizedResponse:
        texts: List[str] = []
        invocations: List[ToolInvocationRequest] = []
        seen: set = set()
        for idx, block in enumerate(data.get("content") or []):
            btype = block.get("type")
            if btype == "text":
                texts.append(block.get("text") or "")
            elif btype == "tool_use":
                invocations.append(
                    ToolInvocationRequest(
                        id=unique_call_id(block.get("id"), idx, seen),
                        name=block.get("name") or "",
                        arguments=self._parse_arguments(block.get("input")),
                    )
                )
        text = "".join(texts)
        stop_reason = map_stop_reason(data.get("stop_reason"))
        usage_raw = data.get("usage")
        if usage_raw:
            usage = TokenUsage(
                input_tokens=int(usage_raw.get("input_tokens") or 0),
                output_tokens=int(usage_raw.get("output_tokens") or 0),
            )
        else:
            usage = self._estimate_usage(req, text)
        if invocations and text.strip():
            logger.info(
                "dropping text that accompanied tool calls",
                extra={"extra": {"backend": self.name, "text_chars": len(text)}},
            )
        return build_response(text, invocations, stop_reason, usage)

