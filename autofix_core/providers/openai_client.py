"""OpenAI 兼容协议（chat completions）适配器。

本模块负责：

1. 接收统一的 ConversationRequest。
2. 将其转换为 chat completions 的 HTTP 请求格式。
3. 调用 HTTP 接口，错误交给 HttpBackend 做分类与脱敏。
4. 将响应 JSON 解析为统一的 NormalizedResponse（含工具调用）。

通过覆盖 base URL 也可以接入其他兼容该协议的第三方服务；
OllamaClient 直接继承本类。
"""

import json
from typing import Any, Dict, Iterator, List, Optional

from autofix_core.domain.exceptions import UpstreamServerError
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

FINISH_REASONS = {
    "stop": StopReason.NATURAL_STOP,
    "length": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "content_filter": StopReason.ERROR,
}

# 按前缀匹配，顺序敏感（gpt-4o 必须排在 gpt-4 之前）
CONTEXT_LENGTHS = (
    ("gpt-4o", 128000),
    ("gpt-4-turbo", 128000),
    ("gpt-4", 8192),
    ("gpt-3.5-turbo", 16385),
)
DEFAULT_CONTEXT_LENGTH = 8192


def map_finish_reason(raw: Optional[str]) -> StopReason:
    """未知或缺失的 finish_reason 一律视为 error。"""

    if raw is None:
        return StopReason.ERROR
    return FINISH_REASONS.get(raw, StopReason.ERROR)


class OpenAIClient(HttpBackend):
    """chat completions 协议客户端。"""

    name = "openai"
    backend_kind = BackendKind.OPENAI
    credential_env = "OPENAI_API_KEY"
    requires_credential = True

    @classmethod
    def validate(cls, config: BackendConfig) -> None:
        super().validate(config)
        if cls.requires_credential:
            cls._require_credential(config, cls.credential_env)

    def max_context_length(self) -> int:
        return self._context_length_for(self._config.model)

    def _context_length_for(self, model: str) -> int:
        for prefix, length in CONTEXT_LENGTHS:
            if model.startswith(prefix):
                return length
        return DEFAULT_CONTEXT_LENGTH

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    @property
    def _url(self) -> str:
        return f"{self._config.endpoint}/chat/completions"

    def complete(self, req: ConversationRequest) -> NormalizedResponse:
        """执行一次非流式调用。"""

        self._require_messages(req)
        payload = self._build_payload(req)
        data = self._post_json(self._url, payload)
        return self._parse_response(data, req)

    def complete_streaming(self, req: ConversationRequest) -> Iterator[ResponseFragment]:
        """流式调用，工具调用的参数增量在本地拼装完整后才作为片段产出。"""

        self._ensure_streaming()
        self._require_messages(req)
        payload = self._build_payload(req)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

        pending: Dict[int, Dict[str, Any]] = {}
        stop_reason: Optional[StopReason] = None
        usage: Optional[TokenUsage] = None
        text_parts: List[str] = []
        for chunk in self._stream_events(self._url, payload):
            usage = self._parse_usage(chunk.get("usage")) or usage
            for choice in chunk.get("choices") or []:
                delta = choice.get("delta") or {}
                if delta.get("content"):
                    text_parts.append(delta["content"])
                    yield ResponseFragment(text_delta=delta["content"])
                for call in delta.get("tool_calls") or []:
                    slot = pending.setdefault(call.get("index", len(pending)), {"id": None, "name": "", "args": ""})
                    if call.get("id"):
                        slot["id"] = call["id"]
                    func = call.get("function") or {}
                    if func.get("name"):
                        slot["name"] = func["name"]
                    slot["args"] += func.get("arguments") or ""
                if choice.get("finish_reason"):
                    stop_reason = map_finish_reason(choice["finish_reason"])

        seen: set = set()
        for index in sorted(pending):
            slot = pending[index]
            yield ResponseFragment(
                invocation=ToolInvocationRequest(
                    id=unique_call_id(slot["id"], index, seen),
                    name=slot["name"],
                    arguments=self._parse_arguments(slot["args"]),
                )
            )
        yield ResponseFragment(
            stop_reason=stop_reason or StopReason.ERROR,
            usage=usage or self._estimate_usage(req, "".join(text_parts)),
        )

    def _build_payload(self, req: ConversationRequest) -> Dict[str, Any]:
        """将 ConversationRequest 转成 chat completions 请求 JSON。"""

        msgs: List[Dict[str, Any]] = []
        if req.system:
            msgs.append({"role": "system", "content": req.system})
        msgs.extend(self._message_to_payload(m) for m in req.messages)
        payload: Dict[str, Any] = {"model": self._config.model, "messages": msgs}
        if req.max_tokens is not None:
            payload["max_tokens"] = req.max_tokens
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.tools and self.supports_tools():
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = "auto"
        return payload

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.json_schema(),
            },
        }

    @staticmethod
    def _message_to_payload(message: ConversationMessage) -> Dict[str, Any]:
        if message.role == "tool_result":
            # 协议没有 is_error 字段，失败结果用前缀标明
            content = message.content if message.success else f"ERROR: {message.content}"
            return {"role": "tool", "tool_call_id": message.tool_call_id, "content": content}
        payload: Dict[str, Any] = {"role": message.role, "content": message.content or None}
        if message.tool_invocations:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in message.tool_invocations
            ]
        elif payload["content"] is None:
            payload["content"] = ""
        return payload

    def _parse_response(self, data: Dict[str, Any], req: ConversationRequest) -> NormalizedResponse:
        """只取第一个 choice；tool_calls 与旧版 function_call 都会被解析。"""

        choices = data.get("choices") or []
        if not choices:
            raise UpstreamServerError(code="NO_CHOICES", message=f"{self.name} returned no choices")
        choice = choices[0]
        msg = choice.get("message") or {}
        invocations = self._parse_tool_calls(msg)
        text = msg.get("content") or ""
        stop_reason = map_finish_reason(choice.get("finish_reason"))
        usage = self._parse_usage(data.get("usage")) or self._estimate_usage(req, text)
        if invocations and text.strip():
            logger.info(
                "dropping text that accompanied tool calls",
                extra={"extra": {"backend": self.name, "text_chars": len(text)}},
            )
        return build_response(text, invocations, stop_reason, usage)

    def _parse_tool_calls(self, msg: Dict[str, Any]) -> List[ToolInvocationRequest]:
        calls: List[ToolInvocationRequest] = []
        seen: set = set()
        for idx, call in enumerate(msg.get("tool_calls") or []):
            func = call.get("function") or {}
            calls.append(
                ToolInvocationRequest(
                    id=unique_call_id(call.get("id"), idx, seen),
                    name=func.get("name") or call.get("name") or "",
                    arguments=self._parse_arguments(func.get("arguments")),
                )
            )
        # 部分兼容服务仍会返回旧版 function_call 字段
        function_call = msg.get("function_call")
        if function_call:
            calls.append(
                ToolInvocationRequest(
                    id=unique_call_id(function_call.get("id") or "function_call", len(calls), seen),
                    name=function_call.get("name") or "",
                    arguments=self._parse_arguments(function_call.get("arguments")),
                )
            )
        return calls

    @staticmethod
    def _parse_usage(raw: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
        if not raw:
            return None
        return TokenUsage(
            input_tokens=int(raw.get("prompt_tokens") or 0),
            output_tokens=int(raw.get("completion_tokens") or 0),
        )
