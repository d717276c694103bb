"""ModelBackend 抽象接口与 HTTP 适配器公共基类。

上层 ConversationEngine 不直接依赖具体厂商的 HTTP API，而是依赖 ModelBackend 协议：

- 每个厂商实现一个适配器（AnthropicClient / OpenAIClient / OllamaClient）。
- 适配器负责把 ConversationRequest 转成具体 API 请求，并把响应 JSON
  解析为 NormalizedResponse，厂商类型不会越过这一层。

HttpBackend 收拢了三个适配器共用的部分：token 预估、HTTP 状态码到错误分类的映射、
上游错误文本脱敏、SSE 行解析。每个后端实例持有自己的 RateGovernor，
共享同一后端的多个会话因此共享同一个 token 窗口。
"""

import json
from typing import Any, Dict, Iterable, Iterator, Optional, Protocol
from urllib.parse import urlparse

import httpx

from autofix_core.domain.exceptions import (
    AuthenticationFailed,
    InvalidRequest,
    MisconfiguredEndpoint,
    NetworkFailure,
    RateLimited,
    StreamingUnsupported,
    UpstreamServerError,
)
from autofix_core.domain.models import (
    BackendKind,
    ConversationRequest,
    NormalizedResponse,
    ResponseFragment,
    TokenUsage,
)
from autofix_core.domain.redaction import scrub_secrets
from autofix_core.infrastructure.rate_governor import RateGovernor
from autofix_core.providers.registry import BackendConfig

# 预估时假设每 4 个字符约 1 个 token
CHARS_PER_TOKEN = 4
DEFAULT_ESTIMATE_OUTPUT_TOKENS = 1000
# 上游错误文本最多保留的长度
MAX_ERROR_TEXT = 500


class ModelBackend(Protocol):
    """模型后端协议。

    实现者需要提供：
    - validate(config): 校验配置，不合法时抛出 BackendError 子类。
    - complete(req): 非流式调用，返回 NormalizedResponse。
    - complete_streaming(req): 流式调用，逐步产出 ResponseFragment（可选能力）。
    - estimate_tokens(req): 请求前的 token 预估，只用于限流判断。
    """

    name: str

    def validate(self, config: BackendConfig) -> None:
        ...

    def complete(self, req: ConversationRequest) -> NormalizedResponse:
        ...

    def complete_streaming(self, req: ConversationRequest) -> Iterator[ResponseFragment]:
        ...

    def estimate_tokens(self, req: ConversationRequest) -> int:
        ...

    def max_context_length(self) -> int:
        ...

    def supports_tools(self) -> bool:
        ...

    def supports_streaming(self) -> bool:
        ...

    def kind(self) -> BackendKind:
        ...


class HttpBackend:
    """基于 httpx 的后端适配器基类。"""

    name = "http"
    backend_kind: BackendKind

    def __init__(self, config: BackendConfig):
        self._config = config
        self._governor = RateGovernor(backend=config.kind.value, ceiling=config.rate_limit_tpm)

    @property
    def config(self) -> BackendConfig:
        return self._config

    @property
    def governor(self) -> RateGovernor:
        return self._governor

    def kind(self) -> BackendKind:
        return self.backend_kind

    def supports_tools(self) -> bool:
        return True

    def supports_streaming(self) -> bool:
        return True

    def max_context_length(self) -> int:
        raise NotImplementedError

    # ---- 配置校验 ----

    @classmethod
    def validate(cls, config: BackendConfig) -> None:
        """公共校验：URL 可解析、模型 ID 非空。子类追加各自的约束。"""

        parsed = urlparse(config.endpoint or "")
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise MisconfiguredEndpoint(
                code="BAD_ENDPOINT",
                message=f"Invalid base URL: {config.endpoint!r}",
                backend=config.kind.value,
            )
        if not (config.model or "").strip():
            raise MisconfiguredEndpoint(
                code="EMPTY_MODEL",
                message="Model name cannot be empty",
                backend=config.kind.value,
            )

    @staticmethod
    def _require_credential(config: BackendConfig, env_name: str) -> None:
        if not config.api_key.strip():
            raise AuthenticationFailed(
                code="MISSING_API_KEY",
                message=f"{env_name} not set",
                backend=config.kind.value,
            )

    # ---- token 预估 ----

    def estimate_tokens(self, req: ConversationRequest) -> int:
        """粗略预估：字符数 / 4，加上工具 schema 和输出上限。"""

        chars = len(req.system or "")
        for message in req.messages:
            chars += len(message.content)
            for call in message.tool_invocations:
                chars += len(call.name) + len(json.dumps(call.arguments, ensure_ascii=False))
        tool_chars = sum(tool.schema_size() for tool in req.tools)
        output = req.max_tokens if req.max_tokens is not None else DEFAULT_ESTIMATE_OUTPUT_TOKENS
        return chars // CHARS_PER_TOKEN + tool_chars // CHARS_PER_TOKEN + output

    def _estimate_usage(self, req: ConversationRequest, output_text: str) -> TokenUsage:
        """上游没有返回 usage 时的兜底估算。"""

        chars = len(req.system or "") + sum(len(m.content) for m in req.messages)
        return TokenUsage(
            input_tokens=chars // CHARS_PER_TOKEN,
            output_tokens=len(output_text) // CHARS_PER_TOKEN,
            estimated=True,
        )

    @staticmethod
    def _require_messages(req: ConversationRequest) -> None:
        if not req.messages:
            raise InvalidRequest(code="EMPTY_MESSAGES", message="Request must contain at least one message")

    def _ensure_streaming(self) -> None:
        if not self.supports_streaming():
            raise StreamingUnsupported(
                code="STREAMING_UNSUPPORTED",
                message=f"{self.name} does not support streaming",
            )

    # ---- HTTP ----

    def _scrub(self, text: Optional[str]) -> str:
        return scrub_secrets(text, secrets=(self._config.api_key,))[:MAX_ERROR_TEXT]

    def _headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """发送一次 POST 并返回解码后的 JSON。"""

        try:
            with httpx.Client(timeout=self._config.timeout, trust_env=False) as client:
                resp = client.post(url, json=payload, headers=self._headers())
        except httpx.RequestError as e:
            # DNS 失败、连接被拒绝、超时等
            raise NetworkFailure(code="NETWORK_ERROR", message=self._scrub(str(e)), backend=self.name)
        self._raise_for_status(resp.status_code, resp.text, resp.headers)
        try:
            data = resp.json()
        except ValueError:
            raise UpstreamServerError(
                code="BAD_RESPONSE",
                message=f"Undecodable response from {self.name}: {self._scrub(resp.text)}",
                http_status=resp.status_code,
                backend=self.name,
            )
        if not isinstance(data, dict):
            raise UpstreamServerError(code="BAD_RESPONSE", message="Response body is not a JSON object")
        return data

    def _stream_events(self, url: str, payload: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """以 SSE 方式 POST，逐条产出 data: 行解码后的 JSON 对象。"""

        try:
            with httpx.Client(timeout=self._config.timeout, trust_env=False) as client:
                with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        self._raise_for_status(resp.status_code, resp.text, resp.headers)
                    for data in self._iter_sse_data(resp.iter_lines()):
                        yield data
        except httpx.RequestError as e:
            raise NetworkFailure(code="NETWORK_ERROR", message=self._scrub(str(e)), backend=self.name)

    @staticmethod
    def _iter_sse_data(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
        for line in lines:
            if not line:
                continue
            data_str = line.strip()
            if data_str.startswith("event:") or data_str.startswith(":"):
                continue
            if data_str.startswith("data:"):
                data_str = data_str[5:].strip()
            if not data_str or data_str == "[DONE]":
                continue
            try:
                chunk = json.loads(data_str)
            except json.JSONDecodeError:
                continue
            if isinstance(chunk, dict):
                yield chunk

    def _raise_for_status(self, status: int, body: str, headers: Any) -> None:
        """把 HTTP 错误码映射为错误分类，错误文本先脱敏。"""

        if status < 400:
            return
        detail = self._scrub(body)
        message = f"{self.name} HTTP {status}: {detail}"
        if status in (401, 403):
            raise AuthenticationFailed(code="AUTH_FAILED", message=message, http_status=status, backend=self.name)
        if status == 429:
            raise RateLimited(
                code="RATE_LIMIT",
                message=message,
                retry_after=_parse_retry_after(headers),
                http_status=status,
                backend=self.name,
            )
        if status == 404:
            raise MisconfiguredEndpoint(code="NOT_FOUND", message=message, http_status=status, backend=self.name)
        if status >= 500:
            # 包括 Anthropic 的 529 overloaded
            raise UpstreamServerError(code="SERVER_ERROR", message=message, http_status=status, backend=self.name)
        raise InvalidRequest(code="API_ERROR", message=message, http_status=status, backend=self.name)

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        """解析工具调用的 arguments 字段。

        OpenAI 协议把 arguments 作为 JSON 字符串返回，这里做一层 json.loads 尝试，
        失败时保留原始字符串到 `_raw`，避免信息丢失。
        """

        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            if not raw.strip():
                return {}
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                return {"_raw": raw}
            return parsed if isinstance(parsed, dict) else {"_raw": raw}
        return {}


def _parse_retry_after(headers: Any) -> Optional[float]:
    if not headers:
        return None
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def unique_call_id(candidate: Optional[str], index: int, seen: set) -> str:
    """保证同一轮内的调用 id 唯一；上游缺失或重复时生成新的 id。"""

    call_id = candidate or f"call_{index}"
    while call_id in seen:
        call_id = f"{call_id}_{index}"
    seen.add(call_id)
    return call_id
