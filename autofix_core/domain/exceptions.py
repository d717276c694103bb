"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在引擎层做统一捕获、重试判断与日志记录。

ModelBackend 的错误分类：
- 永久性错误（transient=False）：AuthenticationFailed、InvalidRequest、
  MisconfiguredEndpoint、StreamingUnsupported，直接终止会话。
- 暂时性错误（transient=True）：RateLimited、NetworkFailure、UpstreamServerError，
  由引擎按指数退避原地重试。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "RATE_LIMIT"）。
        message: 可读错误信息（已脱敏）。
        http_status: 对应的上游 HTTP 状态码，没有时为 0。
        extra: 其他补充字段（例如 backend、trace_id 等）。
    """

    transient = False

    def __init__(self, code: str, message: str, http_status: int = 0, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class BackendError(BusinessError):
    """ModelBackend 抛出的错误基类。"""


class AuthenticationFailed(BackendError):
    """凭证缺失或被上游拒绝（401/403）。"""


class RateLimited(BackendError):
    """上游限流（429），retry_after 为上游建议的等待秒数。"""

    transient = True

    def __init__(self, code: str, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(code, message, **kwargs)
        self.retry_after = retry_after


class NetworkFailure(BackendError):
    """网络层错误，例如连接失败、DNS 错误、超时等。"""

    transient = True


class UpstreamServerError(BackendError):
    """上游 5xx、过载或返回了无法解析的响应。"""

    transient = True


class InvalidRequest(BackendError):
    """请求本身不合法（非 429 的 4xx、空消息列表等）。"""


class StreamingUnsupported(BackendError):
    """后端不支持流式调用。"""


class MisconfiguredEndpoint(BackendError):
    """base URL、协议或模型 ID 配置错误。"""


class OperationCancelled(BusinessError):
    """外部取消了正在进行的会话，在任一挂起点抛出。"""

    def __init__(self, message: str = "operation cancelled", **extra):
        super().__init__("CANCELLED", message, **extra)
