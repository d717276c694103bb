"""会话取消支持。

CancellationToken 是对 threading.Event 的薄封装，由调用方持有并在任意线程调用 cancel()。
引擎在每个挂起点（限流等待、模型调用、工具调用、验证、退避）检查它。

阻塞调用通过 run_cancellable 放到单独的工作线程里执行，当前线程每隔
poll_interval 秒检查一次取消标记，因此取消最多延迟一个轮询间隔生效。
被放弃的工作线程是 daemon 线程，其结果会被丢弃。
"""

import threading
from typing import Callable, Optional, TypeVar

from autofix_core.domain.exceptions import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()

    def wait(self, timeout: float) -> bool:
        """最多等待 timeout 秒；被取消时立即返回 True。"""

        return self._event.wait(timeout)


def run_cancellable(
    fn: Callable[[], T],
    token: Optional[CancellationToken],
    poll_interval: float,
    name: str = "autofix-call",
) -> T:
    """在工作线程里执行 fn，并按 poll_interval 轮询取消。

    fn 抛出的异常会在当前线程原样重新抛出。
    """

    if token is None:
        return fn()
    token.raise_if_cancelled()

    box: dict = {}
    done = threading.Event()

    def _target() -> None:
        try:
            box["result"] = fn()
        except BaseException as exc:  # noqa: BLE001 - 交给调用线程重新抛出
            box["error"] = exc
        finally:
            done.set()

    worker = threading.Thread(target=_target, name=name, daemon=True)
    worker.start()
    while not done.wait(poll_interval):
        if token.is_cancelled:
            raise OperationCancelled()
    if token.is_cancelled:
        raise OperationCancelled()
    if "error" in box:
        raise box["error"]
    return box["result"]
