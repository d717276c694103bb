"""按后端的 token 速率控制。

每个后端一个 RateGovernor，窗口长度 60 秒：

- admit(estimate): 窗口过期则重置；若加上本次预估会超过上限，则阻塞到窗口重置后再判断
  （请求不会被丢弃或截断）；否则先乐观地计入预估值并放行。
- reconcile(ticket, usage): 请求完成后，用上游返回的真实 total 替换乐观预估，
  预估误差不会累积。
- release(ticket): 请求在拿到 usage 之前失败时撤回预估。

多个会话共享同一后端时，admit/reconcile/release 在同一把锁内串行执行。
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from autofix_core.domain.exceptions import OperationCancelled
from autofix_core.domain.models import TokenUsage
from autofix_core.infrastructure.logging.logger import logger

WINDOW_SECONDS = 60.0


@dataclass
class RateWindow:
    """当前限流窗口（可变，只由 RateGovernor 持有）。

    ceiling 为 0 表示不限流；generation 每次重置加一，用于识别过期的 Admission。
    """

    backend: str
    ceiling: int
    started_at: float
    consumed: int = 0
    generation: int = 0


@dataclass(frozen=True)
class Admission:
    """一次放行记录：计入窗口的乐观预估值。"""

    estimate: int
    generation: int


@dataclass(frozen=True)
class RateSnapshot:
    consumed: int
    remaining: Optional[int]
    seconds_until_reset: float


class RateGovernor:
    def __init__(
        self,
        backend: str,
        ceiling: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        poll_interval: float = 0.5,
        window_seconds: float = WINDOW_SECONDS,
    ):
        self._clock = clock
        # sleep 为空时在条件变量上等待，reconcile/release 可以提前唤醒
        self._sleep = sleep
        self._poll_interval = poll_interval
        self._window_seconds = window_seconds
        self._cond = threading.Condition()
        self._window = RateWindow(backend=backend, ceiling=max(0, int(ceiling)), started_at=clock())

    @property
    def window(self) -> RateWindow:
        return self._window

    def admit(self, estimate: int, cancel_token=None) -> Admission:
        estimate = max(0, int(estimate))
        waited = False
        with self._cond:
            while True:
                if cancel_token is not None and cancel_token.is_cancelled:
                    raise OperationCancelled("cancelled while waiting for rate window")
                now = self._clock()
                self._maybe_reset(now)
                w = self._window
                # 空窗口总是放行，否则超过整个上限的请求永远等不到机会
                if w.ceiling <= 0 or w.consumed == 0 or w.consumed + estimate <= w.ceiling:
                    w.consumed += estimate
                    if waited:
                        logger.info(
                            "rate window admitted after wait",
                            extra={"extra": {"backend": w.backend, "estimate": estimate, "consumed": w.consumed}},
                        )
                    return Admission(estimate=estimate, generation=w.generation)
                delay = max(0.0, w.started_at + self._window_seconds - now)
                if not waited:
                    logger.log(
                        logging.INFO,
                        "rate limit reached, waiting for window reset",
                        extra={
                            "extra": {
                                "backend": w.backend,
                                "estimate": estimate,
                                "consumed": w.consumed,
                                "ceiling": w.ceiling,
                                "wait_seconds": round(delay, 2),
                            }
                        },
                    )
                    waited = True
                self._wait(min(delay, self._poll_interval) if delay > 0 else 0.01)

    def reconcile(self, ticket: Admission, usage: TokenUsage) -> None:
        """用真实用量替换预估；窗口已经重置过则忽略。"""

        with self._cond:
            w = self._window
            if ticket.generation != w.generation:
                return
            w.consumed = max(0, w.consumed - ticket.estimate + usage.total_tokens)
            self._cond.notify_all()

    def release(self, ticket: Admission) -> None:
        with self._cond:
            w = self._window
            if ticket.generation != w.generation:
                return
            w.consumed = max(0, w.consumed - ticket.estimate)
            self._cond.notify_all()

    def snapshot(self) -> RateSnapshot:
        with self._cond:
            now = self._clock()
            self._maybe_reset(now)
            w = self._window
            remaining = None if w.ceiling <= 0 else max(0, w.ceiling - w.consumed)
            return RateSnapshot(
                consumed=w.consumed,
                remaining=remaining,
                seconds_until_reset=max(0.0, w.started_at + self._window_seconds - now),
            )

    def _maybe_reset(self, now: float) -> None:
        w = self._window
        if now - w.started_at >= self._window_seconds:
            w.started_at = now
            w.consumed = 0
            w.generation += 1

    def _wait(self, seconds: float) -> None:
        # 调用方持有锁
        if self._sleep is None:
            self._cond.wait(timeout=seconds)
            return
        self._cond.release()
        try:
            self._sleep(seconds)
        finally:
            self._cond.acquire()
