"""会话引擎核心模块。

ConversationEngine 驱动一次完整的自动修复会话：

    REQUESTING → TOOL_EXECUTING → VERIFYING → {SUCCEEDED | RETRYING | EXHAUSTED | FATAL}

- REQUESTING: 构造 ConversationRequest，经 RateGovernor 放行后调用 ModelBackend。
- TOOL_EXECUTING: 按请求顺序逐个分发工具调用，每个调用恰好产生一条 tool_result。
- VERIFYING: 模型不再请求工具时运行验证；失败详情作为下一轮 user 消息（RETRYING）。
- 迭代指一次模型请求；预算用尽仍未成功则 EXHAUSTED。
- 永久性后端错误直接 FATAL；暂时性错误原地指数退避重试，用尽后 FATAL。
- 任一挂起点都检查 CancellationToken，取消后不再发出新的模型请求。
  取消只是停止等待：已经开始的工具调用（例如 code_editor 的一次写入）会在后台
  线程里执行完毕，结果被丢弃；尚未开始的工具调用由 ToolDispatcher 拒绝执行。

引擎只持有内存中的 transcript，会话结束后不保留任何状态。
"""

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from autofix_core.agents.cancellation import CancellationToken, run_cancellable
from autofix_core.domain.exceptions import (
    BackendError,
    OperationCancelled,
    RateLimited,
    UpstreamServerError,
)
from autofix_core.domain.models import (
    ConversationMessage,
    ConversationRequest,
    NormalizedResponse,
    StopReason,
    TokenUsage,
    assemble_fragments,
)
from autofix_core.domain.redaction import scrub_secrets
from autofix_core.infrastructure.logging.logger import logger
from autofix_core.infrastructure.rate_governor import RateGovernor
from autofix_core.prompts import load_system_prompt
from autofix_core.providers.base import ModelBackend
from autofix_core.tools.dispatcher import ToolDispatcher
from autofix_core.tools.policy import EditScopePolicy
from autofix_core.verification.runner import VerificationOutcome, VerificationRunner, truncate_middle

GIVE_UP_MARKER = "GIVING UP:"
MAX_BACKOFF_RETRIES = 3
BASE_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 8.0
MAX_RETRY_AFTER_SECONDS = 60.0

_FILE_RE = re.compile(r"^\s*File:\s*(\S+)", re.MULTILINE)
_LINE_RE = re.compile(r"^\s*Line:\s*(\d+)", re.MULTILINE)


class EngineState(str, Enum):
    REQUESTING = "requesting"
    TOOL_EXECUTING = "tool_executing"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """run_conversation 的终态。"""

    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class GiveUpReport:
    """模型主动放弃时给出的位置信息（可能缺失）。"""

    reason: str
    file: Optional[str] = None
    line: Optional[int] = None


@dataclass(frozen=True)
class ConversationOutcome:
    status: RunStatus
    transcript: Tuple[ConversationMessage, ...]
    usage_totals: TokenUsage
    iterations: int
    error: Optional[str] = None
    give_up: Optional[GiveUpReport] = None


@dataclass
class IterationState:
    """单次会话的循环状态，会话开始时创建、结束时丢弃。"""

    transcript: List[ConversationMessage] = field(default_factory=list)
    turn: int = 0
    last_verification: Optional[VerificationOutcome] = None
    usage: TokenUsage = field(default_factory=TokenUsage.zero)
    state: EngineState = EngineState.REQUESTING


@dataclass
class EngineConfig:
    max_output_tokens: int = 1024
    temperature: float = 0.7
    stream: bool = False
    poll_interval: float = 0.5
    verification_output_limit: int = 8000
    max_retries: int = MAX_BACKOFF_RETRIES
    locale: str = "en"


def parse_give_up(text: Optional[str]) -> Optional[GiveUpReport]:
    """识别 'GIVING UP:' 回复，并尽量解析 File:/Line: 行。"""

    if not text or GIVE_UP_MARKER not in text:
        return None
    reason = text.split(GIVE_UP_MARKER, 1)[1].strip().splitlines()
    file_match = _FILE_RE.search(text)
    line_match = _LINE_RE.search(text)
    return GiveUpReport(
        reason=reason[0].strip() if reason else "",
        file=file_match.group(1) if file_match else None,
        line=int(line_match.group(1)) if line_match else None,
    )


class ConversationEngine:
    def __init__(
        self,
        backend: ModelBackend,
        dispatcher: ToolDispatcher,
        verifier: VerificationRunner,
        governor: Optional[RateGovernor] = None,
        config: Optional[EngineConfig] = None,
        sleep: Optional[Callable[[float], None]] = None,
        prompt_loader: Callable[..., str] = load_system_prompt,
    ):
        self._backend = backend
        self._dispatcher = dispatcher
        self._verifier = verifier
        self._governor = governor
        self._config = config or EngineConfig()
        self._sleep = sleep
        self._prompt_loader = prompt_loader

    def run_conversation(
        self,
        initial_context: str,
        edit_scope_policy: EditScopePolicy,
        iteration_budget: int,
        cancel_token: Optional[CancellationToken] = None,
        trace_id: Optional[str] = None,
        verification_scope: Optional[str] = None,
    ) -> ConversationOutcome:
        """执行一次修复会话，直到成功、预算用尽、致命错误或被取消。"""

        start_time = time.time()
        log_ctx: Dict[str, Any] = {
            "trace_id": trace_id or f"tr-{uuid4().hex}",
            "backend": self._backend.name,
            "policy": edit_scope_policy.value,
        }
        budget = max(1, int(iteration_budget))
        state = IterationState(transcript=[ConversationMessage.user(initial_context)])
        system = self._prompt_loader(edit_scope_policy, locale=self._config.locale)
        self._log(logging.INFO, "Conversation started", log_ctx, budget=budget)

        try:
            outcome = self._loop(state, system, edit_scope_policy, budget, verification_scope, cancel_token, log_ctx)
        except OperationCancelled:
            state.state = EngineState.CANCELLED
            outcome = self._outcome(state, RunStatus.CANCELLED, error="cancelled")
        except BackendError as exc:
            state.state = EngineState.FATAL
            cause = scrub_secrets(exc.message)
            self._log(logging.ERROR, "Conversation failed", log_ctx, code=exc.code, error=cause)
            outcome = self._outcome(state, RunStatus.FATAL, error=f"{exc.code}: {cause}")

        self._log(
            logging.INFO,
            "Conversation finished",
            log_ctx,
            status=outcome.status.value,
            iterations=outcome.iterations,
            usage=outcome.usage_totals.as_dict(),
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return outcome

    def _loop(
        self,
        state: IterationState,
        system: str,
        policy: EditScopePolicy,
        budget: int,
        scope: Optional[str],
        cancel_token: Optional[CancellationToken],
        log_ctx: Dict[str, Any],
    ) -> ConversationOutcome:
        while True:
            self._check_cancel(cancel_token)
            if state.turn >= budget:
                state.state = EngineState.EXHAUSTED
                self._log(logging.INFO, "Iteration budget exhausted", log_ctx, turns=state.turn)
                return self._outcome(state, RunStatus.EXHAUSTED, error="iteration budget exhausted")

            state.state = EngineState.REQUESTING
            state.turn += 1
            self._log(logging.INFO, "Iteration", log_ctx, turn=state.turn, budget=budget)
            response = self._request(state, system, cancel_token, log_ctx)

            if response.requests_tools:
                state.state = EngineState.TOOL_EXECUTING
                self._execute_tools(state, response, policy, cancel_token, log_ctx)
                continue

            text = response.text or ""
            state.transcript.append(ConversationMessage.assistant(text))
            give_up = parse_give_up(text)
            if give_up is not None:
                state.state = EngineState.EXHAUSTED
                self._log(logging.WARNING, "Model gave up", log_ctx, file=give_up.file, line=give_up.line)
                return self._outcome(state, RunStatus.EXHAUSTED, error="model gave up", give_up=give_up)

            state.state = EngineState.VERIFYING
            verification = self._verify(scope, cancel_token, log_ctx)
            state.last_verification = verification
            if verification.passed:
                state.state = EngineState.SUCCEEDED
                return self._outcome(state, RunStatus.SUCCEEDED)
            if state.turn >= budget:
                state.state = EngineState.EXHAUSTED
                return self._outcome(state, RunStatus.EXHAUSTED, error="verification still failing")

            state.state = EngineState.RETRYING
            detail = truncate_middle(verification.detail, self._config.verification_output_limit)
            state.transcript.append(ConversationMessage.user(detail))

    # ---- REQUESTING ----

    def _build_request(self, state: IterationState, system: str) -> ConversationRequest:
        tools = tuple(self._dispatcher.tool_defs) if self._backend.supports_tools() else ()
        return ConversationRequest(
            messages=tuple(state.transcript),
            system=system,
            tools=tools,
            max_tokens=self._config.max_output_tokens,
            temperature=self._config.temperature,
            stream=self._config.stream and self._backend.supports_streaming(),
        )

    def _request(
        self,
        state: IterationState,
        system: str,
        cancel_token: Optional[CancellationToken],
        log_ctx: Dict[str, Any],
    ) -> NormalizedResponse:
        """发出一次模型请求；暂时性错误按退避策略原地重试。"""

        retries_allowed = min(self._config.max_retries, MAX_BACKOFF_RETRIES)
        attempt = 0
        while True:
            req = self._build_request(state, system)
            estimate = self._backend.estimate_tokens(req)
            if estimate > self._backend.max_context_length():
                self._log(
                    logging.WARNING,
                    "Request may exceed context window",
                    log_ctx,
                    estimate=estimate,
                    context=self._backend.max_context_length(),
                )
            ticket = self._governor.admit(estimate, cancel_token) if self._governor else None
            try:
                response = run_cancellable(
                    lambda: self._call_backend(req),
                    cancel_token,
                    self._config.poll_interval,
                    name="autofix-model",
                )
            except (BackendError, OperationCancelled) as exc:
                if ticket is not None:
                    self._governor.release(ticket)
                if isinstance(exc, OperationCancelled) or not exc.transient or attempt >= retries_allowed:
                    raise
                self._backoff(attempt, exc, cancel_token, log_ctx)
                attempt += 1
                continue

            if ticket is not None:
                self._governor.reconcile(ticket, response.usage)
            state.usage = state.usage + response.usage
            self._log(
                logging.INFO,
                "Model responded",
                log_ctx,
                turn=state.turn,
                stop_reason=response.stop_reason.value,
                tool_calls=len(response.invocations),
                usage=response.usage.as_dict(),
            )
            if response.stop_reason is not StopReason.ERROR:
                return response
            # 终止原因为 error 的响应按暂时性错误处理
            error = UpstreamServerError(code="MODEL_ERROR", message=response.text or "model returned an error")
            if attempt >= retries_allowed:
                raise error
            self._backoff(attempt, error, cancel_token, log_ctx)
            attempt += 1

    def _call_backend(self, req: ConversationRequest) -> NormalizedResponse:
        if req.stream:
            return assemble_fragments(self._backend.complete_streaming(req))
        return self._backend.complete(req)

    def _backoff(
        self,
        attempt: int,
        exc: BackendError,
        cancel_token: Optional[CancellationToken],
        log_ctx: Dict[str, Any],
    ) -> None:
        delay = min(BASE_BACKOFF_SECONDS * (2 ** attempt), MAX_BACKOFF_SECONDS)
        if isinstance(exc, RateLimited) and exc.retry_after:
            delay = min(max(delay, exc.retry_after), MAX_RETRY_AFTER_SECONDS)
        self._log(
            logging.WARNING,
            "Transient backend error, retrying",
            log_ctx,
            code=exc.code,
            attempt=attempt + 1,
            delay=delay,
            error=scrub_secrets(exc.message),
        )
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel_token is not None:
            cancel_token.wait(delay)
        else:
            time.sleep(delay)
        self._check_cancel(cancel_token)

    # ---- TOOL_EXECUTING ----

    def _execute_tools(
        self,
        state: IterationState,
        response: NormalizedResponse,
        policy: EditScopePolicy,
        cancel_token: Optional[CancellationToken],
        log_ctx: Dict[str, Any],
    ) -> None:
        state.transcript.append(ConversationMessage.assistant("", response.invocations))
        for call in response.invocations:
            self._check_cancel(cancel_token)
            result = run_cancellable(
                lambda: self._dispatcher.dispatch(call, policy, log_ctx, cancel_token),
                cancel_token,
                self._config.poll_interval,
                name="autofix-tool",
            )
            state.transcript.append(ConversationMessage.tool_result(result))

    # ---- VERIFYING ----

    def _verify(
        self,
        scope: Optional[str],
        cancel_token: Optional[CancellationToken],
        log_ctx: Dict[str, Any],
    ) -> VerificationOutcome:
        try:
            outcome = run_cancellable(
                lambda: self._verifier.run(scope, cancel_token),
                cancel_token,
                self._config.poll_interval,
                name="autofix-verify",
            )
        except OperationCancelled:
            raise
        except Exception as exc:
            self._log(logging.WARNING, "Verification raised", log_ctx, error=str(exc))
            outcome = VerificationOutcome(False, f"Verification could not run: {type(exc).__name__}: {exc}")
        self._log(logging.INFO, "Verification finished", log_ctx, passed=outcome.passed)
        return outcome

    # ---- helpers ----

    @staticmethod
    def _check_cancel(cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

    @staticmethod
    def _outcome(
        state: IterationState,
        status: RunStatus,
        error: Optional[str] = None,
        give_up: Optional[GiveUpReport] = None,
    ) -> ConversationOutcome:
        return ConversationOutcome(
            status=status,
            transcript=tuple(state.transcript),
            usage_totals=state.usage,
            iterations=state.turn,
            error=error,
            give_up=give_up,
        )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
