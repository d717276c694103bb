import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Union

from autofix_core.domain.exceptions import OperationCancelled
from autofix_core.infrastructure.logging.logger import logger


@dataclass(frozen=True)
class VerificationOutcome:
    passed: bool
    detail: str


class VerificationRunner(Protocol):
    """run(scope) -> VerificationOutcome；scope 为空表示完整验证。"""

    def run(self, scope: Optional[str] = None, cancel_token=None) -> VerificationOutcome:
        ...


def truncate_middle(text: str, limit: int) -> str:
    """超过 limit 时保留头尾，中间用省略标记替代。"""

    if limit <= 0 or len(text) <= limit:
        return text
    marker = f"\n... [{len(text) - limit} chars omitted] ...\n"
    head = max(0, (limit - len(marker)) // 2)
    tail = max(0, limit - len(marker) - head)
    return text[:head] + marker + (text[-tail:] if tail else "")


class CommandVerificationRunner:
    """在工作区根目录执行验证命令，退出码为 0 视为通过。"""

    def __init__(
        self,
        command: str,
        cwd: Union[str, Path],
        timeout: float = 600.0,
        output_limit: int = 8000,
        poll_interval: float = 0.5,
    ):
        self._argv = shlex.split(command)
        self._cwd = Path(cwd).expanduser().resolve()
        self._timeout = timeout
        self._output_limit = output_limit
        self._poll_interval = poll_interval

    def run(self, scope: Optional[str] = None, cancel_token=None) -> VerificationOutcome:
        argv = list(self._argv)
        if scope:
            argv.append(scope)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=self._cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            return VerificationOutcome(False, f"failed to start verification command: {exc}")

        deadline = time.monotonic() + self._timeout
        while True:
            try:
                output, _ = proc.communicate(timeout=self._poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_token is not None and cancel_token.is_cancelled:
                    proc.kill()
                    proc.communicate()
                    raise OperationCancelled("cancelled during verification")
                if time.monotonic() >= deadline:
                    proc.kill()
                    output, _ = proc.communicate()
                    logger.warning(
                        "verification timed out",
                        extra={"extra": {"command": argv[0], "timeout": self._timeout}},
                    )
                    detail = f"Verification timed out after {self._timeout:g}s\n{output or ''}"
                    return VerificationOutcome(False, truncate_middle(detail, self._output_limit))

        detail = f"exit code: {proc.returncode}\n{output or ''}"
        return VerificationOutcome(proc.returncode == 0, truncate_middle(detail, self._output_limit))
