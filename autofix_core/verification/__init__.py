"""修复结果验证。

验证是判断“已修复”的唯一依据，由外部命令（构建/测试）给出结论。
"""

from autofix_core.verification.runner import (
    CommandVerificationRunner,
    VerificationOutcome,
    VerificationRunner,
    truncate_middle,
)

__all__ = ["CommandVerificationRunner", "VerificationOutcome", "VerificationRunner", "truncate_middle"]
