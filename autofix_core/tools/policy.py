"""编辑范围策略。

每次修复运行只允许修改一类源文件：

- FIX_APPLICATION_CODE: 修应用代码，禁止改动测试源文件；
- FIX_TEST_CODE: 修测试代码，禁止改动应用源文件。

文件是否属于测试源文件由 SourceClassifier 按 glob 列表判断。
"""

import fnmatch
from enum import Enum
from pathlib import PurePosixPath
from typing import Iterable, Optional, Sequence

from autofix_core.config.settings import DEFAULT_TEST_PATH_PATTERNS


class EditScopePolicy(str, Enum):
    FIX_APPLICATION_CODE = "fix_application_code"
    FIX_TEST_CODE = "fix_test_code"

    @classmethod
    def parse(cls, raw: str) -> "EditScopePolicy":
        key = (raw or "").strip().lower().replace("-", "_")
        aliases = {"app": cls.FIX_APPLICATION_CODE, "test": cls.FIX_TEST_CODE}
        if key in aliases:
            return aliases[key]
        return cls(key)


class SourceClassifier:
    """按路径判断文件是测试源文件还是应用源文件。"""

    def __init__(self, test_patterns: Optional[Iterable[str]] = None):
        self._patterns: Sequence[str] = tuple(test_patterns or DEFAULT_TEST_PATH_PATTERNS)

    def is_test_source(self, path: str) -> bool:
        normalized = str(path).replace("\\", "/")
        while normalized.startswith("./"):
            normalized = normalized[2:]
        name = PurePosixPath(normalized).name
        for pattern in self._patterns:
            if fnmatch.fnmatchcase(normalized, pattern) or fnmatch.fnmatchcase(name, pattern):
                return True
        return False

    def violation(self, policy: EditScopePolicy, path: str) -> Optional[str]:
        """返回拒绝原因；允许修改时返回 None。"""

        is_test = self.is_test_source(path)
        if policy is EditScopePolicy.FIX_APPLICATION_CODE and is_test:
            return f"Edit rejected: {path} is a test source and this run may only modify application code"
        if policy is EditScopePolicy.FIX_TEST_CODE and not is_test:
            return f"Edit rejected: {path} is an application source and this run may only modify test code"
        return None
