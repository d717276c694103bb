"""本地工具实现：directory_inspector、code_editor、test_runner。

所有路径都限制在 workspace 根目录之内，越界路径一律视为无效。
"""

import fnmatch
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from autofix_core.tools.dispatcher import ToolCollaborator, ToolOutput

MAX_LIST_RESULTS = 500
MAX_SEARCH_RESULTS = 200
MAX_READ_CHARS = 100000
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "build", "target", "DerivedData"}


def _resolve_path(raw: str, root: Path) -> Optional[Path]:
    text = (raw or "").strip()
    if not text:
        return None
    candidate = Path(text).expanduser()
    resolved = (candidate if candidate.is_absolute() else root / candidate).resolve()
    if not _is_within_root(resolved, root):
        return None
    return resolved


def _is_within_root(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def _format_relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)


def _walk_files(base: Path):
    for path in sorted(base.rglob("*")):
        if any(part in SKIP_DIRS for part in path.relative_to(base).parts):
            continue
        if path.is_file():
            yield path


class DirectoryInspector:
    """只读检查：list / read / search / find。"""

    def __init__(self, root: Union[str, Path]):
        self._root = Path(root).expanduser().resolve()

    def execute(self, action_name: str, arguments: Dict[str, Any]) -> ToolOutput:
        operation = str(arguments.get("operation") or "").strip().lower()
        path = _resolve_path(str(arguments.get("path") or "."), self._root)
        if path is None or not path.exists():
            return ToolOutput(False, f"invalid path: {arguments.get('path')}")
        pattern = str(arguments.get("pattern") or "")
        if operation == "list":
            return self._list(path)
        if operation == "read":
            return self._read(path)
        if operation == "search":
            return self._search(path, pattern)
        if operation == "find":
            return self._find(path, pattern or "*")
        return ToolOutput(False, f"unknown operation: {operation or '<missing>'}")

    def _list(self, path: Path) -> ToolOutput:
        if not path.is_dir():
            return ToolOutput(False, f"not a directory: {_format_relative(path, self._root)}")
        entries = []
        for child in sorted(path.iterdir()):
            suffix = "/" if child.is_dir() else ""
            entries.append(child.name + suffix)
            if len(entries) >= MAX_LIST_RESULTS:
                entries.append("... truncated ...")
                break
        return ToolOutput(True, "\n".join(entries))

    def _read(self, path: Path) -> ToolOutput:
        if not path.is_file():
            return ToolOutput(False, f"not a file: {_format_relative(path, self._root)}")
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            return ToolOutput(False, str(exc))
        if len(content) > MAX_READ_CHARS:
            content = content[:MAX_READ_CHARS] + "\n... truncated ..."
        return ToolOutput(True, content)

    def _search(self, path: Path, pattern: str) -> ToolOutput:
        if not pattern:
            return ToolOutput(False, "search requires a pattern")
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            return ToolOutput(False, f"invalid regex: {exc}")
        files = [path] if path.is_file() else _walk_files(path)
        results: List[str] = []
        for file in files:
            try:
                content = file.read_text(encoding="utf-8", errors="ignore")
            except OSError:
                continue
            for line_no, line in enumerate(content.splitlines(), start=1):
                if regex.search(line):
                    results.append(f"{_format_relative(file, self._root)}:{line_no}: {line.strip()}")
                    if len(results) >= MAX_SEARCH_RESULTS:
                        return ToolOutput(True, "\n".join(results + ["... truncated ..."]))
        return ToolOutput(True, "\n".join(results) if results else "no matches")

    def _find(self, path: Path, pattern: str) -> ToolOutput:
        if not path.is_dir():
            return ToolOutput(False, f"not a directory: {_format_relative(path, self._root)}")
        items: List[str] = []
        for file in _walk_files(path):
            rel = _format_relative(file, self._root)
            if fnmatch.fnmatch(file.name, pattern) or fnmatch.fnmatch(rel, pattern):
                items.append(rel)
                if len(items) >= MAX_LIST_RESULTS:
                    items.append("... truncated ...")
                    break
        return ToolOutput(True, "\n".join(items) if items else "no files found")


class CodeEditor:
    """精确匹配替换；old_content 在文件中不存在时失败。"""

    def __init__(self, root: Union[str, Path]):
        self._root = Path(root).expanduser().resolve()

    def execute(self, action_name: str, arguments: Dict[str, Any]) -> ToolOutput:
        path = _resolve_path(str(arguments.get("file_path") or ""), self._root)
        old = arguments.get("old_content")
        new = arguments.get("new_content")
        if path is None or not path.is_file():
            return ToolOutput(False, f"invalid file_path: {arguments.get('file_path')}")
        if not isinstance(old, str) or not old:
            return ToolOutput(False, "old_content must be a non-empty string")
        if not isinstance(new, str):
            return ToolOutput(False, "new_content must be a string")
        try:
            original = path.read_text(encoding="utf-8")
        except OSError as exc:
            return ToolOutput(False, str(exc))
        occurrences = original.count(old)
        if occurrences == 0:
            return ToolOutput(False, "old_content not found in file; it must match exactly, including whitespace")
        if occurrences > 1:
            return ToolOutput(False, f"old_content matches {occurrences} locations; include more context")
        path.write_text(original.replace(old, new, 1), encoding="utf-8")
        return ToolOutput(True, f"Edited {_format_relative(path, self._root)}")


class TestRunner:
    """通过配置的 shell 命令执行 build / test，返回退出码和输出。"""

    __test__ = False

    def __init__(
        self,
        root: Union[str, Path],
        build_command: Optional[str] = None,
        test_command: Optional[str] = None,
        timeout: float = 600.0,
    ):
        self._root = Path(root).expanduser().resolve()
        self._commands = {"build": build_command, "test": test_command}
        self._timeout = timeout

    def execute(self, action_name: str, arguments: Dict[str, Any]) -> ToolOutput:
        operation = str(arguments.get("operation") or "").strip().lower()
        if operation not in self._commands:
            return ToolOutput(False, f"unknown operation: {operation or '<missing>'}")
        command = self._commands[operation]
        if not command:
            return ToolOutput(False, f"no {operation} command configured")
        argv = shlex.split(command)
        identifier = arguments.get("test_identifier")
        if operation == "test" and identifier:
            argv.append(str(identifier))
        try:
            proc = subprocess.run(
                argv,
                cwd=self._root,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            return ToolOutput(False, f"{operation} timed out after {self._timeout:g}s")
        except OSError as exc:
            return ToolOutput(False, f"failed to start {argv[0]}: {exc}")
        output = f"exit code: {proc.returncode}\n--- stdout ---\n{proc.stdout}\n--- stderr ---\n{proc.stderr}"
        return ToolOutput(proc.returncode == 0, output)


def default_local_tools(
    workspace_root: Union[str, Path],
    build_command: Optional[str] = None,
    test_command: Optional[str] = None,
    timeout: float = 600.0,
) -> Dict[str, ToolCollaborator]:
    return {
        "directory_inspector": DirectoryInspector(workspace_root),
        "code_editor": CodeEditor(workspace_root),
        "test_runner": TestRunner(workspace_root, build_command, test_command, timeout),
    }
