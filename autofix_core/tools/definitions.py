"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，用于将可用工具列表暴露给模型
（ToolDef / ToolParam）；模型发起的调用及结果见 domain.models 中的
ToolInvocationRequest / ToolInvocationResult。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass(frozen=True)
class ToolDef:
    """一个可供模型调用的工具定义。

    - mutating: 是否会修改工作区文件，ToolDispatcher 据此执行编辑范围策略。
    - path_params: 指向被修改文件的参数名。
    """

    name: str
    description: str
    params: Dict[str, ToolParam]
    mutating: bool = False
    path_params: tuple = field(default=())

    def json_schema(self) -> Dict[str, Any]:
        """把参数列表转成 JSON Schema（object）。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in self.params.items():
            schema = param.schema or {"type": "string"}
            if param.description:
                schema = {**schema, "description": param.description}
            properties[name] = schema
            if param.required:
                required.append(name)
        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    def schema_size(self) -> int:
        """描述 + 序列化 schema 的字符数，用于 token 预估。"""

        return len(self.description) + len(json.dumps(self.json_schema(), ensure_ascii=False))


DIRECTORY_INSPECTOR = ToolDef(
    name="directory_inspector",
    description=(
        "Inspect the workspace without modifying it. Operations: "
        "'list' lists a directory, 'read' returns a file's content, "
        "'search' finds lines matching a regex pattern, 'find' finds files by glob pattern."
    ),
    params={
        "operation": ToolParam(
            name="operation",
            description="The operation to perform",
            required=True,
            schema={"type": "string", "enum": ["list", "read", "search", "find"]},
        ),
        "path": ToolParam(
            name="path",
            description="File or directory path relative to the workspace root",
            required=True,
            schema={"type": "string"},
        ),
        "pattern": ToolParam(
            name="pattern",
            description="Regex for 'search', glob for 'find'",
            required=False,
            schema={"type": "string"},
        ),
    },
)

CODE_EDITOR = ToolDef(
    name="code_editor",
    description=(
        "Edit a source file by exact string replacement. old_content must match the file "
        "exactly, including whitespace and indentation, or the edit fails."
    ),
    params={
        "file_path": ToolParam(
            name="file_path",
            description="Relative path to the file within the workspace",
            required=True,
            schema={"type": "string"},
        ),
        "old_content": ToolParam(
            name="old_content",
            description="Exact content to be replaced",
            required=True,
            schema={"type": "string"},
        ),
        "new_content": ToolParam(
            name="new_content",
            description="New content to replace with",
            required=True,
            schema={"type": "string"},
        ),
    },
    mutating=True,
    path_params=("file_path",),
)

TEST_RUNNER = ToolDef(
    name="test_runner",
    description=(
        "Build the project or run the failing test to check a fix. "
        "Returns the exit code with captured stdout and stderr."
    ),
    params={
        "operation": ToolParam(
            name="operation",
            description="'build' compiles the project, 'test' runs the tests",
            required=True,
            schema={"type": "string", "enum": ["build", "test"]},
        ),
        "test_identifier": ToolParam(
            name="test_identifier",
            description="Optional identifier of the test to run",
            required=False,
            schema={"type": "string"},
        ),
    },
)


def default_tool_defs() -> List[ToolDef]:
    return [DIRECTORY_INSPECTOR, CODE_EDITOR, TEST_RUNNER]
