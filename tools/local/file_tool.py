"""File tool implementation."""
from typing import Any, Dict, List

from core.contracts.errors import ExecutionError
from core.contracts.task import FileContent
from core.contracts.tool import Tool
from core.env.runtime import EnvironmentRuntime


class FileTool(Tool):
    """文件写入工具（整文件覆盖写入，不做合并或补丁）。"""

    tool_id = "files"
    name = "File Operations"
    description = "在执行环境中写入完整文件"

    def __init__(self, environment: EnvironmentRuntime):
        self.environment = environment

    def write_files(self, files: List[FileContent]) -> List[str]:
        """按顺序写入文件。

        Args:
            files: 文件列表

        Returns:
            写入后的路径列表

        Raises:
            ExecutionError: 任一文件写入失败；outputs["files_written"] 为失败前已写入的路径
        """
        paths: List[str] = []
        for file in files:
            try:
                paths.append(self.environment.write_file(file.path, file.content))
            except (OSError, ValueError, RuntimeError) as e:
                raise ExecutionError(
                    f"Failed to write {file.path}: {e}",
                    outputs={"files_written": list(paths)},
                ) from e
        return paths

    def execute(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """写入 params["files"] 中的全部文件（FileContent 或 {"path", "content"} 字典）。"""
        files = [
            item if isinstance(item, FileContent) else FileContent.from_dict(item)
            for item in params.get("files") or []
        ]
        paths = self.write_files(files)
        return {"paths": paths, "count": len(paths)}
