"""Shell tool implementation."""
from typing import Any, Dict, Optional

from core.contracts.tool import Tool
from core.env.runtime import EnvironmentRuntime


class ShellTool(Tool):
    """Shell 命令执行工具（命令在执行环境中运行）。"""

    tool_id = "shell"
    name = "Shell Command"
    description = "在执行环境中运行 shell 命令"

    def __init__(self, environment: EnvironmentRuntime, default_timeout: Optional[float] = 30):
        """初始化 Shell 工具。

        Args:
            environment: 执行环境
            default_timeout: 未指定超时时使用的超时时间（秒）
        """
        self.environment = environment
        self.default_timeout = default_timeout

    def execute(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """执行 shell 命令。

        Returns:
            {"exit_code", "stdout", "stderr", "timed_out", "command"}
        """
        command = params.get("command", "")
        if not command:
            raise ValueError("command parameter is required")

        timeout = params.get("timeout_seconds") or self.default_timeout
        result = self.environment.execute(command, timeout=timeout)

        return {
            "exit_code": result.exit_code,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "timed_out": result.timed_out,
            "command": command,
            "timeout_seconds": timeout,
        }
