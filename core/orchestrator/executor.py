"""Action execution.

ActionExecutor is the single catch boundary between an Action and the
outside world: whatever happens while dispatching, ``execute`` returns an
AttemptResult and never raises.
"""
import logging
from typing import Any, Dict, List, Optional

from core.contracts.errors import (
    ERROR_CODE_EXECUTION,
    ERROR_CODE_TIMEOUT,
    SEVERITY_RECOVERABLE,
    EngineError,
    OracleError,
    UnsupportedAction,
)
from core.contracts.task import (
    ACTION_TYPE_CUSTOM,
    ACTION_TYPE_DOCKER,
    ACTION_TYPE_FILES,
    ACTION_TYPE_HTTP,
    ACTION_TYPE_LLM_CALL,
    ACTION_TYPE_SHELL,
    Action,
    AttemptResult,
    FileContent,
)
from core.env.runtime import EnvironmentRuntime
from tools.http_tool import HttpTool
from tools.local.file_tool import FileTool
from tools.local.shell_tool import ShellTool

logger = logging.getLogger(__name__)

# 错误信息中保留的 stderr 长度
_STDERR_TAIL = 2000


class ActionExecutor:
    """动作执行器：写入文件、按动作类型分派，并把结果统一为 AttemptResult。"""

    def __init__(
        self,
        environment: EnvironmentRuntime,
        generator=None,
        default_timeout: Optional[float] = 30,
        http_tool: Optional[HttpTool] = None,
    ):
        """初始化执行器。

        Args:
            environment: 执行环境
            generator: 动作生成器（llm_call 动作通过它调用补全接口）
            default_timeout: shell/docker 动作的默认超时时间（秒）
            http_tool: HTTP 工具（默认使用 30 秒超时）
        """
        self.environment = environment
        self.generator = generator
        self.shell_tool = ShellTool(environment, default_timeout=default_timeout)
        self.file_tool = FileTool(environment)
        self.http_tool = http_tool or HttpTool()

    def execute(self, action: Action, pending_file_writes: Optional[List[FileContent]] = None) -> AttemptResult:
        """执行一个动作。

        先写入 oracle 随动作给出的文件，再执行动作本身。

        Args:
            action: 要执行的动作
            pending_file_writes: 执行前需要写入的完整文件

        Returns:
            AttemptResult（失败也以结果返回，不抛出异常）
        """
        written: List[str] = []
        try:
            if pending_file_writes:
                written = self.file_tool.write_files(pending_file_writes)
            return self._dispatch(action, written)
        except EngineError as e:
            logger.info("Action %s (%s) failed: %s", action.action_id, action.type, e.message)
            outputs = dict(e.outputs or {})
            files_written = written + list(outputs.get("files_written") or [])
            if files_written:
                outputs["files_written"] = files_written
            return AttemptResult.failure(
                action,
                code=e.code,
                message=e.message,
                severity=e.severity,
                outputs=outputs or None,
            )
        except Exception as e:
            logger.exception("Unexpected error while executing action %s", action.action_id)
            return AttemptResult.failure(
                action,
                code=ERROR_CODE_EXECUTION,
                message=f"{type(e).__name__}: {e}",
                severity=SEVERITY_RECOVERABLE,
            )

    def _dispatch(self, action: Action, written: List[str]) -> AttemptResult:
        if action.type in (ACTION_TYPE_SHELL, ACTION_TYPE_DOCKER):
            return self._run_command(action)
        elif action.type == ACTION_TYPE_FILES:
            return self._write_files(action, written)
        elif action.type == ACTION_TYPE_HTTP:
            return self._http(action)
        elif action.type == ACTION_TYPE_LLM_CALL:
            return self._llm_call(action)
        elif action.type == ACTION_TYPE_CUSTOM:
            raise UnsupportedAction("Custom actions are not supported")
        raise UnsupportedAction(f"Unsupported action type: {action.type}")

    def _run_command(self, action: Action) -> AttemptResult:
        output = self.shell_tool.execute(action.params.to_dict())
        outputs: Dict[str, Any] = {
            "stdout": output["stdout"],
            "stderr": output["stderr"],
            "exit_code": output["exit_code"],
            "result": output["stdout"],
        }

        if output["timed_out"]:
            return AttemptResult.failure(
                action,
                code=ERROR_CODE_TIMEOUT,
                message=f"Command timed out after {output['timeout_seconds']}s: {output['command']}",
                outputs=outputs,
            )
        if output["exit_code"] != 0:
            message = f"Command failed with exit code {output['exit_code']}"
            stderr = output["stderr"].strip()[-_STDERR_TAIL:]
            if stderr:
                message = f"{message}: {stderr}"
            return AttemptResult.failure(
                action,
                code=ERROR_CODE_EXECUTION,
                message=message,
                outputs=outputs,
            )
        return AttemptResult.success(action, outputs=outputs)

    def _write_files(self, action: Action, written: List[str]) -> AttemptResult:
        paths = list(written)
        if action.params.files:
            paths.extend(self.file_tool.execute({"files": action.params.files})["paths"])
        return AttemptResult.success(
            action,
            outputs={"result": f"Created/modified {len(paths)} files", "files": paths},
        )

    def _http(self, action: Action) -> AttemptResult:
        response = self.http_tool.execute(action.params.to_dict())
        outputs = {"result": response["body"], "status": response["status"]}
        if not response["ok"]:
            return AttemptResult.failure(
                action,
                code=ERROR_CODE_EXECUTION,
                message=f"HTTP request returned status {response['status']}",
                outputs=outputs,
            )
        return AttemptResult.success(action, outputs=outputs)

    def _llm_call(self, action: Action) -> AttemptResult:
        if self.generator is None:
            raise OracleError("No completion client configured for llm_call actions")
        completion = self.generator.complete(action.params.messages, action.params.options)
        return AttemptResult.success(action, outputs={"result": completion.message})
