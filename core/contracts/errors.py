"""Error taxonomy for the execution engine."""
from typing import Any, Dict, Optional


# 错误严重程度
SEVERITY_RECOVERABLE = "recoverable"  # 可以重试或回溯
SEVERITY_FATAL = "fatal"  # 当前节点不再尝试

SEVERITIES = (SEVERITY_RECOVERABLE, SEVERITY_FATAL)

# 错误码
ERROR_CODE_EXECUTION = "EXECUTION_ERROR"
ERROR_CODE_TIMEOUT = "TIMEOUT"
ERROR_CODE_ORACLE = "ORACLE_ERROR"
ERROR_CODE_INVALID_ORACLE_RESPONSE = "INVALID_ORACLE_RESPONSE"
ERROR_CODE_UNSUPPORTED_ACTION = "UNSUPPORTED_ACTION"
ERROR_CODE_SNAPSHOT = "SNAPSHOT_ERROR"
ERROR_CODE_CEILING_EXCEEDED = "CEILING_EXCEEDED"


class EngineError(Exception):
    """引擎错误基类，携带错误码与严重程度。"""

    code = ERROR_CODE_EXECUTION
    severity = SEVERITY_RECOVERABLE

    def __init__(self, message: str, code: Optional[str] = None, outputs: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        # 失败前已经产生的部分输出（例如已写入的文件）
        self.outputs = outputs


class ExecutionError(EngineError):
    """动作执行失败（非零退出码、网络失败、文件写入失败）。"""

    code = ERROR_CODE_EXECUTION
    severity = SEVERITY_RECOVERABLE


class OracleError(EngineError):
    """Oracle 调用本身失败（传输错误、超时、鉴权失败）。"""

    code = ERROR_CODE_ORACLE
    severity = SEVERITY_RECOVERABLE


class InvalidOracleResponse(EngineError):
    """Oracle 输出无法解析为结构化动作。"""

    code = ERROR_CODE_INVALID_ORACLE_RESPONSE
    severity = SEVERITY_RECOVERABLE

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class UnsupportedAction(EngineError):
    """动作类型没有对应的执行策略。"""

    code = ERROR_CODE_UNSUPPORTED_ACTION
    severity = SEVERITY_FATAL


class SnapshotError(EngineError):
    """快照创建或恢复失败；环境状态不可信，因此视为致命错误。"""

    code = ERROR_CODE_SNAPSHOT
    severity = SEVERITY_FATAL


class CeilingExceeded(EngineError):
    """尝试次数或时间预算耗尽。"""

    code = ERROR_CODE_CEILING_EXCEEDED
    severity = SEVERITY_FATAL


class RunCancelled(Exception):
    """运行循环被取消；存储保持可恢复状态。"""

    def __init__(self, task_id: str):
        super().__init__(f"Run cancelled for task {task_id}")
        self.task_id = task_id


class TaskNotFoundError(KeyError):
    """任务不存在。"""

    def __init__(self, task_id: str):
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task {self.task_id} not found"


class TerminalTaskError(ValueError):
    """任务已处于终态（success/failed），拒绝修改。"""

    def __init__(self, task_id: str, status: str):
        super().__init__(f"Task {task_id} is {status}; terminal tasks are immutable")
        self.task_id = task_id
        self.status = status


class InvalidTransitionError(ValueError):
    """非法的状态迁移。"""

    def __init__(self, task_id: str, old_status: str, new_status: str):
        super().__init__(
            f"Task {task_id}: invalid status transition {old_status} -> {new_status}"
        )
        self.task_id = task_id
        self.old_status = old_status
        self.new_status = new_status


class ConfigError(ValueError):
    """配置文件缺失、无法解析或取值非法。"""
