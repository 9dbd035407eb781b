"""Task contract definition.

A TaskNode is one node of the tree of failures: a goal, the attempts made
against it, and the environment checkpoint it can be rolled back to.
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from core.contracts.errors import (
    SEVERITIES,
    SEVERITY_RECOVERABLE,
    InvalidTransitionError,
    TerminalTaskError,
)
from core.utils.ids import new_action_id, new_attempt_id, new_task_id
from core.utils.time import format_timestamp, later_than, now


# 任务状态枚举
TASK_STATUS_PENDING = "pending"
TASK_STATUS_IN_PROGRESS = "in_progress"
TASK_STATUS_SUCCESS = "success"
TASK_STATUS_FAILED = "failed"

TASK_STATUSES = (
    TASK_STATUS_PENDING,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_SUCCESS,
    TASK_STATUS_FAILED,
)
TERMINAL_STATUSES = (TASK_STATUS_SUCCESS, TASK_STATUS_FAILED)

# 合法的状态迁移；终态没有出边
ALLOWED_TRANSITIONS = {
    TASK_STATUS_PENDING: (TASK_STATUS_PENDING, TASK_STATUS_IN_PROGRESS),
    TASK_STATUS_IN_PROGRESS: (
        TASK_STATUS_IN_PROGRESS,
        TASK_STATUS_SUCCESS,
        TASK_STATUS_FAILED,
    ),
}

# 动作类型枚举（取值与持久化 schema 一致）
ACTION_TYPE_SHELL = "shell"
ACTION_TYPE_FILES = "files"
ACTION_TYPE_HTTP = "http"
ACTION_TYPE_LLM_CALL = "llm_call"  # reasoning-call
ACTION_TYPE_DOCKER = "docker"  # environment-op
ACTION_TYPE_CUSTOM = "custom"

ACTION_TYPES = (
    ACTION_TYPE_SHELL,
    ACTION_TYPE_FILES,
    ACTION_TYPE_HTTP,
    ACTION_TYPE_LLM_CALL,
    ACTION_TYPE_DOCKER,
    ACTION_TYPE_CUSTOM,
)

ACTION_TYPE_ALIASES = {
    "reasoning-call": ACTION_TYPE_LLM_CALL,
    "reasoning_call": ACTION_TYPE_LLM_CALL,
    "environment-op": ACTION_TYPE_DOCKER,
    "environment_op": ACTION_TYPE_DOCKER,
    "file": ACTION_TYPE_FILES,
}

# 会修改环境状态的动作，执行前需要检查点
STATE_MUTATING_ACTION_TYPES = (ACTION_TYPE_SHELL, ACTION_TYPE_FILES, ACTION_TYPE_DOCKER)

# 尝试结果状态
ATTEMPT_STATUS_SUCCESS = "success"
ATTEMPT_STATUS_FAILURE = "failure"
ATTEMPT_STATUSES = (ATTEMPT_STATUS_SUCCESS, ATTEMPT_STATUS_FAILURE)


def is_terminal(status: str) -> bool:
    """检查状态是否为终态。"""
    return status in TERMINAL_STATUSES


def check_transition(task_id: str, old_status: str, new_status: str) -> None:
    """校验状态迁移是否合法。

    Raises:
        TerminalTaskError: 旧状态为终态
        InvalidTransitionError: 迁移不在允许列表中
    """
    if new_status not in TASK_STATUSES:
        raise InvalidTransitionError(task_id, old_status, new_status)
    if is_terminal(old_status):
        raise TerminalTaskError(task_id, old_status)
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, ()):
        raise InvalidTransitionError(task_id, old_status, new_status)


def normalize_action_type(value: Any) -> str:
    """把 oracle 给出的动作类型归一化为规范取值。

    Raises:
        ValueError: 未知的动作类型
    """
    if not isinstance(value, str):
        raise ValueError(f"Action type must be a string, got {type(value).__name__}")
    normalized = value.strip().lower()
    normalized = ACTION_TYPE_ALIASES.get(normalized, normalized)
    if normalized not in ACTION_TYPES:
        raise ValueError(f"Unknown action type: {value}")
    return normalized


@dataclass(frozen=True)
class FileContent:
    """完整的文件内容（引擎从不合并或打补丁）。"""

    path: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileContent":
        path = data.get("path") or data.get("filename")
        if not path:
            raise ValueError("file entry requires a path")
        return cls(path=str(path), content=str(data.get("content", "")))


@dataclass(frozen=True)
class ShellParams:
    command: str
    timeout_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"command": self.command}
        if self.timeout_seconds is not None:
            data["timeout_seconds"] = self.timeout_seconds
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShellParams":
        command = data.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ValueError("shell action requires a command")
        return cls(command=command, timeout_seconds=_optional_float(data.get("timeout_seconds")))


@dataclass(frozen=True)
class EnvironmentOpParams:
    command: str
    timeout_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"command": self.command}
        if self.timeout_seconds is not None:
            data["timeout_seconds"] = self.timeout_seconds
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentOpParams":
        command = data.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ValueError("docker action requires a command")
        return cls(command=command, timeout_seconds=_optional_float(data.get("timeout_seconds")))


@dataclass(frozen=True)
class FilesParams:
    files: List[FileContent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"files": [f.to_dict() for f in self.files]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilesParams":
        raw_files = data.get("files")
        if raw_files is None and (data.get("filename") or data.get("path")):
            raw_files = [data]
        files = [FileContent.from_dict(item) for item in raw_files or [] if isinstance(item, dict)]
        return cls(files=files)


@dataclass(frozen=True)
class HttpParams:
    url: str
    method: str = "GET"
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"url": self.url, "method": self.method}
        if self.body is not None:
            data["body"] = self.body
        if self.headers:
            data["headers"] = dict(self.headers)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HttpParams":
        url = data.get("url")
        if not isinstance(url, str) or not url.strip():
            raise ValueError("http action requires a url")
        headers = data.get("headers") if isinstance(data.get("headers"), dict) else {}
        return cls(
            url=url,
            method=str(data.get("method") or "GET").upper(),
            body=data.get("body"),
            headers={str(k): str(v) for k, v in headers.items()},
        )


@dataclass(frozen=True)
class ReasoningCallParams:
    messages: List[Dict[str, Any]] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"messages": list(self.messages), "options": dict(self.options)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReasoningCallParams":
        messages = data.get("messages")
        if not isinstance(messages, list) or not messages:
            raise ValueError("llm_call action requires a non-empty messages list")
        options = data.get("options") if isinstance(data.get("options"), dict) else {}
        return cls(
            messages=[m for m in messages if isinstance(m, dict)],
            options=dict(options),
        )


@dataclass(frozen=True)
class CustomParams:
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomParams":
        return cls(data=dict(data))


ActionParams = Union[
    ShellParams,
    FilesParams,
    HttpParams,
    ReasoningCallParams,
    EnvironmentOpParams,
    CustomParams,
]

PARAMS_BY_TYPE = {
    ACTION_TYPE_SHELL: ShellParams,
    ACTION_TYPE_FILES: FilesParams,
    ACTION_TYPE_HTTP: HttpParams,
    ACTION_TYPE_LLM_CALL: ReasoningCallParams,
    ACTION_TYPE_DOCKER: EnvironmentOpParams,
    ACTION_TYPE_CUSTOM: CustomParams,
}


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Action:
    """一个具体的、可执行的原子操作。"""

    action_id: str
    type: str
    description: str
    params: ActionParams

    def __post_init__(self):
        """校验参数记录与动作类型匹配。"""
        expected = PARAMS_BY_TYPE.get(self.type)
        if expected is None:
            raise ValueError(f"Unknown action type: {self.type}")
        if not isinstance(self.params, expected):
            raise ValueError(
                f"Action {self.action_id}: {self.type} requires {expected.__name__}, "
                f"got {type(self.params).__name__}"
            )

    @property
    def is_state_mutating(self) -> bool:
        return self.type in STATE_MUTATING_ACTION_TYPES

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典。"""
        return {
            "id": self.action_id,
            "type": self.type,
            "description": self.description,
            "params": self.params.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        """从字典构建动作（兼容 oracle 输出与存储行）。

        Raises:
            ValueError: 类型未知或参数不完整
        """
        if not isinstance(data, dict):
            raise ValueError("action must be a JSON object")
        action_type = normalize_action_type(data.get("type"))
        raw_params = data.get("params")
        if not isinstance(raw_params, dict):
            raw_params = {}
        params = PARAMS_BY_TYPE[action_type].from_dict(raw_params)
        return cls(
            action_id=str(data.get("id") or data.get("action_id") or new_action_id()),
            type=action_type,
            description=str(data.get("description") or action_type),
            params=params,
        )


@dataclass(frozen=True)
class ActionError:
    """失败尝试的错误信息。"""

    code: str
    message: str
    severity: str = SEVERITY_RECOVERABLE

    def __post_init__(self):
        if self.severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {self.severity}")

    @property
    def is_fatal(self) -> bool:
        return self.severity != SEVERITY_RECOVERABLE

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "severity": self.severity}

    @classmethod
    def from_exception(cls, exc: Exception) -> "ActionError":
        """从引擎异常构建错误信息（非引擎异常按可恢复执行错误处理）。"""
        code = getattr(exc, "code", None) or "EXECUTION_ERROR"
        severity = getattr(exc, "severity", None) or SEVERITY_RECOVERABLE
        return cls(code=code, message=str(exc), severity=severity)


@dataclass(frozen=True)
class AttemptResult:
    """对一个任务节点执行一个动作的结果（追加后不可变）。"""

    action: Action
    status: str
    error: Optional[ActionError] = None
    outputs: Optional[Dict[str, Any]] = None
    attempt_id: str = field(default_factory=new_attempt_id)
    created_at: datetime = field(default_factory=now)

    def __post_init__(self):
        """校验 error 与 status 一致，并复制动作与输出，避免共享可变引用。"""
        if self.status not in ATTEMPT_STATUSES:
            raise ValueError(f"Unknown attempt status: {self.status}")
        if self.status == ATTEMPT_STATUS_FAILURE and self.error is None:
            raise ValueError("failed attempt requires an error")
        if self.status == ATTEMPT_STATUS_SUCCESS and self.error is not None:
            raise ValueError("successful attempt must not carry an error")
        object.__setattr__(self, "action", copy.deepcopy(self.action))
        if self.outputs is not None:
            object.__setattr__(self, "outputs", copy.deepcopy(self.outputs))

    @property
    def succeeded(self) -> bool:
        return self.status == ATTEMPT_STATUS_SUCCESS

    @classmethod
    def success(cls, action: Action, outputs: Optional[Dict[str, Any]] = None) -> "AttemptResult":
        return cls(action=action, status=ATTEMPT_STATUS_SUCCESS, outputs=outputs)

    @classmethod
    def failure(
        cls,
        action: Action,
        code: str,
        message: str,
        severity: str = SEVERITY_RECOVERABLE,
        outputs: Optional[Dict[str, Any]] = None,
    ) -> "AttemptResult":
        return cls(
            action=action,
            status=ATTEMPT_STATUS_FAILURE,
            error=ActionError(code=code, message=message, severity=severity),
            outputs=outputs,
        )

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典。"""
        data: Dict[str, Any] = {
            "attempt_id": self.attempt_id,
            "action": self.action.to_dict(),
            "status": self.status,
            "created_at": format_timestamp(self.created_at),
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.outputs is not None:
            data["outputs"] = self.outputs
        return data


@dataclass
class TaskNode:
    """任务树（Tree of Failures）中的一个节点。"""

    task_id: str
    description: str
    goal: str
    parent_id: Optional[str] = None
    status: str = TASK_STATUS_PENDING
    environment_snapshot_id: Optional[str] = None
    continuation_summary: Optional[str] = None
    attempts: List[AttemptResult] = field(default_factory=list)
    created_at: datetime = field(default_factory=now)
    updated_at: datetime = field(default_factory=now)

    @classmethod
    def new(
        cls,
        description: str,
        goal: Optional[str] = None,
        parent_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> "TaskNode":
        """创建一个新的 pending 任务节点（目标缺省与描述相同）。"""
        created = now()
        return cls(
            task_id=task_id or new_task_id(),
            description=description,
            goal=goal or description,
            parent_id=parent_id,
            created_at=created,
            updated_at=created,
        )

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def last_attempt(self) -> Optional[AttemptResult]:
        return self.attempts[-1] if self.attempts else None

    @property
    def last_error(self) -> Optional[ActionError]:
        for attempt in reversed(self.attempts):
            if attempt.error is not None:
                return attempt.error
        return None

    def touch(self) -> None:
        """推进 updated_at。"""
        self.updated_at = later_than(self.updated_at)

    def update_status(self, new_status: str) -> None:
        """更新任务状态（校验迁移合法性）。"""
        check_transition(self.task_id, self.status, new_status)
        self.status = new_status
        self.touch()

    def to_dict(self, include_attempts: bool = True) -> Dict[str, Any]:
        """转换为可序列化的字典（用于 prompt 与 API）。"""
        data: Dict[str, Any] = {
            "id": self.task_id,
            "description": self.description,
            "goal": self.goal,
            "parent_id": self.parent_id,
            "status": self.status,
            "environment_snapshot_id": self.environment_snapshot_id,
            "continuation_summary": self.continuation_summary,
            "attempts_count": len(self.attempts),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
        if include_attempts:
            data["attempts"] = [attempt.to_dict() for attempt in self.attempts]
        return data
