"""Snapshot contract definition."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from core.utils.time import format_timestamp, now


@dataclass(frozen=True)
class Snapshot:
    """环境检查点记录（创建后不可变）。

    快照通过 parent_snapshot_id 串成链，与任务树的回溯结构一致。
    """

    snapshot_id: str
    task_id: str
    env_handle: str  # 捕获时的容器ID或工作区路径
    parent_snapshot_id: Optional[str] = None
    created_at: datetime = field(default_factory=now)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典。"""
        return {
            "snapshot_id": self.snapshot_id,
            "task_id": self.task_id,
            "env_handle": self.env_handle,
            "parent_snapshot_id": self.parent_snapshot_id,
            "created_at": format_timestamp(self.created_at),
        }


@dataclass(frozen=True)
class CommandResult:
    """环境中一次命令执行的结果。"""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out
