"""Audit logging."""
import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.utils.time import format_timestamp

# 审计事件类型
EVENT_TASK_CREATED = "task_created"
EVENT_TASK_STARTED = "task_started"
EVENT_ORACLE_FAILED = "oracle_failed"
EVENT_SNAPSHOT_CREATED = "snapshot_created"
EVENT_SNAPSHOT_RESTORED = "snapshot_restored"
EVENT_ATTEMPT_RECORDED = "attempt_recorded"
EVENT_BACKTRACK_SELECTED = "backtrack_selected"
EVENT_CEILING_EXCEEDED = "ceiling_exceeded"
EVENT_TASK_FINISHED = "task_finished"
EVENT_TASK_CANCELLED = "task_cancelled"
EVENT_ROLLBACK = "rollback"


class AuditLogger:
    """审计日志记录器（JSONL格式）。"""

    def __init__(self, log_path: Optional[Union[str, Path]] = None):
        """初始化审计日志记录器。

        Args:
            log_path: 日志文件路径（JSONL格式）。如果为 None，则从环境变量 TOF_AUDIT_LOG 读取，
                     如果环境变量也未设置，则使用默认值 "./.tof/logs/audit.log.jsonl"
        """
        if log_path is None:
            log_path = os.getenv("TOF_AUDIT_LOG", "./.tof/logs/audit.log.jsonl")

        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log(self, event_type: str, details: Dict[str, Any]) -> None:
        """记录审计事件（JSONL格式）。

        Args:
            event_type: 事件类型
            details: 事件详情
        """
        log_entry = {
            "timestamp": format_timestamp(),
            "event_type": event_type,
            "details": details,
        }

        # 追加模式写入 JSONL（每行一个 JSON 对象）
        line = json.dumps(log_entry, ensure_ascii=False, default=str) + "\n"
        with self._lock:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line)

    def read(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """读取已记录的事件（可按类型过滤）。"""
        if not self.log_path.exists():
            return []
        events = []
        with open(self.log_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = json.loads(line)
                if event_type is None or entry.get("event_type") == event_type:
                    events.append(entry)
        return events
