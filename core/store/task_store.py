"""Durable task store backed by SQLite."""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from core.contracts.errors import TaskNotFoundError, TerminalTaskError
from core.contracts.snapshot import Snapshot
from core.contracts.task import (
    TASK_STATUSES,
    Action,
    ActionError,
    AttemptResult,
    TaskNode,
    check_transition,
    is_terminal,
)
from core.store.schema import REQUIRED_TABLES, SCHEMA_SQL
from core.utils.fs import ensure_dir
from core.utils.time import format_timestamp, later_than, parse_timestamp

logger = logging.getLogger(__name__)

_UNSET = object()


class TaskStore:
    """任务存储（任务树 + 尝试记录 + 快照记录）。

    - 任务节点以 id 为键，父子关系只通过 parent_id 查询得到
    - attempt 只能通过 append_attempt 追加，按 seq 严格有序
    - 终态任务拒绝任何修改
    - 同一任务的写入通过任务级锁串行化（单写者）
    """

    def __init__(self, db_path: Union[str, Path], bootstrap: bool = True):
        """打开存储。

        Args:
            db_path: SQLite 数据库文件路径
            bootstrap: 是否在打开时创建缺失的表
        """
        self.db_path = Path(db_path)
        ensure_dir(self.db_path.parent)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._task_locks: Dict[str, threading.Lock] = {}
        self._task_locks_guard = threading.Lock()
        self._closed = False
        if bootstrap:
            self.init_schema()

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def init_schema(self) -> None:
        """创建表结构（幂等）。"""
        with self._lock:
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()
        logger.debug("Task store schema ready at %s", self.db_path)

    def has_schema(self) -> bool:
        """检查必需的表是否都已存在。"""
        with self._lock:
            rows = self._conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            ).fetchall()
        names = {row["name"] for row in rows}
        return all(table in names for table in REQUIRED_TABLES)

    def close(self) -> None:
        """关闭数据库连接。"""
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True

    def __enter__(self) -> "TaskStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def _task_lock(self, task_id: str) -> Iterator[None]:
        with self._task_locks_guard:
            lock = self._task_locks.setdefault(task_id, threading.Lock())
        with lock:
            yield

    # ------------------------------------------------------------------
    # 任务
    # ------------------------------------------------------------------

    def create(
        self,
        description: str,
        goal: Optional[str] = None,
        parent_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> TaskNode:
        """创建新任务（根任务或子任务）。

        Args:
            description: 任务描述
            goal: 任务目标，缺省与描述相同
            parent_id: 父任务ID
            task_id: 预先分配的任务ID（默认自动生成）

        Returns:
            新建的 pending 任务节点

        Raises:
            TaskNotFoundError: 父任务不存在
        """
        if parent_id is not None and self._status_of(parent_id) is None:
            raise TaskNotFoundError(parent_id)

        task = TaskNode.new(description, goal=goal, parent_id=parent_id, task_id=task_id)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO task (
                  id, description, goal, parent_id, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.task_id,
                    task.description,
                    task.goal,
                    task.parent_id,
                    task.status,
                    format_timestamp(task.created_at),
                    format_timestamp(task.updated_at),
                ),
            )
            self._conn.commit()
        return task

    def get(self, task_id: str) -> Optional[TaskNode]:
        """获取任务（包含按顺序排列的全部尝试）。"""
        with self._lock:
            row = self._conn.execute("SELECT * FROM task WHERE id = ?", (task_id,)).fetchone()
            if row is None:
                return None
            return self._row_to_task(row)

    def require(self, task_id: str) -> TaskNode:
        """获取任务，不存在时抛出 TaskNotFoundError。"""
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def update(self, task: TaskNode) -> None:
        """持久化任务的可变字段（status、continuation_summary、快照ID、updated_at）。

        description、goal、parent_id 创建后不可变，不会被写入。

        Raises:
            TaskNotFoundError: 任务不存在
            TerminalTaskError: 存储中的任务已处于终态
            InvalidTransitionError: 状态迁移非法
        """
        with self._task_lock(task.task_id):
            with self._lock:
                stored = self._status_of(task.task_id)
                if stored is None:
                    raise TaskNotFoundError(task.task_id)
                if is_terminal(stored):
                    raise TerminalTaskError(task.task_id, stored)
                if stored != task.status:
                    check_transition(task.task_id, stored, task.status)
                self._conn.execute(
                    """
                    UPDATE task
                    SET status = ?,
                        continuation_summary = ?,
                        environment_snapshot_id = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        task.status,
                        task.continuation_summary,
                        task.environment_snapshot_id,
                        format_timestamp(task.updated_at),
                        task.task_id,
                    ),
                )
                self._conn.commit()

    def list(
        self,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        parent_id: Any = _UNSET,
    ) -> List[TaskNode]:
        """列出任务（按创建时间倒序）。

        Args:
            status: 按状态过滤
            limit: 最多返回的数量
            parent_id: 按父任务过滤；传入 None 表示只列根任务

        Returns:
            任务节点列表
        """
        if status is not None and status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")

        clauses = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if parent_id is not _UNSET:
            if parent_id is None:
                clauses.append("parent_id IS NULL")
            else:
                clauses.append("parent_id = ?")
                params.append(parent_id)

        sql = "SELECT * FROM task"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, int(limit)))

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
            return [self._row_to_task(row) for row in rows]

    def children(self, task_id: str) -> List[TaskNode]:
        """查询子任务（按创建时间正序）。"""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM task WHERE parent_id = ? ORDER BY created_at ASC, rowid ASC",
                (task_id,),
            ).fetchall()
            return [self._row_to_task(row) for row in rows]

    def root_of(self, task_id: str) -> str:
        """沿 parent_id 找到任务所在任务树的根任务ID。

        Raises:
            TaskNotFoundError: 任务不存在
        """
        current = task_id
        with self._lock:
            while True:
                row = self._conn.execute("SELECT parent_id FROM task WHERE id = ?", (current,)).fetchone()
                if row is None:
                    raise TaskNotFoundError(current)
                parent_id = row["parent_id"]
                if not parent_id:
                    return current
                current = parent_id

    # ------------------------------------------------------------------
    # 尝试
    # ------------------------------------------------------------------

    def append_attempt(self, task_id: str, attempt: AttemptResult) -> TaskNode:
        """追加一条尝试记录（尝试序列唯一的修改方式）。

        Args:
            task_id: 任务ID
            attempt: 尝试结果

        Returns:
            追加后的任务节点（含完整尝试序列）

        Raises:
            TaskNotFoundError: 任务不存在
            TerminalTaskError: 任务已处于终态
        """
        action = attempt.action
        error = attempt.error
        with self._task_lock(task_id):
            with self._lock:
                row = self._conn.execute(
                    "SELECT status, updated_at FROM task WHERE id = ?", (task_id,)
                ).fetchone()
                if row is None:
                    raise TaskNotFoundError(task_id)
                if is_terminal(row["status"]):
                    raise TerminalTaskError(task_id, row["status"])

                seq_row = self._conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) AS last_seq FROM attempt WHERE task_id = ?",
                    (task_id,),
                ).fetchone()
                seq = int(seq_row["last_seq"]) + 1
                updated_at = later_than(parse_timestamp(row["updated_at"]))

                self._conn.execute(
                    """
                    INSERT INTO attempt (
                      id, task_id, seq, action_type, action_id, action_description,
                      action_params, status, error_code, error_message, error_severity,
                      outputs, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        attempt.attempt_id,
                        task_id,
                        seq,
                        action.type,
                        action.action_id,
                        action.description,
                        json.dumps(action.params.to_dict(), ensure_ascii=False, default=str),
                        attempt.status,
                        error.code if error else None,
                        error.message if error else None,
                        error.severity if error else None,
                        json.dumps(attempt.outputs, ensure_ascii=False, default=str)
                        if attempt.outputs is not None
                        else None,
                        format_timestamp(attempt.created_at),
                    ),
                )
                self._conn.execute(
                    "UPDATE task SET updated_at = ? WHERE id = ?",
                    (format_timestamp(updated_at), task_id),
                )
                self._conn.commit()
        logger.debug("Appended attempt #%d to task %s", seq, task_id)
        return self.require(task_id)

    # ------------------------------------------------------------------
    # 快照
    # ------------------------------------------------------------------

    def record_snapshot(self, snapshot: Snapshot) -> None:
        """记录快照元数据。"""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO snapshot (id, task_id, parent_snapshot_id, env_handle, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    snapshot.snapshot_id,
                    snapshot.task_id,
                    snapshot.parent_snapshot_id,
                    snapshot.env_handle,
                    format_timestamp(snapshot.created_at),
                ),
            )
            self._conn.commit()

    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM snapshot WHERE id = ?", (snapshot_id,)
            ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def latest_snapshot(self, task_id: str) -> Optional[Snapshot]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM snapshot WHERE task_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (task_id,),
            ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def list_snapshots(self, task_id: str) -> List[Snapshot]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM snapshot WHERE task_id = ? ORDER BY created_at ASC, rowid ASC",
                (task_id,),
            ).fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    # ------------------------------------------------------------------
    # 行 <-> 对象
    # ------------------------------------------------------------------

    def _status_of(self, task_id: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT status FROM task WHERE id = ?", (task_id,)).fetchone()
        return row["status"] if row else None

    def _row_to_task(self, row: sqlite3.Row) -> TaskNode:
        attempt_rows = self._conn.execute(
            "SELECT * FROM attempt WHERE task_id = ? ORDER BY seq ASC", (row["id"],)
        ).fetchall()
        return TaskNode(
            task_id=row["id"],
            description=row["description"],
            goal=row["goal"],
            parent_id=row["parent_id"],
            status=row["status"],
            environment_snapshot_id=row["environment_snapshot_id"],
            continuation_summary=row["continuation_summary"],
            attempts=[self._row_to_attempt(a) for a in attempt_rows],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _row_to_attempt(row: sqlite3.Row) -> AttemptResult:
        action = Action.from_dict(
            {
                "id": row["action_id"],
                "type": row["action_type"],
                "description": row["action_description"],
                "params": json.loads(row["action_params"]),
            }
        )
        error = None
        if row["error_code"]:
            error = ActionError(
                code=row["error_code"],
                message=row["error_message"] or "",
                severity=row["error_severity"] or "recoverable",
            )
        status = "success" if row["status"] == "success" else "failure"
        if status == "failure" and error is None:
            error = ActionError(code="EXECUTION_ERROR", message="attempt recorded without error details")
        return AttemptResult(
            action=action,
            status=status,
            error=error,
            outputs=json.loads(row["outputs"]) if row["outputs"] else None,
            attempt_id=row["id"],
            created_at=parse_timestamp(row["created_at"]),
        )

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> Snapshot:
        return Snapshot(
            snapshot_id=row["id"],
            task_id=row["task_id"],
            parent_snapshot_id=row["parent_snapshot_id"],
            env_handle=row["env_handle"],
            created_at=parse_timestamp(row["created_at"]),
        )


def open_store(db_path: Union[str, Path], bootstrap: bool = True) -> TaskStore:
    """打开任务存储的便捷函数。"""
    return TaskStore(db_path, bootstrap=bootstrap)
