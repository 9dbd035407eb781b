"""Environment snapshot manager."""
import logging
import subprocess
from typing import Optional

from core.contracts.errors import SnapshotError
from core.contracts.snapshot import Snapshot
from core.contracts.task import TaskNode
from core.env.runtime import EnvironmentRuntime
from core.store.task_store import TaskStore
from core.utils.ids import new_snapshot_id

logger = logging.getLogger(__name__)


class SnapshotManager:
    """快照管理器：通过运行时捕获/恢复环境，并在存储中记录快照链。"""

    def __init__(self, runtime: EnvironmentRuntime, store: TaskStore):
        self.runtime = runtime
        self.store = store

    def checkpoint(self, task: TaskNode) -> str:
        """为任务创建检查点。

        新快照的 parent_snapshot_id 指向任务上一个快照；
        任务还没有快照时指向父任务的快照。

        Args:
            task: 任务节点

        Returns:
            新快照ID

        Raises:
            SnapshotError: 捕获或记录失败（不会留下半条记录）
        """
        snapshot_id = new_snapshot_id()
        parent_snapshot_id = task.environment_snapshot_id or self._parent_task_snapshot(task)
        try:
            env_handle = self.runtime.capture(snapshot_id)
            snapshot = Snapshot(
                snapshot_id=snapshot_id,
                task_id=task.task_id,
                env_handle=env_handle,
                parent_snapshot_id=parent_snapshot_id,
            )
            self.store.record_snapshot(snapshot)
        except (OSError, RuntimeError, ValueError, subprocess.SubprocessError) as e:
            raise SnapshotError(f"Failed to create snapshot for task {task.task_id}: {e}") from e

        logger.info("Created snapshot %s for task %s", snapshot_id, task.task_id)
        return snapshot_id

    def restore(self, snapshot_id: str) -> str:
        """把环境恢复到指定快照（可重复恢复同一快照）。

        Raises:
            SnapshotError: 快照不存在或恢复失败
        """
        snapshot = self.store.get_snapshot(snapshot_id)
        if snapshot is None:
            raise SnapshotError(f"Unknown snapshot: {snapshot_id}")
        try:
            handle = self.runtime.restore(snapshot)
        except (OSError, RuntimeError, ValueError, subprocess.SubprocessError) as e:
            raise SnapshotError(f"Failed to restore snapshot {snapshot_id}: {e}") from e

        logger.info("Restored snapshot %s (%s)", snapshot_id, handle)
        return handle

    def latest_for(self, task_id: str) -> Optional[Snapshot]:
        """获取任务最新的快照。"""
        return self.store.latest_snapshot(task_id)

    def _parent_task_snapshot(self, task: TaskNode) -> Optional[str]:
        if not task.parent_id:
            return None
        parent = self.store.get(task.parent_id)
        return parent.environment_snapshot_id if parent else None
