"""Tests for workspace checkpoints."""
import shutil

import pytest

from core.contracts.errors import SnapshotError
from core.env.snapshot import SnapshotManager


def _read(environment, name):
    return (environment.workspace / name).read_text(encoding="utf-8")


class TestLocalSnapshots:
    """测试本地工作区的快照与恢复。"""

    def test_restore_discards_later_changes(self, store, environment):
        """恢复后工作区与捕获时一致，之后新增的文件被移除。"""
        manager = SnapshotManager(environment, store)
        task = store.create("goal")
        environment.write_file("app.txt", "v1")

        snapshot_id = manager.checkpoint(task)
        environment.write_file("app.txt", "v2")
        environment.write_file("extra.txt", "later")
        manager.restore(snapshot_id)

        assert _read(environment, "app.txt") == "v1"
        assert not (environment.workspace / "extra.txt").exists()

    def test_restore_twice_gives_same_state(self, store, environment):
        """同一快照可以重复恢复，快照本身不受影响。"""
        manager = SnapshotManager(environment, store)
        task = store.create("goal")
        environment.write_file("data/state.json", '{"step": 1}')
        snapshot_id = manager.checkpoint(task)

        environment.write_file("data/state.json", '{"step": 2}')
        manager.restore(snapshot_id)
        environment.write_file("data/state.json", '{"step": 3}')
        manager.restore(snapshot_id)

        assert _read(environment, "data/state.json") == '{"step": 1}'

    def test_snapshot_chain_links_to_previous(self, store, environment):
        manager = SnapshotManager(environment, store)
        task = store.create("goal")
        first = manager.checkpoint(task)
        task.environment_snapshot_id = first
        second = manager.checkpoint(task)

        assert store.get_snapshot(first).parent_snapshot_id is None
        assert store.get_snapshot(second).parent_snapshot_id == first
        assert manager.latest_for(task.task_id).snapshot_id == second

    def test_child_snapshot_links_to_parent_task(self, store, environment):
        """子任务的第一个快照指向父任务的快照。"""
        manager = SnapshotManager(environment, store)
        root = store.create("root")
        root_snapshot = manager.checkpoint(root)
        root.update_status("in_progress")
        root.environment_snapshot_id = root_snapshot
        store.update(root)

        child = store.create("child", parent_id=root.task_id)
        child_snapshot = manager.checkpoint(child)
        assert store.get_snapshot(child_snapshot).parent_snapshot_id == root_snapshot

    def test_unknown_snapshot(self, store, environment):
        with pytest.raises(SnapshotError) as excinfo:
            SnapshotManager(environment, store).restore("snapshot_missing")
        assert excinfo.value.severity == "fatal"

    def test_missing_snapshot_directory(self, store, environment):
        """快照目录被删除时恢复失败并包装为 SnapshotError。"""
        manager = SnapshotManager(environment, store)
        snapshot_id = manager.checkpoint(store.create("goal"))
        shutil.rmtree(environment.snapshots_dir / snapshot_id)
        with pytest.raises(SnapshotError):
            manager.restore(snapshot_id)
