"""Tests for the SQLite task store."""
import threading

import pytest

from core.contracts.errors import InvalidTransitionError, TaskNotFoundError, TerminalTaskError
from core.contracts.snapshot import Snapshot
from core.contracts.task import Action, AttemptResult, ShellParams
from core.store.task_store import TaskStore


def _shell_action(command: str = "echo hi") -> Action:
    return Action(action_id="a1", type="shell", description="run", params=ShellParams(command=command))


class TestTaskLifecycle:
    """测试任务创建与状态迁移。"""

    def test_create_defaults_goal_to_description(self, store):
        """goal 缺省时与 description 相同，新任务为 pending。"""
        task = store.create("install package X")
        loaded = store.require(task.task_id)
        assert loaded.goal == "install package X"
        assert loaded.status == "pending"
        assert loaded.attempts == []
        assert loaded.parent_id is None

    def test_create_child_requires_existing_parent(self, store):
        """父任务不存在时拒绝创建子任务。"""
        with pytest.raises(TaskNotFoundError):
            store.create("child", parent_id="missing")

    def test_children_are_queried_by_parent(self, store):
        """子任务通过 parent_id 查询，按创建顺序返回。"""
        root = store.create("root")
        first = store.create("first", parent_id=root.task_id)
        second = store.create("second", parent_id=root.task_id)
        assert [t.task_id for t in store.children(root.task_id)] == [first.task_id, second.task_id]
        assert [t.task_id for t in store.list(parent_id=None)] == [root.task_id]

    def test_root_of_walks_parent_links(self, store):
        root = store.create("root", task_id="task_root")
        child = store.create("child", parent_id=root.task_id)
        grandchild = store.create("grandchild", parent_id=child.task_id)
        assert root.task_id == "task_root"
        assert store.root_of(grandchild.task_id) == "task_root"
        assert store.root_of(root.task_id) == "task_root"
        with pytest.raises(TaskNotFoundError):
            store.root_of("task_missing")

    def test_valid_transitions_persist(self, store):
        """pending -> in_progress -> success。"""
        task = store.create("goal")
        task.update_status("in_progress")
        store.update(task)
        task.update_status("success")
        store.update(task)
        assert store.require(task.task_id).status == "success"

    def test_invalid_transition_rejected(self, store):
        """pending 不能直接变为 success。"""
        task = store.create("goal")
        task.status = "success"
        with pytest.raises(InvalidTransitionError):
            store.update(task)
        assert store.require(task.task_id).status == "pending"

    def test_terminal_task_is_immutable(self, store):
        """终态任务拒绝更新和追加尝试。"""
        task = store.create("goal")
        task.update_status("in_progress")
        store.update(task)
        task.update_status("failed")
        store.update(task)

        stale = store.require(task.task_id)
        stale.continuation_summary = "changed"
        with pytest.raises(TerminalTaskError):
            store.update(stale)
        with pytest.raises(TerminalTaskError):
            store.append_attempt(task.task_id, AttemptResult.success(_shell_action()))
        assert store.require(task.task_id).continuation_summary is None

    def test_list_filters_and_validates_status(self, store):
        """按状态过滤，未知状态报错。"""
        pending = store.create("a")
        running = store.create("b")
        running.update_status("in_progress")
        store.update(running)

        assert [t.task_id for t in store.list(status="pending")] == [pending.task_id]
        assert len(store.list(limit=1)) == 1
        with pytest.raises(ValueError):
            store.list(status="done")


class TestAttempts:
    """测试尝试记录。"""

    def test_append_preserves_order_and_round_trips(self, store):
        """尝试按追加顺序保存，错误与输出完整还原。"""
        task = store.create("goal")
        store.append_attempt(
            task.task_id,
            AttemptResult.failure(_shell_action("false"), code="EXECUTION_ERROR", message="exit 1"),
        )
        node = store.append_attempt(
            task.task_id,
            AttemptResult.success(_shell_action("true"), outputs={"stdout": "", "exit_code": 0}),
        )

        assert [a.action.params.command for a in node.attempts] == ["false", "true"]
        first, second = node.attempts
        assert first.error.code == "EXECUTION_ERROR"
        assert first.error.severity == "recoverable"
        assert not first.succeeded
        assert second.succeeded
        assert second.outputs == {"stdout": "", "exit_code": 0}

    def test_append_advances_updated_at(self, store):
        """追加尝试后 updated_at 严格增大。"""
        task = store.create("goal")
        before = store.require(task.task_id).updated_at
        node = store.append_attempt(task.task_id, AttemptResult.success(_shell_action()))
        assert node.updated_at > before

    def test_append_to_missing_task(self, store):
        with pytest.raises(TaskNotFoundError):
            store.append_attempt("nope", AttemptResult.success(_shell_action()))

    def test_concurrent_appends_get_distinct_sequence(self, store):
        """并发追加不会丢失或重复。"""
        task = store.create("goal")

        def _append(i):
            store.append_attempt(task.task_id, AttemptResult.success(_shell_action(f"echo {i}")))

        threads = [threading.Thread(target=_append, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        commands = {a.action.params.command for a in store.require(task.task_id).attempts}
        assert commands == {f"echo {i}" for i in range(8)}


class TestSnapshots:
    """测试快照记录。"""

    def test_record_and_query(self, store):
        task = store.create("goal")
        store.record_snapshot(Snapshot(snapshot_id="s1", task_id=task.task_id, env_handle="/tmp/s1"))
        store.record_snapshot(
            Snapshot(snapshot_id="s2", task_id=task.task_id, env_handle="/tmp/s2", parent_snapshot_id="s1")
        )

        assert store.get_snapshot("s2").parent_snapshot_id == "s1"
        assert store.latest_snapshot(task.task_id).snapshot_id == "s2"
        assert [s.snapshot_id for s in store.list_snapshots(task.task_id)] == ["s1", "s2"]
        assert store.get_snapshot("missing") is None


class TestPersistence:
    """测试重新打开数据库。"""

    def test_reopen_keeps_tasks(self, tmp_path):
        db_path = tmp_path / "tof.sqlite"
        with TaskStore(db_path) as first:
            task = first.create("goal")
            first.append_attempt(task.task_id, AttemptResult.success(_shell_action()))

        with TaskStore(db_path, bootstrap=False) as second:
            assert second.has_schema()
            assert len(second.require(task.task_id).attempts) == 1

    def test_unbootstrapped_store_has_no_schema(self, tmp_path):
        with TaskStore(tmp_path / "empty.sqlite", bootstrap=False) as empty:
            assert not empty.has_schema()
