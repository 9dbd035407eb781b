"""Tests for the web API."""
import pytest
from fastapi.testclient import TestClient

from apps.web.api_server import create_app
from core.orchestrator.engine import build_orchestrator
from core.platform.config import Config

from conftest import FakeLLMClient


@pytest.fixture
def api(tmp_path, store, audit):
    """返回 (TestClient, 设置预设回复的函数)。"""
    config = Config(working_dir=tmp_path, data={}, environ={})
    client = FakeLLMClient()

    def factory(config, store, scope=None):
        return build_orchestrator(config, store, client=client, audit=audit, scope=scope)

    app = create_app(config=config, store=store, orchestrator_factory=factory)
    with TestClient(app) as test_client:
        yield test_client, client.responses.extend


class TestTaskRoutes:
    """测试任务相关接口。"""

    def test_health(self, api):
        http, _ = api
        assert http.get("/api/health").json() == {"status": "ok"}

    def test_create_runs_task_in_background(self, api, replies):
        http, script = api
        script([replies.shell("echo hi"), replies.done("Printed hi")])

        response = http.post("/api/tasks", json={"prompt": "say hi"})

        assert response.status_code == 202
        task_id = response.json()["id"]
        detail = http.get(f"/api/tasks/{task_id}").json()
        assert detail["status"] == "success"
        assert detail["continuation_summary"] == "Printed hi"
        assert detail["attempts"][0]["outputs"]["stdout"] == "hi\n"

        snapshots = http.get(f"/api/tasks/{task_id}/snapshots").json()["snapshots"]
        assert len(snapshots) == 1

    def test_empty_prompt_rejected(self, api):
        http, _ = api
        assert http.post("/api/tasks", json={"prompt": ""}).status_code == 422

    def test_list_filters_by_status(self, api, replies):
        http, script = api
        script([replies.action("custom", {})])
        http.post("/api/tasks", json={"prompt": "will fail"})

        failed = http.get("/api/tasks", params={"status": "failed"}).json()["tasks"]
        assert [t["description"] for t in failed] == ["will fail"]
        assert "attempts" not in failed[0]
        assert http.get("/api/tasks", params={"status": "success"}).json()["tasks"] == []
        assert http.get("/api/tasks", params={"status": "bogus"}).status_code == 400

    def test_unknown_task(self, api):
        http, _ = api
        assert http.get("/api/tasks/task_missing").status_code == 404
        assert http.get("/api/tasks/task_missing/children").status_code == 404
        assert http.post("/api/tasks/task_missing/resume").status_code == 404

    def test_resume_failed_task_creates_child(self, api, replies):
        http, script = api
        script([replies.action("custom", {})])
        failed_id = http.post("/api/tasks", json={"prompt": "retry me"}).json()["id"]

        script([replies.shell("true"), replies.done()])
        response = http.post(f"/api/tasks/{failed_id}/resume")

        assert response.status_code == 202
        child = response.json()
        assert child["parent_id"] == failed_id
        children = http.get(f"/api/tasks/{failed_id}/children").json()["tasks"]
        assert [c["id"] for c in children] == [child["id"]]
        assert children[0]["status"] == "success"


class TestRunIsolation:
    """测试任务树之间的环境隔离与重复运行保护。"""

    def test_each_task_tree_gets_its_own_workspace(self, api, replies, tmp_path):
        http, script = api
        script([replies.shell("pwd"), replies.done()])
        first = http.post("/api/tasks", json={"prompt": "first"}).json()["id"]
        script([replies.shell("pwd"), replies.done()])
        second = http.post("/api/tasks", json={"prompt": "second"}).json()["id"]

        first_dir = http.get(f"/api/tasks/{first}").json()["attempts"][0]["outputs"]["stdout"].strip()
        second_dir = http.get(f"/api/tasks/{second}").json()["attempts"][0]["outputs"]["stdout"].strip()
        assert first_dir == str((tmp_path / "workspace" / first).resolve())
        assert second_dir == str((tmp_path / "workspace" / second).resolve())

    def test_child_task_runs_in_root_workspace(self, api, replies, tmp_path):
        http, script = api
        script([replies.action("custom", {})])
        root_id = http.post("/api/tasks", json={"prompt": "retry me"}).json()["id"]

        script([replies.shell("pwd"), replies.done()])
        child_id = http.post(f"/api/tasks/{root_id}/resume").json()["id"]

        stdout = http.get(f"/api/tasks/{child_id}").json()["attempts"][0]["outputs"]["stdout"]
        assert stdout.strip() == str((tmp_path / "workspace" / root_id).resolve())

    def test_resume_of_running_tree_is_rejected(self, api, replies, store):
        http, script = api
        root = store.create("already running")
        child = store.create("child", parent_id=root.task_id)
        runs = http.app.state.runs
        assert runs.claim(root.task_id)

        response = http.post(f"/api/tasks/{child.task_id}/resume")

        assert response.status_code == 409
        assert store.children(child.task_id) == []
        assert store.require(child.task_id).status == "pending"

        runs.release(root.task_id)
        script([replies.shell("true"), replies.done()])
        assert http.post(f"/api/tasks/{child.task_id}/resume").status_code == 202
        assert store.require(child.task_id).status == "success"
        assert root.task_id not in runs

    def test_finished_runs_release_the_tree(self, api, replies):
        http, script = api
        script([replies.shell("true"), replies.done()])
        task_id = http.post("/api/tasks", json={"prompt": "quick"}).json()["id"]
        assert task_id not in http.app.state.runs

    def test_orchestrators_for_different_trees_do_not_share_environments(self, tmp_path, store):
        config = Config(working_dir=tmp_path, data={}, environ={})
        first = build_orchestrator(config, store, client=FakeLLMClient(), scope="task_a")
        second = build_orchestrator(config, store, client=FakeLLMClient(), scope="task_b")
        assert first.executor.environment.handle != second.executor.environment.handle
        assert first.snapshots.runtime.snapshots_dir != second.snapshots.runtime.snapshots_dir
