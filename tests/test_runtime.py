"""Tests for environment runtimes and the environment factory."""
import subprocess

import pytest

from core.contracts.errors import ConfigError
from core.contracts.snapshot import Snapshot
from core.env.factory import build_environment
from core.env.runtime import DockerEnvironment, LocalEnvironment
from core.platform.config import Config


class FakeDocker:
    """记录 docker CLI 调用的 subprocess.run 替身。"""

    def __init__(self):
        self.calls = []
        self.next_container = iter(["c-new", "c-restored"])

    def __call__(self, args, capture_output=True, text=True, input=None, timeout=None):
        self.calls.append({"args": args, "input": input, "timeout": timeout})
        command = args[1]
        if command == "run":
            return subprocess.CompletedProcess(args, 0, stdout=next(self.next_container) + "\n", stderr="")
        if command == "exec" and "sleep" in args[-1]:
            raise subprocess.TimeoutExpired(args, timeout, output=b"partial")
        if command == "exec" and "false" in args[-1]:
            return subprocess.CompletedProcess(args, 1, stdout="", stderr="failed")
        return subprocess.CompletedProcess(args, 0, stdout="ok", stderr="")


@pytest.fixture
def docker(monkeypatch):
    fake = FakeDocker()
    monkeypatch.setattr(subprocess, "run", fake)
    return fake


class TestDockerEnvironment:
    """测试 Docker 运行时生成的命令。"""

    def test_requires_container_or_image(self):
        with pytest.raises(ValueError):
            DockerEnvironment()

    def test_starts_container_from_image_on_first_use(self, docker):
        env = DockerEnvironment(image="python:3.12-slim", command_timeout=60)
        result = env.execute("echo hi", timeout=5)

        assert result.ok
        assert docker.calls[0]["args"] == ["docker", "run", "-d", "python:3.12-slim", "tail", "-f", "/dev/null"]
        assert docker.calls[0]["timeout"] == 60
        assert docker.calls[1]["args"] == ["docker", "exec", "c-new", "sh", "-c", "echo hi"]
        assert docker.calls[1]["timeout"] == 5

    def test_execute_failure_and_timeout(self, docker):
        env = DockerEnvironment(container="c1")
        failed = env.execute("false")
        assert failed.exit_code == 1
        assert failed.stderr == "failed"

        timed_out = env.execute("sleep 100", timeout=1)
        assert timed_out.timed_out
        assert timed_out.stdout == "partial"

    def test_write_file_streams_content(self, docker):
        env = DockerEnvironment(container="c1")
        path = env.write_file("src/app dir/main.py", "print('x')\n")

        assert path == "src/app dir/main.py"
        call = docker.calls[0]
        assert call["args"][:4] == ["docker", "exec", "-i", "c1"]
        assert call["args"][-1] == "mkdir -p 'src/app dir' && cat > 'src/app dir/main.py'"
        assert call["input"] == "print('x')\n"

    def test_capture_and_restore(self, docker):
        env = DockerEnvironment(container="c1", repository="tof-test")
        image = env.capture("snapshot_1")
        assert image == "tof-test:snapshot_1"
        assert docker.calls[0]["args"] == ["docker", "commit", "c1", "tof-test:snapshot_1"]

        handle = env.restore(Snapshot(snapshot_id="snapshot_1", task_id="t", env_handle=image))
        assert docker.calls[1]["args"] == ["docker", "rm", "-f", "c1"]
        assert docker.calls[2]["args"][:4] == ["docker", "run", "-d", "tof-test:snapshot_1"]
        assert handle == env.container == "c-new"


class TestBuildEnvironment:
    """测试环境工厂。"""

    def test_local_defaults(self, tmp_path):
        env = build_environment(Config(working_dir=tmp_path, data={}, environ={}), tmp_path)
        assert isinstance(env, LocalEnvironment)
        assert env.workspace == (tmp_path / "workspace").resolve()
        assert env.snapshots_dir == (tmp_path / ".tof" / "snapshots").resolve()

    def test_docker_requires_image_or_container(self, tmp_path):
        config = Config(working_dir=tmp_path, data={"environment": {"kind": "docker"}}, environ={})
        with pytest.raises(ConfigError):
            build_environment(config, tmp_path)

    def test_docker(self, tmp_path):
        config = Config(
            working_dir=tmp_path,
            data={"environment": {"kind": "docker", "image": "ubuntu:24.04"}},
            environ={},
        )
        env = build_environment(config, tmp_path)
        assert isinstance(env, DockerEnvironment)
        assert env.image == "ubuntu:24.04"
        assert env.repository == "tof-snapshot"

    def test_unknown_kind(self, tmp_path):
        config = Config(working_dir=tmp_path, data={"environment": {"kind": "vm"}}, environ={})
        with pytest.raises(ConfigError):
            build_environment(config, tmp_path)

    def test_local_scope_uses_subdirectories(self, tmp_path):
        env = build_environment(Config(working_dir=tmp_path, data={}, environ={}), tmp_path, scope="task_1")
        assert env.workspace == (tmp_path / "workspace" / "task_1").resolve()
        assert env.snapshots_dir == (tmp_path / ".tof" / "snapshots" / "task_1").resolve()

    def test_scope_cannot_escape_workspace(self, tmp_path):
        with pytest.raises(ConfigError):
            build_environment(Config(working_dir=tmp_path, data={}, environ={}), tmp_path, scope="../elsewhere")

    def test_docker_scope_starts_its_own_container(self, tmp_path):
        config = Config(
            working_dir=tmp_path,
            data={"environment": {"kind": "docker", "image": "ubuntu:24.04", "container": "shared"}},
            environ={},
        )
        assert build_environment(config, tmp_path).container == "shared"
        scoped = build_environment(config, tmp_path, scope="task_1")
        assert scoped.container is None
        assert scoped.image == "ubuntu:24.04"

    def test_docker_scope_requires_image(self, tmp_path):
        config = Config(
            working_dir=tmp_path,
            data={"environment": {"kind": "docker", "container": "shared"}},
            environ={},
        )
        with pytest.raises(ConfigError):
            build_environment(config, tmp_path, scope="task_1")
