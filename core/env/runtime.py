"""Environment runtimes.

A runtime owns one mutable execution environment (a local workspace
directory or a Docker container) and knows how to run commands in it,
write files into it, and capture/restore checkpoints of it.
"""
import logging
import os
import posixpath
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union

from core.contracts.snapshot import CommandResult, Snapshot
from core.utils.fs import ensure_dir, safe_path

logger = logging.getLogger(__name__)

# 超时后 CommandResult 使用的退出码
TIMEOUT_EXIT_CODE = -1


class EnvironmentRuntime(ABC):
    """执行环境抽象基类。"""

    kind = "abstract"

    @property
    @abstractmethod
    def handle(self) -> str:
        """当前环境句柄（容器ID或工作区路径）。"""

    @abstractmethod
    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """在环境中执行 shell 命令。

        Args:
            command: 命令字符串
            timeout: 超时时间（秒）

        Returns:
            命令执行结果；超时时 timed_out 为 True
        """

    @abstractmethod
    def write_file(self, path: str, content: str) -> str:
        """写入完整文件内容（自动创建父目录）。

        Returns:
            文件在环境中的路径
        """

    @abstractmethod
    def capture(self, snapshot_id: str) -> str:
        """捕获当前环境状态。

        Returns:
            快照句柄（镜像名或快照目录）
        """

    @abstractmethod
    def restore(self, snapshot: Snapshot) -> str:
        """把环境恢复到快照状态（快照本身不变）。

        Returns:
            恢复后的环境句柄
        """

    def describe(self) -> str:
        """生成给 oracle 的环境说明。"""
        return f"Environment: {self.kind} ({self.handle})"


class LocalEnvironment(EnvironmentRuntime):
    """本地工作区环境：命令在工作区目录中执行，快照为目录副本。"""

    kind = "local"

    def __init__(
        self,
        workspace: Union[str, Path],
        snapshots_dir: Optional[Union[str, Path]] = None,
    ):
        """初始化本地环境。

        Args:
            workspace: 工作区目录
            snapshots_dir: 快照目录（默认在工作区旁边的 .snapshots）
        """
        self.workspace = ensure_dir(Path(workspace).resolve())
        if snapshots_dir is None:
            snapshots_dir = self.workspace.parent / f".{self.workspace.name}_snapshots"
        self.snapshots_dir = ensure_dir(Path(snapshots_dir).resolve())

    @property
    def handle(self) -> str:
        return str(self.workspace)

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        logger.debug("Running in %s: %s", self.workspace, command)
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=str(self.workspace),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                timed_out=True,
            )
        return CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def write_file(self, path: str, content: str) -> str:
        target = safe_path(self.workspace, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return str(target)

    def capture(self, snapshot_id: str) -> str:
        target = self.snapshots_dir / snapshot_id
        if target.exists():
            raise FileExistsError(f"Snapshot directory already exists: {target}")
        # 先复制到临时目录再改名，失败时不留下半成品
        staging = self.snapshots_dir / f".{snapshot_id}.partial"
        if staging.exists():
            shutil.rmtree(staging)
        try:
            shutil.copytree(self.workspace, staging, symlinks=True)
            os.replace(staging, target)
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        return str(target)

    def restore(self, snapshot: Snapshot) -> str:
        source = Path(snapshot.env_handle)
        if not source.is_dir():
            raise FileNotFoundError(f"Snapshot directory missing: {source}")
        staging = self.workspace.parent / f".{self.workspace.name}.restoring"
        if staging.exists():
            shutil.rmtree(staging)
        shutil.copytree(source, staging, symlinks=True)
        shutil.rmtree(self.workspace, ignore_errors=True)
        os.replace(staging, self.workspace)
        return self.handle

    def describe(self) -> str:
        return (
            "You are working in a local workspace directory.\n"
            f"Workspace: {self.workspace}\n"
            "Shell commands run with the workspace as the current directory. "
            "File paths are relative to the workspace."
        )


class DockerEnvironment(EnvironmentRuntime):
    """Docker 容器环境：通过 docker CLI 执行命令，快照为 docker commit 生成的镜像。"""

    kind = "docker"

    def __init__(
        self,
        container: Optional[str] = None,
        image: Optional[str] = None,
        repository: str = "tof-snapshot",
        command_timeout: float = 120,
        docker_bin: str = "docker",
    ):
        """初始化 Docker 环境。

        Args:
            container: 已存在的容器ID或名称
            image: 没有容器时用于启动容器的镜像
            repository: 快照镜像仓库名
            command_timeout: docker 管理命令（commit/run/rm）的超时时间
            docker_bin: docker 可执行文件
        """
        if not container and not image:
            raise ValueError("DockerEnvironment requires a container or an image")
        self.container = container
        self.image = image
        self.repository = repository
        self.command_timeout = command_timeout
        self.docker_bin = docker_bin

    @property
    def handle(self) -> str:
        return self.container or ""

    def _docker(
        self,
        args: List[str],
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.docker_bin, *args],
            capture_output=True,
            text=True,
            input=input_text,
            timeout=timeout if timeout is not None else self.command_timeout,
        )

    def _checked(self, args: List[str]) -> str:
        completed = self._docker(args)
        if completed.returncode != 0:
            raise RuntimeError(
                f"docker {args[0]} failed ({completed.returncode}): {completed.stderr.strip()}"
            )
        return completed.stdout.strip()

    def ensure_container(self) -> str:
        """没有容器时从镜像启动一个常驻容器。"""
        if not self.container:
            self.container = self._run_detached(self.image)
            logger.info("Started container %s from %s", self.container, self.image)
        return self.container

    def _run_detached(self, image: str) -> str:
        return self._checked(["run", "-d", image, "tail", "-f", "/dev/null"])

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        container = self.ensure_container()
        logger.debug("Running in container %s: %s", container, command)
        try:
            completed = self._docker(["exec", container, "sh", "-c", command], timeout=timeout)
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                timed_out=True,
            )
        return CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def write_file(self, path: str, content: str) -> str:
        container = self.ensure_container()
        target = posixpath.normpath(path)
        directory = posixpath.dirname(target) or "."
        script = f"mkdir -p {shlex.quote(directory)} && cat > {shlex.quote(target)}"
        completed = self._docker(["exec", "-i", container, "sh", "-c", script], input_text=content)
        if completed.returncode != 0:
            raise IOError(f"Failed to write {path} in {container}: {completed.stderr.strip()}")
        return target

    def capture(self, snapshot_id: str) -> str:
        container = self.ensure_container()
        image_ref = f"{self.repository}:{snapshot_id}"
        self._checked(["commit", container, image_ref])
        return image_ref

    def restore(self, snapshot: Snapshot) -> str:
        if self.container:
            self._docker(["rm", "-f", self.container])
        self.container = self._run_detached(snapshot.env_handle)
        logger.info("Restored container %s from %s", self.container, snapshot.env_handle)
        return self.container

    def describe(self) -> str:
        return (
            "You are working inside a Docker container.\n"
            f"Container: {self.container or '(not started)'}\n"
            f"Image: {self.image or 'unknown'}\n"
            "Shell commands run with `sh -c` inside the container."
        )


def _decode(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
