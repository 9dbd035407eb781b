"""Environment runtime factory."""
from pathlib import Path
from typing import Optional, Union

from core.contracts.errors import ConfigError
from core.env.runtime import DockerEnvironment, EnvironmentRuntime, LocalEnvironment
from core.platform.config import Config
from core.utils.fs import safe_path


def build_environment(
    config: Config,
    working_dir: Union[str, Path],
    scope: Optional[str] = None,
) -> EnvironmentRuntime:
    """根据配置创建执行环境。

    给定 scope 时返回该范围独占的环境：本地环境使用工作区下的同名子目录，
    Docker 环境从 environment.image 启动新容器，不复用配置中的共享容器。

    Args:
        config: 配置
        working_dir: 工作目录（.tof 所在目录）
        scope: 隔离范围（通常是任务树的根任务ID）

    Returns:
        EnvironmentRuntime 实例

    Raises:
        ConfigError: 环境类型未知或 docker 配置不完整
    """
    kind = str(config.get("environment.kind", "local")).lower()
    base = Path(working_dir).resolve()

    if kind == "local":
        workspace = Path(config.get("environment.workspace", "workspace"))
        if not workspace.is_absolute():
            workspace = base / workspace
        snapshots_dir = base / ".tof" / "snapshots"
        if scope:
            try:
                workspace = safe_path(workspace, scope)
                snapshots_dir = safe_path(snapshots_dir, scope)
            except ValueError as e:
                raise ConfigError(f"Invalid environment scope {scope!r}: {e}") from e
        return LocalEnvironment(workspace, snapshots_dir=snapshots_dir)

    if kind == "docker":
        container = config.get("environment.container") or None
        image = config.get("environment.image") or None
        if scope:
            if not image:
                raise ConfigError("Isolated docker runs need environment.image to start a container per task tree")
            container = None
        if not container and not image:
            raise ConfigError("environment.kind is docker but neither environment.container nor environment.image is set")
        return DockerEnvironment(
            container=container,
            image=image,
            repository=config.get("docker.snapshot_repository", "tof-snapshot"),
            command_timeout=float(config.get("docker.command_timeout_seconds", 120)),
        )

    raise ConfigError(f"Unknown environment.kind: {kind}")
