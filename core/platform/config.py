"""Configuration management.

Settings are resolved in layers: built-in defaults, then the first
``config.yaml`` found, then environment variables, then explicit
overrides (CLI flags).
"""
import copy
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

import yaml

from core.contracts.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".tof"
CONFIG_FILENAME = "config.yaml"

SNAPSHOT_FREQUENCIES = ("never", "action", "task")
BACKTRACK_POLICIES = ("retry", "ancestor")
LLM_PROVIDERS = ("anthropic", "openai")

DEFAULT_CONFIG: Dict[str, Any] = {
    "task": {
        "max_attempts": 10,
        "max_depth": 5,
        "default_timeout_seconds": 30,
        "max_seconds": 1800,
    },
    "llm": {
        "provider": "anthropic",
        "model": "claude-3-5-sonnet-latest",
        "max_tokens": 4096,
        "temperature": {
            "execution": 0.5,
            "error": 0.3,
        },
        "timeout_seconds": 60,
    },
    "environment": {
        "kind": "local",
        "workspace": "workspace",
        "image": "",
        "container": "",
    },
    "docker": {
        "snapshot_frequency": "action",
        "command_timeout_seconds": 120,
        "snapshot_repository": "tof-snapshot",
    },
    "backtrack": {
        "policy": "retry",
        "escalate_after": 3,
    },
    "system": {
        "logging": {
            "level": "info",
            "file": True,
        },
        "http": {
            "timeout_seconds": 30,
        },
    },
    "storage": {
        "db_path": ".tof/tof.sqlite",
        "audit_log": ".tof/logs/audit.log.jsonl",
    },
}

# 环境变量 -> (配置键, 类型转换)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "TOF_DB_PATH": ("storage.db_path", str),
    "LLM_PROVIDER": ("llm.provider", str),
    "TOF_MODEL": ("llm.model", str),
    "TOF_MAX_ATTEMPTS": ("task.max_attempts", int),
    "TOF_SNAPSHOT_FREQUENCY": ("docker.snapshot_frequency", str),
    "LLM_TIMEOUT_SECONDS": ("llm.timeout_seconds", float),
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """递归合并字典（override 优先），返回新字典。"""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class Config:
    """配置管理器。"""

    def __init__(
        self,
        config_dir: Optional[Union[str, Path]] = None,
        working_dir: Union[str, Path] = ".",
        data: Optional[Dict[str, Any]] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        """初始化配置管理器。

        Args:
            config_dir: 显式指定的配置目录（包含 config.yaml）
            working_dir: 工作目录，相对路径都以它为基准
            data: 直接给定的配置（跳过文件查找，主要用于测试）
            environ: 环境变量来源（默认 os.environ）
        """
        self.working_dir = Path(working_dir).resolve()
        self.config_dir = Path(config_dir).expanduser() if config_dir else None
        self.source: Optional[Path] = None
        self._cache: Dict[str, Any] = {}

        if data is None:
            self.source = self.discover()
            data = self._read_file(self.source) if self.source else {}
        self.data = deep_merge(DEFAULT_CONFIG, data)
        self._apply_env(os.environ if environ is None else environ)
        self.validate()

    # ------------------------------------------------------------------
    # 加载
    # ------------------------------------------------------------------

    def candidates(self) -> Iterable[Path]:
        """按优先级列出候选配置文件。"""
        if self.config_dir is not None:
            yield self.config_dir / CONFIG_FILENAME
        yield self.working_dir / CONFIG_DIR_NAME / CONFIG_FILENAME
        yield Path.home() / CONFIG_DIR_NAME / CONFIG_FILENAME

    def discover(self) -> Optional[Path]:
        """找到第一个存在的配置文件。"""
        if self.config_dir is not None and not (self.config_dir / CONFIG_FILENAME).exists():
            raise ConfigError(f"Config file not found: {self.config_dir / CONFIG_FILENAME}")
        for candidate in self.candidates():
            if candidate.is_file():
                logger.debug("Using config file %s", candidate)
                return candidate
        return None

    def load_yaml(self, filename: str) -> Dict[str, Any]:
        """加载配置目录中的 YAML 文件。"""
        if filename in self._cache:
            return self._cache[filename]

        base = self.source.parent if self.source else self.working_dir / CONFIG_DIR_NAME
        file_path = base / filename
        if not file_path.exists():
            return {}

        data = self._read_file(file_path)
        self._cache[filename] = data
        return data

    @staticmethod
    def _read_file(path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must contain a mapping at top level")
        return data

    def _apply_env(self, environ: Dict[str, str]) -> None:
        for var, (key, convert) in ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                self.set(key, convert(raw))
            except ValueError as e:
                raise ConfigError(f"Invalid value for {var}: {raw!r}") from e

    # ------------------------------------------------------------------
    # 读写
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """按点号路径读取配置值，例如 get("llm.temperature.error")。"""
        node: Any = self.data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """按点号路径设置配置值。"""
        parts = key.split(".")
        node = self.data
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value

    def apply_overrides(self, overrides: Dict[str, Any]) -> "Config":
        """应用 CLI 覆盖项（值为 None 的项被忽略），然后重新校验。"""
        for key, value in overrides.items():
            if value is not None:
                self.set(key, value)
        self.validate()
        return self

    def resolve_path(self, key: str) -> Path:
        """把配置中的相对路径解析为基于工作目录的绝对路径。"""
        value = self.get(key)
        if not value:
            raise ConfigError(f"Missing path setting: {key}")
        path = Path(str(value)).expanduser()
        if not path.is_absolute():
            path = self.working_dir / path
        return path

    def validate(self) -> None:
        """校验取值范围。

        Raises:
            ConfigError: 取值非法
        """
        frequency = self.get("docker.snapshot_frequency")
        if frequency not in SNAPSHOT_FREQUENCIES:
            raise ConfigError(
                f"docker.snapshot_frequency must be one of {', '.join(SNAPSHOT_FREQUENCIES)}, got {frequency!r}"
            )
        policy = self.get("backtrack.policy")
        if policy not in BACKTRACK_POLICIES:
            raise ConfigError(
                f"backtrack.policy must be one of {', '.join(BACKTRACK_POLICIES)}, got {policy!r}"
            )
        for key in ("task.max_attempts", "task.max_seconds", "llm.max_tokens"):
            try:
                value = float(self.get(key))
            except (TypeError, ValueError):
                raise ConfigError(f"{key} must be a number, got {self.get(key)!r}")
            if value <= 0:
                raise ConfigError(f"{key} must be positive, got {value}")

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)


def write_default_config(target_dir: Union[str, Path], force: bool = False) -> Path:
    """在 target_dir/.tof 下写入默认配置。

    Args:
        target_dir: 项目目录
        force: 已存在时是否覆盖

    Returns:
        配置文件路径

    Raises:
        ConfigError: .tof 已存在且未指定 force
    """
    config_dir = Path(target_dir) / CONFIG_DIR_NAME
    if config_dir.exists() and not force:
        raise ConfigError(f"{config_dir} already exists (use --force to overwrite)")
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / CONFIG_FILENAME
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(DEFAULT_CONFIG, f, sort_keys=False, allow_unicode=True)
    return config_path
