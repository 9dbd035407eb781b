"""Tests for layered configuration."""
import pytest
import yaml

from core.contracts.errors import ConfigError
from core.platform.config import Config, write_default_config


class TestConfigLoading:
    """测试配置加载顺序：默认值 < 配置文件 < 环境变量 < 命令行。"""

    def test_defaults_without_file(self, tmp_path):
        config = Config(working_dir=tmp_path, data={}, environ={})
        assert config.get("task.max_attempts") == 10
        assert config.get("docker.snapshot_frequency") == "action"
        assert config.get("llm.temperature.error") == 0.3
        assert config.get("missing.key", "fallback") == "fallback"

    def test_file_overrides_defaults(self, tmp_path):
        config_dir = tmp_path / ".tof"
        config_dir.mkdir()
        (config_dir / "config.yaml").write_text(
            yaml.safe_dump({"task": {"max_attempts": 4}, "llm": {"provider": "openai"}}),
            encoding="utf-8",
        )
        config = Config(working_dir=tmp_path, environ={})

        assert config.source == config_dir / "config.yaml"
        assert config.get("task.max_attempts") == 4
        assert config.get("llm.provider") == "openai"
        assert config.get("task.max_seconds") == 1800

    def test_environment_overrides_file(self, tmp_path):
        config = Config(
            working_dir=tmp_path,
            data={"task": {"max_attempts": 4}},
            environ={"TOF_MAX_ATTEMPTS": "7", "TOF_SNAPSHOT_FREQUENCY": "never"},
        )
        assert config.get("task.max_attempts") == 7
        assert config.get("docker.snapshot_frequency") == "never"

    def test_cli_overrides_skip_none(self, tmp_path):
        config = Config(working_dir=tmp_path, data={}, environ={})
        config.apply_overrides({"task.max_attempts": 2, "llm.model": None})
        assert config.get("task.max_attempts") == 2
        assert config.get("llm.model") == "claude-3-5-sonnet-latest"

    def test_resolve_path_relative_to_working_dir(self, tmp_path):
        config = Config(working_dir=tmp_path, data={}, environ={})
        assert config.resolve_path("storage.db_path") == tmp_path.resolve() / ".tof" / "tof.sqlite"


class TestConfigErrors:
    """测试非法配置。"""

    def test_missing_explicit_config_dir(self, tmp_path):
        with pytest.raises(ConfigError):
            Config(config_dir=tmp_path / "nowhere", working_dir=tmp_path, environ={})

    def test_malformed_yaml(self, tmp_path):
        config_dir = tmp_path / ".tof"
        config_dir.mkdir()
        (config_dir / "config.yaml").write_text("task: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError):
            Config(working_dir=tmp_path, environ={})

    @pytest.mark.parametrize(
        "data",
        [
            {"docker": {"snapshot_frequency": "sometimes"}},
            {"task": {"max_attempts": 0}},
            {"task": {"max_seconds": "soon"}},
        ],
    )
    def test_invalid_values(self, tmp_path, data):
        with pytest.raises(ConfigError):
            Config(working_dir=tmp_path, data=data, environ={})

    def test_invalid_environment_value(self, tmp_path):
        with pytest.raises(ConfigError):
            Config(working_dir=tmp_path, data={}, environ={"TOF_MAX_ATTEMPTS": "many"})


class TestDefaultConfig:
    def test_write_default_config(self, tmp_path):
        path = write_default_config(tmp_path)
        assert path == tmp_path / ".tof" / "config.yaml"
        assert Config(working_dir=tmp_path, environ={}).get("backtrack.policy") == "retry"

    def test_refuses_to_overwrite(self, tmp_path):
        write_default_config(tmp_path)
        with pytest.raises(ConfigError):
            write_default_config(tmp_path)
        write_default_config(tmp_path, force=True)
