"""Unit tests for configuration management."""

import json
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from rulegate.config import (
    PoolConfig,
    ProbeConfig,
    ReadinessStrategy,
    RulegateConfig,
    create_default_config,
    find_config_file,
    load_config,
)
from rulegate.models import Behavior


class TestRulegateConfig:
    """Test complete RulegateConfig model."""

    def test_defaults(self):
        """Zero-config defaults mirror the meta-rules-dat layout."""
        config = create_default_config()
        assert config.engine.binary == "mihomo"
        assert config.engine.hard_timeout == 10.0
        assert config.engine.safe_paths_env == "SAFE_PATHS"
        assert config.probe.url == "http://cp.cloudflare.com"
        assert config.probe.success_statuses == [200, 204]
        assert config.pool.concurrency == 20
        assert config.pool.start_port == 20000
        assert config.readiness.strategy == ReadinessStrategy.POLL

        behaviors = {root.path: root.behavior for root in config.discovery.roots}
        assert behaviors["./meta-rules-dat-meta/geo/geosite"] == Behavior.DOMAIN
        assert behaviors["./meta-rules-dat-meta/geo/geoip"] == Behavior.IPCIDR

    def test_config_from_dict_with_aliases(self):
        """Test config creation from camelCase dictionary."""
        config_data = {
            "discovery": {
                "roots": [{"path": "rules/site", "behavior": "domain"}],
                "exclude": ["old/**"]
            },
            "engine": {"binary": "/opt/mihomo", "hardTimeout": 4},
            "probe": {"successStatuses": [204], "timeout": 2},
            "readiness": {"strategy": "fixed", "delay": 1.5},
            "pool": {"concurrency": 4, "startPort": 30000}
        }

        config = RulegateConfig(**config_data)
        assert config.discovery.roots[0].behavior == Behavior.DOMAIN
        assert config.discovery.exclude == ["old/**"]
        assert config.engine.binary == "/opt/mihomo"
        assert config.engine.hard_timeout == 4
        assert config.probe.success_statuses == [204]
        assert config.readiness.strategy == ReadinessStrategy.FIXED
        assert config.readiness.delay == 1.5
        assert config.pool.start_port == 30000

    def test_config_extra_fields_forbidden(self):
        with pytest.raises(ValueError):
            RulegateConfig(unknown_section={})

    def test_invalid_behavior_rejected(self):
        with pytest.raises(ValueError):
            RulegateConfig(discovery={"roots": [{"path": "x", "behavior": "classical"}]})


class TestSectionValidation:
    """Test field and model validators."""

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValueError, match="concurrency"):
            PoolConfig(concurrency=0)

    def test_lane_ports_must_fit_port_range(self):
        with pytest.raises(ValueError, match="lane ports"):
            PoolConfig(concurrency=10, start_port=65530)

    def test_privileged_start_port_rejected(self):
        with pytest.raises(ValueError, match="lane ports"):
            PoolConfig(concurrency=1, start_port=80)

    def test_last_lane_port_may_be_65535(self):
        pool = PoolConfig(concurrency=6, start_port=65530)
        assert pool.start_port + pool.concurrency - 1 == 65535

    def test_empty_success_statuses_rejected(self):
        with pytest.raises(ValueError):
            ProbeConfig(success_statuses=[])

    def test_probe_target_is_frozen_set(self):
        target = ProbeConfig(success_statuses=[200, 204]).target()
        assert target.is_success(204)
        assert not target.is_success(302)

    def test_hard_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            RulegateConfig(engine={"hardTimeout": 0})


class TestConfigFileOperations:
    """Test configuration file loading and discovery."""

    def test_load_config_with_file(self):
        with TemporaryDirectory() as temp_dir:
            config_file = Path(temp_dir) / ".rulegate.json"
            with open(config_file, "w") as f:
                json.dump({"pool": {"concurrency": 3}}, f)

            config = load_config(config_file)
            assert config.pool.concurrency == 3

    def test_load_config_file_not_found(self):
        with TemporaryDirectory() as temp_dir:
            config = load_config(Path(temp_dir) / "nonexistent.json")
            assert config.pool.concurrency == 20

    def test_load_config_invalid_json(self):
        with TemporaryDirectory() as temp_dir:
            config_file = Path(temp_dir) / ".rulegate.json"
            config_file.write_text("{not json")

            with pytest.raises(ValueError, match="Invalid JSON"):
                load_config(config_file)

    def test_load_config_invalid_values(self):
        with TemporaryDirectory() as temp_dir:
            config_file = Path(temp_dir) / ".rulegate.json"
            config_file.write_text(json.dumps({"pool": {"concurrency": -1}}))

            with pytest.raises(ValueError, match="Failed to load config"):
                load_config(config_file)

    def test_find_config_file_in_parent(self):
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / ".rulegate.json").write_text("{}")
            nested = root / "a" / "b"
            nested.mkdir(parents=True)

            found = find_config_file(nested)
            assert found == (root / ".rulegate.json").resolve()
