"""
Tests for TrackerConfig validation and environment loading.
"""
from datetime import timedelta

import pytest

from lorawatch.config import DEFAULT_NODES, TrackerConfig
from lorawatch.errors import ConfigError


class TestDefaults:
    def test_defaults_match_dashboard(self):
        config = TrackerConfig()
        assert config.known_nodes == ("Node_1", "Node_2")
        assert config.staleness_threshold == timedelta(minutes=5)
        assert config.hysteresis_limit == 0
        assert config.poll_interval == 30.0
        assert config.liveness_interval == 10.0
        assert config.fetch_limit == 1000
        assert config.table == "LoRaData"

    def test_defaults_validate(self):
        assert TrackerConfig().validate() is not None

    def test_known_nodes_coerced_to_tuple(self):
        assert TrackerConfig(known_nodes=["A", "B"]).known_nodes == ("A", "B")

    def test_store_key_hidden_from_repr(self):
        assert "secret" not in repr(TrackerConfig(store_key="secret"))


class TestValidate:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"known_nodes": ()},
            {"known_nodes": ("Node_1", "")},
            {"known_nodes": ("Node_1", "Node_1")},
            {"staleness_threshold": timedelta(0)},
            {"staleness_threshold": timedelta(seconds=-1)},
            {"hysteresis_limit": -1},
            {"hysteresis_limit": 1.5},
            {"hysteresis_limit": True},
            {"poll_interval": 0},
            {"liveness_interval": -10},
            {"window": timedelta(0)},
            {"fetch_limit": 0},
            {"table": ""},
        ],
    )
    def test_invalid_settings_raise(self, overrides):
        with pytest.raises(ConfigError):
            TrackerConfig(**overrides).validate()


class TestFromEnv:
    def test_empty_env_gives_defaults(self):
        config = TrackerConfig.from_env({})
        assert config.known_nodes == DEFAULT_NODES
        assert config.store_url is None
        assert config.database_url is None

    def test_reads_all_variables(self):
        config = TrackerConfig.from_env({
            "LORAWATCH_NODES": "Gate_A, Gate_B ,,Gate_C",
            "LORAWATCH_STALENESS_SECONDS": "120",
            "LORAWATCH_HYSTERESIS_LIMIT": "3",
            "LORAWATCH_POLL_SECONDS": "15",
            "LORAWATCH_LIVENESS_SECONDS": "5",
            "LORAWATCH_WINDOW_DAYS": "2",
            "LORAWATCH_FETCH_LIMIT": "250",
            "LORAWATCH_TABLE": "Telemetry",
            "LORAWATCH_STORE_URL": "https://example.supabase.co",
            "LORAWATCH_STORE_KEY": "anon",
            "DATABASE_URL": "sqlite:///x.db",
        })
        assert config.known_nodes == ("Gate_A", "Gate_B", "Gate_C")
        assert config.staleness_threshold == timedelta(minutes=2)
        assert config.hysteresis_limit == 3
        assert config.poll_interval == 15.0
        assert config.liveness_interval == 5.0
        assert config.window == timedelta(days=2)
        assert config.fetch_limit == 250
        assert config.table == "Telemetry"
        assert config.store_url == "https://example.supabase.co"
        assert config.store_key == "anon"
        assert config.database_url == "sqlite:///x.db"

    def test_non_numeric_value_is_config_error(self):
        with pytest.raises(ConfigError, match="LORAWATCH_POLL_SECONDS"):
            TrackerConfig.from_env({"LORAWATCH_POLL_SECONDS": "often"})

    def test_invalid_value_fails_validation(self):
        with pytest.raises(ConfigError):
            TrackerConfig.from_env({"LORAWATCH_STALENESS_SECONDS": "-5"})

    def test_empty_node_list_rejected(self):
        with pytest.raises(ConfigError):
            TrackerConfig.from_env({"LORAWATCH_NODES": " , "})
