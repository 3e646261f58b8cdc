"""Tests for configuration loading and per-instrument thresholds."""

import pytest
import yaml

from depthflow.config import (
    DEFAULT_CONFIG_PATH,
    AppConfig,
    InstrumentConfig,
    DetectorThresholds,
    backoff_delay,
    config_from_dict,
    load_config,
    split_symbols,
)
from depthflow.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("DEPTHFLOW_CONFIG", "ML_BACKEND_URL", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestAppConfig:

    def test_alias_resolution(self):
        config = AppConfig()
        assert config.resolve_symbol("xauusd") == "PAXGUSDT"
        assert config.resolve_symbol("BTCUSD") == "BTCUSDT"
        assert config.resolve_symbol("solusdt") == "SOLUSDT"

    def test_instrument_whale_thresholds(self):
        config = AppConfig()
        assert config.thresholds_for("BTCUSD").whale_threshold == 5
        assert config.thresholds_for("ETHUSDT").whale_threshold == 50
        assert config.thresholds_for("PAXGUSDT").whale_threshold == 10

    def test_unknown_symbol_uses_base_thresholds(self):
        config = AppConfig(detectors=DetectorThresholds(whale_threshold=7))
        assert config.thresholds_for("SOLUSDT").whale_threshold == 7

    def test_unknown_override_rejected(self):
        instrument = InstrumentConfig("BTCUSDT", overrides={"not_a_threshold": 1})
        with pytest.raises(ConfigError):
            instrument.thresholds(DetectorThresholds())

    def test_negative_threshold_rejected(self):
        with pytest.raises(ConfigError):
            DetectorThresholds(wall_multiplier=-1).validate()


class TestLoading:

    def test_repository_config(self):
        config = load_config(str(DEFAULT_CONFIG_PATH))
        assert config.thresholds_for("XAUUSD").momentum_min_run == 6
        assert config.gateway.horizons == [5, 10, 30]
        assert config.gateway.max_pending_predictions == 1000
        assert config.ensemble.momentum_lookback == 5
        assert config.ensemble.price_history_length == 60
        assert config.stream.render_interval == 0.1

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "depthflow.yaml"
        path.write_text(yaml.safe_dump({
            "log_level": "debug",
            "gateway": {"remote_url": "http://ml:8001", "remote_timeout": 1.5},
            "instruments": {"SOLUSDT": {"aliases": ["solusd"], "whale_threshold": 500}},
        }))
        config = load_config(str(path))

        assert config.log_level == "DEBUG"
        assert config.gateway.remote_url == "http://ml:8001"
        assert config.gateway.remote_timeout == 1.5
        assert config.resolve_symbol("SOLUSD") == "SOLUSDT"
        assert config.thresholds_for("SOLUSDT").whale_threshold == 500
        assert "BTCUSDT" in config.known_symbols()

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DEPTHFLOW_CONFIG", str(tmp_path / "missing.yaml"))
        monkeypatch.setenv("ML_BACKEND_URL", " http://remote:9000 ")
        monkeypatch.setenv("LOG_LEVEL", "warning")
        config = load_config()
        assert config.gateway.remote_url == "http://remote:9000"
        assert config.log_level == "WARNING"

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError):
            config_from_dict({"stream": {"snapshot_depth": 10}})

    def test_invalid_values_rejected(self):
        with pytest.raises(ConfigError):
            config_from_dict({"stream": {"render_interval": 0}})
        with pytest.raises(ConfigError):
            config_from_dict({"gateway": {"max_pending_predictions": 0}})
        with pytest.raises(ConfigError):
            config_from_dict({"ensemble": {"momentum_lookback": 10, "price_history_length": 5}})

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            load_config(str(path))


class TestHelpers:

    @pytest.mark.parametrize("attempt, expected", [(0, 0.0), (1, 1.0), (2, 2.0), (3, 4.0), (10, 30.0)])
    def test_backoff_delay(self, attempt, expected):
        assert backoff_delay(attempt, 1.0, 30.0) == expected

    def test_split_symbols(self):
        assert split_symbols(" btcusdt, ,paxgusdt ") == ("BTCUSDT", "PAXGUSDT")
        assert split_symbols("") == ()
