"""
Configuration for the Depth Engine
==================================

Typed configuration sections, per-instrument detector thresholds and the
YAML loader.

Resolution order:
1. Built-in defaults (the dataclass defaults below)
2. YAML file (config/depthflow.yaml, or DEPTHFLOW_CONFIG)
3. Environment overrides (ML_BACKEND_URL, LOG_LEVEL)
"""

import copy
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "depthflow.yaml"


@dataclass
class DetectorThresholds:
    """
    Tunable heuristics for the signal detectors.

    None of these are invariants; they are starting points meant to be
    tuned per instrument.
    """
    # Whale: single resting level above this quantity
    whale_threshold: float = 10.0
    whale_high_multiple: float = 3.0
    whale_scan_depth: int = 50

    # Liquidity wall: level above multiplier x side average
    wall_multiplier: float = 3.0
    wall_top_n: int = 5

    # Support / resistance: persistent heavy levels near mid
    sr_band_bps: float = 50.0
    sr_volume_ratio: float = 2.0
    sr_persistence: float = 0.6

    # Absorption: traded through a level without proportional depletion
    absorption_window_ms: int = 10_000
    absorption_min_trades: int = 3
    absorption_max_depletion: float = 0.5

    # Iceberg: dip then refill to a similar size
    iceberg_window_ms: int = 10_000
    iceberg_min_drop: float = 0.3
    iceberg_refill_similarity: float = 0.8
    iceberg_min_refills: int = 1
    iceberg_repeat_trades: int = 5

    # Spoofing: large resting size withdrawn with no matching trades
    spoof_window_ms: int = 10_000
    spoof_withdraw_ratio: float = 0.8
    spoof_trade_tolerance: float = 0.1

    # Momentum: consecutive same-side aggressor trades
    momentum_window_ms: int = 5_000
    momentum_min_run: int = 8
    momentum_flow_threshold: float = 60.0

    def validate(self) -> "DetectorThresholds":
        for f in fields(self):
            value = getattr(self, f.name)
            if value < 0:
                raise ConfigError(f"detector threshold {f.name} must be >= 0, got {value}")
        for name in ("whale_scan_depth", "wall_top_n", "momentum_min_run",
                     "absorption_min_trades", "iceberg_repeat_trades"):
            if getattr(self, name) < 1:
                raise ConfigError(f"detector threshold {name} must be >= 1")
        return self


@dataclass
class InstrumentConfig:
    """Per-instrument settings. Thresholds override DetectorThresholds fields."""
    symbol: str
    aliases: List[str] = field(default_factory=list)
    whale_threshold: float = 10.0
    overrides: Dict[str, Any] = field(default_factory=dict)

    def thresholds(self, base: DetectorThresholds) -> DetectorThresholds:
        unknown = set(self.overrides) - {f.name for f in fields(DetectorThresholds)}
        if unknown:
            raise ConfigError(f"unknown threshold override(s) for {self.symbol}: {sorted(unknown)}")
        merged = replace(base, whale_threshold=self.whale_threshold, **self.overrides)
        return merged.validate()


@dataclass
class StreamConfig:
    """Exchange connection settings."""
    rest_base_url: str = "https://api.binance.com"
    ws_base_url: str = "wss://stream.binance.com:9443"
    snapshot_limit: int = 1000
    diff_speed: str = "100ms"
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    max_snapshot_refetches: int = 3
    event_queue_size: int = 10_000
    request_timeout: float = 10.0
    render_interval: float = 0.1
    history_length: int = 100
    autostart_symbols: List[str] = field(default_factory=list)

    def validate(self) -> "StreamConfig":
        if self.render_interval <= 0:
            raise ConfigError("render_interval must be > 0")
        if self.reconnect_base_delay <= 0 or self.reconnect_max_delay < self.reconnect_base_delay:
            raise ConfigError("reconnect delays must satisfy 0 < base <= max")
        if self.snapshot_limit < 1 or self.history_length < 1 or self.event_queue_size < 1:
            raise ConfigError("snapshot_limit, history_length and event_queue_size must be >= 1")
        return self


@dataclass
class EnsembleConfig:
    """Weights and curve of the local predictor ensemble."""
    model_name: str = "dom-ensemble-v1"
    imbalance_weight: float = 0.30
    depth_weight: float = 0.15
    flow_weight: float = 0.20
    signal_weights: Dict[str, float] = field(default_factory=lambda: {
        "WHALE_BUY": 0.15,
        "WHALE_SELL": 0.15,
        "ABSORPTION": 0.15,
        "ICEBERG": 0.10,
        "SPOOFING": 0.10,
        "MOMENTUM": 0.20,
        "SUPPORT": 0.10,
        "RESISTANCE": 0.10,
    })
    severity_weights: Dict[str, float] = field(default_factory=lambda: {
        "HIGH": 1.0,
        "MEDIUM": 0.6,
        "LOW": 0.3,
    })
    temperature: float = 4.0
    neutral_bias: float = 1.0
    confidence_gamma: float = 1.0
    flow_window_ms: int = 5_000
    # L1 share of side volume, bid minus ask
    concentration_weight: float = 0.15
    concentration_scale: float = 20.0
    # Mid-price history inputs
    momentum_weight: float = 0.15
    momentum_lookback: int = 5
    momentum_scale_bps: float = 5.0
    vwap_weight: float = 0.10
    vwap_scale_bps: float = 10.0
    volatility_weight: float = 0.05
    volatility_cap_bps: float = 20.0
    price_history_length: int = 60

    def validate(self) -> "EnsembleConfig":
        if self.temperature <= 0 or self.confidence_gamma <= 0:
            raise ConfigError("temperature and confidence_gamma must be > 0")
        if min(self.concentration_scale, self.momentum_scale_bps, self.vwap_scale_bps) <= 0:
            raise ConfigError("concentration and price scales must be > 0")
        if self.momentum_lookback < 2 or self.price_history_length < self.momentum_lookback:
            raise ConfigError("need 2 <= momentum_lookback <= price_history_length")
        return self


@dataclass
class GatewayConfig:
    """Prediction gateway settings."""
    remote_url: str = ""
    remote_timeout: float = 2.0
    status_timeout: float = 3.0
    default_horizon: int = 10
    horizons: List[int] = field(default_factory=lambda: [5, 10, 30])
    max_pending_predictions: int = 1000

    def validate(self) -> "GatewayConfig":
        if self.remote_timeout <= 0:
            raise ConfigError("remote_timeout must be > 0")
        if self.max_pending_predictions < 1:
            raise ConfigError("max_pending_predictions must be >= 1")
        return self


DEFAULT_INSTRUMENTS: Dict[str, InstrumentConfig] = {
    "BTCUSDT": InstrumentConfig("BTCUSDT", aliases=["BTCUSD"], whale_threshold=5.0),
    "ETHUSDT": InstrumentConfig("ETHUSDT", aliases=["ETHUSD"], whale_threshold=50.0),
    "PAXGUSDT": InstrumentConfig("PAXGUSDT", aliases=["XAUUSD"], whale_threshold=10.0),
}


@dataclass
class AppConfig:
    """Complete application configuration."""
    stream: StreamConfig = field(default_factory=StreamConfig)
    detectors: DetectorThresholds = field(default_factory=DetectorThresholds)
    ensemble: EnsembleConfig = field(default_factory=EnsembleConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    instruments: Dict[str, InstrumentConfig] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_INSTRUMENTS)
    )
    log_level: str = "INFO"

    def resolve_symbol(self, symbol: str) -> str:
        """Map an alias (BTCUSD) to its exchange symbol (BTCUSDT)."""
        key = symbol.strip().upper()
        if key in self.instruments:
            return key
        for instrument in self.instruments.values():
            if key in (alias.upper() for alias in instrument.aliases):
                return instrument.symbol
        return key

    def instrument(self, symbol: str) -> InstrumentConfig:
        key = self.resolve_symbol(symbol)
        if key in self.instruments:
            return self.instruments[key]
        return InstrumentConfig(key, whale_threshold=self.detectors.whale_threshold)

    def thresholds_for(self, symbol: str) -> DetectorThresholds:
        return self.instrument(symbol).thresholds(self.detectors)

    def known_symbols(self) -> List[str]:
        return sorted(self.instruments)

    def validate(self) -> "AppConfig":
        self.stream.validate()
        self.detectors.validate()
        self.ensemble.validate()
        self.gateway.validate()
        for instrument in self.instruments.values():
            instrument.thresholds(self.detectors)
        return self


def _build_section(cls, data: Optional[Dict[str, Any]], name: str):
    if not data:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown key(s) in section '{name}': {sorted(unknown)}")
    return cls(**data)


def _build_instruments(data: Optional[Dict[str, Any]]) -> Dict[str, InstrumentConfig]:
    instruments = copy.deepcopy(DEFAULT_INSTRUMENTS)
    if not data:
        return instruments
    for symbol, entry in data.items():
        entry = dict(entry or {})
        key = symbol.upper()
        base = instruments.get(key)
        instruments[key] = InstrumentConfig(
            symbol=key,
            aliases=[a.upper() for a in entry.get("aliases", base.aliases if base else [])],
            whale_threshold=float(entry.get("whale_threshold",
                                            base.whale_threshold if base else 10.0)),
            overrides=dict(entry.get("overrides", {})),
        )
    return instruments


def config_from_dict(data: Dict[str, Any]) -> AppConfig:
    """Build and validate an AppConfig from a parsed mapping."""
    try:
        config = AppConfig(
            stream=_build_section(StreamConfig, data.get("stream"), "stream"),
            detectors=_build_section(DetectorThresholds, data.get("detectors"), "detectors"),
            ensemble=_build_section(EnsembleConfig, data.get("ensemble"), "ensemble"),
            gateway=_build_section(GatewayConfig, data.get("gateway"), "gateway"),
            instruments=_build_instruments(data.get("instruments")),
            log_level=str(data.get("log_level", "INFO")).upper(),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid configuration: {e}") from e
    return config.validate()


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from YAML, falling back to defaults.

    Args:
        path: Explicit file path. Defaults to DEPTHFLOW_CONFIG or
              config/depthflow.yaml.

    Returns:
        Validated AppConfig
    """
    config_path = Path(path or os.environ.get("DEPTHFLOW_CONFIG") or DEFAULT_CONFIG_PATH)
    data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        data = loaded or {}
        logger.info(f"Loaded config from {config_path}")
    else:
        logger.info(f"No config file at {config_path}, using defaults")

    config = config_from_dict(data)

    remote_url = os.environ.get("ML_BACKEND_URL")
    if remote_url is not None:
        config.gateway.remote_url = remote_url.strip()
    log_level = os.environ.get("LOG_LEVEL")
    if log_level:
        config.log_level = log_level.upper()
    return config


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Capped exponential backoff: base * 2^(attempt-1), never above cap."""
    if attempt <= 0:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


def split_symbols(raw: str) -> Tuple[str, ...]:
    """Parse a comma separated symbol list from env/CLI."""
    return tuple(s.strip().upper() for s in raw.split(",") if s.strip())
