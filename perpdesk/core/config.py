"""
Configuration Manager - Loads and validates all system configuration.

Merges YAML config with environment variables. Environment variables take
precedence over YAML values for deployment flexibility. Per-user trading
configuration is layered on top of the loaded defaults:

    defaults (Settings.trading) < user profile < runtime patch

``merge_config`` applies that precedence and validates the result once,
so the trading loop never re-checks values ad hoc.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from perpdesk.exchange.exceptions import ConfigurationError


SUPPORTED_TIMEFRAMES = (
    "1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "8h", "12h", "1d",
)

TradingMode = Literal["auto", "manual"]
TPSLMode = Literal["percent", "atr", "ichimoku", "ichimoku_pure", "auto"]


# ---------------------------------------------------------------------------
# Timeframe tables
# ---------------------------------------------------------------------------

class TimeframePreset(BaseModel):
    """Filter thresholds tuned for one candle timeframe."""
    name: str
    min_score: float
    min_win_probability: float
    min_confluence: int
    rsi_long_max: float
    rsi_short_min: float
    adx_min: float
    min_rrr: float
    analysis_interval_seconds: float


TIMEFRAME_PRESETS: Dict[str, TimeframePreset] = {
    "1m": TimeframePreset(
        name="Ultra Scalping", min_score=4, min_win_probability=0.58, min_confluence=2,
        rsi_long_max=75, rsi_short_min=25, adx_min=10, min_rrr=0.5,
        analysis_interval_seconds=30,
    ),
    "5m": TimeframePreset(
        name="Scalping", min_score=5, min_win_probability=0.65, min_confluence=3,
        rsi_long_max=68, rsi_short_min=32, adx_min=15, min_rrr=1.2,
        analysis_interval_seconds=90,
    ),
    "15m": TimeframePreset(
        name="Short Intraday", min_score=6, min_win_probability=0.68, min_confluence=4,
        rsi_long_max=65, rsi_short_min=35, adx_min=18, min_rrr=1.5,
        analysis_interval_seconds=180,
    ),
    "30m": TimeframePreset(
        name="Intraday", min_score=5, min_win_probability=0.63, min_confluence=3,
        rsi_long_max=70, rsi_short_min=30, adx_min=18, min_rrr=1.2,
        analysis_interval_seconds=180,
    ),
    "1h": TimeframePreset(
        name="Short Swing", min_score=6, min_win_probability=0.65, min_confluence=3,
        rsi_long_max=68, rsi_short_min=32, adx_min=20, min_rrr=1.5,
        analysis_interval_seconds=300,
    ),
    "4h": TimeframePreset(
        name="Swing", min_score=6, min_win_probability=0.68, min_confluence=4,
        rsi_long_max=65, rsi_short_min=35, adx_min=22, min_rrr=2.0,
        analysis_interval_seconds=600,
    ),
    "1d": TimeframePreset(
        name="Position", min_score=7, min_win_probability=0.70, min_confluence=4,
        rsi_long_max=65, rsi_short_min=35, adx_min=25, min_rrr=2.5,
        analysis_interval_seconds=3600,
    ),
}

# Fallback take-profit / stop-loss percentages per timeframe (1:2 reward/risk).
TIMEFRAME_TPSL: Dict[str, Dict[str, float]] = {
    "1m": {"tp": 0.8, "sl": 0.4},
    "5m": {"tp": 1.6, "sl": 0.8},
    "15m": {"tp": 3.0, "sl": 1.5},
    "30m": {"tp": 4.0, "sl": 2.0},
    "1h": {"tp": 5.0, "sl": 2.5},
    "4h": {"tp": 8.0, "sl": 4.0},
    "1d": {"tp": 14.0, "sl": 7.0},
}


def get_timeframe_preset(timeframe: str) -> Optional[TimeframePreset]:
    return TIMEFRAME_PRESETS.get(timeframe)


def _check_percent(name: str, v: float) -> float:
    if v <= 0 or v > 100:
        raise ValueError(f"{name} must be > 0 and <= 100")
    return v


# ---------------------------------------------------------------------------
# Pydantic Configuration Models (strict validation)
# ---------------------------------------------------------------------------

class AntiOvertradingConfig(BaseModel):
    """Cooldowns and throttles applied before every automatic entry. 0 disables."""
    symbol_cooldown_seconds: float = 600
    global_cooldown_seconds: float = 120
    max_trades_per_hour: int = 5
    max_trades_per_day: int = 20
    max_consecutive_losses: int = 3
    pause_after_losses_seconds: float = 1800

    @field_validator(
        "symbol_cooldown_seconds",
        "global_cooldown_seconds",
        "max_trades_per_hour",
        "max_trades_per_day",
        "max_consecutive_losses",
        "pause_after_losses_seconds",
    )
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("anti-overtrading limits must be >= 0")
        return v


class TradingConfig(BaseModel):
    """Per-user trading configuration for one bot instance."""
    symbols: List[str] = Field(default_factory=lambda: ["BTC", "ETH", "SOL", "DOGE", "XRP"])
    timeframes: List[str] = Field(default_factory=lambda: ["1h"])
    leverage: float = 10.0
    max_concurrent_trades: int = 7
    mode: TradingMode = "auto"
    analysis_interval_seconds: float = 60.0
    min_score: float = 3.0
    min_win_probability: float = 0.65
    min_confluence: int = 0
    tpsl_mode: TPSLMode = "auto"
    default_tp: float = 2.0
    default_sl: float = 1.0
    atr_multiplier_sl: float = 1.5
    atr_multiplier_tp: float = 2.5
    min_risk_reward_ratio: float = 1.5
    risk_per_trade: float = 2.0
    max_position_size: float = 50.0
    min_notional_usd: float = 10.0
    use_rsi_filter: bool = True
    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0
    multi_timeframe_mode: bool = False
    mtf_timeframes: List[str] = Field(default_factory=lambda: ["5m", "15m", "1h"])
    mtf_min_confirmation: int = 2
    candle_limit: int = 200
    min_candles: int = 60
    anti_overtrading: AntiOvertradingConfig = Field(default_factory=AntiOvertradingConfig)

    @field_validator("symbols")
    @classmethod
    def normalize_symbols(cls, v):
        # De-duplicate while preserving order
        seen = set()
        out: List[str] = []
        for raw in v:
            sym = str(raw).strip().upper()
            if sym.endswith("-PERP"):
                sym = sym[: -len("-PERP")]
            if sym and sym not in seen:
                seen.add(sym)
                out.append(sym)
        return out

    @field_validator("timeframes", "mtf_timeframes")
    @classmethod
    def validate_timeframes(cls, v):
        for tf in v:
            if tf not in SUPPORTED_TIMEFRAMES:
                raise ValueError(f"unsupported timeframe: {tf}")
        return list(dict.fromkeys(v))

    @field_validator("leverage")
    @classmethod
    def validate_leverage(cls, v):
        if v <= 0:
            raise ValueError("leverage must be > 0")
        return v

    @field_validator("analysis_interval_seconds")
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("analysis_interval_seconds must be > 0")
        return v

    @field_validator("default_tp", "default_sl", "risk_per_trade", "max_position_size")
    @classmethod
    def validate_percentages(cls, v, info):
        return _check_percent(info.field_name, v)

    @field_validator("max_concurrent_trades", "min_confluence", "mtf_min_confirmation")
    @classmethod
    def validate_counts(cls, v):
        if v < 0:
            raise ValueError("counts must be >= 0")
        return v

    @field_validator("min_win_probability")
    @classmethod
    def validate_probability(cls, v):
        if v < 0 or v > 1:
            raise ValueError("min_win_probability must be between 0 and 1")
        return v

    @field_validator("atr_multiplier_sl", "atr_multiplier_tp", "min_notional_usd")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("multipliers and minimum notional must be > 0")
        return v

    @model_validator(mode="after")
    def validate_rsi_and_history(self):
        if not (0 <= self.rsi_oversold < self.rsi_overbought <= 100):
            raise ValueError("rsi thresholds must satisfy 0 <= oversold < overbought <= 100")
        if not self.timeframes:
            raise ValueError("at least one timeframe is required")
        if self.candle_limit < self.min_candles:
            raise ValueError("candle_limit must be >= min_candles")
        return self

    @property
    def primary_timeframe(self) -> str:
        return self.timeframes[0]

    def analysis_timeframes(self) -> List[str]:
        """Timeframes scanned each tick (the MTF set when that mode is on)."""
        if self.multi_timeframe_mode and self.mtf_timeframes:
            return list(self.mtf_timeframes)
        return list(self.timeframes)


class RiskConfig(BaseModel):
    """Risk gate limits. Percentages are of account equity; 0 disables a limit."""
    risk_per_trade: float = 1.0
    daily_loss_limit: float = 5.0
    max_trades_per_day: int = 10
    max_drawdown: float = 20.0
    max_position_size: float = 10.0
    min_risk_reward_ratio: float = 0.5
    max_consecutive_losses: int = 3
    use_leverage: bool = True
    max_leverage: float = 10.0
    default_sl_percent: float = 2.0
    default_tp_percent: float = 4.0
    min_notional_usd: float = 10.0

    @field_validator("risk_per_trade", "max_position_size", "default_sl_percent", "default_tp_percent")
    @classmethod
    def validate_percentages(cls, v, info):
        return _check_percent(info.field_name, v)

    @field_validator("daily_loss_limit", "max_drawdown")
    @classmethod
    def validate_limits(cls, v):
        if v < 0 or v > 100:
            raise ValueError("loss and drawdown limits must be between 0 and 100")
        return v

    @field_validator("max_trades_per_day", "max_consecutive_losses", "min_risk_reward_ratio")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("limits must be >= 0")
        return v

    @field_validator("max_leverage", "min_notional_usd")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("max_leverage and min_notional_usd must be > 0")
        return v


class AppConfig(BaseModel):
    name: str = "PerpDesk"
    version: str = "1.0.0"
    mode: Literal["paper", "live"] = "paper"
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = False
    log_buffer_size: int = 200


class StorageConfig(BaseModel):
    dir: str = "storage"


class ExchangeConfig(BaseModel):
    name: str = "hyperliquid"
    api_url: str = "https://api.hyperliquid.xyz"
    timeout: float = 15.0
    paper_starting_equity: float = 10_000.0


class Settings(BaseModel):
    """Master configuration model with full validation."""
    app: AppConfig = Field(default_factory=AppConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)


# ---------------------------------------------------------------------------
# Layered merge
# ---------------------------------------------------------------------------

def apply_patch(base: Dict[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Shallow-merge ``patch`` into a copy of ``base``.

    Top-level keys are replaced; nested sections (dicts on both sides, e.g.
    ``anti_overtrading``) are merged one level deep so a partial section
    patch keeps its unspecified siblings.
    """
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, BaseModel):
            value = value.model_dump()
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def merge_config(
    base: Optional[TradingConfig] = None,
    *layers: Optional[Mapping[str, Any]],
) -> TradingConfig:
    """
    Build a validated TradingConfig from ``base`` plus override layers.

    Later layers win: ``merge_config(defaults, profile, patch)``.
    Raises ConfigurationError for unknown keys or invalid values.
    """
    data = (base or TradingConfig()).model_dump()
    known = set(TradingConfig.model_fields)
    for layer in layers:
        if not layer:
            continue
        unknown = set(layer) - known
        if unknown:
            raise ConfigurationError(f"Unknown trading config keys: {sorted(unknown)}")
        data = apply_patch(data, layer)
    try:
        return TradingConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid trading config: {e}") from e


# Trading keys mirrored into the user's risk config
RISK_SYNC_KEYS = {
    "risk_per_trade": "risk_per_trade",
    "max_position_size": "max_position_size",
    "min_risk_reward_ratio": "min_risk_reward_ratio",
    "min_notional_usd": "min_notional_usd",
    "default_tp": "default_tp_percent",
    "default_sl": "default_sl_percent",
}
RISK_ONLY_KEYS = frozenset(RiskConfig.model_fields) - frozenset(TradingConfig.model_fields)


def split_user_config(
    patch: Optional[Mapping[str, Any]],
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Split a user profile or patch into ``(trading, risk)`` layers.

    Risk-only keys (``daily_loss_limit``, ``max_drawdown``, ...) go to the
    risk layer alone; shared sizing keys stay in the trading layer and are
    mirrored into the risk layer.
    """
    if not patch:
        return {}, {}
    risk = {k: v for k, v in patch.items() if k in RISK_ONLY_KEYS}
    trading = {k: v for k, v in patch.items() if k not in RISK_ONLY_KEYS}
    for key, risk_key in RISK_SYNC_KEYS.items():
        if key in trading:
            risk[risk_key] = trading[key]
    return trading, risk


def merge_risk_config(base: RiskConfig, patch: Mapping[str, Any]) -> RiskConfig:
    unknown = set(patch) - set(RiskConfig.model_fields)
    if unknown:
        raise ConfigurationError(f"Unknown risk config keys: {sorted(unknown)}")
    try:
        return RiskConfig(**{**base.model_dump(), **patch})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid risk config: {e}") from e


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

def _csv(v: str) -> List[str]:
    return [s.strip() for s in v.split(",") if s.strip()]


def _bool(v: str) -> bool:
    return v.lower() in ("1", "true", "yes", "on")


_ENV_MAPPINGS = {
    "TRADING_MODE": ("app", "mode"),
    "LOG_LEVEL": ("app", "log_level"),
    "LOG_DIR": ("app", "log_dir"),
    "LOG_JSON": ("app", "json_logs", _bool),
    "PERPDESK_STORAGE_DIR": ("storage", "dir"),
    "HYPERLIQUID_API_URL": ("exchange", "api_url"),
    "EXCHANGE_TIMEOUT": ("exchange", "timeout", float),
    "PAPER_STARTING_EQUITY": ("exchange", "paper_starting_equity", float),
    "DEFAULT_SYMBOLS": ("trading", "symbols", _csv),
    "DEFAULT_TIMEFRAMES": ("trading", "timeframes", _csv),
    "DEFAULT_LEVERAGE": ("trading", "leverage", float),
    "BOT_MODE": ("trading", "mode"),
    "RISK_PER_TRADE": ("risk", "risk_per_trade", float),
    "DAILY_LOSS_LIMIT": ("risk", "daily_loss_limit", float),
    "MAX_DRAWDOWN": ("risk", "max_drawdown", float),
    "MAX_CONSECUTIVE_LOSSES": ("risk", "max_consecutive_losses", int),
}


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Override YAML values with environment variables where set."""
    for env_key, mapping in _ENV_MAPPINGS.items():
        value = os.getenv(env_key)
        if value is None:
            continue
        section, key = mapping[0], mapping[1]
        converter = mapping[2] if len(mapping) > 2 else str
        try:
            config.setdefault(section, {})[key] = converter(value)
        except (ValueError, TypeError) as e:
            logging.getLogger("config").warning(
                "Env %s=%r failed to convert: %s. Using YAML value.",
                env_key, value, e,
            )


def load_settings(
    config_path: str = "config/config.yaml",
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Load settings from YAML + environment variables with optional deep overrides."""
    load_dotenv()

    yaml_config: Dict[str, Any] = {}
    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file, "r") as f:
            yaml_config = yaml.safe_load(f) or {}

    _apply_env_overrides(yaml_config)

    def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if isinstance(value, dict) and isinstance(dst.get(key), dict):
                _deep_update(dst[key], value)
            else:
                dst[key] = value

    if overrides:
        _deep_update(yaml_config, overrides)

    try:
        return Settings(**yaml_config)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e
