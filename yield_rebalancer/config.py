"""Configuration loader: reads config.yaml, interpolates env vars, validates.

Also holds the static policy tables (risk profiles, protocol tiers, chains).
"""
from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .models import NotificationLevel

logger = logging.getLogger(__name__)

RISK_PROFILE_NAMES = ("conservative", "balanced", "aggressive")


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigError(message)


# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskProfileConfig:
    """Pool eligibility policy. ``allowed_protocols=None`` allows every protocol."""

    name: str
    min_tvl: float
    max_apy: float
    min_apy: float
    max_risk_score: float
    allowed_protocols: tuple[str, ...] | None
    max_chain_exposure: float
    max_protocol_exposure: float

    def __post_init__(self) -> None:
        _require(self.min_tvl >= 0, f"{self.name}: min_tvl must be >= 0")
        _require(
            0 <= self.min_apy <= self.max_apy,
            f"{self.name}: expected 0 <= min_apy <= max_apy",
        )
        _require(
            1 <= self.max_risk_score <= 10,
            f"{self.name}: max_risk_score must be between 1 and 10",
        )
        _require(
            0 < self.max_chain_exposure <= 1,
            f"{self.name}: max_chain_exposure must be in (0, 1]",
        )
        _require(
            0 < self.max_protocol_exposure <= 1,
            f"{self.name}: max_protocol_exposure must be in (0, 1]",
        )


@dataclass(frozen=True)
class TimingConfig:
    yield_scan_interval_seconds: float = 10 * 60
    full_analysis_interval_seconds: float = 6 * 60 * 60

    def __post_init__(self) -> None:
        _require(
            self.yield_scan_interval_seconds >= 60,
            "yield_scan_interval_seconds must be at least 60 seconds",
        )
        _require(
            self.full_analysis_interval_seconds > 0,
            "full_analysis_interval_seconds must be positive",
        )


@dataclass(frozen=True)
class ThresholdsConfig:
    min_apy_differential: float = 5.0
    min_net_benefit: float = 10.0
    max_chain_exposure: float = 0.4
    max_protocol_exposure: float = 0.25

    def __post_init__(self) -> None:
        _require(
            0 <= self.min_apy_differential <= 100,
            "min_apy_differential must be between 0 and 100",
        )
        _require(
            0 < self.max_chain_exposure <= 1,
            "max_chain_exposure must be between 0 and 1",
        )
        _require(
            0 < self.max_protocol_exposure <= 1,
            "max_protocol_exposure must be between 0 and 1",
        )


@dataclass(frozen=True)
class ExecutionConfig:
    prefer_settlement_network: bool = True
    max_slippage: float = 0.5
    max_bridge_fee_percent: float = 1.0
    safety_buffer: float = 0.005
    settlement_asset: str = "ytest.usd"
    settlement_decimals: int = 6
    trade_recipient: str = ""

    def __post_init__(self) -> None:
        _require(0 <= self.max_slippage <= 10, "max_slippage must be between 0 and 10")
        _require(
            0 <= self.max_bridge_fee_percent <= 100,
            "max_bridge_fee_percent must be between 0 and 100",
        )
        _require(self.safety_buffer >= 0, "safety_buffer must be >= 0")
        _require(
            0 <= self.settlement_decimals <= 18,
            "settlement_decimals must be between 0 and 18",
        )


@dataclass(frozen=True)
class SafetyConfig:
    max_single_trade_percent: float = 25.0
    daily_loss_limit: float = 5.0
    pause_on_consecutive_errors: int = 3

    def __post_init__(self) -> None:
        _require(
            0 < self.max_single_trade_percent <= 100,
            "max_single_trade_percent must be in (0, 100]",
        )
        _require(0 < self.daily_loss_limit <= 100, "daily_loss_limit must be in (0, 100]")
        _require(
            self.pause_on_consecutive_errors >= 1,
            "pause_on_consecutive_errors must be at least 1",
        )


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool = False
    alert_email: str = ""
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    sender_email: str = ""
    sender_password: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    min_level: str = NotificationLevel.INFO.value
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    email: EmailConfig = field(default_factory=EmailConfig)

    def __post_init__(self) -> None:
        levels = [level.value for level in NotificationLevel]
        _require(self.min_level in levels, f"min_level must be one of {levels}")


@dataclass(frozen=True)
class AgentConfig:
    risk_profile: str = "balanced"
    timing: TimingConfig = field(default_factory=TimingConfig)
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    def __post_init__(self) -> None:
        _require(
            self.risk_profile in RISK_PROFILE_NAMES,
            f"Invalid risk profile '{self.risk_profile}'",
        )


# ---------------------------------------------------------------------------
# Static policy tables
# ---------------------------------------------------------------------------

RISK_PROFILES: dict[str, RiskProfileConfig] = {
    "conservative": RiskProfileConfig(
        name="conservative",
        min_tvl=10_000_000,
        max_apy=30,
        min_apy=2,
        max_risk_score=4,
        allowed_protocols=(
            "aave-v3", "aave-v2",
            "compound-v3", "compound-v2",
            "maker", "morpho",
            "curve-dex", "convex-finance",
            "lido", "yearn-finance",
            "spark", "frax",
        ),
        max_chain_exposure=0.5,
        max_protocol_exposure=0.3,
    ),
    "balanced": RiskProfileConfig(
        name="balanced",
        min_tvl=2_000_000,
        max_apy=80,
        min_apy=10,
        max_risk_score=6,
        allowed_protocols=None,
        max_chain_exposure=0.4,
        max_protocol_exposure=0.25,
    ),
    "aggressive": RiskProfileConfig(
        name="aggressive",
        min_tvl=500_000,
        max_apy=200,
        min_apy=30,
        max_risk_score=8,
        allowed_protocols=None,
        max_chain_exposure=0.6,
        max_protocol_exposure=0.4,
    ),
}

PROTOCOL_TIERS: dict[int, tuple[str, ...]] = {
    1: ("aave-v3", "aave-v2", "compound-v3", "compound-v2", "maker", "lido"),
    2: ("curve-dex", "convex-finance", "yearn-finance", "morpho", "uniswap-v3", "spark"),
    3: ("uniswap-v4", "aerodrome", "velodrome", "balancer", "pancakeswap", "sushiswap"),
}
UNKNOWN_PROTOCOL_TIER = 4

SUPPORTED_CHAINS: dict[int, str] = {
    1: "Ethereum",
    10: "Optimism",
    137: "Polygon",
    42161: "Arbitrum",
    8453: "Base",
}

USDC_ADDRESSES: dict[int, str] = {
    1: "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    10: "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
    137: "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
    42161: "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    8453: "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
}

BRIDGE_GAS_ESTIMATES_USD: dict[int, float] = {
    1: 5.0,
    10: 0.5,
    137: 0.1,
    42161: 0.5,
    8453: 0.3,
}
DEFAULT_BRIDGE_GAS_USD = 1.0
BRIDGE_FEE_PERCENT = 0.25


def get_risk_profile(name: str) -> RiskProfileConfig:
    try:
        return RISK_PROFILES[name]
    except KeyError:
        raise ConfigError(f"Invalid risk profile '{name}'") from None


def get_protocol_tier(protocol: str) -> int:
    """Protocol tier 1-3 (lower = safer); unknown protocols are tier 4."""
    normalized = protocol.lower()
    for tier, names in sorted(PROTOCOL_TIERS.items()):
        if any(name in normalized for name in names):
            return tier
    return UNKNOWN_PROTOCOL_TIER


def is_protocol_allowed(protocol: str, profile: RiskProfileConfig) -> bool:
    if profile.allowed_protocols is None:
        return True
    normalized = protocol.lower()
    return any(name.lower() in normalized for name in profile.allowed_protocols)


def chain_name(chain_id: int) -> str:
    return SUPPORTED_CHAINS.get(chain_id, f"Chain {chain_id}")


# ---------------------------------------------------------------------------
# Runtime updates
# ---------------------------------------------------------------------------


def _merge_dataclass(obj: Any, overrides: Mapping[str, Any], path: str) -> Any:
    known = {f.name for f in dataclasses.fields(obj)}
    changes: dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigError(f"Unknown config key '{path}{key}'")
        current = getattr(obj, key)
        if dataclasses.is_dataclass(current) and isinstance(value, Mapping):
            changes[key] = _merge_dataclass(current, value, f"{path}{key}.")
        else:
            changes[key] = value
    return dataclasses.replace(obj, **changes)


def merge_config(config: AgentConfig, overrides: Mapping[str, Any]) -> AgentConfig:
    """Return a new, re-validated config with nested ``overrides`` applied.

    >>> merge_config(cfg, {"thresholds": {"min_net_benefit": 1.0}})
    """
    return _merge_dataclass(config, overrides, "")


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML -> dataclass builders
# ---------------------------------------------------------------------------


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _build_timing(raw: dict[str, Any]) -> TimingConfig:
    return TimingConfig(
        yield_scan_interval_seconds=float(raw.get("yield_scan_interval_seconds", 600)),
        full_analysis_interval_seconds=float(
            raw.get("full_analysis_interval_seconds", 21600)
        ),
    )


def _build_thresholds(raw: dict[str, Any]) -> ThresholdsConfig:
    return ThresholdsConfig(
        min_apy_differential=float(raw.get("min_apy_differential", 5.0)),
        min_net_benefit=float(raw.get("min_net_benefit", 10.0)),
        max_chain_exposure=float(raw.get("max_chain_exposure", 0.4)),
        max_protocol_exposure=float(raw.get("max_protocol_exposure", 0.25)),
    )


def _build_execution(raw: dict[str, Any]) -> ExecutionConfig:
    return ExecutionConfig(
        prefer_settlement_network=_as_bool(raw.get("prefer_settlement_network", True)),
        max_slippage=float(raw.get("max_slippage", 0.5)),
        max_bridge_fee_percent=float(raw.get("max_bridge_fee_percent", 1.0)),
        safety_buffer=float(raw.get("safety_buffer", 0.005)),
        settlement_asset=raw.get("settlement_asset", "ytest.usd"),
        settlement_decimals=int(raw.get("settlement_decimals", 6)),
        trade_recipient=raw.get("trade_recipient", ""),
    )


def _build_safety(raw: dict[str, Any]) -> SafetyConfig:
    return SafetyConfig(
        max_single_trade_percent=float(raw.get("max_single_trade_percent", 25.0)),
        daily_loss_limit=float(raw.get("daily_loss_limit", 5.0)),
        pause_on_consecutive_errors=int(raw.get("pause_on_consecutive_errors", 3)),
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    em = raw.get("email", {})
    return NotificationsConfig(
        min_level=raw.get("min_level", NotificationLevel.INFO.value),
        telegram=TelegramConfig(
            enabled=_as_bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
        email=EmailConfig(
            enabled=_as_bool(em.get("enabled", False)),
            alert_email=em.get("alert_email", ""),
            smtp_server=em.get("smtp_server", "smtp.gmail.com"),
            smtp_port=int(em.get("smtp_port", 587)),
            sender_email=em.get("sender_email", ""),
            sender_password=em.get("sender_password", ""),
        ),
    )


def build_agent_config(raw: dict[str, Any]) -> AgentConfig:
    """Build an ``AgentConfig`` from an already-parsed mapping."""
    agent = raw.get("agent", {}) or {}
    return AgentConfig(
        risk_profile=agent.get("risk_profile", "balanced"),
        timing=_build_timing(agent.get("timing", {}) or {}),
        thresholds=_build_thresholds(agent.get("thresholds", {}) or {}),
        execution=_build_execution(agent.get("execution", {}) or {}),
        safety=_build_safety(agent.get("safety", {}) or {}),
        notifications=_build_notifications(raw.get("notifications", {}) or {}),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AgentConfig:
    """Load and validate agent configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from the package directory).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = build_agent_config(raw)
    logger.info(
        "Configuration loaded from %s (risk profile: %s)", config_path, cfg.risk_profile
    )
    return cfg
