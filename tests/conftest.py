"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from yield_rebalancer.config import (
    AgentConfig,
    EmailConfig,
    ExecutionConfig,
    NotificationsConfig,
    SafetyConfig,
    TelegramConfig,
    ThresholdsConfig,
    TimingConfig,
)
from yield_rebalancer.models import (
    SETTLEMENT_POOL,
    SETTLEMENT_PROTOCOL,
    BridgeQuote,
    YieldOpportunity,
)
from yield_rebalancer.resilience import RetryPolicy
from yield_rebalancer.services.portfolio import InMemoryPortfolioStore

WALLET_ADDRESS = "0x" + "ab" * 20
RECIPIENT_ADDRESS = "0x" + "cd" * 20

# Retries without waiting; failures surface after a single retry.
NO_DELAY_RETRY = RetryPolicy(max_retries=1, initial_delay=0.0, max_delay=0.0, jitter=False)


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def agent_config() -> AgentConfig:
    """Balanced profile with a net-benefit floor small enough for $1k portfolios."""
    return AgentConfig(
        risk_profile="balanced",
        timing=TimingConfig(yield_scan_interval_seconds=600, full_analysis_interval_seconds=21600),
        thresholds=ThresholdsConfig(min_apy_differential=5.0, min_net_benefit=0.01),
        execution=ExecutionConfig(trade_recipient=RECIPIENT_ADDRESS),
        safety=SafetyConfig(max_single_trade_percent=25.0),
        notifications=NotificationsConfig(
            telegram=TelegramConfig(
                enabled=True,
                alert_bot_token="fake-alert-token",
                log_bot_token="fake-log-token",
                chat_id="12345",
            ),
            email=EmailConfig(enabled=False),
        ),
    )


# ---------------------------------------------------------------------------
# Yield data
# ---------------------------------------------------------------------------


@pytest.fixture()
def pool_factory() -> Callable[..., YieldOpportunity]:
    def make(
        pool: str = "pool-1",
        protocol: str = "compound-v3",
        chain_id: int = 137,
        apy: float = 12.0,
        tvl_usd: float = 50_000_000,
        risk_score: float | None = None,
        pool_address: str | None = None,
        symbol: str = "USDC",
    ) -> YieldOpportunity:
        return YieldOpportunity(
            pool=pool,
            protocol=protocol,
            chain="",
            chain_id=chain_id,
            symbol=symbol,
            tvl_usd=tvl_usd,
            apy=apy,
            apy_base=apy,
            risk_score=risk_score,
            pool_address=pool_address,
        )

    return make


# ---------------------------------------------------------------------------
# Portfolio fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(clock: FakeClock) -> InMemoryPortfolioStore:
    return InMemoryPortfolioStore(clock=clock)


@pytest.fixture()
def single_position_store(store: InMemoryPortfolioStore) -> InMemoryPortfolioStore:
    """$1,000 in aave-v3 on Polygon at 3% APY."""
    store.add_position(
        chain_id=137, protocol="aave-v3", pool="aave-usdc", symbol="USDC", balance=1000.0, apy=3.0
    )
    return store


@pytest.fixture()
def idle_store(store: InMemoryPortfolioStore) -> InMemoryPortfolioStore:
    """$1,000 of idle settlement cash and nothing deployed."""
    store.add_position(
        chain_id=0,
        protocol=SETTLEMENT_PROTOCOL,
        pool=SETTLEMENT_POOL,
        symbol="ytest.usd",
        balance=1000.0,
        apy=0.0,
    )
    return store


# ---------------------------------------------------------------------------
# Collaborator mocks
# ---------------------------------------------------------------------------


@pytest.fixture()
def settlement_client() -> AsyncMock:
    client = AsyncMock()
    client.get_address = MagicMock(return_value=WALLET_ADDRESS)
    client.get_ledger_balance.return_value = 1_000_000_000  # 1000.000000
    client.get_ledger_balances.return_value = {"ytest.usd": 1_000_000_000}
    client.transfer.return_value = "42"
    return client


@pytest.fixture()
def bridge_client() -> AsyncMock:
    client = AsyncMock()
    client.get_quote.return_value = BridgeQuote(
        to_amount=249_000_000,
        to_amount_min=248_500_000,
        bridge_name="stargate",
        estimated_gas=1.0,
        estimated_time=600.0,
    )
    return client


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    agent:
      risk_profile: conservative
      timing:
        yield_scan_interval_seconds: 300
        full_analysis_interval_seconds: 3600
      thresholds:
        min_apy_differential: 3.0
        min_net_benefit: 1.5
        max_chain_exposure: 0.5
        max_protocol_exposure: 0.3
      execution:
        prefer_settlement_network: "false"
        max_slippage: 0.3
        trade_recipient: "0xRECIPIENT"
      safety:
        max_single_trade_percent: 10
        daily_loss_limit: 2
        pause_on_consecutive_errors: 5
    notifications:
      min_level: warning
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        log_bot_token: "tok2"
        chat_id: 999
      email:
        enabled: false
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


@pytest.fixture()
def no_delay_retry() -> RetryPolicy:
    return NO_DELAY_RETRY
