from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List

import pytest

from indexpool.bmath import BONE
from indexpool.config import HOUR, ControllerConfig, OracleConfig, PoolConfig
from indexpool.controller import MarketCapSqrtController
from indexpool.core import Clock, EventLog, TokenLedger
from indexpool.factory import PoolFactory, default_registry
from indexpool.initializer import PoolInitializer
from indexpool.oracle import TwapPriceSource
from indexpool.pool import IndexPool

OWNER = "owner"
CONTROLLER = "controller"
PROVIDER = "provider"
TRADER = "trader"
FEE_RECIPIENT = "fee_recipient"
TREASURY = "treasury"
FOUNDER = "founder"
WETH = "WETH"


class RecordingHandler:
    """Unbind handler that only remembers what it was sent."""

    def __init__(self, address: str = "handler") -> None:
        self.address = address
        self.calls: List[tuple] = []

    def handle_unbind_token(self, caller: str, token: str, amount: int) -> None:
        self.calls.append((caller, token, amount))


@pytest.fixture
def ledger() -> TokenLedger:
    return TokenLedger(Clock(), EventLog())


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def make_pool(ledger, handler):
    """Builds an initialized pool; balances and weights are whole-token floats."""

    def _make(balances: Dict[str, float], weights: Dict[str, float], swap_fee: float = 0.0025,
              cfg: PoolConfig = None) -> IndexPool:
        pool = IndexPool("pool", ledger, CONTROLLER, "Test Index", "TIDX", FEE_RECIPIENT, cfg=cfg)
        tokens = list(balances)
        amounts = [int(balances[t] * BONE) for t in tokens]
        denorms = [int(weights[t] * BONE) for t in tokens]
        for token, amount in zip(tokens, amounts):
            ledger.mint(token, PROVIDER, amount)
        pool.initialize(CONTROLLER, tokens, amounts, denorms, PROVIDER, handler)
        pool.set_swap_fee(CONTROLLER, int(swap_fee * BONE))
        return pool

    return _make


def refresh_prices(ledger: TokenLedger, oracle: TwapPriceSource, tokens, seconds: int) -> None:
    """Advance `seconds`, leaving an observation old enough to average over."""
    if seconds > HOUR:
        ledger.clock.advance(seconds - HOUR)
    oracle.update_prices(tokens)
    ledger.clock.advance(min(seconds, HOUR))


@dataclass
class Market:
    ledger: TokenLedger
    oracle: TwapPriceSource
    factory: PoolFactory
    controller: MarketCapSqrtController
    tokens: List[str]
    category_id: int
    extra: Dict[str, object] = field(default_factory=dict)

    def refresh(self, seconds: int) -> None:
        refresh_prices(self.ledger, self.oracle, self.tokens, seconds)


@pytest.fixture
def market(ledger) -> Market:
    """Four tokens priced at 1 WETH with sqrt market caps in the ratio 4:3:2:1."""
    oracle = TwapPriceSource(ledger, OracleConfig(), reference_token=WETH)
    factory = PoolFactory(ledger, default_registry(), OWNER)
    controller = MarketCapSqrtController(CONTROLLER, ledger, oracle, OWNER, factory,
                                         cfg=ControllerConfig(), pool_cfg=PoolConfig())
    factory.approve_deployer(OWNER, controller.address)
    tokens = ["T1", "T2", "T3", "T4"]
    for token, supply in zip(tokens, (16_000, 9_000, 4_000, 1_000)):
        ledger.mint(token, TREASURY, supply * BONE)
        oracle.set_price(token, BONE)
    category_id = controller.create_category(OWNER, "top tokens")
    controller.add_tokens(OWNER, category_id, tokens)
    ledger.clock.advance(HOUR)
    controller.order_category_tokens_by_market_cap(OWNER, category_id)
    return Market(ledger, oracle, factory, controller, tokens, category_id)


@pytest.fixture
def prepared(market):
    pool, initializer = market.controller.prepare_index_pool(
        OWNER, market.category_id, 3, 90 * BONE, "Top Three", "TOP3",
    )
    market.extra["pool"] = pool
    market.extra["initializer"] = initializer
    return market


def fund_initializer(market: Market, contributor: str = FOUNDER) -> None:
    initializer: PoolInitializer = market.extra["initializer"]
    tokens = [t for t in initializer.get_desired_tokens() if initializer.get_desired_amount(t) > 0]
    amounts = initializer.get_desired_amounts(tokens)
    for token, amount in zip(tokens, amounts):
        market.ledger.transfer(token, TREASURY, contributor, amount)
    initializer.contribute_tokens_batch(contributor, tokens, amounts)


@pytest.fixture
def index_env(prepared):
    fund_initializer(prepared)
    initializer = prepared.extra["initializer"]
    initializer.finish(FOUNDER)
    initializer.claim_tokens(FOUNDER)
    return prepared
