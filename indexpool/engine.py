from __future__ import annotations
from typing import Dict, List, Optional, Tuple
import logging
import math
import numpy as np
import random

from .bmath import from_fp, to_fp
from .config import ScenarioConfig
from .controller import MarketCapSqrtController
from .core import Clock, EventLog, ReceiptStore, Revert, SwapReceipt, TokenLedger, compute_address
from .factory import PoolFactory, default_registry
from .initializer import PoolInitializer
from .metrics import MetricsStore
from .oracle import TwapPriceSource
from .pool import IndexPool
from .seller import UnboundTokenSeller

logger = logging.getLogger(__name__)

MAX_PRICE = 2 ** 255

def account(name: str) -> str:
    return compute_address("engine", "account", name)

class SimulationEngine:
    """Runs one index pool through its full lifecycle against a random market.

    Bootstrap ranks a category, prepares the pool and funds its initializer.
    Each tick then moves market prices, refreshes the oracle, advances the
    reweigh/reindex cycle when it is due, and lets arbitrageurs trade the
    pool (and the seller of evicted tokens) back toward market prices.
    """

    def __init__(self, cfg: ScenarioConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.rng = random.Random(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.clock = Clock()
        self.log = EventLog(maxlen=cfg.event_log_maxlen)
        self.ledger = TokenLedger(self.clock, self.log)
        self.ledger.debug_balances = cfg.debug_balances
        self.metrics = MetricsStore()
        self.receipts = ReceiptStore()

        self.owner = account("owner")
        self.treasury = account("treasury")
        self.keeper = account("keeper")
        self.founder = account("founder")
        self.arbitrageurs = [account(f"arb_{i:02d}") for i in range(max(1, cfg.n_arbitrageurs))]
        self.arb_pnl: Dict[str, float] = {a: 0.0 for a in self.arbitrageurs}

        self.reference_token = account(cfg.reference_symbol)
        self.symbols: Dict[str, str] = {self.reference_token: cfg.reference_symbol}
        self.market_prices: Dict[str, float] = {}
        self.tokens: List[str] = []

        self.oracle = TwapPriceSource(self.ledger, cfg.oracle, reference_token=self.reference_token)
        self.factory = PoolFactory(self.ledger, default_registry(), self.owner)
        self.controller = MarketCapSqrtController(
            account("controller"), self.ledger, self.oracle, self.owner, self.factory,
            cfg=cfg.controller, pool_cfg=cfg.pool,
        )
        self.factory.approve_deployer(self.owner, self.controller.address)

        self.category_id: int = 0
        self.pool: Optional[IndexPool] = None
        self.initializer: Optional[PoolInitializer] = None
        self.cycle_failures: Dict[str, int] = {}

        self._bootstrap()

    # ----- Market -----
    def _create_market(self) -> None:
        cfg = self.cfg
        lo, hi = math.log(cfg.initial_price_min), math.log(cfg.initial_price_max)
        slo, shi = math.log(cfg.supply_min), math.log(max(cfg.supply_max, cfg.supply_min))
        for i in range(cfg.n_tokens):
            symbol = f"TKN{i + 1:02d}"
            token = account(symbol)
            self.symbols[token] = symbol
            self.tokens.append(token)
            self.market_prices[token] = math.exp(self.rng.uniform(lo, hi))
            supply = math.exp(self.rng.uniform(slo, shi))
            self.ledger.mint(token, self.treasury, to_fp(supply))
            self.oracle.set_price(token, to_fp(self.market_prices[token]))
        self.market_prices[self.reference_token] = 1.0

    def _move_prices(self) -> None:
        cfg = self.cfg
        shocks = np.random.normal(cfg.price_drift, cfg.price_volatility, size=len(self.tokens))
        for token, shock in zip(self.tokens, shocks):
            price = self.market_prices[token] * math.exp(float(shock))
            self.market_prices[token] = max(price, 1e-9)
            self.oracle.set_price(token, max(1, to_fp(self.market_prices[token])))

    def _market_buy(self, actor: str, token: str, amount: int) -> None:
        self.ledger.transfer(token, self.treasury, actor, amount)

    def _market_sell(self, actor: str, token: str, amount: int) -> None:
        self.ledger.transfer(token, actor, self.treasury, amount)

    def _value(self, token: str, amount: int) -> float:
        return from_fp(amount) * self.market_prices.get(token, 0.0)

    def _advance(self, seconds: int) -> None:
        self.clock.advance(seconds)

    # ----- Bootstrap -----
    def _bootstrap(self) -> None:
        cfg = self.cfg
        self._create_market()
        self.oracle.update_prices(self.tokens)
        self._advance(2 * cfg.oracle.min_twap_age)

        self.category_id = self.controller.create_category(self.owner, "market-cap index")
        self.controller.add_tokens(self.owner, self.category_id, self.tokens)
        self._advance(cfg.oracle.min_twap_age)
        self.oracle.update_prices(self.tokens)
        self.controller.order_category_tokens_by_market_cap(self.keeper, self.category_id)

        self.pool, self.initializer = self.controller.prepare_index_pool(
            self.owner, self.category_id, cfg.index_size, to_fp(cfg.initial_pool_value),
            "Simulated Index", "SIDX",
        )
        tokens = self.initializer.get_desired_tokens()
        amounts = self.initializer.get_desired_amounts(tokens)
        for token, amount in zip(tokens, amounts):
            self._market_buy(self.founder, token, amount)
        self.initializer.contribute_tokens_batch(self.founder, tokens, amounts)
        self.initializer.finish(self.founder)
        self.initializer.claim_tokens(self.founder)
        self.controller.set_swap_fee(self.owner, self.pool.address, to_fp(cfg.swap_fee))
        logger.info("Bootstrapped %s with %s", self.pool.symbol,
                    ", ".join(self.symbols[t] for t in tokens))
        self.snapshot_metrics()

    @property
    def seller(self) -> UnboundTokenSeller:
        return self.factory.get(self.controller.compute_seller_address(self.pool.address))

    # ----- Controller cycle -----
    def _record_cycle_failure(self, action: str, exc: Revert) -> None:
        self.cycle_failures[exc.reason] = self.cycle_failures.get(exc.reason, 0) + 1
        self.ledger.emit("CYCLE_FAILED", actor_id=self.keeper, pool_id=self.pool.address,
                         meta={"action": action, "reason": exc.reason})
        logger.warning("%s failed for %s: %s", action, self.pool.address, exc.reason)

    def _run_cycle(self) -> None:
        controller = self.controller
        meta = controller.get_pool_meta(self.pool.address)
        if self.ledger.now - meta.last_reweigh < controller.cfg.pool_reweigh_delay:
            return
        slot = (meta.reweigh_index + 1) % (controller.cfg.reweighs_before_reindex + 1)
        if slot == 0:
            try:
                controller.order_category_tokens_by_market_cap(self.keeper, self.category_id)
                controller.reindex_pool(self.keeper, self.pool.address)
            except Revert as exc:
                self._record_cycle_failure("reindex", exc)
        else:
            try:
                controller.reweigh_pool(self.keeper, self.pool.address)
            except Revert as exc:
                self._record_cycle_failure("reweigh", exc)

    def _refresh_minimum_balances(self) -> None:
        pool = self.pool
        delay = pool.cfg.min_bal_update_delay
        for token in pool.get_current_tokens():
            record = pool.get_token_record(token)
            if record.ready or self.ledger.now - record.last_denorm_update < delay:
                continue
            try:
                self.controller.update_minimum_balance(self.keeper, pool.address, token)
            except Revert as exc:
                self._record_cycle_failure("update_minimum_balance", exc)

    # ----- Arbitrage -----
    def _best_mispricing(self) -> Optional[Tuple[float, str, str]]:
        pool = self.pool
        best: Optional[Tuple[float, str, str]] = None
        tokens = pool.get_current_tokens()
        for token_out in tokens:
            if not pool.get_token_record(token_out).ready:
                continue
            for token_in in tokens:
                if token_in == token_out:
                    continue
                spot = from_fp(pool.get_spot_price(token_in, token_out))
                if spot <= 0.0:
                    continue
                market = self.market_prices[token_out] / self.market_prices[token_in]
                edge = market / spot - 1.0
                if best is None or edge > best[0]:
                    best = (edge, token_in, token_out)
        return best

    def _arbitrage_once(self, actor: str) -> Optional[SwapReceipt]:
        cfg = self.cfg
        pool = self.pool
        best = self._best_mispricing()
        if best is None or best[0] < cfg.arb_min_edge:
            return None
        edge, token_in, token_out = best
        fraction = min(cfg.arb_trade_fraction, edge / 2.0) * self.rng.uniform(0.5, 1.0)
        amount_in = int(pool.get_used_balance(token_in) * fraction)
        if amount_in <= 0:
            return None
        self._market_buy(actor, token_in, amount_in)
        try:
            amount_out, spot_after = pool.swap_exact_amount_in(actor, token_in, amount_in, token_out, 0, MAX_PRICE)
        except Revert as exc:
            self._market_sell(actor, token_in, amount_in)
            receipt = SwapReceipt(
                timestamp=self.ledger.now, pool_id=pool.address, actor=actor,
                token_in=token_in, amount_in=amount_in, token_out=token_out, amount_out=0,
                spot_price_after=0, status="failed", fail_reason=exc.reason,
            )
        else:
            self._market_sell(actor, token_out, amount_out)
            self.arb_pnl[actor] += self._value(token_out, amount_out) - self._value(token_in, amount_in)
            receipt = SwapReceipt(
                timestamp=self.ledger.now, pool_id=pool.address, actor=actor,
                token_in=token_in, amount_in=amount_in, token_out=token_out, amount_out=amount_out,
                spot_price_after=spot_after, status="executed",
            )
        self.receipts.add(receipt)
        return receipt

    def _fill_seller(self, actor: str) -> None:
        pool = self.pool
        seller = self.seller
        wanted = pool.get_current_desired_tokens()
        if not wanted:
            return
        for token in self.tokens:
            held = seller.get_token_balance(token)
            if held <= 0 or pool.is_bound(token) or self.rng.random() > self.cfg.seller_fill_prob:
                continue
            token_in = self.rng.choice(wanted)
            amount_out = max(1, int(held * self.rng.uniform(0.3, 1.0)))
            try:
                amount_in = seller.calc_in_given_out(token_in, token, amount_out)
            except Revert as exc:
                logger.debug("Seller quote for %s failed: %s", self.symbols[token], exc.reason)
                continue
            self._market_buy(actor, token_in, amount_in)
            try:
                seller.swap_tokens_for_exact_tokens(actor, token_in, token, amount_out, amount_in)
            except Revert as exc:
                self._market_sell(actor, token_in, amount_in)
                logger.debug("Seller fill %s -> %s failed: %s", self.symbols[token_in], self.symbols[token], exc.reason)
                continue
            self._market_sell(actor, token, amount_out)
            self.arb_pnl[actor] += self._value(token, amount_out) - self._value(token_in, amount_in)

    # ----- Main loop -----
    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.tick += 1
            self._advance(self.cfg.tick_seconds)
            self._move_prices()
            self.oracle.update_prices(self.tokens)

            self._run_cycle()
            self._refresh_minimum_balances()

            for _ in range(max(0, self.cfg.trades_per_tick)):
                if self._arbitrage_once(self.rng.choice(self.arbitrageurs)) is None:
                    break
            self._fill_seller(self.rng.choice(self.arbitrageurs))

            if self.tick % self.cfg.metrics_stride == 0:
                self.snapshot_metrics()

    # ----- Metrics -----
    def pool_market_value(self) -> float:
        pool = self.pool
        return sum(self._value(t, self.ledger.balance_of(t, pool.address)) for t in pool.get_current_tokens())

    def snapshot_metrics(self) -> None:
        pool = self.pool
        meta = self.controller.get_pool_meta(pool.address)
        total_weight = pool.get_total_denormalized_weight()
        pool_value = self.pool_market_value()
        executed = sum(1 for r in self.receipts.receipts if r.status == "executed")
        self.metrics.add_pool({
            "tick": self.tick,
            "timestamp": self.ledger.now,
            "pool": pool.address,
            "total_supply": from_fp(pool.total_supply()),
            "total_weight": from_fp(total_weight),
            "n_tokens": pool.get_num_tokens(),
            "n_ready": sum(1 for t in pool.get_current_tokens() if pool.get_token_record(t).ready),
            "pool_value": pool_value,
            "share_price": pool_value / max(1e-18, from_fp(pool.total_supply())),
            "reweigh_index": meta.reweigh_index,
            "swaps_executed": executed,
            "swaps_failed": len(self.receipts.receipts) - executed,
            "arb_pnl": sum(self.arb_pnl.values()),
        })
        rows = []
        for token in pool.get_current_tokens():
            record = pool.get_token_record(token)
            value = self._value(token, record.balance)
            rows.append({
                "tick": self.tick,
                "token": token,
                "symbol": self.symbols.get(token, token[:10]),
                "ready": record.ready,
                "denorm": from_fp(record.denorm),
                "desired_denorm": from_fp(record.desired_denorm),
                "normalized_weight": record.denorm / total_weight if total_weight else 0.0,
                "balance": from_fp(record.balance),
                "minimum_balance": from_fp(record.minimum_balance),
                "market_price": self.market_prices.get(token, 0.0),
                "value_share": value / pool_value if pool_value > 0 else 0.0,
            })
        self.metrics.add_token_rows(rows)

    def summary(self) -> Dict[str, float]:
        pool = self.pool
        return {
            "tick": self.tick,
            "days": (self.tick * self.cfg.tick_seconds) / 86400.0,
            "pool_value": self.pool_market_value(),
            "total_supply": from_fp(pool.total_supply()),
            "n_tokens": pool.get_num_tokens(),
            "swaps": len(self.receipts.receipts),
            "arb_pnl": sum(self.arb_pnl.values()),
        }
