from __future__ import annotations
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple, Union
import logging

from .bmath import BONE, bdiv, bmul, bsqrt
from .categories import MarketCapSortedTokenCategories
from .config import ControllerConfig, PoolConfig
from .core import AccessError, BoundsError, LifecycleError, NotFoundError, TokenLedger, is_null_address
from .factory import (
    INITIALIZER_IMPLEMENTATION_ID,
    POOL_IMPLEMENTATION_ID,
    SELLER_IMPLEMENTATION_ID,
    PoolFactory,
)
from .initializer import PoolInitializer
from .oracle import TwapPriceSource
from .pool import IndexPool

logger = logging.getLogger(__name__)

MAX_UINT144 = 2 ** 144


@dataclass
class PoolMeta:
    initialized: bool = False
    category_id: int = 0
    index_size: int = 0
    reweigh_index: int = 0
    last_reweigh: int = 0


class MarketCapSqrtController(MarketCapSortedTokenCategories):
    """Deploys index pools and keeps their weights tied to sqrt market caps.

    Each pool runs a four-step cycle: three weight-only reweighs, then one
    reindex that replaces membership with the category's current top tokens.
    Steps are at least `pool_reweigh_delay` apart and anyone may trigger them.
    """

    _state_fields = MarketCapSortedTokenCategories._state_fields + (
        "_pool_meta",
        "default_seller_premium",
        "default_exit_fee_recipient",
    )

    def __init__(
        self,
        address: str,
        ledger: TokenLedger,
        oracle: TwapPriceSource,
        owner: str,
        factory: PoolFactory,
        cfg: Optional[ControllerConfig] = None,
        pool_cfg: Optional[PoolConfig] = None,
    ) -> None:
        super().__init__(ledger, oracle, owner, cfg)
        self.address = address
        self.factory = factory
        self.pool_cfg = pool_cfg or PoolConfig()
        self.default_seller_premium = self.cfg.default_premium
        self.default_exit_fee_recipient = owner
        self._pool_meta: dict = {}

    # ----- Helpers -----
    def _pool(self, pool_address: str) -> IndexPool:
        if pool_address not in self._pool_meta:
            raise NotFoundError("pool_not_found", pool=pool_address)
        return self.factory.get(pool_address)

    def _pools(self, pool_addresses: Union[str, Sequence[str]]) -> List[IndexPool]:
        if isinstance(pool_addresses, str):
            pool_addresses = [pool_addresses]
        return [self._pool(a) for a in pool_addresses]

    def _check_premium(self, premium: int) -> None:
        if premium < self.cfg.min_premium or premium > self.cfg.max_premium:
            raise BoundsError("premium")

    def _weight_fractions(self, market_caps: Sequence[int]) -> List[int]:
        sqrts = [bsqrt(cap) for cap in market_caps]
        total = sum(sqrts)
        if total == 0:
            raise BoundsError("zero_market_cap")
        return [bdiv(s, total) for s in sqrts]

    def _denormalize(self, fraction: int) -> int:
        return bmul(fraction, self.cfg.weight_multiplier * BONE)

    def compute_denormalized_weights(self, market_caps: Sequence[int]) -> List[int]:
        return [self._denormalize(f) for f in self._weight_fractions(market_caps)]

    def _estimate_pool_value(self, pool: IndexPool) -> int:
        """Reference value of the whole pool, extrapolated from its first ready token."""
        total_weight = pool.get_total_denormalized_weight()
        for token in pool.get_current_tokens():
            record = pool.get_token_record(token)
            if not record.ready:
                continue
            value = self.oracle.compute_average_value(token, self.ledger.balance_of(token, pool.address))
            return bdiv(bmul(value, total_weight), record.denorm)
        raise LifecycleError("no_ready_token", pool=pool.address)

    def _minimum_balance(self, token: str, pool_value: int) -> int:
        fraction = bdiv(self.pool_cfg.min_weight, self.cfg.weight_multiplier * BONE)
        return self.oracle.compute_average_amount(token, bmul(pool_value, fraction))

    # ----- Addresses -----
    def compute_pool_address(self, category_id: int, index_size: int) -> str:
        return self.factory.compute_address(self.address, POOL_IMPLEMENTATION_ID, f"{category_id}:{index_size}")

    def compute_initializer_address(self, pool_address: str) -> str:
        return self.factory.compute_address(self.address, INITIALIZER_IMPLEMENTATION_ID, pool_address)

    def compute_seller_address(self, pool_address: str) -> str:
        return self.factory.compute_address(self.address, SELLER_IMPLEMENTATION_ID, pool_address)

    # ----- Pool deployment -----
    def get_initial_tokens_and_balances(self, category_id: int, index_size: int,
                                        initial_value: int) -> Tuple[List[str], List[int]]:
        tokens = self.get_top_category_tokens(category_id, index_size)
        fractions = self._weight_fractions(self.compute_average_market_caps(tokens))
        balances: List[int] = []
        for token, fraction in zip(tokens, fractions):
            balance = self.oracle.compute_average_amount(token, bmul(fraction, initial_value))
            if balance < self.pool_cfg.min_balance:
                raise BoundsError("min_balance", token=token)
            balances.append(balance)
        return tokens, balances

    def prepare_index_pool(self, actor: str, category_id: int, index_size: int, initial_value: int,
                           name: str, symbol: str) -> Tuple[IndexPool, PoolInitializer]:
        with self.ledger.atomic(self, self.factory):
            self._only_owner(actor)
            if index_size < self.cfg.min_index_size:
                raise BoundsError("min_index_size")
            if index_size > self.cfg.max_index_size:
                raise BoundsError("max_index_size")
            if initial_value >= MAX_UINT144:
                raise BoundsError("max_uint144")
            tokens, balances = self.get_initial_tokens_and_balances(category_id, index_size, initial_value)
            pool = self.factory.deploy(
                self.address, POOL_IMPLEMENTATION_ID, f"{category_id}:{index_size}",
                self.ledger, self.address, name, symbol, self.default_exit_fee_recipient, cfg=self.pool_cfg,
            )
            self._pool_meta[pool.address] = PoolMeta(category_id=category_id, index_size=index_size)
            initializer = self.factory.deploy(
                self.address, INITIALIZER_IMPLEMENTATION_ID, pool.address,
                self.ledger, self.oracle, self, cfg=self.pool_cfg,
            )
            initializer.initialize(self.address, pool.address, tokens, balances)
            self.ledger.emit("NEW_POOL_INITIALIZER", actor_id=actor, pool_id=pool.address,
                             meta={"initializer": initializer.address, "category_id": category_id,
                                   "index_size": index_size})
            logger.info("Prepared pool %s (%s) for category %d, size %d", pool.address, symbol,
                        category_id, index_size)
            return pool, initializer

    def finish_prepared_index_pool(self, caller: str, pool_address: str, tokens: Sequence[str],
                                   balances: Sequence[int]) -> None:
        with self.ledger.atomic(self, self.factory):
            if caller != self.compute_initializer_address(pool_address):
                raise AccessError("not_pre_deploy_pool", actor=caller)
            if len(tokens) != len(balances):
                raise BoundsError("arr_len")
            pool = self._pool(pool_address)
            meta = self._pool_meta[pool_address]
            if meta.initialized:
                raise LifecycleError("initialized")
            values = self.oracle.compute_average_values(tokens, balances)
            total = sum(values)
            denorms = [self._denormalize(bdiv(v, total)) for v in values]
            meta.last_reweigh = self.ledger.now
            meta.initialized = True
            seller = self.factory.deploy(
                self.address, SELLER_IMPLEMENTATION_ID, pool_address,
                self.ledger, self.oracle, self.address, pool, self.default_seller_premium, cfg=self.cfg,
            )
            pool.initialize(self.address, tokens, balances, denorms, caller, seller)
            self.ledger.emit("POOL_INITIALIZED", actor_id=caller, pool_id=pool_address,
                             meta={"seller": seller.address})

    # ----- Rebalancing -----
    def _begin_cycle_step(self, pool_address: str, reindex: bool) -> Tuple[IndexPool, PoolMeta]:
        pool = self._pool(pool_address)
        meta = self._pool_meta[pool_address]
        if not meta.initialized:
            raise LifecycleError("not_initialized")
        if self.ledger.now - meta.last_reweigh < self.cfg.pool_reweigh_delay:
            raise LifecycleError("pool_reweigh_delay")
        meta.reweigh_index += 1
        is_reindex_slot = meta.reweigh_index % (self.cfg.reweighs_before_reindex + 1) == 0
        if is_reindex_slot != reindex:
            raise LifecycleError("reweigh_index")
        meta.last_reweigh = self.ledger.now
        return pool, meta

    def reweigh_pool(self, actor: str, pool_address: str) -> List[int]:
        with self.ledger.atomic(self):
            pool, meta = self._begin_cycle_step(pool_address, reindex=False)
            tokens = pool.get_current_desired_tokens()
            denorms = self.compute_denormalized_weights(self.compute_average_market_caps(tokens))
            pool.reweigh_tokens(self.address, tokens, denorms)
            self.ledger.emit("POOL_REWEIGHED", actor_id=actor, pool_id=pool_address,
                             meta={"reweigh_index": meta.reweigh_index})
            logger.info("Reweighed pool %s (step %d)", pool_address, meta.reweigh_index)
            return denorms

    def reindex_pool(self, actor: str, pool_address: str) -> List[str]:
        with self.ledger.atomic(self):
            pool, meta = self._begin_cycle_step(pool_address, reindex=True)
            tokens = self.get_top_category_tokens(meta.category_id, meta.index_size)
            denorms = self.compute_denormalized_weights(self.compute_average_market_caps(tokens))
            pool_value = self._estimate_pool_value(pool)
            minimum_balances = [
                0 if pool.is_bound(token) else self._minimum_balance(token, pool_value)
                for token in tokens
            ]
            pool.reindex_tokens(self.address, tokens, denorms, minimum_balances)
            self.ledger.emit("POOL_REINDEXED", actor_id=actor, pool_id=pool_address,
                             meta={"tokens": list(tokens), "reweigh_index": meta.reweigh_index})
            logger.info("Reindexed pool %s with %d tokens", pool_address, len(tokens))
            return tokens

    def update_minimum_balance(self, actor: str, pool_address: str, token: str) -> int:
        with self.ledger.atomic(self):
            pool = self._pool(pool_address)
            if pool.get_token_record(token).ready:
                raise LifecycleError("token_ready", token=token)
            minimum_balance = self._minimum_balance(token, self._estimate_pool_value(pool))
            pool.set_minimum_balance(self.address, token, minimum_balance)
            return minimum_balance

    def get_pool_meta(self, pool_address: str) -> PoolMeta:
        if pool_address not in self._pool_meta:
            raise NotFoundError("pool_not_found", pool=pool_address)
        return replace(self._pool_meta[pool_address])

    # ----- Owner settings -----
    def set_default_seller_premium(self, actor: str, premium: int) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            self._check_premium(premium)
            self.default_seller_premium = int(premium)

    def update_seller_premium(self, actor: str, seller_address: str, premium: int) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            self._check_premium(premium)
            self.factory.get(seller_address).set_premium_percent(self.address, premium)

    def set_default_exit_fee_recipient(self, actor: str, recipient: str) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            if is_null_address(recipient):
                raise BoundsError("null_address")
            self.default_exit_fee_recipient = recipient

    def set_exit_fee_recipient(self, actor: str, pool_addresses: Union[str, Sequence[str]], recipient: str) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            for pool in self._pools(pool_addresses):
                pool.set_exit_fee_recipient(self.address, recipient)

    def set_swap_fee(self, actor: str, pool_addresses: Union[str, Sequence[str]], swap_fee: int) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            for pool in self._pools(pool_addresses):
                pool.set_swap_fee(self.address, swap_fee)

    def set_max_pool_tokens(self, actor: str, pool_address: str, max_pool_tokens: int) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            self._pool(pool_address).set_max_pool_tokens(self.address, max_pool_tokens)

    def set_controller(self, actor: str, pool_address: str, controller: str) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            self._pool(pool_address).set_controller(self.address, controller)
