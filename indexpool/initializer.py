from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence
import logging

from .config import PoolConfig
from .core import AccessError, BoundsError, LifecycleError, Stateful, TokenLedger
from .oracle import TwapPriceSource

logger = logging.getLogger(__name__)


class PoolInitializer(Stateful):
    """Escrow that gathers a new pool's starting balances from any contributor."""

    _state_fields = ("_pool", "_tokens", "_remaining", "_credits", "_total_credit", "_finished", "_initialized")

    def __init__(self, address: str, ledger: TokenLedger, oracle: TwapPriceSource, controller: Any,
                 cfg: Optional[PoolConfig] = None) -> None:
        self.address = address
        self.ledger = ledger
        self.oracle = oracle
        self.controller = controller
        self.cfg = cfg or PoolConfig()
        self._pool: Optional[str] = None
        self._tokens: List[str] = []
        self._remaining: Dict[str, int] = {}
        self._credits: Dict[str, int] = {}
        self._total_credit = 0
        self._finished = False
        self._initialized = False

    def _require_finished(self) -> None:
        if not self._finished:
            raise LifecycleError("not_finished")

    def _require_not_finished(self) -> None:
        if self._finished:
            raise LifecycleError("finished")

    def initialize(self, actor: str, pool: str, tokens: Sequence[str], amounts: Sequence[int]) -> None:
        with self.ledger.atomic(self):
            if actor != self.controller.address:
                raise AccessError("not_controller", actor=actor)
            if self._initialized:
                raise LifecycleError("initialized")
            if len(tokens) != len(amounts):
                raise BoundsError("arr_len")
            self._initialized = True
            self._pool = pool
            self._tokens = list(tokens)
            for token, amount in zip(tokens, amounts):
                self._remaining[token] = int(amount)

    # ----- Contributions -----
    def _contribute(self, actor: str, token: str, amount_in: int) -> int:
        if amount_in == 0:
            raise BoundsError("zero_amount", token=token)
        desired = self._remaining.get(token, 0)
        if desired == 0:
            raise BoundsError("not_needed", token=token)
        amount_in = min(amount_in, desired)
        credit = self.oracle.compute_average_value(token, amount_in)
        self.ledger.transfer(token, actor, self.address, amount_in)
        self._remaining[token] = desired - amount_in
        self.ledger.emit("TOKENS_CONTRIBUTED", actor_id=actor, pool_id=self._pool, token=token,
                         amount=amount_in, meta={"credit": credit})
        return credit

    def contribute_tokens(self, actor: str, token: str, amount_in: int, min_credit: int = 0) -> int:
        """Deposit toward one desired amount; the excess over what is still needed is left with the caller."""
        with self.ledger.atomic(self):
            self._require_not_finished()
            credit = self._contribute(actor, token, amount_in)
            if credit < min_credit:
                raise BoundsError("min_credit")
            self._credits[actor] = self._credits.get(actor, 0) + credit
            self._total_credit += credit
            return credit

    def contribute_tokens_batch(self, actor: str, tokens: Sequence[str], amounts: Sequence[int],
                                min_credit: int = 0) -> int:
        with self.ledger.atomic(self):
            self._require_not_finished()
            if len(tokens) != len(amounts):
                raise BoundsError("arr_len")
            credit = 0
            for token, amount in zip(tokens, amounts):
                credit += self._contribute(actor, token, amount)
            if credit < min_credit:
                raise BoundsError("min_credit")
            self._credits[actor] = self._credits.get(actor, 0) + credit
            self._total_credit += credit
            return credit

    def finish(self, actor: str) -> None:
        with self.ledger.atomic(self):
            self._require_not_finished()
            for token in self._tokens:
                if self._remaining.get(token, 0) > 0:
                    raise LifecycleError("pending_tokens", token=token)
            self._finished = True
            balances = [self.ledger.balance_of(t, self.address) for t in self._tokens]
            self.controller.finish_prepared_index_pool(self.address, self._pool, list(self._tokens), balances)
            self.ledger.emit("INITIALIZER_FINISHED", actor_id=actor, pool_id=self._pool)
            logger.info("Initializer %s finished, pool %s funded by %d contributors",
                        self.address, self._pool, len(self._credits))

    # ----- Claims -----
    def _claim(self, account: str) -> int:
        credit = self._credits.get(account, 0)
        if credit == 0:
            return 0
        amount = self.cfg.init_pool_supply * credit // self._total_credit
        self._credits[account] = 0
        self.ledger.transfer(self._pool, self.address, account, amount)
        self.ledger.emit("TOKENS_CLAIMED", actor_id=account, pool_id=self._pool, amount=amount)
        return amount

    def claim_tokens(self, actor: str, account: Optional[str] = None) -> int:
        with self.ledger.atomic(self):
            self._require_finished()
            return self._claim(account or actor)

    def claim_tokens_for(self, actor: str, accounts: Sequence[str]) -> List[int]:
        with self.ledger.atomic(self):
            self._require_finished()
            return [self._claim(a) for a in accounts]

    # ----- Queries -----
    def get_pool(self) -> Optional[str]:
        return self._pool

    def get_desired_tokens(self) -> List[str]:
        return list(self._tokens)

    def get_desired_amount(self, token: str) -> int:
        return self._remaining.get(token, 0)

    def get_desired_amounts(self, tokens: Sequence[str]) -> List[int]:
        return [self.get_desired_amount(t) for t in tokens]

    def get_credit_for_tokens(self, token: str, amount_in: int) -> int:
        desired = self._remaining.get(token, 0)
        if desired == 0:
            raise BoundsError("not_needed", token=token)
        return self.oracle.compute_average_value(token, min(amount_in, desired))

    def get_total_credit(self) -> int:
        return self._total_credit

    def get_credit_of(self, account: str) -> int:
        return self._credits.get(account, 0)

    def is_finished(self) -> bool:
        return self._finished
