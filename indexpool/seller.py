from __future__ import annotations
from typing import Any, Optional
import logging

from .config import ControllerConfig
from .core import AccessError, BoundsError, InsufficientBalanceError, Stateful, TokenLedger
from .oracle import TwapPriceSource

logger = logging.getLogger(__name__)


class UnboundTokenSeller(Stateful):
    """Holds tokens evicted from a pool and sells them for tokens the pool still wants.

    Buyers are paid a premium over the oracle value; whatever they pay in
    goes straight to the pool.
    """

    _state_fields = ("_premium_percent",)

    def __init__(self, address: str, ledger: TokenLedger, oracle: TwapPriceSource, controller: str,
                 pool: Any, premium_percent: int, cfg: Optional[ControllerConfig] = None) -> None:
        self.address = address
        self.ledger = ledger
        self.oracle = oracle
        self.controller = controller
        self.pool = pool
        self.cfg = cfg or ControllerConfig()
        self._check_premium(premium_percent)
        self._premium_percent = int(premium_percent)

    def _check_premium(self, premium_percent: int) -> None:
        if premium_percent < self.cfg.min_premium or premium_percent > self.cfg.max_premium:
            raise BoundsError("premium")

    def _check_tokens(self, token_in: str, token_out: str) -> None:
        pool = self.pool
        if not pool.is_bound(token_in) or pool.get_token_record(token_in).desired_denorm == 0:
            raise BoundsError("in_not_wanted", token=token_in)
        if pool.is_bound(token_out):
            raise BoundsError("out_bound", token=token_out)

    # ----- Pool / controller hooks -----
    def handle_unbind_token(self, caller: str, token: str, amount: int) -> None:
        if caller != self.pool.address:
            raise AccessError("only_pool", actor=caller)
        self.ledger.emit("NEW_TOKENS_TO_SELL", actor_id=caller, pool_id=self.pool.address, token=token, amount=amount)
        logger.info("Seller %s received %d of %s", self.address, amount, token)

    def set_premium_percent(self, actor: str, premium_percent: int) -> None:
        if actor != self.controller:
            raise AccessError("not_controller", actor=actor)
        self._check_premium(premium_percent)
        self._premium_percent = int(premium_percent)
        self.ledger.emit("PREMIUM_PERCENT_SET", actor_id=actor, pool_id=self.pool.address, amount=premium_percent)

    def get_premium_percent(self) -> int:
        return self._premium_percent

    def get_token_balance(self, token: str) -> int:
        return self.ledger.balance_of(token, self.address)

    # ----- Quotes -----
    def calc_out_given_in(self, token_in: str, token_out: str, amount_in: int) -> int:
        self._check_tokens(token_in, token_out)
        value_in = self.oracle.compute_average_value(token_in, amount_in)
        value_out = value_in * 100 // (100 - self._premium_percent)
        return self.oracle.compute_average_amount(token_out, value_out)

    def calc_in_given_out(self, token_in: str, token_out: str, amount_out: int) -> int:
        self._check_tokens(token_in, token_out)
        value_out = self.oracle.compute_average_value(token_out, amount_out)
        value_in = value_out * (100 - self._premium_percent) // 100
        return self.oracle.compute_average_amount(token_in, value_in)

    # ----- Swaps -----
    def _settle(self, actor: str, token_in: str, amount_in: int, token_out: str, amount_out: int) -> None:
        if amount_out > self.get_token_balance(token_out):
            raise InsufficientBalanceError("insufficient_bal", token=token_out)
        self.ledger.transfer(token_in, actor, self.pool.address, amount_in)
        self.ledger.transfer(token_out, self.address, actor, amount_out)
        self.pool.gulp(self.address, token_in)
        self.ledger.emit("SWAPPED_TOKENS", actor_id=actor, pool_id=self.pool.address, token=token_in,
                         amount=amount_in, meta={"token_out": token_out, "amount_out": amount_out})

    def swap_exact_tokens_for_tokens(self, actor: str, token_in: str, token_out: str, amount_in: int,
                                     min_amount_out: int) -> int:
        with self.ledger.atomic(self):
            amount_out = self.calc_out_given_in(token_in, token_out, amount_in)
            if amount_out < min_amount_out:
                raise BoundsError("limit_out")
            self._settle(actor, token_in, amount_in, token_out, amount_out)
            return amount_out

    def swap_tokens_for_exact_tokens(self, actor: str, token_in: str, token_out: str, amount_out: int,
                                     max_amount_in: int) -> int:
        with self.ledger.atomic(self):
            amount_in = self.calc_in_given_out(token_in, token_out, amount_out)
            if amount_in > max_amount_in:
                raise BoundsError("limit_in")
            self._settle(actor, token_in, amount_in, token_out, amount_out)
            return amount_in
