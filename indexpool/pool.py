from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple
import functools
import logging

from .bmath import (
    BONE,
    bdiv,
    bmul,
    bsub,
    calc_in_given_out,
    calc_out_given_in,
    calc_pool_in_given_single_out,
    calc_pool_out_given_single_in,
    calc_single_in_given_pool_out,
    calc_single_out_given_pool_in,
    calc_spot_price,
)
from .config import PoolConfig
from .core import (
    AccessError,
    BoundsError,
    InsufficientBalanceError,
    LifecycleError,
    MathError,
    NotFoundError,
    ReentryError,
    Stateful,
    TokenLedger,
    format_balances,
    is_null_address,
)

logger = logging.getLogger(__name__)


@dataclass
class TokenRecord:
    bound: bool = False
    ready: bool = False
    last_denorm_update: int = 0
    denorm: int = 0
    desired_denorm: int = 0
    index: int = 0
    balance: int = 0
    minimum_balance: int = 0

    def to_dict(self) -> dict:
        return {
            "bound": self.bound,
            "ready": self.ready,
            "last_denorm_update": self.last_denorm_update,
            "denorm": self.denorm,
            "desired_denorm": self.desired_denorm,
            "index": self.index,
            "balance": self.balance,
            "minimum_balance": self.minimum_balance,
        }


def _lock(fn):
    @functools.wraps(fn)
    def wrapper(self: "IndexPool", *args: Any, **kwargs: Any):
        if self._mutex:
            raise ReentryError("reentry")
        self._mutex = True
        try:
            with self.ledger.atomic(self):
                return fn(self, *args, **kwargs)
        finally:
            self._mutex = False
    return wrapper


class IndexPool(Stateful):
    """Weighted pool whose weights drift toward controller-set targets."""

    _state_fields = (
        "_records",
        "_tokens",
        "_total_weight",
        "_swap_fee",
        "_public_swap",
        "_controller",
        "_exit_fee_recipient",
        "_max_pool_tokens",
    )

    def __init__(
        self,
        address: str,
        ledger: TokenLedger,
        controller: str,
        name: str,
        symbol: str,
        exit_fee_recipient: str,
        cfg: Optional[PoolConfig] = None,
    ) -> None:
        if is_null_address(controller) or is_null_address(exit_fee_recipient):
            raise BoundsError("null_address")
        self.address = address
        self.ledger = ledger
        self.cfg = cfg or PoolConfig()
        self.name = name
        self.symbol = symbol
        self._controller = controller
        self._exit_fee_recipient = exit_fee_recipient
        self._swap_fee = self.cfg.default_swap_fee
        self._public_swap = False
        self._max_pool_tokens = 0
        self._records: Dict[str, TokenRecord] = {}
        self._tokens: List[str] = []
        self._total_weight = 0
        self._unbind_handler = None
        self._mutex = False
        self.debug_balances = False

    # ----- Guards -----
    def _only_controller(self, actor: str) -> None:
        if actor != self._controller:
            raise AccessError("not_controller", actor=actor)

    def _only_public(self) -> None:
        if not self._public_swap:
            raise LifecycleError("not_public")

    def _check_bound(self, token: str) -> TokenRecord:
        record = self._records.get(token)
        if record is None or not record.bound:
            raise NotFoundError("not_bound", token=token)
        return record

    def _should_update_denorm(self, last_update: int) -> bool:
        return self.ledger.now - last_update >= self.cfg.weight_update_delay

    def _debug_balance_change(self, action: str, actor: str, token: str, amount: int) -> None:
        if not self.debug_balances or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[POOL] pool=%s action=%s actor=%s token=%s amount=%d records={ %s }",
            self.address,
            action,
            actor,
            token,
            amount,
            format_balances({t: r.balance for t, r in self._records.items() if r.bound}),
        )

    # ----- Initialization -----
    @_lock
    def initialize(
        self,
        actor: str,
        tokens: Sequence[str],
        balances: Sequence[int],
        denorms: Sequence[int],
        token_provider: str,
        unbind_handler: Any,
    ) -> None:
        self._only_controller(actor)
        if self._tokens:
            raise LifecycleError("initialized")
        n = len(tokens)
        if n != len(balances) or n != len(denorms):
            raise BoundsError("arr_len")
        if n < self.cfg.min_bound_tokens:
            raise BoundsError("min_tokens")
        if n > self.cfg.max_bound_tokens:
            raise BoundsError("max_tokens")
        if len(set(tokens)) != n:
            raise BoundsError("is_bound")
        cfg = self.cfg
        now = self.ledger.now
        total_weight = 0
        for i, token in enumerate(tokens):
            denorm = int(denorms[i])
            balance = int(balances[i])
            if denorm < cfg.min_weight:
                raise BoundsError("min_weight", token=token)
            if denorm > cfg.max_weight:
                raise BoundsError("max_weight", token=token)
            if balance < cfg.min_balance:
                raise BoundsError("min_balance", token=token)
            self._records[token] = TokenRecord(
                bound=True,
                ready=True,
                last_denorm_update=now,
                denorm=denorm,
                desired_denorm=denorm,
                index=i,
                balance=balance,
            )
            self._tokens.append(token)
            total_weight += denorm
            self.ledger.transfer(token, token_provider, self.address, balance)
        if total_weight > cfg.max_total_weight:
            raise BoundsError("max_total_weight")
        self._total_weight = total_weight
        self._mint_pool_share(token_provider, cfg.init_pool_supply)
        self._unbind_handler = unbind_handler
        self._public_swap = True
        self.ledger.emit("LOG_POOL_INITIALIZED", actor_id=actor, pool_id=self.address,
                         amount=cfg.init_pool_supply, meta={"tokens": list(tokens)})
        logger.info("Initialized pool %s (%s) with %d tokens", self.address, self.symbol, n)

    # ----- Admin -----
    @_lock
    def set_swap_fee(self, actor: str, swap_fee: int) -> None:
        self._only_controller(actor)
        if swap_fee < self.cfg.min_fee or swap_fee > self.cfg.max_fee:
            raise BoundsError("invalid_fee")
        self._swap_fee = int(swap_fee)
        self.ledger.emit("LOG_SWAP_FEE_UPDATED", actor_id=actor, pool_id=self.address, amount=swap_fee)

    @_lock
    def set_exit_fee_recipient(self, actor: str, recipient: str) -> None:
        self._only_controller(actor)
        if is_null_address(recipient):
            raise BoundsError("null_address")
        self._exit_fee_recipient = recipient
        self.ledger.emit("LOG_EXIT_FEE_RECIPIENT_UPDATED", actor_id=actor, pool_id=self.address,
                         meta={"recipient": recipient})

    @_lock
    def set_controller(self, actor: str, controller: str) -> None:
        self._only_controller(actor)
        if is_null_address(controller):
            raise BoundsError("null_address")
        self._controller = controller
        self.ledger.emit("LOG_CONTROLLER_UPDATED", actor_id=actor, pool_id=self.address,
                         meta={"controller": controller})

    @_lock
    def set_max_pool_tokens(self, actor: str, max_pool_tokens: int) -> None:
        self._only_controller(actor)
        if max_pool_tokens < 0:
            raise BoundsError("max_pool_tokens")
        self._max_pool_tokens = int(max_pool_tokens)
        self.ledger.emit("LOG_MAX_TOKENS_UPDATED", actor_id=actor, pool_id=self.address,
                         amount=max_pool_tokens)

    @_lock
    def set_minimum_balance(self, actor: str, token: str, minimum_balance: int) -> None:
        self._only_controller(actor)
        record = self._check_bound(token)
        if record.ready:
            raise LifecycleError("ready", token=token)
        if self.ledger.now - record.last_denorm_update < self.cfg.min_bal_update_delay:
            raise LifecycleError("min_bal_update_delay", token=token)
        if minimum_balance < self.cfg.min_balance:
            raise BoundsError("min_balance", token=token)
        record.minimum_balance = int(minimum_balance)
        record.last_denorm_update = self.ledger.now
        self.ledger.emit("MINIMUM_BALANCE_UPDATED", actor_id=actor, pool_id=self.address,
                         token=token, amount=minimum_balance)

    @_lock
    def reweigh_tokens(self, actor: str, tokens: Sequence[str], desired_denorms: Sequence[int]) -> None:
        self._only_controller(actor)
        if len(tokens) != len(desired_denorms):
            raise BoundsError("arr_len")
        for token, denorm in zip(tokens, desired_denorms):
            self._set_desired_denorm(token, int(denorm))

    @_lock
    def reindex_tokens(
        self,
        actor: str,
        tokens: Sequence[str],
        desired_denorms: Sequence[int],
        minimum_balances: Sequence[int],
    ) -> None:
        """Replace the pool's membership.

        Bound tokens that are left out are scheduled for removal through a
        zero target weight; new tokens start out not ready. Listed tokens
        never get a target below the minimum weight.
        """
        self._only_controller(actor)
        if len(tokens) != len(desired_denorms) or len(tokens) != len(minimum_balances):
            raise BoundsError("arr_len")
        received = set()
        for token, denorm, minimum_balance in zip(tokens, desired_denorms, minimum_balances):
            denorm = max(int(denorm), self.cfg.min_weight)
            record = self._records.get(token)
            if record is not None and record.bound:
                self._set_desired_denorm(token, int(denorm))
            else:
                self._bind(token, int(minimum_balance), int(denorm))
            received.add(token)
        for token in list(self._tokens):
            if token not in received:
                self._set_desired_denorm(token, 0)

    def _set_desired_denorm(self, token: str, desired: int) -> None:
        record = self._check_bound(token)
        # zero schedules a gradual removal
        if desired != 0 and desired < self.cfg.min_weight:
            raise BoundsError("min_weight", token=token)
        if desired > self.cfg.max_weight:
            raise BoundsError("max_weight", token=token)
        record.desired_denorm = desired
        record.last_denorm_update = self.ledger.now
        self.ledger.emit("DESIRED_DENORM_SET", pool_id=self.address, token=token, amount=desired)

    def _bind(self, token: str, minimum_balance: int, desired: int) -> None:
        if token == self.address:
            raise BoundsError("is_bound", token=token)
        if len(self._tokens) >= self.cfg.max_bound_tokens:
            raise BoundsError("max_tokens")
        if desired < self.cfg.min_weight:
            raise BoundsError("min_weight", token=token)
        if desired > self.cfg.max_weight:
            raise BoundsError("max_weight", token=token)
        if minimum_balance < self.cfg.min_balance:
            raise BoundsError("min_balance", token=token)
        self._records[token] = TokenRecord(
            bound=True,
            ready=False,
            last_denorm_update=self.ledger.now,
            denorm=0,
            desired_denorm=desired,
            index=len(self._tokens),
            balance=0,
            minimum_balance=minimum_balance,
        )
        self._tokens.append(token)
        self.ledger.emit("TOKEN_ADDED", pool_id=self.address, token=token, amount=minimum_balance,
                         meta={"desired_denorm": desired})

    def _unbind(self, token: str) -> None:
        record = self._records[token]
        balance = record.balance
        last = len(self._tokens) - 1
        if record.index != last:
            moved = self._tokens[last]
            self._tokens[record.index] = moved
            self._records[moved].index = record.index
        self._tokens.pop()
        self._records[token] = TokenRecord()
        self.ledger.emit("TOKEN_REMOVED", pool_id=self.address, token=token, amount=balance)
        logger.info("Removed token %s from pool %s, %d sent to unbind handler", token, self.address, balance)
        self._push_to_unbind_handler(token, balance)

    def _push_to_unbind_handler(self, token: str, amount: int) -> None:
        handler = self._unbind_handler
        if handler is None:
            raise LifecycleError("no_unbind_handler")
        self.ledger.transfer(token, self.address, handler.address, amount)
        handler.handle_unbind_token(self.address, token, amount)

    # ----- Weight interpolation -----
    def _increase_denorm(self, token: str, record: TokenRecord) -> None:
        if record.denorm >= record.desired_denorm or not self._should_update_denorm(record.last_denorm_update):
            return
        old = record.denorm
        denorm = record.desired_denorm
        max_diff = bmul(old, self._swap_fee // 2)
        diff = denorm - old
        if diff > max_diff:
            denorm = old + max_diff
            diff = max_diff
        total_weight = self._total_weight + diff
        if total_weight > self.cfg.max_total_weight:
            return
        self._total_weight = total_weight
        record.denorm = denorm
        record.last_denorm_update = self.ledger.now
        self.ledger.emit("DENORM_UPDATED", pool_id=self.address, token=token, amount=denorm)

    def _decrease_denorm(self, token: str, record: TokenRecord) -> None:
        if record.denorm <= record.desired_denorm or not self._should_update_denorm(record.last_denorm_update):
            return
        old = record.denorm
        denorm = record.desired_denorm
        max_diff = bmul(old, self._swap_fee // 2)
        diff = old - denorm
        if diff > max_diff:
            denorm = old - max_diff
            diff = max_diff
        if denorm <= self.cfg.min_weight:
            if record.desired_denorm == 0:
                self._total_weight = bsub(self._total_weight, old)
                self._unbind(token)
                return
            denorm = record.desired_denorm
            diff = old - denorm
        self._total_weight = bsub(self._total_weight, diff)
        record.denorm = denorm
        record.last_denorm_update = self.ledger.now
        self.ledger.emit("DENORM_UPDATED", pool_id=self.address, token=token, amount=denorm)

    # ----- Token views -----
    def _input_view(self, token: str) -> Tuple[TokenRecord, int, int]:
        """Record plus the balance and weight used to price it as an input."""
        record = self._check_bound(token)
        if record.ready:
            return record, record.balance, record.denorm
        return record, max(record.balance, record.minimum_balance), self.cfg.min_weight

    def _output_record(self, token: str) -> TokenRecord:
        record = self._check_bound(token)
        if not record.ready:
            raise LifecycleError("out_not_ready", token=token)
        return record

    def _update_input_token(self, token: str, record: TokenRecord, real_balance: int) -> None:
        if not record.ready:
            minimum = record.minimum_balance
            if real_balance >= minimum:
                min_weight = self.cfg.min_weight
                bonus = bmul(min_weight, bdiv(real_balance - minimum, minimum))
                denorm = min(min_weight + bonus, 2 * min_weight)
                room = self.cfg.max_total_weight - self._total_weight
                if room >= min_weight:
                    denorm = min(denorm, room)
                    record.ready = True
                    record.minimum_balance = 0
                    record.denorm = denorm
                    record.last_denorm_update = self.ledger.now
                    self._total_weight += denorm
                    self.ledger.emit("TOKEN_READY", pool_id=self.address, token=token, amount=denorm)
                    logger.info("Token %s ready in pool %s with weight %d", token, self.address, denorm)
                else:
                    logger.debug("Token %s deferred readiness in pool %s: total weight at ceiling",
                                 token, self.address)
        else:
            self._increase_denorm(token, record)
        record.balance = real_balance

    # ----- Pool shares -----
    def _mint_pool_share(self, to: str, amount: int) -> None:
        self.ledger.mint(self.address, to, amount)

    def _check_max_pool_tokens(self, amount_out: int) -> None:
        if self._max_pool_tokens > 0 and self.total_supply() + amount_out > self._max_pool_tokens:
            raise BoundsError("max_pool_tokens")

    def _charge_exit(self, actor: str, pool_amount_in: int) -> int:
        exit_fee = bmul(pool_amount_in, self.cfg.exit_fee)
        self.ledger.transfer(self.address, actor, self._exit_fee_recipient, exit_fee)
        self.ledger.burn(self.address, actor, pool_amount_in - exit_fee)
        return exit_fee

    # ----- Join / exit -----
    @_lock
    def join_pool(self, actor: str, pool_amount_out: int, max_amounts_in: Sequence[int]) -> List[int]:
        self._only_public()
        pool_total = self.total_supply()
        ratio = bdiv(pool_amount_out, pool_total)
        if ratio == 0:
            raise MathError("math_approx")
        if len(max_amounts_in) != len(self._tokens):
            raise BoundsError("arr_len")
        self._check_max_pool_tokens(pool_amount_out)
        amounts_in: List[int] = []
        for i, token in enumerate(list(self._tokens)):
            record, used_balance, _ = self._input_view(token)
            real_balance = record.balance
            amount_in = bmul(ratio, used_balance)
            if amount_in == 0:
                raise MathError("math_approx", token=token)
            if amount_in > max_amounts_in[i]:
                raise BoundsError("limit_in", token=token)
            self.ledger.transfer(token, actor, self.address, amount_in)
            self._update_input_token(token, record, real_balance + amount_in)
            amounts_in.append(amount_in)
            self.ledger.emit("LOG_JOIN", actor_id=actor, pool_id=self.address, token=token, amount=amount_in)
            self._debug_balance_change("join", actor, token, amount_in)
        self._mint_pool_share(actor, pool_amount_out)
        return amounts_in

    @_lock
    def exit_pool(self, actor: str, pool_amount_in: int, min_amounts_out: Sequence[int]) -> List[int]:
        self._only_public()
        if len(min_amounts_out) != len(self._tokens):
            raise BoundsError("arr_len")
        pool_total = self.total_supply()
        exit_fee = bmul(pool_amount_in, self.cfg.exit_fee)
        ratio = bdiv(pool_amount_in - exit_fee, pool_total)
        if ratio == 0:
            raise MathError("math_approx")
        self._charge_exit(actor, pool_amount_in)
        amounts_out: List[int] = []
        for i, token in enumerate(list(self._tokens)):
            record = self._records[token]
            if not record.ready:
                if min_amounts_out[i] != 0:
                    raise LifecycleError("out_not_ready", token=token)
                amounts_out.append(0)
                continue
            amount_out = bmul(ratio, record.balance)
            if amount_out == 0:
                raise MathError("math_approx", token=token)
            if amount_out < min_amounts_out[i]:
                raise BoundsError("limit_out", token=token)
            self.ledger.transfer(token, self.address, actor, amount_out)
            record.balance = bsub(record.balance, amount_out)
            amounts_out.append(amount_out)
            self.ledger.emit("LOG_EXIT", actor_id=actor, pool_id=self.address, token=token, amount=amount_out)
            self._debug_balance_change("exit", actor, token, amount_out)
        return amounts_out

    @_lock
    def joinswap_extern_amount_in(self, actor: str, token_in: str, amount_in: int,
                                  min_pool_amount_out: int) -> int:
        self._only_public()
        if amount_in == 0:
            raise MathError("zero_in")
        record, balance_in, weight_in = self._input_view(token_in)
        real_balance = record.balance
        if amount_in > bmul(balance_in, self.cfg.max_in_ratio):
            raise BoundsError("max_in_ratio")
        pool_amount_out = calc_pool_out_given_single_in(
            balance_in, weight_in, self.total_supply(), self._total_weight, amount_in, self._swap_fee
        )
        self._check_max_pool_tokens(pool_amount_out)
        if pool_amount_out < min_pool_amount_out:
            raise BoundsError("limit_out")
        self.ledger.transfer(token_in, actor, self.address, amount_in)
        self._update_input_token(token_in, record, real_balance + amount_in)
        self._mint_pool_share(actor, pool_amount_out)
        self.ledger.emit("LOG_JOIN", actor_id=actor, pool_id=self.address, token=token_in, amount=amount_in)
        return pool_amount_out

    @_lock
    def joinswap_pool_amount_out(self, actor: str, token_in: str, pool_amount_out: int,
                                 max_amount_in: int) -> int:
        self._only_public()
        self._check_max_pool_tokens(pool_amount_out)
        record, balance_in, weight_in = self._input_view(token_in)
        real_balance = record.balance
        amount_in = calc_single_in_given_pool_out(
            balance_in, weight_in, self.total_supply(), self._total_weight, pool_amount_out, self._swap_fee
        )
        if amount_in == 0:
            raise MathError("math_approx")
        if amount_in > max_amount_in:
            raise BoundsError("limit_in")
        if amount_in > bmul(balance_in, self.cfg.max_in_ratio):
            raise BoundsError("max_in_ratio")
        self.ledger.transfer(token_in, actor, self.address, amount_in)
        self._update_input_token(token_in, record, real_balance + amount_in)
        self._mint_pool_share(actor, pool_amount_out)
        self.ledger.emit("LOG_JOIN", actor_id=actor, pool_id=self.address, token=token_in, amount=amount_in)
        return amount_in

    @_lock
    def exitswap_pool_amount_in(self, actor: str, token_out: str, pool_amount_in: int,
                                min_amount_out: int) -> int:
        self._only_public()
        record = self._output_record(token_out)
        amount_out = calc_single_out_given_pool_in(
            record.balance, record.denorm, self.total_supply(), self._total_weight,
            pool_amount_in, self._swap_fee, self.cfg.exit_fee,
        )
        if amount_out == 0:
            raise MathError("math_approx")
        if amount_out < min_amount_out:
            raise BoundsError("limit_out")
        if amount_out > bmul(record.balance, self.cfg.max_out_ratio):
            raise BoundsError("max_out_ratio")
        self.ledger.transfer(token_out, self.address, actor, amount_out)
        record.balance = bsub(record.balance, amount_out)
        self._decrease_denorm(token_out, record)
        self._charge_exit(actor, pool_amount_in)
        self.ledger.emit("LOG_EXIT", actor_id=actor, pool_id=self.address, token=token_out, amount=amount_out)
        return amount_out

    @_lock
    def exitswap_extern_amount_out(self, actor: str, token_out: str, amount_out: int,
                                   max_pool_amount_in: int) -> int:
        self._only_public()
        record = self._output_record(token_out)
        if amount_out > bmul(record.balance, self.cfg.max_out_ratio):
            raise BoundsError("max_out_ratio")
        pool_amount_in = calc_pool_in_given_single_out(
            record.balance, record.denorm, self.total_supply(), self._total_weight,
            amount_out, self._swap_fee, self.cfg.exit_fee,
        )
        if pool_amount_in == 0:
            raise MathError("math_approx")
        if pool_amount_in > max_pool_amount_in:
            raise BoundsError("limit_in")
        self.ledger.transfer(token_out, self.address, actor, amount_out)
        record.balance = bsub(record.balance, amount_out)
        self._decrease_denorm(token_out, record)
        self._charge_exit(actor, pool_amount_in)
        self.ledger.emit("LOG_EXIT", actor_id=actor, pool_id=self.address, token=token_out, amount=amount_out)
        return pool_amount_in

    # ----- Swaps -----
    def _spot_price_after(self, token_in: str, token_out: str, fallback: int) -> int:
        record_out = self._records.get(token_out)
        if record_out is None or not record_out.bound:
            return fallback
        _, balance_in, weight_in = self._input_view(token_in)
        return calc_spot_price(balance_in, weight_in, record_out.balance, record_out.denorm, self._swap_fee)

    def _settle_swap(self, actor: str, token_in: str, in_record: TokenRecord, real_in: int,
                     amount_in: int, token_out: str, out_record: TokenRecord, amount_out: int) -> None:
        self.ledger.transfer(token_in, actor, self.address, amount_in)
        self.ledger.transfer(token_out, self.address, actor, amount_out)
        # input step is checked against the total after the output step
        out_record.balance = bsub(out_record.balance, amount_out)
        self._decrease_denorm(token_out, out_record)
        self._update_input_token(token_in, in_record, real_in + amount_in)
        self.ledger.emit("LOG_SWAP", actor_id=actor, pool_id=self.address, token=token_in, amount=amount_in,
                         meta={"token_out": token_out, "amount_out": amount_out})
        self._debug_balance_change("swap", actor, token_in, amount_in)

    @_lock
    def swap_exact_amount_in(self, actor: str, token_in: str, amount_in: int, token_out: str,
                             min_amount_out: int, max_price: int) -> Tuple[int, int]:
        self._only_public()
        if token_in == token_out:
            raise BoundsError("same_token")
        self._check_bound(token_in)
        out_record = self._output_record(token_out)
        in_record, balance_in, weight_in = self._input_view(token_in)
        real_in = in_record.balance
        balance_out, weight_out = out_record.balance, out_record.denorm
        fee = self._swap_fee

        if amount_in > bmul(balance_in, self.cfg.max_in_ratio):
            raise BoundsError("max_in_ratio")
        spot_before = calc_spot_price(balance_in, weight_in, balance_out, weight_out, fee)
        if spot_before > max_price:
            raise BoundsError("bad_limit_price")
        amount_out = calc_out_given_in(balance_in, weight_in, balance_out, weight_out, amount_in, fee)
        if amount_out < min_amount_out:
            raise BoundsError("limit_out")
        if amount_out > bmul(balance_out, self.cfg.max_out_ratio):
            raise BoundsError("max_out_ratio")

        # curve sanity on the weights the trade was priced with
        curve_after = calc_spot_price(balance_in + amount_in, weight_in, balance_out - amount_out, weight_out, fee)
        if curve_after < spot_before:
            raise MathError("math_approx")
        if amount_out == 0 or spot_before > bdiv(amount_in, amount_out):
            raise MathError("math_approx")

        self._settle_swap(actor, token_in, in_record, real_in, amount_in, token_out, out_record, amount_out)
        spot_after = self._spot_price_after(token_in, token_out, curve_after)
        if spot_after > max_price:
            raise BoundsError("limit_price")
        return amount_out, spot_after

    @_lock
    def swap_exact_amount_out(self, actor: str, token_in: str, max_amount_in: int, token_out: str,
                              amount_out: int, max_price: int) -> Tuple[int, int]:
        self._only_public()
        if token_in == token_out:
            raise BoundsError("same_token")
        self._check_bound(token_in)
        out_record = self._output_record(token_out)
        if amount_out > bmul(out_record.balance, self.cfg.max_out_ratio):
            raise BoundsError("max_out_ratio")
        in_record, balance_in, weight_in = self._input_view(token_in)
        real_in = in_record.balance
        balance_out, weight_out = out_record.balance, out_record.denorm
        fee = self._swap_fee

        spot_before = calc_spot_price(balance_in, weight_in, balance_out, weight_out, fee)
        if spot_before > max_price:
            raise BoundsError("bad_limit_price")
        amount_in = calc_in_given_out(balance_in, weight_in, balance_out, weight_out, amount_out, fee)
        if amount_in > max_amount_in:
            raise BoundsError("limit_in")
        if amount_in > bmul(balance_in, self.cfg.max_in_ratio):
            raise BoundsError("max_in_ratio")

        curve_after = calc_spot_price(balance_in + amount_in, weight_in, balance_out - amount_out, weight_out, fee)
        if curve_after < spot_before:
            raise MathError("math_approx")
        if amount_out == 0 or spot_before > bdiv(amount_in, amount_out):
            raise MathError("math_approx")

        self._settle_swap(actor, token_in, in_record, real_in, amount_in, token_out, out_record, amount_out)
        spot_after = self._spot_price_after(token_in, token_out, curve_after)
        if spot_after > max_price:
            raise BoundsError("limit_price")
        return amount_in, spot_after

    # ----- Flash loans & reconciliation -----
    @_lock
    def flash_borrow(self, actor: str, receiver: Any, token: str, amount: int, data: Any = None) -> int:
        """Lend `amount` of a bound token to `receiver` for the duration of its callback.

        The receiver must leave the pool holding at least what it held before
        the loan plus the flash fee. Returns the fee charged.
        """
        record, _, _ = self._input_view(token)
        balance_start = self.ledger.balance_of(token, self.address)
        if amount > balance_start:
            raise InsufficientBalanceError("insufficient_bal", token=token)
        fee = bmul(amount, self.cfg.flash_fee)
        self.ledger.transfer(token, self.address, receiver.address, amount)
        receiver.receive_flash_loan(self, token, amount, fee, data)
        balance = self.ledger.balance_of(token, self.address)
        if balance - balance_start < fee:
            raise InsufficientBalanceError("insufficient_payment", token=token)
        self._update_input_token(token, record, balance)
        self.ledger.emit("FLASH_LOAN", actor_id=actor, pool_id=self.address, token=token, amount=amount,
                         meta={"receiver": receiver.address, "fee": fee})
        return fee

    @_lock
    def gulp(self, actor: str, token: str) -> int:
        """Absorb a token's actual holding into its record; unbound tokens go to the unbind handler."""
        balance = self.ledger.balance_of(token, self.address)
        record = self._records.get(token)
        if record is not None and record.bound:
            self._update_input_token(token, record, balance)
        elif balance > 0:
            self._push_to_unbind_handler(token, balance)
        self.ledger.emit("LOG_GULP", actor_id=actor, pool_id=self.address, token=token, amount=balance)
        return balance

    # ----- Queries -----
    def is_public_swap(self) -> bool:
        return self._public_swap

    def get_swap_fee(self) -> int:
        return self._swap_fee

    def get_exit_fee(self) -> int:
        return self.cfg.exit_fee

    def get_controller(self) -> str:
        return self._controller

    def get_exit_fee_recipient(self) -> str:
        return self._exit_fee_recipient

    def get_max_pool_tokens(self) -> int:
        return self._max_pool_tokens

    def is_bound(self, token: str) -> bool:
        record = self._records.get(token)
        return record is not None and record.bound

    def get_num_tokens(self) -> int:
        return len(self._tokens)

    def get_current_tokens(self) -> List[str]:
        return list(self._tokens)

    def get_current_desired_tokens(self) -> List[str]:
        return [t for t in self._tokens if self._records[t].desired_denorm > 0]

    def get_denormalized_weight(self, token: str) -> int:
        return self._check_bound(token).denorm

    def get_total_denormalized_weight(self) -> int:
        return self._total_weight

    def get_balance(self, token: str) -> int:
        return self._check_bound(token).balance

    def get_minimum_balance(self, token: str) -> int:
        record = self._check_bound(token)
        if record.ready:
            raise LifecycleError("ready", token=token)
        return record.minimum_balance

    def get_used_balance(self, token: str) -> int:
        _, used_balance, _ = self._input_view(token)
        return used_balance

    def get_token_record(self, token: str) -> TokenRecord:
        return replace(self._check_bound(token))

    def get_spot_price(self, token_in: str, token_out: str) -> int:
        _, balance_in, weight_in = self._input_view(token_in)
        out_record = self._output_record(token_out)
        return calc_spot_price(balance_in, weight_in, out_record.balance, out_record.denorm, self._swap_fee)

    def get_normalized_weights(self) -> Dict[str, float]:
        total = self._total_weight or BONE
        return {t: self._records[t].denorm / total for t in self._tokens}

    def total_supply(self) -> int:
        return self.ledger.total_supply(self.address)

    def balance_of(self, account: str) -> int:
        return self.ledger.balance_of(self.address, account)
