from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple
from collections import deque
import copy
import hashlib
import logging

logger = logging.getLogger(__name__)

NULL_ADDRESS = "0x" + "00" * 20

def format_balances(balances: Dict[str, int], decimals: int = 18) -> str:
    if not balances:
        return "(empty)"
    items = sorted(balances.items(), key=lambda kv: kv[0])
    return ", ".join(f"{token[:10]}:{amount / 10 ** decimals:.4f}" for token, amount in items)

def compute_address(deployer: str, implementation_id: str, salt: str) -> str:
    digest = hashlib.sha3_256(f"{deployer}:{implementation_id}:{salt}".encode()).hexdigest()
    return "0x" + digest[-40:]

def is_null_address(address: Optional[str]) -> bool:
    return not address or address == NULL_ADDRESS


# -----------------------------
# Errors
# -----------------------------
class Revert(Exception):
    """A rejected call. Nothing the call touched is kept."""

    def __init__(self, reason: str, **meta: Any) -> None:
        super().__init__(reason)
        self.reason = reason
        self.meta = meta

class AccessError(Revert):
    pass

class NotFoundError(Revert):
    pass

class BoundsError(Revert):
    pass

class LifecycleError(Revert):
    pass

class MathError(Revert):
    pass

class ReentryError(Revert):
    pass

class NoPriceError(Revert):
    pass

class InsufficientBalanceError(Revert):
    pass


# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    timestamp: int
    event_type: str
    actor_id: Optional[str] = None
    pool_id: Optional[str] = None
    token: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)
        self.added = 0

    def add(self, e: Event) -> None:
        self.events.append(e)
        self.added += 1

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]

    def snapshot_state(self) -> int:
        return self.added

    def restore_state(self, added: int) -> None:
        drop = min(len(self.events), self.added - added)
        for _ in range(drop):
            self.events.pop()
        self.added = added


# -----------------------------
# Clock
# -----------------------------
class Clock:
    def __init__(self, start: int = 1_600_000_000) -> None:
        self.now = int(start)

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self.now += int(seconds)
        return self.now


# -----------------------------
# State snapshots
# -----------------------------
class Stateful:
    """Components that can be rolled back when a call reverts."""

    _state_fields: Tuple[str, ...] = ()

    def snapshot_state(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._state_fields}

    def restore_state(self, state: Dict[str, Any]) -> None:
        for name, value in state.items():
            setattr(self, name, value)


# -----------------------------
# Token ledger
# -----------------------------
class TokenLedger:
    """Token balances for every account, plus the shared clock and event log."""

    def __init__(self, clock: Optional[Clock] = None, log: Optional[EventLog] = None) -> None:
        self.clock = clock or Clock()
        self.log = log or EventLog()
        self.balances: Dict[str, Dict[str, int]] = {}
        self.supplies: Dict[str, int] = {}
        self.debug_balances: bool = False
        # open atomic() frames, innermost last
        self._frames: List[Dict[int, Tuple[Any, Any]]] = []

    @property
    def now(self) -> int:
        return self.clock.now

    def emit(self, event_type: str, **kwargs: Any) -> None:
        self.log.add(Event(self.now, event_type, **kwargs))

    def balance_of(self, token: str, account: str) -> int:
        return int(self.balances.get(token, {}).get(account, 0))

    def total_supply(self, token: str) -> int:
        return int(self.supplies.get(token, 0))

    def holdings(self, account: str) -> Dict[str, int]:
        return {t: b[account] for t, b in self.balances.items() if b.get(account, 0) > 0}

    def _debug_change(self, action: str, token: str, account: str, amount: int, before: Dict[str, int]) -> None:
        if not self.debug_balances or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[BAL] action=%s account=%s token=%s amount=%d before={ %s } after={ %s }",
            action,
            account,
            token,
            amount,
            format_balances(before),
            format_balances(self.holdings(account)),
        )

    def mint(self, token: str, account: str, amount: int) -> None:
        if amount < 0:
            raise BoundsError("negative_amount")
        before = self.holdings(account) if self.debug_balances else {}
        book = self.balances.setdefault(token, {})
        book[account] = book.get(account, 0) + amount
        self.supplies[token] = self.supplies.get(token, 0) + amount
        self._debug_change("mint", token, account, amount, before)

    def burn(self, token: str, account: str, amount: int) -> None:
        if amount < 0:
            raise BoundsError("negative_amount")
        if self.balance_of(token, account) < amount:
            raise InsufficientBalanceError("insufficient_bal", token=token, account=account)
        before = self.holdings(account) if self.debug_balances else {}
        self.balances[token][account] -= amount
        self.supplies[token] -= amount
        self._debug_change("burn", token, account, amount, before)

    def transfer(self, token: str, src: str, dst: str, amount: int) -> None:
        if amount < 0:
            raise BoundsError("negative_amount")
        if self.balance_of(token, src) < amount:
            raise InsufficientBalanceError("insufficient_bal", token=token, account=src)
        if amount == 0 or src == dst:
            return
        before = self.holdings(src) if self.debug_balances else {}
        book = self.balances[token]
        book[src] -= amount
        book[dst] = book.get(dst, 0) + amount
        self._debug_change("transfer_out", token, src, amount, before)

    @contextmanager
    def atomic(self, *participants: Any) -> Iterator[None]:
        """Run a call so that it either commits fully or leaves no trace.

        Nested frames hand their participant snapshots up to the enclosing
        frame on success, so a later failure further out still restores
        every component touched along the way.
        """
        balances = {t: dict(b) for t, b in self.balances.items()}
        supplies = dict(self.supplies)
        events = self.log.snapshot_state()
        frame: Dict[int, Tuple[Any, Any]] = {}
        for p in participants:
            if id(p) not in frame:
                frame[id(p)] = (p, p.snapshot_state())
        self._frames.append(frame)
        try:
            yield
        except BaseException:
            self._frames.pop()
            self.balances = balances
            self.supplies = supplies
            self.log.restore_state(events)
            for p, state in frame.values():
                p.restore_state(state)
            raise
        else:
            self._frames.pop()
            if self._frames:
                outer = self._frames[-1]
                for key, entry in frame.items():
                    outer.setdefault(key, entry)


# -----------------------------
# Receipts
# -----------------------------
@dataclass
class SwapReceipt:
    timestamp: int
    pool_id: str
    actor: str
    token_in: str
    amount_in: int
    token_out: str
    amount_out: int
    spot_price_after: int
    status: Literal["executed", "failed"]
    fail_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "pool_id": self.pool_id,
            "actor": self.actor,
            "token_in": self.token_in,
            "amount_in": int(self.amount_in),
            "token_out": self.token_out,
            "amount_out": int(self.amount_out),
            "spot_price_after": int(self.spot_price_after),
            "status": self.status,
            "fail_reason": self.fail_reason,
        }

class ReceiptStore:
    def __init__(self) -> None:
        self.receipts: List[SwapReceipt] = []

    def add(self, r: SwapReceipt) -> None:
        self.receipts.append(r)

    def tail(self, n: int = 200) -> List[SwapReceipt]:
        return self.receipts[-n:]

    def failures(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for r in self.receipts:
            if r.status == "failed" and r.fail_reason:
                out[r.fail_reason] = out.get(r.fail_reason, 0) + 1
        return out
