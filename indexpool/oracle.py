from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple
import logging

from .bmath import BONE, bdiv, bmul
from .config import OracleConfig
from .core import NoPriceError, TokenLedger

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    def compute_average_value(self, token: str, amount: int) -> int: ...
    def compute_average_amount(self, token: str, value: int) -> int: ...
    def average_market_cap(self, token: str) -> int: ...
    def average_market_caps(self, tokens: Sequence[str]) -> List[int]: ...
    def has_observation_in_window(self, token: str, bucket_key: int) -> bool: ...


@dataclass
class PriceAccumulator:
    price: int
    cumulative: int = 0
    last_update: int = 0
    # bucket key -> (timestamp, cumulative price at that time)
    observations: Dict[int, Tuple[int, int]] = field(default_factory=dict)


class TwapPriceSource:
    """Time-weighted average prices against a reference asset.

    Prices are fixed point: the reference value of one whole token.
    One observation is kept per observation period; averages are taken
    between now and the most recent observation whose age falls inside
    the configured window.
    """

    def __init__(self, ledger: TokenLedger, cfg: Optional[OracleConfig] = None,
                 reference_token: Optional[str] = None) -> None:
        self.ledger = ledger
        self.cfg = cfg or OracleConfig()
        self.reference_token = reference_token
        self._feeds: Dict[str, PriceAccumulator] = {}

    def bucket_key(self, timestamp: Optional[int] = None) -> int:
        ts = self.ledger.now if timestamp is None else timestamp
        return ts // self.cfg.observation_period

    def _accrue(self, feed: PriceAccumulator) -> None:
        now = self.ledger.now
        if now > feed.last_update:
            feed.cumulative += feed.price * (now - feed.last_update)
            feed.last_update = now

    # ----- Feeds -----
    def set_price(self, token: str, price: int) -> None:
        if price <= 0:
            raise ValueError("price must be positive")
        feed = self._feeds.get(token)
        if feed is None:
            self._feeds[token] = PriceAccumulator(price=int(price), last_update=self.ledger.now)
            return
        self._accrue(feed)
        feed.price = int(price)

    def spot_price(self, token: str) -> int:
        if token == self.reference_token:
            return BONE
        feed = self._feeds.get(token)
        if feed is None:
            raise NoPriceError("no_price_in_range", token=token)
        return feed.price

    def update_price(self, token: str) -> bool:
        """Store an observation for the current period. Returns False if one exists already."""
        feed = self._feeds.get(token)
        if feed is None:
            raise NoPriceError("no_price_in_range", token=token)
        self._accrue(feed)
        key = self.bucket_key()
        if key in feed.observations:
            return False
        feed.observations[key] = (self.ledger.now, feed.cumulative)
        cutoff = key - (self.cfg.max_twap_age // self.cfg.observation_period) - 1
        for stale in [k for k in feed.observations if k < cutoff]:
            del feed.observations[stale]
        return True

    def update_prices(self, tokens: Sequence[str]) -> List[bool]:
        return [self.update_price(t) for t in tokens]

    def has_observation_in_window(self, token: str, bucket_key: int) -> bool:
        feed = self._feeds.get(token)
        return feed is not None and bucket_key in feed.observations

    # ----- Averages -----
    def compute_average_token_price(self, token: str, min_age: Optional[int] = None,
                                    max_age: Optional[int] = None) -> int:
        if token == self.reference_token:
            return BONE
        min_age = self.cfg.min_twap_age if min_age is None else min_age
        max_age = self.cfg.max_twap_age if max_age is None else max_age
        feed = self._feeds.get(token)
        if feed is None:
            raise NoPriceError("no_price_in_range", token=token)
        self._accrue(feed)
        now = self.ledger.now
        best: Optional[Tuple[int, int]] = None
        for ts, cumulative in feed.observations.values():
            age = now - ts
            if min_age <= age <= max_age and age > 0 and (best is None or ts > best[0]):
                best = (ts, cumulative)
        if best is None:
            raise NoPriceError("no_price_in_range", token=token)
        ts, cumulative = best
        return (feed.cumulative - cumulative) // (now - ts)

    def compute_average_token_prices(self, tokens: Sequence[str]) -> List[int]:
        return [self.compute_average_token_price(t) for t in tokens]

    def compute_average_value(self, token: str, amount: int) -> int:
        return bmul(self.compute_average_token_price(token), amount)

    def compute_average_values(self, tokens: Sequence[str], amounts: Sequence[int]) -> List[int]:
        return [self.compute_average_value(t, a) for t, a in zip(tokens, amounts)]

    def compute_average_amount(self, token: str, value: int) -> int:
        return bdiv(value, self.compute_average_token_price(token))

    def average_market_cap(self, token: str) -> int:
        return bmul(self.compute_average_token_price(token), self.ledger.total_supply(token))

    def average_market_caps(self, tokens: Sequence[str]) -> List[int]:
        return [self.average_market_cap(t) for t in tokens]
