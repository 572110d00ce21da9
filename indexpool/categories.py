from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
import logging

from .config import ControllerConfig
from .core import AccessError, BoundsError, LifecycleError, NotFoundError, Stateful, TokenLedger
from .oracle import TwapPriceSource

logger = logging.getLogger(__name__)


@dataclass
class Category:
    category_id: int
    metadata_hash: str = ""
    tokens: List[str] = field(default_factory=list)
    last_sort_timestamp: int = 0


class MarketCapSortedTokenCategories(Stateful):
    """Owner-curated token sets ranked by average market cap."""

    _state_fields = ("_categories", "category_index", "owner")

    def __init__(self, ledger: TokenLedger, oracle: TwapPriceSource, owner: str,
                 cfg: Optional[ControllerConfig] = None) -> None:
        self.ledger = ledger
        self.oracle = oracle
        self.owner = owner
        self.cfg = cfg or ControllerConfig()
        self.category_index = 0
        self._categories: Dict[int, Category] = {}

    def _only_owner(self, actor: str) -> None:
        if actor != self.owner:
            raise AccessError("not_owner", actor=actor)

    def _category(self, category_id: int) -> Category:
        if category_id <= 0 or category_id > self.category_index:
            raise NotFoundError("category_id", category_id=category_id)
        return self._categories[category_id]

    def _age_sort(self, category: Category) -> None:
        # forces a fresh sort before the category can back a pool again
        category.last_sort_timestamp = max(0, category.last_sort_timestamp - self.cfg.max_sort_delay)

    # ----- Category management -----
    def create_category(self, actor: str, metadata_hash: str = "") -> int:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            self.category_index += 1
            category_id = self.category_index
            self._categories[category_id] = Category(category_id=category_id, metadata_hash=metadata_hash)
            self.ledger.emit("CATEGORY_ADDED", actor_id=actor, meta={"category_id": category_id,
                                                                      "metadata_hash": metadata_hash})
            return category_id

    def _add_token(self, category: Category, token: str) -> None:
        if len(category.tokens) >= self.cfg.max_category_tokens:
            raise BoundsError("max_category_tokens")
        if token in category.tokens:
            raise BoundsError("token_bound", token=token)
        category.tokens.append(token)
        self.ledger.emit("TOKEN_ADDED_TO_CATEGORY", token=token, meta={"category_id": category.category_id})

    def add_token(self, actor: str, category_id: int, token: str) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            category = self._category(category_id)
            self._add_token(category, token)
            self.oracle.update_price(token)
            self._age_sort(category)

    def add_tokens(self, actor: str, category_id: int, tokens: Sequence[str]) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            category = self._category(category_id)
            if len(category.tokens) + len(tokens) > self.cfg.max_category_tokens:
                raise BoundsError("max_category_tokens")
            for token in tokens:
                self._add_token(category, token)
            self.oracle.update_prices(tokens)
            self._age_sort(category)

    def remove_token(self, actor: str, category_id: int, token: str) -> None:
        with self.ledger.atomic(self):
            self._only_owner(actor)
            category = self._category(category_id)
            if token not in category.tokens:
                raise NotFoundError("token_not_bound", token=token)
            i = category.tokens.index(token)
            last = category.tokens.pop()
            if i < len(category.tokens):
                category.tokens[i] = last
            self._age_sort(category)
            self.ledger.emit("TOKEN_REMOVED_FROM_CATEGORY", actor_id=actor, token=token,
                             meta={"category_id": category_id})

    def update_category_prices(self, actor: str, category_id: int) -> List[bool]:
        category = self._category(category_id)
        updated = self.oracle.update_prices(category.tokens)
        self.ledger.emit("CATEGORY_PRICES_UPDATED", actor_id=actor,
                         meta={"category_id": category_id, "updated": sum(updated)})
        return updated

    def order_category_tokens_by_market_cap(self, actor: str, category_id: int) -> List[str]:
        """Insertion sort by average market cap, largest first."""
        with self.ledger.atomic(self):
            category = self._category(category_id)
            tokens = list(category.tokens)
            if not tokens:
                raise LifecycleError("empty_category")
            caps = self.oracle.average_market_caps(tokens)
            for i in range(1, len(tokens)):
                cap, token = caps[i], tokens[i]
                j = i - 1
                while j >= 0 and caps[j] < cap:
                    caps[j + 1] = caps[j]
                    tokens[j + 1] = tokens[j]
                    j -= 1
                caps[j + 1] = cap
                tokens[j + 1] = token
            category.tokens = tokens
            category.last_sort_timestamp = self.ledger.now
            self.ledger.emit("CATEGORY_SORTED", actor_id=actor, meta={"category_id": category_id})
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Sorted category %d: %s", category_id, ", ".join(t[:10] for t in tokens))
            return list(tokens)

    # ----- Queries -----
    def has_category(self, category_id: int) -> bool:
        return 0 < category_id <= self.category_index

    def is_token_in_category(self, category_id: int, token: str) -> bool:
        return token in self._category(category_id).tokens

    def get_category_tokens(self, category_id: int) -> List[str]:
        return list(self._category(category_id).tokens)

    def get_last_category_update(self, category_id: int) -> int:
        return self._category(category_id).last_sort_timestamp

    def compute_average_market_cap(self, token: str) -> int:
        return self.oracle.average_market_cap(token)

    def compute_average_market_caps(self, tokens: Sequence[str]) -> List[int]:
        return self.oracle.average_market_caps(tokens)

    def get_category_market_caps(self, category_id: int) -> List[int]:
        return self.compute_average_market_caps(self._category(category_id).tokens)

    def get_top_category_tokens(self, category_id: int, num: int) -> List[str]:
        category = self._category(category_id)
        if num > len(category.tokens):
            raise BoundsError("category_size")
        if self.ledger.now - category.last_sort_timestamp > self.cfg.max_sort_delay:
            raise LifecycleError("category_not_ready")
        return category.tokens[:num]
