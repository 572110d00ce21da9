from __future__ import annotations
from typing import Any, Dict, List, Optional, Set, Tuple
import logging

from .core import AccessError, LifecycleError, NotFoundError, TokenLedger, compute_address

logger = logging.getLogger(__name__)

POOL_IMPLEMENTATION_ID = "IndexPool"
INITIALIZER_IMPLEMENTATION_ID = "PoolInitializer"
SELLER_IMPLEMENTATION_ID = "UnboundTokenSeller"


class ImplementationRegistry:
    """Maps a logical implementation id to the class currently serving it."""

    def __init__(self) -> None:
        self._implementations: Dict[str, Tuple[type, int]] = {}

    def register(self, implementation_id: str, cls: type) -> int:
        _, version = self._implementations.get(implementation_id, (None, 0))
        version += 1
        self._implementations[implementation_id] = (cls, version)
        logger.info("Registered %s v%d -> %s", implementation_id, version, cls.__name__)
        return version

    def resolve(self, implementation_id: str) -> type:
        entry = self._implementations.get(implementation_id)
        if entry is None:
            raise NotFoundError("implementation_not_found", implementation_id=implementation_id)
        return entry[0]

    def version(self, implementation_id: str) -> int:
        entry = self._implementations.get(implementation_id)
        return entry[1] if entry else 0

    def implementation_ids(self) -> List[str]:
        return sorted(self._implementations)


def default_registry() -> ImplementationRegistry:
    from .initializer import PoolInitializer
    from .pool import IndexPool
    from .seller import UnboundTokenSeller

    registry = ImplementationRegistry()
    registry.register(POOL_IMPLEMENTATION_ID, IndexPool)
    registry.register(INITIALIZER_IMPLEMENTATION_ID, PoolInitializer)
    registry.register(SELLER_IMPLEMENTATION_ID, UnboundTokenSeller)
    return registry


class PoolFactory:
    """Deploys registered implementations at addresses derived from (deployer, id, salt)."""

    def __init__(self, ledger: TokenLedger, registry: ImplementationRegistry, owner: str) -> None:
        self.ledger = ledger
        self.registry = registry
        self.owner = owner
        self._approved: Set[str] = set()
        self._deployed: Dict[str, Any] = {}
        self._implementation_of: Dict[str, str] = {}
        self.deploy_counter = 0

    # rollback only needs the maps, never copies of the deployed objects
    def snapshot_state(self) -> Tuple[Set[str], Dict[str, Any], Dict[str, str], int]:
        return set(self._approved), dict(self._deployed), dict(self._implementation_of), self.deploy_counter

    def restore_state(self, state: Tuple[Set[str], Dict[str, Any], Dict[str, str], int]) -> None:
        self._approved, self._deployed, self._implementation_of, self.deploy_counter = state

    def approve_deployer(self, actor: str, deployer: str) -> None:
        if actor != self.owner:
            raise AccessError("not_owner", actor=actor)
        self._approved.add(deployer)

    def disapprove_deployer(self, actor: str, deployer: str) -> None:
        if actor != self.owner:
            raise AccessError("not_owner", actor=actor)
        self._approved.discard(deployer)

    def is_approved_deployer(self, deployer: str) -> bool:
        return deployer in self._approved

    def compute_address(self, deployer: str, implementation_id: str, salt: str) -> str:
        return compute_address(deployer, implementation_id, salt)

    def deploy(self, actor: str, implementation_id: str, salt: str, *args: Any, **kwargs: Any) -> Any:
        if actor not in self._approved:
            raise AccessError("not_approved", actor=actor)
        address = self.compute_address(actor, implementation_id, salt)
        if address in self._deployed:
            raise LifecycleError("already_deployed", address=address)
        cls = self.registry.resolve(implementation_id)
        with self.ledger.atomic(self):
            instance = cls(address, *args, **kwargs)
            self._deployed[address] = instance
            self._implementation_of[address] = implementation_id
            self.deploy_counter += 1
            self.ledger.emit("NEW_DEPLOYMENT", actor_id=actor, pool_id=address,
                             meta={"implementation_id": implementation_id,
                                   "version": self.registry.version(implementation_id)})
        logger.info("Deployed %s at %s for %s", implementation_id, address, actor)
        return instance

    def get(self, address: str) -> Any:
        instance = self._deployed.get(address)
        if instance is None:
            raise NotFoundError("not_deployed", address=address)
        return instance

    def is_recognized_pool(self, address: str) -> bool:
        return self._implementation_of.get(address) == POOL_IMPLEMENTATION_ID

    def deployed_pools(self) -> List[Any]:
        return [self._deployed[a] for a, impl in self._implementation_of.items() if impl == POOL_IMPLEMENTATION_ID]

    def implementation_of(self, address: str) -> Optional[str]:
        return self._implementation_of.get(address)
