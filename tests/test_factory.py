import pytest

from indexpool.core import AccessError, BoundsError, LifecycleError, NotFoundError, compute_address
from indexpool.factory import (
    POOL_IMPLEMENTATION_ID,
    SELLER_IMPLEMENTATION_ID,
    ImplementationRegistry,
    PoolFactory,
    default_registry,
)
from indexpool.pool import IndexPool

from conftest import OWNER, TRADER


@pytest.fixture
def factory(ledger):
    factory = PoolFactory(ledger, default_registry(), OWNER)
    factory.approve_deployer(OWNER, TRADER)
    return factory


def test_deploy_uses_deterministic_address(factory, ledger):
    expected = factory.compute_address(TRADER, POOL_IMPLEMENTATION_ID, "1:5")
    assert expected == compute_address(TRADER, POOL_IMPLEMENTATION_ID, "1:5")
    pool = factory.deploy(TRADER, POOL_IMPLEMENTATION_ID, "1:5", ledger, TRADER, "Idx", "IDX", OWNER)
    assert isinstance(pool, IndexPool)
    assert pool.address == expected
    assert factory.get(expected) is pool
    assert factory.is_recognized_pool(expected)
    assert factory.implementation_of(expected) == POOL_IMPLEMENTATION_ID
    assert factory.deployed_pools() == [pool]
    assert factory.deploy_counter == 1
    assert ledger.log.of_type("NEW_DEPLOYMENT")


def test_deploy_rejects_unapproved_and_duplicates(factory, ledger):
    with pytest.raises(AccessError) as exc:
        factory.deploy(OWNER, POOL_IMPLEMENTATION_ID, "x", ledger, OWNER, "Idx", "IDX", OWNER)
    assert exc.value.reason == "not_approved"
    factory.deploy(TRADER, POOL_IMPLEMENTATION_ID, "x", ledger, TRADER, "Idx", "IDX", OWNER)
    with pytest.raises(LifecycleError) as exc:
        factory.deploy(TRADER, POOL_IMPLEMENTATION_ID, "x", ledger, TRADER, "Idx", "IDX", OWNER)
    assert exc.value.reason == "already_deployed"
    assert factory.deploy_counter == 1


def test_failed_construction_leaves_no_trace(factory, ledger):
    with pytest.raises(BoundsError):
        factory.deploy(TRADER, POOL_IMPLEMENTATION_ID, "y", ledger, "", "Idx", "IDX", OWNER)
    assert factory.deploy_counter == 0
    with pytest.raises(NotFoundError) as exc:
        factory.get(factory.compute_address(TRADER, POOL_IMPLEMENTATION_ID, "y"))
    assert exc.value.reason == "not_deployed"


def test_only_owner_manages_deployers(factory):
    with pytest.raises(AccessError) as exc:
        factory.approve_deployer(TRADER, TRADER)
    assert exc.value.reason == "not_owner"
    factory.disapprove_deployer(OWNER, TRADER)
    assert not factory.is_approved_deployer(TRADER)


def test_registry_versions_and_lookup():
    registry = ImplementationRegistry()
    assert registry.version(SELLER_IMPLEMENTATION_ID) == 0
    assert registry.register(SELLER_IMPLEMENTATION_ID, object) == 1
    assert registry.register(SELLER_IMPLEMENTATION_ID, dict) == 2
    assert registry.resolve(SELLER_IMPLEMENTATION_ID) is dict
    assert registry.implementation_ids() == [SELLER_IMPLEMENTATION_ID]
    with pytest.raises(NotFoundError) as exc:
        registry.resolve("Missing")
    assert exc.value.reason == "implementation_not_found"
