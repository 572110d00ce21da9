import pytest

from indexpool.bmath import BONE, from_fp
from indexpool.config import DAY, HOUR, WEEK
from indexpool.core import AccessError, BoundsError, LifecycleError, NoPriceError, NotFoundError

from conftest import FOUNDER, OWNER, TRADER, TREASURY


def test_prepare_sizes_balances_by_sqrt_market_cap(prepared):
    initializer = prepared.extra["initializer"]
    pool = prepared.extra["pool"]
    assert initializer.get_pool() == pool.address
    assert initializer.get_desired_tokens() == ["T1", "T2", "T3"]
    amounts = [from_fp(a) for a in initializer.get_desired_amounts(["T1", "T2", "T3"])]
    assert amounts == pytest.approx([40.0, 30.0, 20.0], rel=1e-9)
    assert not pool.is_public_swap()
    assert pool.address == prepared.controller.compute_pool_address(prepared.category_id, 3)
    assert initializer.address == prepared.controller.compute_initializer_address(pool.address)
    assert prepared.ledger.log.of_type("NEW_POOL_INITIALIZER")


def test_prepare_validates_arguments(market):
    controller = market.controller
    with pytest.raises(AccessError):
        controller.prepare_index_pool(TRADER, market.category_id, 3, 90 * BONE, "X", "X")
    with pytest.raises(BoundsError) as exc:
        controller.prepare_index_pool(OWNER, market.category_id, 1, 90 * BONE, "X", "X")
    assert exc.value.reason == "min_index_size"
    with pytest.raises(BoundsError) as exc:
        controller.prepare_index_pool(OWNER, market.category_id, 11, 90 * BONE, "X", "X")
    assert exc.value.reason == "max_index_size"
    with pytest.raises(BoundsError) as exc:
        controller.prepare_index_pool(OWNER, market.category_id, 3, 2 ** 144, "X", "X")
    assert exc.value.reason == "max_uint144"
    assert market.factory.deploy_counter == 0


def test_same_pool_cannot_be_prepared_twice(prepared):
    with pytest.raises(LifecycleError) as exc:
        prepared.controller.prepare_index_pool(OWNER, prepared.category_id, 3, 90 * BONE, "X", "X")
    assert exc.value.reason == "already_deployed"


def test_finish_initializes_pool_with_value_weights(index_env):
    pool = index_env.extra["pool"]
    controller = index_env.controller
    assert pool.is_public_swap()
    weights = [from_fp(pool.get_denormalized_weight(t)) for t in ["T1", "T2", "T3"]]
    assert weights == pytest.approx([25 * 4 / 9, 25 * 3 / 9, 25 * 2 / 9], rel=1e-9)
    assert pool.balance_of(FOUNDER) == 100 * BONE
    meta = controller.get_pool_meta(pool.address)
    assert meta.initialized and meta.reweigh_index == 0
    assert meta.last_reweigh == index_env.ledger.now
    seller = index_env.factory.get(controller.compute_seller_address(pool.address))
    assert seller.get_premium_percent() == 2
    assert pool.get_exit_fee_recipient() == OWNER


def test_finish_only_from_initializer(prepared):
    pool = prepared.extra["pool"]
    with pytest.raises(AccessError) as exc:
        prepared.controller.finish_prepared_index_pool(TRADER, pool.address, ["T1"], [BONE])
    assert exc.value.reason == "not_pre_deploy_pool"


def test_cycle_enforces_delay_and_order(index_env):
    controller = index_env.controller
    pool = index_env.extra["pool"]
    with pytest.raises(LifecycleError) as exc:
        controller.reweigh_pool(TRADER, pool.address)
    assert exc.value.reason == "pool_reweigh_delay"

    index_env.refresh(2 * WEEK)
    with pytest.raises(LifecycleError) as exc:
        controller.reindex_pool(TRADER, pool.address)
    assert exc.value.reason == "reweigh_index"
    assert controller.get_pool_meta(pool.address).reweigh_index == 0

    for step in range(1, 4):
        controller.reweigh_pool(TRADER, pool.address)
        assert controller.get_pool_meta(pool.address).reweigh_index == step
        index_env.refresh(2 * WEEK)

    with pytest.raises(LifecycleError) as exc:
        controller.reweigh_pool(TRADER, pool.address)
    assert exc.value.reason == "reweigh_index"


def test_reweigh_sets_targets_from_current_caps(index_env):
    controller = index_env.controller
    pool = index_env.extra["pool"]
    index_env.ledger.mint("T3", TREASURY, 12_000 * BONE)
    index_env.refresh(2 * WEEK)
    desired = controller.reweigh_pool(TRADER, pool.address)
    # sqrt caps are now 4:3:4
    assert [from_fp(d) for d in desired] == pytest.approx([25 * 4 / 11, 25 * 3 / 11, 25 * 4 / 11], rel=1e-9)
    assert pool.get_token_record("T3").desired_denorm == desired[2]
    assert pool.get_denormalized_weight("T3") < desired[2]


def _run_to_reindex_slot(env):
    controller = env.controller
    pool = env.extra["pool"]
    for _ in range(3):
        env.refresh(2 * WEEK)
        controller.reweigh_pool(TRADER, pool.address)
    env.refresh(2 * WEEK)


def test_reindex_requires_fresh_sort(index_env):
    _run_to_reindex_slot(index_env)
    pool = index_env.extra["pool"]
    with pytest.raises(LifecycleError) as exc:
        index_env.controller.reindex_pool(TRADER, pool.address)
    assert exc.value.reason == "category_not_ready"
    assert index_env.controller.get_pool_meta(pool.address).reweigh_index == 3


def test_reindex_swaps_membership(index_env):
    controller = index_env.controller
    ledger = index_env.ledger
    pool = index_env.extra["pool"]
    ledger.mint("T4", TREASURY, 30_000 * BONE)
    _run_to_reindex_slot(index_env)
    controller.order_category_tokens_by_market_cap(TRADER, index_env.category_id)

    tokens = controller.reindex_pool(TRADER, pool.address)
    assert tokens == ["T4", "T1", "T2"]
    assert controller.get_pool_meta(pool.address).reweigh_index == 4
    assert pool.get_token_record("T3").desired_denorm == 0

    record = pool.get_token_record("T4")
    assert not record.ready
    first = pool.get_current_tokens()[0]
    first_value = from_fp(ledger.balance_of(first, pool.address))
    pool_value = first_value * from_fp(pool.get_total_denormalized_weight()) / from_fp(
        pool.get_denormalized_weight(first))
    assert from_fp(record.minimum_balance) == pytest.approx(pool_value / 100, rel=1e-9)


def test_update_minimum_balance(index_env):
    controller = index_env.controller
    pool = index_env.extra["pool"]
    index_env.ledger.mint("T4", TREASURY, 30_000 * BONE)
    _run_to_reindex_slot(index_env)
    controller.order_category_tokens_by_market_cap(TRADER, index_env.category_id)
    controller.reindex_pool(TRADER, pool.address)

    with pytest.raises(LifecycleError) as exc:
        controller.update_minimum_balance(TRADER, pool.address, "T4")
    assert exc.value.reason == "min_bal_update_delay"
    with pytest.raises(LifecycleError) as exc:
        controller.update_minimum_balance(TRADER, pool.address, "T1")
    assert exc.value.reason == "token_ready"

    index_env.refresh(6 * HOUR)
    minimum = controller.update_minimum_balance(TRADER, pool.address, "T4")
    assert pool.get_minimum_balance("T4") == minimum


def test_owner_settings_forward_to_pool(index_env):
    controller = index_env.controller
    pool = index_env.extra["pool"]
    controller.set_swap_fee(OWNER, [pool.address], BONE // 100)
    assert pool.get_swap_fee() == BONE // 100
    controller.set_exit_fee_recipient(OWNER, pool.address, TRADER)
    assert pool.get_exit_fee_recipient() == TRADER
    controller.set_max_pool_tokens(OWNER, pool.address, 1_000 * BONE)
    assert pool.get_max_pool_tokens() == 1_000 * BONE
    with pytest.raises(AccessError):
        controller.set_swap_fee(TRADER, pool.address, BONE // 100)
    with pytest.raises(NotFoundError) as exc:
        controller.set_swap_fee(OWNER, "nowhere", BONE // 100)
    assert exc.value.reason == "pool_not_found"

    seller_address = controller.compute_seller_address(pool.address)
    controller.update_seller_premium(OWNER, seller_address, 5)
    assert index_env.factory.get(seller_address).get_premium_percent() == 5
    with pytest.raises(BoundsError) as exc:
        controller.set_default_seller_premium(OWNER, 20)
    assert exc.value.reason == "premium"


def test_set_controller_hands_over_pool(index_env):
    controller = index_env.controller
    pool = index_env.extra["pool"]
    controller.set_controller(OWNER, pool.address, "new_controller")
    assert pool.get_controller() == "new_controller"
    index_env.refresh(2 * WEEK)
    with pytest.raises(AccessError) as exc:
        controller.reweigh_pool(TRADER, pool.address)
    assert exc.value.reason == "not_controller"
    assert controller.get_pool_meta(pool.address).reweigh_index == 0


def test_stale_prices_block_reweigh(index_env):
    index_env.ledger.clock.advance(2 * WEEK + DAY)
    pool = index_env.extra["pool"]
    with pytest.raises(NoPriceError) as exc:
        index_env.controller.reweigh_pool(TRADER, pool.address)
    assert exc.value.reason == "no_price_in_range"
