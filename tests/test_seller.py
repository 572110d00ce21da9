import pytest

from indexpool.bmath import BONE
from indexpool.core import AccessError, BoundsError, InsufficientBalanceError

from conftest import OWNER, TRADER, TREASURY


@pytest.fixture
def seller_env(index_env):
    """Index env whose seller holds 10 T4 pushed out by the pool."""
    pool = index_env.extra["pool"]
    seller = index_env.factory.get(index_env.controller.compute_seller_address(pool.address))
    index_env.ledger.transfer("T4", TREASURY, pool.address, 10 * BONE)
    pool.gulp(TRADER, "T4")
    index_env.extra["seller"] = seller
    return index_env


def test_pool_pushes_unbound_tokens_to_seller(seller_env):
    seller = seller_env.extra["seller"]
    pool = seller_env.extra["pool"]
    assert seller.get_token_balance("T4") == 10 * BONE
    events = seller_env.ledger.log.of_type("NEW_TOKENS_TO_SELL")
    assert [(e.pool_id, e.token, e.amount) for e in events] == [(pool.address, "T4", 10 * BONE)]


def test_quotes_apply_premium(seller_env):
    seller = seller_env.extra["seller"]
    assert seller.calc_out_given_in("T1", "T4", 98 * BONE // 100) == BONE
    assert seller.calc_in_given_out("T1", "T4", BONE) == 98 * BONE // 100


def test_swap_exact_tokens_sends_input_to_pool(seller_env):
    seller = seller_env.extra["seller"]
    pool = seller_env.extra["pool"]
    ledger = seller_env.ledger
    ledger.transfer("T1", TREASURY, TRADER, 5 * BONE)
    before = pool.get_balance("T1")

    amount_out = seller.swap_exact_tokens_for_tokens(TRADER, "T1", "T4", 2 * BONE, 0)
    assert amount_out == 2 * BONE * 100 // 98
    assert ledger.balance_of("T4", TRADER) == amount_out
    assert pool.get_balance("T1") == before + 2 * BONE
    assert ledger.balance_of("T1", pool.address) == before + 2 * BONE


def test_swap_for_exact_tokens_respects_limit(seller_env):
    seller = seller_env.extra["seller"]
    seller_env.ledger.transfer("T2", TREASURY, TRADER, 5 * BONE)
    with pytest.raises(BoundsError) as exc:
        seller.swap_tokens_for_exact_tokens(TRADER, "T2", "T4", BONE, BONE // 2)
    assert exc.value.reason == "limit_in"
    amount_in = seller.swap_tokens_for_exact_tokens(TRADER, "T2", "T4", BONE, BONE)
    assert amount_in == 98 * BONE // 100
    assert seller.get_token_balance("T4") == 9 * BONE


def test_seller_rejects_bad_pairs(seller_env):
    seller = seller_env.extra["seller"]
    with pytest.raises(BoundsError) as exc:
        seller.calc_out_given_in("T4", "T1", BONE)
    assert exc.value.reason == "in_not_wanted"
    with pytest.raises(BoundsError) as exc:
        seller.calc_out_given_in("T1", "T2", BONE)
    assert exc.value.reason == "out_bound"
    seller_env.ledger.transfer("T1", TREASURY, TRADER, 50 * BONE)
    with pytest.raises(InsufficientBalanceError) as exc:
        seller.swap_exact_tokens_for_tokens(TRADER, "T1", "T4", 20 * BONE, 0)
    assert exc.value.reason == "insufficient_bal"


def test_seller_access_control(seller_env):
    seller = seller_env.extra["seller"]
    with pytest.raises(AccessError) as exc:
        seller.handle_unbind_token(TRADER, "T4", BONE)
    assert exc.value.reason == "only_pool"
    with pytest.raises(AccessError) as exc:
        seller.set_premium_percent(OWNER, 5)
    assert exc.value.reason == "not_controller"
    with pytest.raises(BoundsError) as exc:
        seller.set_premium_percent(seller_env.controller.address, 0)
    assert exc.value.reason == "premium"
