import pytest

from indexpool.bmath import BONE
from indexpool.core import AccessError, BoundsError, LifecycleError

from conftest import FOUNDER, TRADER, TREASURY, fund_initializer


def _buy(env, account, token, amount):
    env.ledger.transfer(token, TREASURY, account, amount)


def test_contributions_earn_oracle_credit(prepared):
    initializer = prepared.extra["initializer"]
    _buy(prepared, TRADER, "T1", 50 * BONE)
    desired = initializer.get_desired_amount("T1")
    credit = initializer.contribute_tokens(TRADER, "T1", 50 * BONE)
    # only the outstanding amount is taken
    assert credit == desired
    assert prepared.ledger.balance_of("T1", TRADER) == 50 * BONE - desired
    assert initializer.get_desired_amount("T1") == 0
    assert initializer.get_credit_of(TRADER) == credit
    assert initializer.get_total_credit() == credit

    with pytest.raises(BoundsError) as exc:
        initializer.contribute_tokens(TRADER, "T1", BONE)
    assert exc.value.reason == "not_needed"
    with pytest.raises(BoundsError) as exc:
        initializer.contribute_tokens(TRADER, "T2", 0)
    assert exc.value.reason == "zero_amount"
    _buy(prepared, TRADER, "T2", BONE)
    with pytest.raises(BoundsError) as exc:
        initializer.contribute_tokens(TRADER, "T2", BONE, min_credit=2 * BONE)
    assert exc.value.reason == "min_credit"
    assert initializer.get_desired_amount("T2") > 0


def test_finish_needs_every_token(prepared):
    initializer = prepared.extra["initializer"]
    _buy(prepared, TRADER, "T1", 50 * BONE)
    initializer.contribute_tokens(TRADER, "T1", 50 * BONE)
    with pytest.raises(LifecycleError) as exc:
        initializer.finish(TRADER)
    assert exc.value.reason == "pending_tokens"
    with pytest.raises(LifecycleError) as exc:
        initializer.claim_tokens(TRADER)
    assert exc.value.reason == "not_finished"


def test_claims_split_initial_supply_by_credit(prepared):
    initializer = prepared.extra["initializer"]
    pool = prepared.extra["pool"]
    desired = initializer.get_desired_amounts(["T1", "T2", "T3"])
    _buy(prepared, TRADER, "T1", desired[0])
    initializer.contribute_tokens(TRADER, "T1", desired[0])
    fund_initializer(prepared, FOUNDER)
    initializer.finish(FOUNDER)
    assert initializer.is_finished()

    total = initializer.get_total_credit()
    trader_share = initializer.get_credit_of(TRADER)
    claimed = initializer.claim_tokens_for(FOUNDER, [TRADER, FOUNDER])
    assert claimed[0] == 100 * BONE * trader_share // total
    assert pool.balance_of(TRADER) == claimed[0]
    assert pool.balance_of(FOUNDER) == claimed[1]
    assert initializer.claim_tokens(TRADER) == 0
    assert initializer.get_total_credit() == total

    with pytest.raises(LifecycleError) as exc:
        initializer.contribute_tokens(TRADER, "T1", BONE)
    assert exc.value.reason == "finished"


def test_only_controller_initializes(prepared):
    initializer = prepared.extra["initializer"]
    with pytest.raises(AccessError) as exc:
        initializer.initialize(TRADER, "pool", ["T1"], [BONE])
    assert exc.value.reason == "not_controller"
    with pytest.raises(LifecycleError) as exc:
        initializer.initialize(prepared.controller.address, "pool", ["T1"], [BONE])
    assert exc.value.reason == "initialized"


def test_credit_quote_matches_contribution(prepared):
    initializer = prepared.extra["initializer"]
    quote = initializer.get_credit_for_tokens("T2", 5 * BONE)
    _buy(prepared, TRADER, "T2", 5 * BONE)
    assert initializer.contribute_tokens(TRADER, "T2", 5 * BONE) == quote
