import pytest

from indexpool.bmath import (
    BONE,
    bdiv,
    bmul,
    bpow,
    bsqrt,
    bsub,
    calc_in_given_out,
    calc_out_given_in,
    calc_pool_out_given_single_in,
    calc_single_in_given_pool_out,
    calc_spot_price,
    from_fp,
    to_fp,
)
from indexpool.core import MathError


def test_bmul_and_bdiv_round_half_up():
    assert bmul(1, BONE // 2) == 1
    assert bmul(1, BONE // 2 - 1) == 0
    assert bdiv(1, 2 * BONE) == 1
    assert bdiv(1, 3 * BONE) == 0
    assert bdiv(3 * BONE, 2 * BONE) == 3 * BONE // 2


def test_bdiv_by_zero_and_bsub_underflow():
    with pytest.raises(MathError) as exc:
        bdiv(BONE, 0)
    assert exc.value.reason == "div_zero"
    with pytest.raises(MathError) as exc:
        bsub(1, 2)
    assert exc.value.reason == "sub_underflow"


@pytest.mark.parametrize("base,exp", [(0.5, 0.3), (1.5, 2.75), (1.6, 0.5), (0.01, 4.0)])
def test_bpow_tracks_float_power(base, exp):
    assert from_fp(bpow(to_fp(base), to_fp(exp))) == pytest.approx(base ** exp, rel=1e-8)


def test_bpow_rejects_bases_outside_range():
    with pytest.raises(MathError) as exc:
        bpow(0, BONE)
    assert exc.value.reason == "bpow_base_too_low"
    with pytest.raises(MathError) as exc:
        bpow(2 * BONE, BONE)
    assert exc.value.reason == "bpow_base_too_high"


def test_bsqrt_is_integer_root():
    assert bsqrt(16 * BONE) == 4 * 10 ** 9
    assert bsqrt(17) == 4


def test_spot_price_includes_fee():
    spot = calc_spot_price(to_fp(100), to_fp(1), to_fp(50), to_fp(3), to_fp(0.02))
    assert from_fp(spot) == pytest.approx((100 / 1) / (50 / 3) / 0.98, rel=1e-12)


def test_out_given_in_and_in_given_out_agree():
    bi, wi, bo, wo, fee = to_fp(100), to_fp(1), to_fp(50), to_fp(3), to_fp(0.02)
    amount_out = calc_out_given_in(bi, wi, bo, wo, to_fp(2), fee)
    expected = 50 * (1 - (100 / (100 + 2 * 0.98)) ** (1 / 3))
    assert from_fp(amount_out) == pytest.approx(expected, rel=1e-8)
    amount_in = calc_in_given_out(bi, wi, bo, wo, amount_out, fee)
    assert from_fp(amount_in) == pytest.approx(2.0, rel=1e-8)


def test_single_asset_join_is_consistent_both_ways():
    bi, wi, supply, total, fee = to_fp(100), to_fp(5), to_fp(100), to_fp(25), to_fp(0.01)
    pool_out = calc_pool_out_given_single_in(bi, wi, supply, total, to_fp(10), fee)
    zaz = (1 - 0.2) * 0.01
    expected = 100 * ((100 + 10 * (1 - zaz)) / 100) ** 0.2 - 100
    assert from_fp(pool_out) == pytest.approx(expected, rel=1e-8)
    amount_in = calc_single_in_given_pool_out(bi, wi, supply, total, pool_out, fee)
    assert from_fp(amount_in) == pytest.approx(10.0, rel=1e-7)
