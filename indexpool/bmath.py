from __future__ import annotations
import math

from .core import MathError

BONE = 10 ** 18

MIN_BPOW_BASE = 1
MAX_BPOW_BASE = 2 * BONE - 1
BPOW_PRECISION = BONE // 10 ** 10


def to_fp(value: float) -> int:
    return int(round(float(value) * BONE))

def from_fp(value: int) -> float:
    return value / BONE

# -----------------------------
# Fixed point primitives
# -----------------------------
def btoi(a: int) -> int:
    return a // BONE

def bfloor(a: int) -> int:
    return btoi(a) * BONE

def bsub(a: int, b: int) -> int:
    if b > a:
        raise MathError("sub_underflow")
    return a - b

def bsub_sign(a: int, b: int) -> tuple[int, bool]:
    if a >= b:
        return a - b, False
    return b - a, True

def bmul(a: int, b: int) -> int:
    return (a * b + BONE // 2) // BONE

def bdiv(a: int, b: int) -> int:
    if b == 0:
        raise MathError("div_zero")
    return (a * BONE + b // 2) // b

def bpowi(a: int, n: int) -> int:
    z = a if n % 2 != 0 else BONE
    n //= 2
    while n != 0:
        a = bmul(a, a)
        if n % 2 != 0:
            z = bmul(z, a)
        n //= 2
    return z

def bpow_approx(base: int, exp: int, precision: int) -> int:
    """Binomial series for base**exp with 0 <= exp < 1."""
    a = exp
    x, xneg = bsub_sign(base, BONE)
    term = BONE
    total = term
    negative = False
    i = 1
    while term >= precision:
        big_k = i * BONE
        c, cneg = bsub_sign(a, big_k - BONE)
        term = bmul(term, bmul(c, x))
        term = bdiv(term, big_k)
        if term == 0:
            break
        if xneg:
            negative = not negative
        if cneg:
            negative = not negative
        if negative:
            total = bsub(total, term)
        else:
            total = total + term
        i += 1
    return total

def bpow(base: int, exp: int) -> int:
    if base < MIN_BPOW_BASE:
        raise MathError("bpow_base_too_low")
    if base > MAX_BPOW_BASE:
        raise MathError("bpow_base_too_high")
    whole = bfloor(exp)
    remain = exp - whole
    whole_pow = bpowi(base, btoi(whole))
    if remain == 0:
        return whole_pow
    partial = bpow_approx(base, remain, BPOW_PRECISION)
    return bmul(whole_pow, partial)

def bsqrt(a: int) -> int:
    """Integer square root of a plain (non fixed-point) quantity."""
    if a < 0:
        raise MathError("sqrt_negative")
    return math.isqrt(a)


# -----------------------------
# Weighted curve
# -----------------------------
def calc_spot_price(balance_in: int, weight_in: int, balance_out: int, weight_out: int, swap_fee: int) -> int:
    numer = bdiv(balance_in, weight_in)
    denom = bdiv(balance_out, weight_out)
    ratio = bdiv(numer, denom)
    scale = bdiv(BONE, bsub(BONE, swap_fee))
    return bmul(ratio, scale)

def calc_out_given_in(balance_in: int, weight_in: int, balance_out: int, weight_out: int,
                      amount_in: int, swap_fee: int) -> int:
    weight_ratio = bdiv(weight_in, weight_out)
    adjusted_in = bmul(amount_in, bsub(BONE, swap_fee))
    y = bdiv(balance_in, balance_in + adjusted_in)
    foo = bpow(y, weight_ratio)
    bar = bsub(BONE, foo)
    return bmul(balance_out, bar)

def calc_in_given_out(balance_in: int, weight_in: int, balance_out: int, weight_out: int,
                      amount_out: int, swap_fee: int) -> int:
    weight_ratio = bdiv(weight_out, weight_in)
    diff = bsub(balance_out, amount_out)
    y = bdiv(balance_out, diff)
    foo = bsub(bpow(y, weight_ratio), BONE)
    amount_in = bmul(balance_in, foo)
    return bdiv(amount_in, bsub(BONE, swap_fee))

def calc_pool_out_given_single_in(balance_in: int, weight_in: int, pool_supply: int, total_weight: int,
                                  amount_in: int, swap_fee: int) -> int:
    # only the share of the input that would be swapped into other tokens pays the fee
    normalized_weight = bdiv(weight_in, total_weight)
    zaz = bmul(bsub(BONE, normalized_weight), swap_fee)
    amount_in_after_fee = bmul(amount_in, bsub(BONE, zaz))
    new_balance_in = balance_in + amount_in_after_fee
    token_in_ratio = bdiv(new_balance_in, balance_in)
    pool_ratio = bpow(token_in_ratio, normalized_weight)
    new_pool_supply = bmul(pool_ratio, pool_supply)
    return bsub(new_pool_supply, pool_supply)

def calc_single_in_given_pool_out(balance_in: int, weight_in: int, pool_supply: int, total_weight: int,
                                  pool_amount_out: int, swap_fee: int) -> int:
    normalized_weight = bdiv(weight_in, total_weight)
    new_pool_supply = pool_supply + pool_amount_out
    pool_ratio = bdiv(new_pool_supply, pool_supply)
    boo = bdiv(BONE, normalized_weight)
    token_in_ratio = bpow(pool_ratio, boo)
    new_balance_in = bmul(token_in_ratio, balance_in)
    amount_in_after_fee = bsub(new_balance_in, balance_in)
    zar = bmul(bsub(BONE, normalized_weight), swap_fee)
    return bdiv(amount_in_after_fee, bsub(BONE, zar))

def calc_single_out_given_pool_in(balance_out: int, weight_out: int, pool_supply: int, total_weight: int,
                                  pool_amount_in: int, swap_fee: int, exit_fee: int) -> int:
    normalized_weight = bdiv(weight_out, total_weight)
    pool_amount_in_after_exit_fee = bmul(pool_amount_in, bsub(BONE, exit_fee))
    new_pool_supply = bsub(pool_supply, pool_amount_in_after_exit_fee)
    pool_ratio = bdiv(new_pool_supply, pool_supply)
    token_out_ratio = bpow(pool_ratio, bdiv(BONE, normalized_weight))
    new_balance_out = bmul(token_out_ratio, balance_out)
    amount_out_before_fee = bsub(balance_out, new_balance_out)
    zaz = bmul(bsub(BONE, normalized_weight), swap_fee)
    return bmul(amount_out_before_fee, bsub(BONE, zaz))

def calc_pool_in_given_single_out(balance_out: int, weight_out: int, pool_supply: int, total_weight: int,
                                  amount_out: int, swap_fee: int, exit_fee: int) -> int:
    normalized_weight = bdiv(weight_out, total_weight)
    zoo = bsub(BONE, normalized_weight)
    zar = bmul(zoo, swap_fee)
    amount_out_before_fee = bdiv(amount_out, bsub(BONE, zar))
    new_balance_out = bsub(balance_out, amount_out_before_fee)
    token_out_ratio = bdiv(new_balance_out, balance_out)
    pool_ratio = bpow(token_out_ratio, normalized_weight)
    new_pool_supply = bmul(pool_ratio, pool_supply)
    pool_amount_in_after_exit_fee = bsub(pool_supply, new_pool_supply)
    return bdiv(pool_amount_in_after_exit_fee, bsub(BONE, exit_fee))
