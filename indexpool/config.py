from dataclasses import dataclass, field

from .bmath import BONE

HOUR = 3600
DAY = 24 * HOUR
WEEK = 7 * DAY

@dataclass
class PoolConfig:
    # Weight bounds (fixed point)
    min_weight: int = BONE // 4
    max_weight: int = 25 * BONE
    max_total_weight: int = 26 * BONE
    min_bound_tokens: int = 2
    max_bound_tokens: int = 10

    # Balance bounds
    min_balance: int = BONE // 10 ** 12
    max_in_ratio: int = BONE // 2
    max_out_ratio: int = BONE // 3 + 1

    # Fees
    min_fee: int = BONE // 10 ** 6
    max_fee: int = BONE // 10
    default_swap_fee: int = BONE * 25 // 10 ** 4  # 0.25%
    exit_fee: int = BONE * 5 // 10 ** 3  # 0.5%
    flash_fee: int = BONE * 25 // 10 ** 3  # 2.5%

    # Timing (seconds)
    weight_update_delay: int = HOUR
    min_bal_update_delay: int = 6 * HOUR

    init_pool_supply: int = 100 * BONE

    def __post_init__(self) -> None:
        if self.min_weight <= 0 or self.min_weight >= self.max_weight:
            raise ValueError("min_weight must be positive and below max_weight")
        if self.max_total_weight < self.max_weight:
            raise ValueError("max_total_weight must be at least max_weight")
        if not (0 < self.min_fee <= self.max_fee < BONE):
            raise ValueError("fee bounds out of range")
        self.default_swap_fee = min(max(self.default_swap_fee, self.min_fee), self.max_fee)

@dataclass
class ControllerConfig:
    weight_multiplier: int = 25
    max_category_tokens: int = 25
    min_index_size: int = 2
    max_index_size: int = 10
    max_sort_delay: int = DAY
    pool_reweigh_delay: int = 2 * WEEK
    reweighs_before_reindex: int = 3
    min_premium: int = 1
    max_premium: int = 19
    default_premium: int = 2

    def __post_init__(self) -> None:
        if not (self.min_premium <= self.default_premium <= self.max_premium):
            raise ValueError("default_premium outside premium bounds")
        if self.min_index_size < 2 or self.max_index_size < self.min_index_size:
            raise ValueError("bad index size bounds")

@dataclass
class OracleConfig:
    observation_period: int = HOUR
    min_twap_age: int = HOUR
    max_twap_age: int = 2 * DAY

    def __post_init__(self) -> None:
        if self.max_twap_age <= self.min_twap_age:
            raise ValueError("max_twap_age must exceed min_twap_age")

@dataclass
class ScenarioConfig:
    pool: PoolConfig = field(default_factory=PoolConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)

    # Market
    n_tokens: int = 12
    index_size: int = 5
    initial_price_min: float = 0.5
    initial_price_max: float = 200.0
    supply_min: float = 1e5
    supply_max: float = 1e8
    price_volatility: float = 0.03  # per-tick stdev of log returns
    price_drift: float = 0.0
    reference_symbol: str = "WETH"

    # Bootstrap
    initial_pool_value: float = 100.0  # in reference units
    swap_fee: float = 0.025  # fraction

    # Agents
    n_arbitrageurs: int = 3
    arb_trade_fraction: float = 0.05  # share of a pool balance moved per trade
    arb_min_edge: float = 0.01  # mispricing below this is ignored
    trades_per_tick: int = 4
    seller_fill_prob: float = 0.5

    # Time
    tick_seconds: int = 6 * HOUR
    metrics_stride: int = 1
    event_log_maxlen: int | None = 5000

    debug_balances: bool = False

    def __post_init__(self) -> None:
        cc = self.controller
        self.index_size = min(max(int(self.index_size), cc.min_index_size), cc.max_index_size)
        self.n_tokens = min(max(int(self.n_tokens), self.index_size), cc.max_category_tokens)
        if self.initial_price_max < self.initial_price_min:
            self.initial_price_min, self.initial_price_max = self.initial_price_max, self.initial_price_min
        self.swap_fee = min(max(float(self.swap_fee), 1e-6), 0.1)
        self.tick_seconds = max(60, int(self.tick_seconds))
        self.metrics_stride = max(1, int(self.metrics_stride))
