import json
import time
import streamlit as st
import pandas as pd

from indexpool.bmath import from_fp
from indexpool.config import ScenarioConfig
from indexpool.engine import SimulationEngine

st.set_page_config(page_title="Index Pool Simulator", layout="wide")


def get_engine() -> SimulationEngine:
    if "engine" not in st.session_state:
        cfg = ScenarioConfig()
        st.session_state.cfg = cfg
        st.session_state.engine = SimulationEngine(cfg=cfg, seed=int(st.session_state.get("seed", 1)))
    return st.session_state.engine


def reset_engine(reset_config: bool = False) -> None:
    if reset_config or "cfg" not in st.session_state:
        st.session_state.cfg = ScenarioConfig()
    cfg = st.session_state.cfg
    st.session_state.engine = SimulationEngine(cfg=cfg, seed=int(st.session_state.get("seed", 1)))


engine = get_engine()

st.title("Index Pool Simulator")
st.caption("Time model: 1 tick = 6 hours. Reweighs run every 2 weeks; every 4th step is a reindex.")

def _fmt_duration(seconds: float) -> str:
    if seconds < 0:
        seconds = 0.0
    mins = int(seconds // 60)
    secs = seconds - (mins * 60)
    return f"{mins}m {secs:0.1f}s"

def _fmt(value: float) -> str:
    return f"{float(value):,.4f}"

def _render_kpi_grid(kpis, columns: int = 4) -> None:
    for idx in range(0, len(kpis), columns):
        row = kpis[idx: idx + columns]
        cols = st.columns(columns)
        for col, (label, value) in zip(cols, row):
            col.metric(label, value)

def _format_event_meta(meta) -> str:
    if meta is None:
        return ""
    if isinstance(meta, str):
        return meta
    try:
        return json.dumps(meta, sort_keys=True)
    except TypeError:
        return str(meta)

def _symbol(token: str) -> str:
    return engine.symbols.get(token, token[:10])


with st.sidebar:
    st.header("Sim Controls")

    st.subheader("Run")
    if st.button("Restart simulation"):
        reset_engine(reset_config=True)
        engine = st.session_state.engine
        st.session_state.run_progress = 0.0
        st.session_state.run_progress_label = "Idle"
    st.caption("Restart resets the simulation to tick 0 with default settings.")
    if "seed" not in st.session_state:
        st.session_state.seed = 1
    st.number_input("Random seed", min_value=1, max_value=100000, key="seed")

    run_ticks = st.slider("Ticks to run", min_value=1, max_value=500, value=56)
    c3, c4 = st.columns(2)
    run_one = c3.button("Step 1 tick")
    run_many = c4.button("Run N ticks")
    progress_label = st.session_state.get("run_progress_label", "Idle")
    progress_value = float(st.session_state.get("run_progress", 0.0))
    progress_bar = st.progress(progress_value, text=progress_label)
    if run_one:
        start_ts = time.time()
        engine.step(1)
        elapsed = time.time() - start_ts
        st.session_state.run_progress = 1.0
        st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_duration(elapsed)})"
        progress_bar.progress(1.0, text=st.session_state.run_progress_label)
    if run_many:
        total = int(run_ticks)
        start_ts = time.time()
        for idx in range(total):
            engine.step(1)
            progress = (idx + 1) / total
            progress_bar.progress(progress, text=f"Run progress: {progress:.0%}")
        elapsed = time.time() - start_ts
        st.session_state.run_progress = 1.0
        st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_duration(elapsed)})"
        progress_bar.progress(1.0, text=st.session_state.run_progress_label)

    st.subheader("Scenario (applies on restart)")
    cfg = st.session_state.cfg
    cfg.n_tokens = int(st.number_input("Category tokens", min_value=2, max_value=25, value=int(cfg.n_tokens)))
    cfg.index_size = int(st.number_input("Index size", min_value=2, max_value=10, value=int(cfg.index_size)))
    cfg.price_volatility = float(st.number_input(
        "Price volatility (per tick)", min_value=0.0, value=float(cfg.price_volatility), step=0.005,
        format="%.3f",
    ))
    cfg.swap_fee = float(st.number_input(
        "Swap fee", min_value=0.000001, max_value=0.1, value=float(cfg.swap_fee), step=0.0025, format="%.4f",
    ))
    cfg.trades_per_tick = int(st.number_input("Arbitrage trades per tick", min_value=0,
                                              value=int(cfg.trades_per_tick), step=1))
    cfg.arb_min_edge = float(st.number_input("Min arbitrage edge", min_value=0.0,
                                             value=float(cfg.arb_min_edge), step=0.005, format="%.3f"))
    if st.button("Apply and restart"):
        reset_engine()
        engine = st.session_state.engine

tab_overview, tab_weights, tab_tokens, tab_swaps, tab_events = st.tabs(
    ["Overview", "Weights", "Tokens", "Swaps", "Events"]
)

pool_df = engine.metrics.pool_df()

with tab_overview:
    summary = engine.summary()
    kpis = [
        ("Tick", str(summary["tick"])),
        ("Days", _fmt(summary["days"])),
        ("Pool value (WETH)", _fmt(summary["pool_value"])),
        ("Pool supply", _fmt(summary["total_supply"])),
        ("Bound tokens", str(summary["n_tokens"])),
        ("Swaps", str(summary["swaps"])),
        ("Arbitrage PnL (WETH)", _fmt(summary["arb_pnl"])),
        ("Reweigh step", str(engine.controller.get_pool_meta(engine.pool.address).reweigh_index)),
    ]
    _render_kpi_grid(kpis)
    if pool_df.empty:
        st.info("No metrics yet.")
    else:
        st.subheader("Pool value and share price")
        st.line_chart(pool_df, x="tick", y=["pool_value", "share_price"])
        st.subheader("Total denormalized weight")
        st.line_chart(pool_df, x="tick", y=["total_weight"])
        st.subheader("Bound vs ready tokens")
        st.line_chart(pool_df, x="tick", y=["n_tokens", "n_ready"])
    if engine.cycle_failures:
        st.write("**Cycle failures**")
        st.json(engine.cycle_failures)

with tab_weights:
    denorm = engine.metrics.weights_wide("denorm")
    if denorm.empty:
        st.info("No weights recorded yet.")
    else:
        st.subheader("Denormalized weights")
        st.line_chart(denorm)
        st.subheader("Desired weights")
        st.line_chart(engine.metrics.weights_wide("desired_denorm"))
        st.subheader("Value share (market prices)")
        st.line_chart(engine.metrics.weights_wide("value_share"))

with tab_tokens:
    pool = engine.pool
    rows = []
    for token in pool.get_current_tokens():
        record = pool.get_token_record(token)
        row = {"symbol": _symbol(token)}
        row.update(record.to_dict())
        for key in ("denorm", "desired_denorm", "balance", "minimum_balance"):
            row[key] = from_fp(row[key])
        rows.append(row)
    st.subheader(f"{pool.name} ({pool.symbol})")
    st.dataframe(pd.DataFrame(rows), use_container_width=True)

    st.subheader("Category ranking")
    cats = []
    for rank, token in enumerate(engine.controller.get_category_tokens(engine.category_id), start=1):
        cats.append({
            "rank": rank,
            "symbol": _symbol(token),
            "market_price": engine.market_prices.get(token, 0.0),
            "bound": pool.is_bound(token),
            "seller_balance": from_fp(engine.seller.get_token_balance(token)),
        })
    st.dataframe(pd.DataFrame(cats), use_container_width=True)

with tab_swaps:
    tail = engine.receipts.tail(300)
    if not tail:
        st.info("No swaps yet.")
    else:
        df = pd.DataFrame([r.to_dict() for r in tail])
        df["token_in"] = df["token_in"].map(_symbol)
        df["token_out"] = df["token_out"].map(_symbol)
        for col in ("amount_in", "amount_out", "spot_price_after"):
            df[col] = df[col].map(from_fp)
        st.dataframe(df.iloc[::-1], use_container_width=True)
        failures = engine.receipts.failures()
        if failures:
            st.write("**Failure reasons**")
            st.json(failures)

with tab_events:
    st.subheader("Event Log (latest 300)")
    tail = engine.log.tail(300)
    if not tail:
        st.info("No events yet.")
    else:
        df = pd.DataFrame([e.__dict__ for e in tail])
        df["_order"] = range(len(df))
        df = df.sort_values(["timestamp", "_order"], ascending=False).drop(columns="_order")
        if "token" in df.columns:
            df["token"] = df["token"].map(lambda t: _symbol(t) if isinstance(t, str) else t)
        if "meta" in df.columns:
            df["meta"] = df["meta"].apply(_format_event_meta)
        st.dataframe(df, use_container_width=True)
