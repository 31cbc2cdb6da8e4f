"""
strategies.py

The five per-instrument signal generators.

Design goals:
- Closed set of kinds: STRATEGY_KINDS is the full variant list, each kind
  has its own state dataclass, and a single dispatch table maps kind ->
  update function.  Adding a kind means adding a row, not a subclass tree.
- update_strategy(state, prices) -> return sample | None
  strategy_signal(state)         -> -1 | 0 | +1
- Below a kind's minimum history the update abstains (None) and records
  nothing.
- Every state owns a bounded return buffer (FIFO).
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Literal, Union

import numpy as np

StrategyKind = Literal[
    "mean_reverter",
    "trend_follower",
    "cycle_detector",
    "noise_breaker",
    "order_impact_probe",
]

STRATEGY_KINDS: tuple[StrategyKind, ...] = (
    "mean_reverter",
    "trend_follower",
    "cycle_detector",
    "noise_breaker",
    "order_impact_probe",
)

DEFAULT_RETURNS_CAP = 100

# Mean reversion
SMA_WINDOW = 20
MEAN_REVERT_THRESHOLD = 0.01

# Trend following
TREND_MIN_POINTS = 10
EMA_ALPHA = 0.2
TREND_THRESHOLD = 0.005

# Cycle detection (short RSI)
CYCLE_MIN_POINTS = 20
RSI_WINDOW = 10
RSI_ZERO_FLOOR = 0.001
RSI_OVERBOUGHT = 70.0
RSI_OVERSOLD = 30.0
CYCLE_RETURN_SCALE = 0.01

# Noise breaker
NOISE_MIN_POINTS = 10
NOISE_CLIP = 0.02
NOISE_THRESHOLD = 0.01


def _returns_buffer() -> deque:
    return deque(maxlen=DEFAULT_RETURNS_CAP)


@dataclass
class MeanReverterState:
    kind: StrategyKind = "mean_reverter"
    returns: deque = field(default_factory=_returns_buffer)
    sharpe: float = 0.0
    last_sma: float | None = None


@dataclass
class TrendFollowerState:
    kind: StrategyKind = "trend_follower"
    returns: deque = field(default_factory=_returns_buffer)
    sharpe: float = 0.0
    last_ema: float | None = None


@dataclass
class CycleDetectorState:
    kind: StrategyKind = "cycle_detector"
    returns: deque = field(default_factory=_returns_buffer)
    sharpe: float = 0.0
    last_rsi: float | None = None
    last_signal: int = 0


@dataclass
class NoiseBreakerState:
    kind: StrategyKind = "noise_breaker"
    returns: deque = field(default_factory=_returns_buffer)
    sharpe: float = 0.0


@dataclass
class OrderImpactProbeState:
    # Placeholder for measuring price impact of our own orders.
    kind: StrategyKind = "order_impact_probe"
    returns: deque = field(default_factory=_returns_buffer)
    sharpe: float = 0.0
    probe_size: int = 1


StrategyState = Union[
    MeanReverterState,
    TrendFollowerState,
    CycleDetectorState,
    NoiseBreakerState,
    OrderImpactProbeState,
]

_STATE_TYPES: dict[str, type] = {
    "mean_reverter": MeanReverterState,
    "trend_follower": TrendFollowerState,
    "cycle_detector": CycleDetectorState,
    "noise_breaker": NoiseBreakerState,
    "order_impact_probe": OrderImpactProbeState,
}


def new_strategy(kind: StrategyKind, returns_cap: int = DEFAULT_RETURNS_CAP) -> StrategyState:
    try:
        cls = _STATE_TYPES[kind]
    except KeyError:
        raise ValueError(f"unknown strategy kind: {kind}") from None
    return cls(returns=deque(maxlen=int(returns_cap)))


def new_strategy_set(returns_cap: int = DEFAULT_RETURNS_CAP) -> list[StrategyState]:
    """One state per kind, in STRATEGY_KINDS order."""
    return [new_strategy(kind, returns_cap) for kind in STRATEGY_KINDS]


# --------------------------- Pure indicator math ---------------------------


def sma(prices: np.ndarray, window: int) -> float:
    return float(np.mean(prices[-window:]))


def ema(prices: np.ndarray, alpha: float = EMA_ALPHA) -> float:
    """EMA over the whole window, seeded with its first price."""
    value = float(prices[0])
    for p in prices[1:]:
        value = alpha * float(p) + (1.0 - alpha) * value
    return value


def rsi(prices: np.ndarray, window: int = RSI_WINDOW) -> float:
    deltas = np.diff(np.asarray(prices[-window:], dtype=float))
    if deltas.size == 0:
        return 50.0
    avg_gain = float(np.mean(np.clip(deltas, 0.0, None)))
    avg_loss = float(np.mean(np.clip(-deltas, 0.0, None)))
    # Exactly-zero sides are floored so a one-way window still yields an RSI.
    if avg_gain == 0.0:
        avg_gain = RSI_ZERO_FLOOR
    if avg_loss == 0.0:
        avg_loss = RSI_ZERO_FLOOR
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def _band(value: float, threshold: float) -> int:
    if value > threshold:
        return 1
    if value < -threshold:
        return -1
    return 0


# --------------------------- Per-kind updates ---------------------------


def _update_mean_reverter(state: MeanReverterState, prices: np.ndarray) -> float | None:
    if len(prices) < SMA_WINDOW:
        return None
    avg = sma(prices, SMA_WINDOW)
    last = float(prices[-1])
    ret = (avg - last) / last
    state.last_sma = avg
    state.returns.append(ret)
    return ret


def _update_trend_follower(state: TrendFollowerState, prices: np.ndarray) -> float | None:
    if len(prices) < TREND_MIN_POINTS:
        return None
    e = ema(prices)
    momentum = (float(prices[-1]) - e) / e
    state.last_ema = e
    state.returns.append(momentum)
    return momentum


def _update_cycle_detector(state: CycleDetectorState, prices: np.ndarray) -> float | None:
    if len(prices) < CYCLE_MIN_POINTS:
        return None
    value = rsi(prices, RSI_WINDOW)
    # Contrarian: overbought -> expect a fall.
    if value > RSI_OVERBOUGHT:
        sig = -1
    elif value < RSI_OVERSOLD:
        sig = 1
    else:
        sig = 0
    ret = sig * CYCLE_RETURN_SCALE
    state.last_rsi = value
    state.last_signal = sig
    state.returns.append(ret)
    return ret


def _update_noise_breaker(state: NoiseBreakerState, prices: np.ndarray) -> float | None:
    if len(prices) < NOISE_MIN_POINTS:
        return None
    delta = float(prices[-1]) - float(prices[-2])
    clipped = float(np.clip(delta, -NOISE_CLIP, NOISE_CLIP))
    state.returns.append(clipped)
    return clipped


def _update_order_impact_probe(state: OrderImpactProbeState, prices: np.ndarray) -> float | None:
    state.returns.append(0.0)
    return 0.0


_UPDATERS: dict[str, Callable[..., float | None]] = {
    "mean_reverter": _update_mean_reverter,
    "trend_follower": _update_trend_follower,
    "cycle_detector": _update_cycle_detector,
    "noise_breaker": _update_noise_breaker,
    "order_impact_probe": _update_order_impact_probe,
}


def update_strategy(state: StrategyState, prices) -> float | None:
    arr = np.asarray(prices, dtype=float)
    return _UPDATERS[state.kind](state, arr)


# --------------------------- Signals ---------------------------


def strategy_signal(state: StrategyState) -> int:
    if state.kind == "order_impact_probe":
        return 0
    if state.kind == "cycle_detector":
        return state.last_signal if state.returns else 0
    if not state.returns:
        return 0
    last = state.returns[-1]
    if state.kind == "mean_reverter":
        # Price below its average -> expect reversion up.
        return _band(last, MEAN_REVERT_THRESHOLD)
    if state.kind == "trend_follower":
        return _band(last, TREND_THRESHOLD)
    if state.kind == "noise_breaker":
        # Fade the most recent tick.
        return -_band(last, NOISE_THRESHOLD)
    raise ValueError(f"unknown strategy kind: {state.kind}")
