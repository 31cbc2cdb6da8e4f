"""
ensemble.py -- Performance-weighted vote across the strategy set.

Each strategy's trailing return buffer is turned into an exponentially
weighted Sharpe ratio.  Positive Sharpe ratios become normalized weights;
the weighted sum of strategy signals, reduced to its sign, is the
instrument's vote.

Floor policy (all floors are named so edge cases are testable):
  VOL_FLOOR         -- lower bound on EWMA volatility in the Sharpe ratio
  WEIGHT_SUM_FLOOR  -- lower bound on the sum of positive Sharpe ratios
  When no strategy has a positive Sharpe the weights are uniform.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np

from strategies import StrategyState, strategy_signal, update_strategy

SHARPE_HALF_LIFE = 20
SHARPE_MIN_SAMPLES = 5
VOL_FLOOR = 1e-8
WEIGHT_SUM_FLOOR = 1e-8
WEIGHT_SUM_TOLERANCE = 1e-6


@dataclass
class EnsembleState:
    weights: list[float] = field(default_factory=list)
    last_vote: int = 0

    @classmethod
    def uniform(cls, n: int) -> "EnsembleState":
        if n <= 0:
            return cls()
        return cls(weights=[1.0 / n] * n)


def ewma_decay(half_life: float = SHARPE_HALF_LIFE) -> float:
    return 0.5 ** (1.0 / half_life)


def rolling_sharpe(returns: Iterable[float], half_life: float = SHARPE_HALF_LIFE) -> float:
    """
    Exponentially weighted Sharpe ratio of a return buffer.

    The mean is updated first and the variance uses the updated mean, oldest
    sample first.  Fewer than SHARPE_MIN_SAMPLES samples -> 0.
    """
    samples = list(returns)
    if len(samples) < SHARPE_MIN_SAMPLES:
        return 0.0
    lam = ewma_decay(half_life)
    mean = 0.0
    var = 0.0
    for r in samples:
        mean = lam * mean + (1.0 - lam) * r
        var = lam * var + (1.0 - lam) * (r - mean) ** 2
    vol = max(math.sqrt(var), VOL_FLOOR)
    sharpe = mean / vol
    return sharpe if math.isfinite(sharpe) else 0.0


def normalize_weights(sharpes: Sequence[float]) -> list[float]:
    n = len(sharpes)
    if n == 0:
        return []
    positive = np.maximum(np.nan_to_num(np.asarray(sharpes, dtype=float), nan=0.0), 0.0)
    total = float(positive.sum())
    if total <= 0.0:
        return [1.0 / n] * n
    return (positive / max(total, WEIGHT_SUM_FLOOR)).tolist()


def combine_vote(weights: Sequence[float], signals: Sequence[int]) -> int:
    if len(weights) != len(signals):
        raise ValueError(f"weights/signals length mismatch: {len(weights)} != {len(signals)}")
    score = float(np.dot(np.asarray(weights, dtype=float), np.asarray(signals, dtype=float)))
    if score > 0:
        return 1
    if score < 0:
        return -1
    return 0


def check_weights(weights: Sequence[float]) -> list[str]:
    """Return a list of invariant violations (empty when healthy)."""
    violations = []
    if not weights:
        return violations
    for i, w in enumerate(weights):
        if not math.isfinite(w):
            violations.append(f"weight[{i}] not finite: {w}")
        elif w < 0:
            violations.append(f"weight[{i}] negative: {w}")
    total = float(sum(weights))
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        violations.append(f"weights sum to {total:.9f}, expected 1")
    return violations


def recompute(strategies: Sequence[StrategyState], ensemble: EnsembleState, prices) -> EnsembleState:
    """
    Update every strategy with the latest prices, refresh the Sharpe ratio of
    those that produced a sample, and reweight the ensemble in place.
    """
    for strat in strategies:
        ret = update_strategy(strat, prices)
        if ret is not None:
            strat.sharpe = rolling_sharpe(strat.returns)
    ensemble.weights = normalize_weights([s.sharpe for s in strategies])
    return ensemble


def vote(strategies: Sequence[StrategyState], ensemble: EnsembleState) -> int:
    if not ensemble.weights:
        ensemble.weights = normalize_weights([s.sharpe for s in strategies])
    v = combine_vote(ensemble.weights, [strategy_signal(s) for s in strategies])
    ensemble.last_vote = v
    return v
