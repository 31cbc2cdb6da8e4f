"""
kelly_sizer.py — Ensemble-weighted Kelly criterion position sizer

Turns the win/loss statistics of each strategy's return buffer into a
target share count for one instrument.

Design:
  - Pure computation functions (no network side effects)
  - Runtime class (KellySizer) caching the last result per instrument
  - Ensemble-weighted: each strategy's edge counts by its ensemble weight
  - Clipped Kelly (default cap 0.25) on top of a max-position fraction
  - Minimum sample gating to avoid sizing on noise

Usage in engine.py:
  sizer = KellySizer(cfg)
  shares, result = sizer.size(name, strategies, weights, balance, price)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

log = logging.getLogger(__name__)

# When avg_win * avg_loss is zero (one side has no samples) the Kelly ratio
# is taken over 1.0 instead, which keeps one-sided buffers finite and small.
ZERO_PAYOFF_DENOMINATOR = 1.0


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KellyConfig:
    """All tunables for Kelly sizing. Set from env/config.py."""

    min_samples: int = 10                 # return samples before a strategy contributes
    kelly_cap: float = 0.25               # raw Kelly clipped to [0, kelly_cap]
    max_position_fraction: float = 0.25   # share of balance one instrument may use
    log_kelly_updates: bool = False       # debug line per sizing call


@dataclass(frozen=True)
class StrategyEdge:
    """Win/loss statistics of one strategy's return buffer."""
    win_prob: float
    mean_win: float
    mean_loss: float     # positive number
    n_total: int


@dataclass
class KellyResult:
    """Full diagnostics from a Kelly computation."""
    kelly: float            # raw fraction before clipping
    kelly_clipped: float    # after [0, cap]
    win_prob: float         # weighted p
    avg_win: float          # weighted W
    avg_loss: float         # weighted L
    contributors: int
    shares: int
    reason: str             # "ok", "no_contributors", "no_edge", "invalid_price"

    @staticmethod
    def _safe_float(value: float, digits: int) -> float | None:
        try:
            num = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(num):
            return None
        return round(num, digits)

    def to_dict(self) -> dict:
        return {
            "kelly": self._safe_float(self.kelly, 6) or 0.0,
            "kelly_clipped": self._safe_float(self.kelly_clipped, 6) or 0.0,
            "win_prob": self._safe_float(self.win_prob, 4) or 0.0,
            "avg_win": self._safe_float(self.avg_win, 6) or 0.0,
            "avg_loss": self._safe_float(self.avg_loss, 6) or 0.0,
            "contributors": self.contributors,
            "shares": self.shares,
            "reason": self.reason,
        }


# ---------------------------------------------------------------------------
# Pure computation functions
# ---------------------------------------------------------------------------

def strategy_edge(returns: Sequence[float]) -> StrategyEdge:
    """
    Split a return buffer into wins (> 0) and losses (< 0).

    Zero returns count toward the total but toward neither side, so a buffer
    of zeros has win_prob 0 and both means 0.
    """
    samples = list(returns)
    n = len(samples)
    wins = [r for r in samples if r > 0]
    losses = [r for r in samples if r < 0]
    win_prob = len(wins) / n if n else 0.0
    mean_win = sum(wins) / len(wins) if wins else 0.0
    mean_loss = -(sum(losses) / len(losses)) if losses else 0.0
    return StrategyEdge(win_prob=win_prob, mean_win=mean_win, mean_loss=mean_loss, n_total=n)


def kelly_fraction(avg_win: float, avg_loss: float, win_prob: float) -> float:
    """
    Kelly: f* = (W*p - L*(1-p)) / (W*L)

    The W*L denominator falls back to ZERO_PAYOFF_DENOMINATOR when it is not
    positive.
    """
    denom = avg_win * avg_loss
    if not denom > 0:
        denom = ZERO_PAYOFF_DENOMINATOR
    return (avg_win * win_prob - avg_loss * (1.0 - win_prob)) / denom


def clip_kelly(kelly: float, cap: float) -> float:
    if not math.isfinite(kelly):
        return 0.0
    return min(max(kelly, 0.0), cap)


def shares_for(kelly_clipped: float, balance: float, price: float, max_position_fraction: float) -> int:
    """floor(max_position_fraction * balance * kelly / price), never negative."""
    if not (price > 0) or not math.isfinite(price):
        return 0
    raw = max_position_fraction * balance * kelly_clipped / price
    if not math.isfinite(raw) or raw <= 0:
        return 0
    return int(math.floor(raw))


def compute_kelly(
    returns_by_strategy: Sequence[Sequence[float]],
    weights: Sequence[float],
    balance: float,
    price: float,
    cfg: KellyConfig | None = None,
) -> KellyResult:
    """
    Ensemble-weighted Kelly sizing for one instrument.

    Args:
        returns_by_strategy: one return buffer per strategy, aligned with weights
        weights:             ensemble weights
        balance:             account balance
        price:               current instrument price

    Returns:
        KellyResult; result.shares is the desired (non-negative) share count.
    """
    cfg = cfg or KellyConfig()
    if len(returns_by_strategy) != len(weights):
        raise ValueError("returns/weights length mismatch")

    avg_win = avg_loss = win_prob = 0.0
    contributors = 0
    for rets, w in zip(returns_by_strategy, weights):
        if len(rets) < cfg.min_samples:
            continue
        edge = strategy_edge(rets)
        avg_win += w * edge.mean_win
        avg_loss += w * edge.mean_loss
        win_prob += w * edge.win_prob
        contributors += 1

    if contributors == 0:
        return KellyResult(
            kelly=0.0, kelly_clipped=0.0, win_prob=0.0, avg_win=0.0, avg_loss=0.0,
            contributors=0, shares=0, reason="no_contributors",
        )

    raw = kelly_fraction(avg_win, avg_loss, win_prob)
    clipped = clip_kelly(raw, cfg.kelly_cap)
    shares = shares_for(clipped, balance, price, cfg.max_position_fraction)

    if not (price > 0):
        reason = "invalid_price"
    elif clipped <= 0:
        reason = "no_edge"
    else:
        reason = "ok"

    return KellyResult(
        kelly=raw,
        kelly_clipped=clipped,
        win_prob=win_prob,
        avg_win=avg_win,
        avg_loss=avg_loss,
        contributors=contributors,
        shares=shares,
        reason=reason,
    )


# ---------------------------------------------------------------------------
# Runtime integration class
# ---------------------------------------------------------------------------

class KellySizer:
    """
    Stateful Kelly sizer for engine.py integration.

    Keeps the last KellyResult per instrument for the status payload.
    """

    def __init__(self, cfg: KellyConfig | None = None):
        self.cfg = cfg or KellyConfig()
        self._results: dict[str, KellyResult] = {}

    def size(self, name: str, strategies, weights: Sequence[float], balance: float, price: float) -> tuple[int, KellyResult]:
        result = compute_kelly([s.returns for s in strategies], weights, balance, price, self.cfg)
        self._results[name] = result
        if self.cfg.log_kelly_updates:
            self._log_result(name, result)
        return result.shares, result

    def last_result(self, name: str) -> KellyResult | None:
        return self._results.get(name)

    def status_payload(self) -> dict:
        """Return dict for inclusion in /api/status response."""
        return {
            "kelly_cap": self.cfg.kelly_cap,
            "max_position_fraction": self.cfg.max_position_fraction,
            "instruments": {name: r.to_dict() for name, r in sorted(self._results.items())},
        }

    def _log_result(self, name: str, r: KellyResult) -> None:
        if r.reason == "no_contributors":
            log.debug("kelly [%s] %s", name, r.reason)
            return
        log.debug(
            "kelly [%s] f=%.4f clip=%.4f p=%.2f%% W=%.5f L=%.5f n=%d shares=%d (%s)",
            name, r.kelly, r.kelly_clipped, r.win_prob * 100,
            r.avg_win, r.avg_loss, r.contributors, r.shares, r.reason,
        )
