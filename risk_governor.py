"""
risk_governor.py

Capital-preservation rules for the decision tick.

Design goals:
- Pure reducer for the drawdown brake: (state, balance) -> (next_state, decision)
- Self-healing brake: on trip the peak resets to the current balance and
  only the current tick is skipped
- Order gating as small pure helpers (delta, randomized clip, ownership,
  affordability, hard share cap) so every limit is testable in isolation
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field, replace
from typing import Literal, Mapping

RiskMode = Literal["NORMAL", "BRAKED"]
BrakeDecision = Literal["unloaded", "braked", "proceed"]
Side = Literal["buy", "sell"]


@dataclass(frozen=True)
class RiskConfig:
    max_drawdown: float = 0.30
    max_shares_per_order: int = 500
    affordability_fraction: float = 0.95
    clip_noise: float = 0.10
    skip_warn_interval_sec: float = 60.0


@dataclass(frozen=True)
class RiskState:
    peak_balance: float | None = None
    armed: bool = False
    mode: RiskMode = "NORMAL"
    brake_count: int = 0
    last_brake_at: float = 0.0
    skip_cache: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderPlan:
    side: Side
    amount: int
    skip_reason: str = ""

    @property
    def skipped(self) -> bool:
        return bool(self.skip_reason)

    @property
    def signed_qty(self) -> int:
        return self.amount if self.side == "buy" else -self.amount


# --------------------------- Drawdown brake ---------------------------


def brake_threshold(peak_balance: float, cfg: RiskConfig) -> float:
    return peak_balance * (1.0 - cfg.max_drawdown)


def observe_balance(state: RiskState, balance: float, now: float, cfg: RiskConfig) -> tuple[RiskState, BrakeDecision]:
    """
    Advance the brake state machine with a fresh account balance.

    - balance == 0: account not loaded yet; nothing changes.
    - first non-zero balance seeds the peak.
    - balance below peak * (1 - max_drawdown): peak resets to balance,
      mode BRAKED, tick skipped.
    - otherwise the peak is a running maximum and the tick proceeds.
    """
    if not balance or not math.isfinite(balance):
        return state, "unloaded"

    peak = state.peak_balance
    if not peak:
        state = replace(state, peak_balance=balance)
        peak = balance

    if balance < brake_threshold(peak, cfg):
        return replace(
            state,
            peak_balance=balance,
            mode="BRAKED",
            brake_count=state.brake_count + 1,
            last_brake_at=now,
        ), "braked"

    if balance > peak:
        state = replace(state, peak_balance=balance)
    if state.mode != "NORMAL":
        state = replace(state, mode="NORMAL")
    return state, "proceed"


def reset_brake(state: RiskState, balance: float) -> RiskState:
    """Operator reset: peak = current balance (or unset while not loaded)."""
    peak = balance if balance and balance > 0 else None
    return replace(state, peak_balance=peak, mode="NORMAL")


def set_armed(state: RiskState, armed: bool) -> RiskState:
    return replace(state, armed=bool(armed))


def note_skip(state: RiskState, name: str, now: float, cfg: RiskConfig) -> tuple[RiskState, bool]:
    """Record a policy skip; the bool says whether a warning may be logged now."""
    last = state.skip_cache.get(name)
    if last is not None and now - last <= cfg.skip_warn_interval_sec:
        return state, False
    cache = dict(state.skip_cache)
    cache[name] = now
    return replace(state, skip_cache=cache), True


# --------------------------- Order sizing ---------------------------


def order_delta(desired: int, owned: int) -> int:
    """desired - owned, or 0 when the change is below one share."""
    delta = desired - owned
    if abs(delta) < 1:
        return 0
    return int(delta)


def randomise_clip(delta: int, rng: random.Random | None = None, noise: float = 0.10) -> int:
    """
    Scale |delta| by U(1-noise, 1+noise), floor, keep at least one share.

    The noise keeps the true target size from being repeated exactly.
    """
    if delta == 0:
        return 0
    rng = rng or random
    sign = 1 if delta > 0 else -1
    factor = rng.uniform(1.0 - noise, 1.0 + noise)
    noisy = int(math.floor(abs(delta) * factor))
    return max(1, noisy) * sign


def affordable_shares(balance: float, price: float, fraction: float) -> int:
    if not (price > 0) or not math.isfinite(price) or balance <= 0:
        return 0
    return int(math.floor(balance * fraction / price))


def plan_order(
    clip: int,
    owned: int,
    balance: float,
    live_price: float | None,
    cfg: RiskConfig,
) -> OrderPlan:
    """
    Apply the execution limits to a clipped order delta.

    Sells never exceed holdings.  Buys never spend more than
    affordability_fraction of the balance.  Nothing exceeds
    max_shares_per_order.
    """
    side: Side = "buy" if clip > 0 else "sell"
    amount = abs(int(clip))
    if amount < 1:
        return OrderPlan(side=side, amount=0, skip_reason="zero_amount")

    if side == "sell":
        if amount > owned:
            return OrderPlan(side=side, amount=amount, skip_reason="insufficient_holdings")
    else:
        if live_price is None or not (live_price > 0):
            return OrderPlan(side=side, amount=amount, skip_reason="no_live_price")
        amount = min(amount, affordable_shares(balance, live_price, cfg.affordability_fraction))
        if amount < 1:
            return OrderPlan(side=side, amount=0, skip_reason="unaffordable")

    amount = int(math.floor(min(amount, cfg.max_shares_per_order)))
    return OrderPlan(side=side, amount=amount)


def check_invariants(state: RiskState) -> list[str]:
    violations = []
    if state.peak_balance is not None and state.peak_balance <= 0:
        violations.append(f"peak_balance not positive: {state.peak_balance}")
    if state.mode not in ("NORMAL", "BRAKED"):
        violations.append(f"unknown mode: {state.mode}")
    if state.brake_count < 0:
        violations.append(f"negative brake_count: {state.brake_count}")
    return violations
