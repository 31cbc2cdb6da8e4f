"""
Ensemble trading engine runtime.

One engine object per account:
- ingest tick: quotes -> price history -> strategy/ensemble recompute
- decision tick: account refresh -> drawdown brake -> per-instrument
  vote, Kelly sizing, randomized clip, execution limits -> order or
  simulated intent
- operator controls: arm / disarm / reset_drawdown_brake
- status payload for the control server

All mutable state is touched only from the event loop.  The only suspension
points are gateway calls; everything between them runs without yielding.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

import ensemble as ens
import notifier
from gateway import (
    SENTINEL_NAME,
    AccountSnapshot,
    Gateway,
    GatewayError,
    Instrument,
    NotModified,
    OrderRejected,
)
from kelly_sizer import KellyConfig, KellySizer
from price_history import PriceHistoryStore
from risk_governor import (
    OrderPlan,
    RiskConfig,
    RiskState,
    check_invariants,
    note_skip,
    observe_balance,
    order_delta,
    plan_order,
    randomise_clip,
    reset_brake,
    set_armed,
)
from strategies import STRATEGY_KINDS, StrategyState, new_strategy_set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    history_cap: int = 200
    returns_cap: int = 100
    warmup_points: int = 30
    tick_period: float = 0.5
    intent_log_size: int = 200
    max_consecutive_errors: int = 5
    notify: bool = True
    kelly: KellyConfig = field(default_factory=KellyConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)


@dataclass(frozen=True)
class OrderIntent:
    timestamp: float
    name: str
    side: str
    amount: int
    price: float
    status: str          # simulated | submitted | rejected | failed | skipped
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "name": self.name,
            "side": self.side,
            "amount": self.amount,
            "price": self.price,
            "status": self.status,
            "reason": self.reason,
        }


class TradingEngine:
    def __init__(
        self,
        gateway: Gateway,
        cfg: EngineConfig | None = None,
        *,
        armed: bool = False,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.gateway = gateway
        self.cfg = cfg or EngineConfig()
        self.clock = clock
        self.rng = rng or random.Random()
        self.started_at = clock()

        self.history = PriceHistoryStore(self.cfg.history_cap, self.cfg.tick_period)
        self.history.subscribe(self._on_price)
        self.strategies: dict[str, list[StrategyState]] = {}
        self.ensembles: dict[str, ens.EnsembleState] = {}
        self.kelly = KellySizer(self.cfg.kelly)

        self.risk = RiskState(armed=bool(armed))
        self.account: AccountSnapshot | None = None
        self.intents: deque[OrderIntent] = deque(maxlen=self.cfg.intent_log_size)

        self._ingest_seq = 0
        self._applied_ingest_seq = 0
        # Failure streak per tick kind; each resets only on its own success.
        self.error_streaks = {"ingest": 0, "decision": 0}
        self.counters = {
            "ingest_ticks": 0,
            "ingest_discarded": 0,
            "ingest_not_modified": 0,
            "decision_ticks": 0,
            "ticks_unloaded": 0,
            "ticks_braked": 0,
            "orders_submitted": 0,
            "orders_simulated": 0,
            "orders_rejected": 0,
            "orders_failed": 0,
            "orders_skipped": 0,
            "gateway_errors": 0,
        }
        self._background: set[asyncio.Task] = set()

    # ------------------ Strategy bookkeeping ------------------

    def _ensure_strategies(self, name: str) -> list[StrategyState]:
        strats = self.strategies.get(name)
        if strats is None:
            strats = new_strategy_set(self.cfg.returns_cap)
            self.strategies[name] = strats
            self.ensembles[name] = ens.EnsembleState.uniform(len(strats))
        return strats

    def _on_price(self, name: str, snapshot: tuple) -> None:
        strats = self._ensure_strategies(name)
        if len(snapshot) < self.cfg.warmup_points:
            return
        prices = [p.price for p in snapshot]
        state = ens.recompute(strats, self.ensembles[name], prices)
        violations = ens.check_weights(state.weights)
        if violations:
            logger.error("Ensemble invariant violation for %s: %s", name, "; ".join(violations))

    # ------------------ Notifications ------------------

    def _notify(self, fn, *args) -> None:
        if not self.cfg.notify:
            return
        try:
            task = asyncio.get_running_loop().create_task(asyncio.to_thread(fn, *args))
        except RuntimeError:
            # No loop (sync caller): send inline.
            fn(*args)
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _gateway_failed(self, what: str, exc: GatewayError, tick: str = "decision") -> None:
        self.counters["gateway_errors"] += 1
        self.error_streaks[tick] += 1
        streak = self.error_streaks[tick]
        logger.warning("%s failed (%d %s errors in a row, status %s): %s",
                       what, streak, tick, exc.status, exc)
        if streak == self.cfg.max_consecutive_errors:
            self._notify(notifier.notify_error,
                         f"{streak} consecutive {tick} gateway errors, last: {what}: {exc}")

    # ------------------ Ingest ------------------

    async def ingest_tick(self) -> int:
        """Fetch quotes and append one point per instrument.  Returns points recorded."""
        self._ingest_seq += 1
        seq = self._ingest_seq
        try:
            instruments = await self.gateway.list_instruments(fresh=True)
        except NotModified:
            self.error_streaks["ingest"] = 0
            self.counters["ingest_not_modified"] += 1
            logger.debug("Quotes not modified, nothing recorded for #%d", seq)
            return 0
        except GatewayError as e:
            self._gateway_failed("quote refresh", e, "ingest")
            return 0

        if seq <= self._applied_ingest_seq:
            self.counters["ingest_discarded"] += 1
            logger.debug("Discarding stale quote response #%d (applied #%d)", seq, self._applied_ingest_seq)
            return 0
        self._applied_ingest_seq = seq
        self.error_streaks["ingest"] = 0
        self.counters["ingest_ticks"] += 1

        now = self.clock()
        recorded = 0
        for inst in instruments:
            if inst.name == SENTINEL_NAME:
                continue
            if self.history.record(inst.name, inst.price, now) is not None:
                recorded += 1
        return recorded

    # ------------------ Decision ------------------

    async def decision_tick(self) -> str:
        """
        Run the full decision pipeline once.

        Returns a short outcome label: account_error, unloaded, braked,
        quote_error or done.
        """
        try:
            account = await self.gateway.get_account()
        except GatewayError as e:
            self._gateway_failed("account refresh", e)
            return "account_error"
        self.account = account
        self.counters["decision_ticks"] += 1

        now = self.clock()
        previous_peak = self.risk.peak_balance
        self.risk, decision = observe_balance(self.risk, account.balance, now, self.cfg.risk)
        if decision == "unloaded":
            self.counters["ticks_unloaded"] += 1
            logger.debug("Balance is 0, account not loaded yet -- skipping tick")
            return "unloaded"
        if decision == "braked":
            self.counters["ticks_braked"] += 1
            details = (
                f"balance {account.balance:.2f} fell more than "
                f"{self.cfg.risk.max_drawdown * 100:.0f}% below peak {previous_peak:.2f}; "
                f"peak reset, tick skipped"
            )
            logger.warning("Drawdown brake: %s", details)
            self._notify(notifier.notify_risk_event, "brake", details, self.risk.armed)
            return "braked"

        violations = check_invariants(self.risk)
        if violations:
            logger.error("Risk invariant violation: %s", "; ".join(violations))

        try:
            instruments = await self.gateway.list_instruments()
        except GatewayError as e:
            self._gateway_failed("quote refresh (decision)", e)
            return "quote_error"
        self.error_streaks["decision"] = 0

        for inst in instruments:
            if inst.name == SENTINEL_NAME:
                continue
            await self._decide_instrument(inst, account)
        return "done"

    def target_shares(self, name: str, price: float, balance: float) -> tuple[int, int]:
        """(vote, desired signed position) for one instrument."""
        strats = self.strategies.get(name)
        if not strats:
            return 0, 0
        ensemble = self.ensembles[name]
        vote = ens.vote(strats, ensemble)
        if vote == 0:
            return 0, 0
        shares, _ = self.kelly.size(name, strats, ensemble.weights, balance, price)
        return vote, shares * vote

    async def _decide_instrument(self, inst: Instrument, account: AccountSnapshot) -> None:
        name = inst.name
        vote, desired = self.target_shares(name, inst.price, account.balance)
        if vote == 0:
            return
        owned = account.owned(name)
        delta = order_delta(desired, owned)
        if delta == 0:
            return
        clip = randomise_clip(delta, self.rng, self.cfg.risk.clip_noise)

        live_price = None
        if clip > 0:
            try:
                live_price = await self._live_price(name)
            except GatewayError as e:
                self._gateway_failed(f"price re-check for {name}", e)
                self._record(name, "buy", abs(clip), inst.price, "failed", str(e))
                return

        plan = plan_order(clip, owned, account.balance, live_price, self.cfg.risk)
        price = live_price if live_price is not None else inst.price
        if plan.skipped:
            self._on_skip(name, plan, owned, price)
            return

        if not self.risk.armed:
            self.counters["orders_simulated"] += 1
            logger.info("[SIM] %s %d %s @ %.2f (vote %+d, target %d, own %d)",
                        plan.side.upper(), plan.amount, name, price, vote, desired, owned)
            self._record(name, plan.side, plan.amount, price, "simulated")
            return

        await self._submit(name, plan, price)

    async def _live_price(self, name: str) -> float | None:
        for inst in await self.gateway.list_instruments():
            if inst.name == name:
                return inst.price
        return None

    def _on_skip(self, name: str, plan: OrderPlan, owned: int, price: float) -> None:
        self.counters["orders_skipped"] += 1
        if plan.skip_reason != "insufficient_holdings":
            logger.debug("Skip %s %d %s: %s", plan.side, plan.amount, name, plan.skip_reason)
            return
        self.risk, should_warn = note_skip(self.risk, name, self.clock(), self.cfg.risk)
        if should_warn:
            logger.warning("[SKIP] wanted to SELL %d %s but only own %d", plan.amount, name, owned)
            self._record(name, plan.side, plan.amount, price, "skipped", plan.skip_reason)

    async def _submit(self, name: str, plan: OrderPlan, price: float) -> None:
        qty = plan.signed_qty
        try:
            await self.gateway.submit_order(name, qty)
        except OrderRejected as e:
            self.counters["orders_rejected"] += 1
            logger.warning("Order rejected: %s %d %s: %s", plan.side, plan.amount, name, e)
            self._record(name, plan.side, plan.amount, price, "rejected", str(e))
            self._notify(notifier.notify_order_rejected, name, qty, str(e))
            return
        except GatewayError as e:
            self.counters["orders_failed"] += 1
            self._gateway_failed(f"order {name} {qty:+d}", e)
            self._record(name, plan.side, plan.amount, price, "failed", str(e))
            return
        self.counters["orders_submitted"] += 1
        logger.info("[LIVE] %s %d %s @ %.2f", plan.side.upper(), plan.amount, name, price)
        self._record(name, plan.side, plan.amount, price, "submitted")

    def _record(self, name: str, side: str, amount: int, price: float, status: str, reason: str = "") -> None:
        self.intents.append(OrderIntent(
            timestamp=self.clock(), name=name, side=side, amount=int(amount),
            price=float(price), status=status, reason=reason,
        ))

    # ------------------ Operator controls ------------------

    def arm(self) -> tuple[bool, str]:
        if self.risk.armed:
            return True, "already armed"
        self.risk = set_armed(self.risk, True)
        logger.warning("Bot ARMED -- orders will be submitted")
        self._notify(notifier.notify_risk_event, "arm", "Live order submission enabled", True)
        return True, "armed"

    def disarm(self) -> tuple[bool, str]:
        if not self.risk.armed:
            return True, "already disarmed"
        self.risk = set_armed(self.risk, False)
        logger.warning("Bot DISARMED -- orders are simulated only")
        self._notify(notifier.notify_risk_event, "disarm", "Orders are simulated only", False)
        return True, "disarmed"

    def reset_drawdown_brake(self) -> tuple[bool, str]:
        balance = self.account.balance if self.account else 0.0
        self.risk = reset_brake(self.risk, balance)
        if self.risk.peak_balance is None:
            msg = "peak cleared (account not loaded)"
        else:
            msg = f"peak reset to {self.risk.peak_balance:.2f}"
        logger.info("Drawdown brake reset: %s", msg)
        self._notify(notifier.notify_risk_event, "reset", msg, self.risk.armed)
        return True, msg

    # ------------------ Telemetry ------------------

    def status_payload(self) -> dict:
        instruments = {}
        for name in sorted(self.strategies.keys()):
            strats = self.strategies[name]
            state = self.ensembles[name]
            instruments[name] = {
                "points": len(self.history.snapshot(name)),
                "last_price": self.history.last_price(name),
                "last_vote": state.last_vote,
                "weights": {k: round(w, 6) for k, w in zip(STRATEGY_KINDS, state.weights)},
                "sharpe": {s.kind: round(s.sharpe, 6) for s in strats},
                "samples": {s.kind: len(s.returns) for s in strats},
            }
        return {
            "uptime_sec": round(self.clock() - self.started_at, 1),
            "armed": self.risk.armed,
            "mode": self.risk.mode,
            "peak_balance": self.risk.peak_balance,
            "balance": self.account.balance if self.account else None,
            "positions": dict(self.account.positions) if self.account else {},
            "brake_count": self.risk.brake_count,
            "last_brake_at": self.risk.last_brake_at or None,
            "consecutive_errors": dict(self.error_streaks),
            "counters": dict(self.counters),
            "instruments": instruments,
            "kelly": self.kelly.status_payload(),
            "recent_intents": [i.to_dict() for i in list(self.intents)[-20:]],
        }
