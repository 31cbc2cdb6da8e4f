#!/usr/bin/env python3
"""
backtest.py

Replay backtester for the ensemble trading engine (`engine.py`).

Features:
- Replays a price CSV (timestamp,name,price) or a seeded synthetic random walk
- Drives the production engine through a PaperGateway with a manual clock
- One ingest + decision tick per timestamp
- Reports final equity, orders, rejections, brake trips and max drawdown

Examples:
  python3 backtest.py --synthetic 2000 --seed 7
  python3 backtest.py --csv data/prices.csv --balance 10000 --json-out out.json
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import json
import math
import random
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone

import bot
import config
from engine import EngineConfig, TradingEngine
from gateway import PaperGateway

Frame = tuple[float, dict]


@dataclass
class BacktestStats:
    frames: int
    instruments: int
    start_ts: float
    end_ts: float
    armed: bool
    start_equity: float
    final_equity: float
    final_balance: float
    return_pct: float
    max_drawdown: float
    max_drawdown_pct: float
    orders_submitted: int
    orders_simulated: int
    orders_rejected: int
    orders_skipped: int
    brake_count: int
    final_positions: dict


def _parse_ts(raw: str) -> float:
    text = str(raw).strip()
    try:
        return float(text)
    except ValueError:
        pass
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def load_frames_csv(path: str) -> list[Frame]:
    """Group timestamp,name,price rows into time-ordered price frames."""
    with open(path, "r", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            raise ValueError(f"CSV has no header: {path}")

        key_map = {k.lower().strip(): k for k in reader.fieldnames}
        ts_key = next((key_map[k] for k in ("timestamp", "time", "ts", "date") if k in key_map), None)
        name_key = next((key_map[k] for k in ("name", "stock", "symbol") if k in key_map), None)
        price_key = next((key_map[k] for k in ("price", "close") if k in key_map), None)
        if not all((ts_key, name_key, price_key)):
            raise ValueError("CSV must contain timestamp, name and price columns")

        frames: dict[float, dict] = {}
        for row in reader:
            try:
                ts = _parse_ts(row[ts_key])
                price = float(row[price_key])
            except (TypeError, ValueError):
                continue
            name = (row[name_key] or "").strip()
            if not name or not math.isfinite(price) or price <= 0:
                continue
            frames.setdefault(ts, {})[name] = price
    return sorted(frames.items())


def synthetic_frames(count: int, prices: dict, seed: int | None = None,
                     volatility: float = 0.01, period: float = 0.5) -> list[Frame]:
    walk = PaperGateway(prices, seed=seed, volatility=volatility)
    frames = []
    for i in range(max(0, int(count))):
        frames.append((i * period, dict(walk.prices)))
        walk.step()
    return frames


def build_engine_config() -> EngineConfig:
    """Production engine settings with notifications off."""
    return replace(bot.build_engine_config(), notify=False)


class BacktestRunner:
    def __init__(
        self,
        frames: list[Frame],
        *,
        balance: float = 10000.0,
        seed: int | None = None,
        armed: bool = True,
        cfg: EngineConfig | None = None,
    ) -> None:
        if not frames:
            raise ValueError("need at least one price frame")
        self.frames = frames
        self.armed = bool(armed)
        self.now = float(frames[0][0])
        self.gateway = PaperGateway(frames[0][1], balance=balance, seed=seed)
        self.engine = TradingEngine(
            self.gateway,
            cfg or build_engine_config(),
            armed=self.armed,
            clock=lambda: self.now,
            rng=random.Random(seed),
        )
        self.equity_curve: list[tuple[float, float]] = []

    async def run_async(self) -> BacktestStats:
        start_equity = self.gateway.equity()
        for ts, prices in self.frames:
            self.now = float(ts)
            self.gateway.set_prices(prices)
            await self.engine.ingest_tick()
            await self.engine.decision_tick()
            self.equity_curve.append((self.now, self.gateway.equity()))

        max_dd = 0.0
        max_dd_pct = 0.0
        peak = -math.inf
        for _, eq in self.equity_curve:
            if eq > peak:
                peak = eq
            dd = peak - eq
            if dd > max_dd:
                max_dd = dd
            if peak > 0 and dd / peak > max_dd_pct:
                max_dd_pct = dd / peak

        final_equity = self.gateway.equity()
        counters = self.engine.counters
        return BacktestStats(
            frames=len(self.frames),
            instruments=len(self.gateway.prices),
            start_ts=float(self.frames[0][0]),
            end_ts=float(self.frames[-1][0]),
            armed=self.armed,
            start_equity=start_equity,
            final_equity=final_equity,
            final_balance=self.gateway.balance,
            return_pct=(final_equity / start_equity - 1.0) * 100.0 if start_equity > 0 else 0.0,
            max_drawdown=max_dd,
            max_drawdown_pct=max_dd_pct * 100.0,
            orders_submitted=counters["orders_submitted"],
            orders_simulated=counters["orders_simulated"],
            orders_rejected=counters["orders_rejected"],
            orders_skipped=counters["orders_skipped"],
            brake_count=self.engine.risk.brake_count,
            final_positions=dict(self.gateway.positions),
        )

    def run(self) -> BacktestStats:
        return asyncio.run(self.run_async())


def _print_summary(stats: BacktestStats) -> None:
    print("=" * 64)
    print("ENSEMBLE BACKTEST SUMMARY")
    print("=" * 64)
    print(f"frames:            {stats.frames}")
    print(f"instruments:       {stats.instruments}")
    print(f"mode:              {'armed' if stats.armed else 'simulate'}")
    print("-")
    print(f"start_equity:      {stats.start_equity:.2f}")
    print(f"final_equity:      {stats.final_equity:.2f}")
    print(f"final_balance:     {stats.final_balance:.2f}")
    print(f"return:            {stats.return_pct:.2f}%")
    print(f"max_drawdown:      {stats.max_drawdown:.2f} ({stats.max_drawdown_pct:.2f}%)")
    print("-")
    print(f"orders/submitted:  {stats.orders_submitted}")
    print(f"orders/simulated:  {stats.orders_simulated}")
    print(f"orders/rejected:   {stats.orders_rejected}")
    print(f"orders/skipped:    {stats.orders_skipped}")
    print(f"brake_trips:       {stats.brake_count}")
    print(f"positions_end:     {stats.final_positions}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay backtest for the ensemble trading engine")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--csv", default="", help="Price CSV with timestamp,name,price columns")
    src.add_argument("--synthetic", type=int, default=0, help="Number of synthetic random-walk frames")
    p.add_argument("--balance", type=float, default=config.PAPER_STARTING_BALANCE)
    p.add_argument("--seed", type=int, default=None, help="Seed for prices and order-size noise")
    p.add_argument("--armed", action=argparse.BooleanOptionalAction, default=True,
                   help="Fill orders on the paper market (--no-armed only logs intents)")
    p.add_argument("--json-out", default="", help="Optional JSON summary output path")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    bot.setup_logging()

    if args.csv:
        frames = load_frames_csv(args.csv)
    else:
        prices = config.parse_paper_instruments(config.PAPER_INSTRUMENTS)
        frames = synthetic_frames(args.synthetic, prices, seed=args.seed)

    if len(frames) < 2:
        raise SystemExit("Need at least 2 price frames for backtest")

    runner = BacktestRunner(frames, balance=args.balance, seed=args.seed, armed=args.armed)
    stats = runner.run()
    _print_summary(stats)

    if args.json_out:
        with open(args.json_out, "w", encoding="utf-8") as f:
            json.dump(asdict(stats), f, indent=2)
        print(f"\nWrote JSON summary: {args.json_out}")


if __name__ == "__main__":
    main()
