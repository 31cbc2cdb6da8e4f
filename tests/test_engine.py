import asyncio
import json
import random
import unittest
from unittest import mock

import engine as engine_mod
from engine import EngineConfig, TradingEngine
from ensemble import EnsembleState, check_weights
from gateway import (
    AccountSnapshot,
    HttpGateway,
    Instrument,
    NetworkError,
    OrderAck,
    OrderRejected,
    ServerFault,
)
from risk_governor import RiskState
from strategies import new_strategy_set


class FakeGateway:
    def __init__(self, prices=None, balance=1000.0, positions=None):
        self.prices = dict(prices if prices is not None else {"X": 10.0})
        self.balance = balance
        self.positions = dict(positions or {})
        self.submitted = []
        self.list_calls = 0
        self.account_calls = 0
        self.fail_list_after = None
        self.account_error = None
        self.submit_error = None

    async def list_instruments(self, fresh=False):
        self.list_calls += 1
        if self.fail_list_after is not None and self.list_calls > self.fail_list_after:
            raise NetworkError("quotes down")
        return [Instrument(name, price, 1000) for name, price in self.prices.items()]

    async def get_account(self):
        self.account_calls += 1
        if self.account_error is not None:
            raise self.account_error
        return AccountSnapshot(self.balance, dict(self.positions))

    async def submit_order(self, name, signed_qty):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((name, signed_qty))
        return OrderAck(name, signed_qty, 201)


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _engine(gw, *, armed=False, clock=None, seed=7, **cfg):
    cfg.setdefault("notify", False)
    return TradingEngine(gw, EngineConfig(**cfg), armed=armed, clock=clock or Clock(), rng=random.Random(seed))


def _seed_instrument(eng, name="X"):
    strategies = new_strategy_set()
    eng.strategies[name] = strategies
    eng.ensembles[name] = EnsembleState.uniform(len(strategies))


class DecisionTickTests(unittest.IsolatedAsyncioTestCase):
    def _patch_target(self, eng, vote, kelly_shares):
        return (
            mock.patch.object(engine_mod.ens, "vote", return_value=vote),
            mock.patch.object(eng.kelly, "size", return_value=(kelly_shares, None)),
        )

    async def test_unarmed_engine_never_submits(self):
        gw = FakeGateway()
        eng = _engine(gw, armed=False)
        _seed_instrument(eng)
        p_vote, p_size = self._patch_target(eng, 1, 50)
        with p_vote, p_size:
            outcome = await eng.decision_tick()

        self.assertEqual(outcome, "done")
        self.assertEqual(gw.submitted, [])
        self.assertEqual(len(eng.intents), 1)
        intent = eng.intents[-1]
        self.assertEqual((intent.name, intent.side, intent.status), ("X", "buy", "simulated"))
        self.assertTrue(45 <= intent.amount <= 55)
        self.assertEqual(eng.counters["orders_simulated"], 1)

    async def test_armed_buy_for_kelly_50_at_price_10(self):
        for seed in range(20):
            gw = FakeGateway(prices={"X": 10.0}, balance=1000.0)
            eng = _engine(gw, armed=True, seed=seed)
            _seed_instrument(eng)
            p_vote, p_size = self._patch_target(eng, 1, 50)
            with p_vote, p_size:
                await eng.decision_tick()

            self.assertEqual(len(gw.submitted), 1)
            name, qty = gw.submitted[0]
            self.assertEqual(name, "X")
            self.assertTrue(45 <= qty <= 55, qty)
            self.assertEqual(eng.intents[-1].status, "submitted")
            # decision quote fetch + live price re-check for the buy
            self.assertEqual(gw.list_calls, 2)

    async def test_zero_vote_generates_no_order(self):
        gw = FakeGateway()
        eng = _engine(gw, armed=True)
        _seed_instrument(eng)
        p_vote, p_size = self._patch_target(eng, 0, 400)
        with p_vote, p_size as size:
            await eng.decision_tick()

        self.assertEqual(gw.submitted, [])
        self.assertEqual(len(eng.intents), 0)
        size.assert_not_called()

    async def test_drawdown_brake_skips_tick(self):
        gw = FakeGateway(balance=1000.0)
        eng = _engine(gw, armed=True)
        _seed_instrument(eng)
        self.assertEqual(await eng.decision_tick(), "done")
        self.assertEqual(eng.risk.peak_balance, 1000.0)

        gw.balance = 699.0
        calls_before = gw.list_calls
        p_vote, p_size = self._patch_target(eng, 1, 50)
        with p_vote, p_size:
            outcome = await eng.decision_tick()

        self.assertEqual(outcome, "braked")
        self.assertEqual(eng.risk.peak_balance, 699.0)
        self.assertEqual(eng.risk.brake_count, 1)
        self.assertEqual(gw.list_calls, calls_before)
        self.assertEqual(gw.submitted, [])

    async def test_balance_just_above_threshold_trades(self):
        gw = FakeGateway(balance=1000.0)
        eng = _engine(gw, armed=True)
        _seed_instrument(eng)
        await eng.decision_tick()

        gw.balance = 701.0
        p_vote, p_size = self._patch_target(eng, 1, 20)
        with p_vote, p_size:
            outcome = await eng.decision_tick()

        self.assertEqual(outcome, "done")
        self.assertEqual(eng.risk.peak_balance, 1000.0)
        self.assertEqual(len(gw.submitted), 1)

    async def test_unloaded_account_skips_tick(self):
        gw = FakeGateway(balance=0.0)
        eng = _engine(gw, armed=True)
        self.assertEqual(await eng.decision_tick(), "unloaded")
        self.assertIsNone(eng.risk.peak_balance)
        self.assertEqual(gw.list_calls, 0)

    async def test_account_failure_aborts_tick(self):
        gw = FakeGateway()
        gw.account_error = NetworkError("down")
        eng = _engine(gw, armed=True)
        with self.assertLogs("engine", level="WARNING"):
            self.assertEqual(await eng.decision_tick(), "account_error")
        self.assertEqual(gw.list_calls, 0)
        self.assertEqual(eng.error_streaks, {"ingest": 0, "decision": 1})

    async def test_not_modified_account_aborts_tick_without_orders(self):
        gw = HttpGateway("http://test")
        eng = _engine(gw, armed=True)
        _seed_instrument(eng)
        replies = {
            "/api/user": (200, {"balance": 1000}),
            "/api/account": (304, None),
            "/api/stocks": (200, [{"name": "X", "price": 10.0, "numberAvailable": 100}]),
        }

        def fake_request(url, data=None, **kwargs):
            if data is not None:
                return 201, {}
            return replies[url[len("http://test"):]]

        p_vote, p_size = self._patch_target(eng, 1, 50)
        with p_vote, p_size, mock.patch("gateway._request", side_effect=fake_request) as req:
            with self.assertLogs("engine", level="WARNING"):
                outcome = await eng.decision_tick()

        self.assertEqual(outcome, "account_error")
        self.assertIsNone(eng.account)
        self.assertEqual(eng.counters["orders_submitted"], 0)
        self.assertFalse(any(c.kwargs.get("method") == "POST" for c in req.call_args_list))

    async def test_sell_beyond_holdings_is_skipped_with_throttled_warning(self):
        clock = Clock(1000.0)
        gw = FakeGateway(positions={"X": 2})
        eng = _engine(gw, armed=True, clock=clock)
        _seed_instrument(eng)
        p_vote, p_size = self._patch_target(eng, -1, 50)
        with p_vote, p_size:
            with self.assertLogs("engine", level="WARNING") as logs:
                await eng.decision_tick()
            clock.now += 30
            await eng.decision_tick()
            clock.now += 31
            await eng.decision_tick()

        self.assertEqual(gw.submitted, [])
        skip_warnings = [line for line in logs.output if "[SKIP]" in line]
        self.assertEqual(len(skip_warnings), 1)
        self.assertEqual([i.status for i in eng.intents], ["skipped", "skipped"])
        self.assertEqual(eng.counters["orders_skipped"], 3)

    async def test_live_price_failure_abandons_only_that_instrument(self):
        # X needs a buy (live price re-check fails), Y trims an oversized holding.
        gw = FakeGateway(prices={"X": 10.0, "Y": 20.0}, balance=100000.0, positions={"Y": 1000})
        gw.fail_list_after = 1
        eng = _engine(gw, armed=True)
        _seed_instrument(eng, "X")
        _seed_instrument(eng, "Y")

        p_vote, p_size = self._patch_target(eng, 1, 500)
        with p_vote, p_size:
            with self.assertLogs("engine", level="WARNING"):
                await eng.decision_tick()

        statuses = {i.name: i.status for i in eng.intents}
        self.assertEqual(statuses["X"], "failed")
        self.assertEqual(statuses["Y"], "submitted")
        self.assertEqual(len(gw.submitted), 1)
        self.assertEqual(gw.submitted[0][0], "Y")
        self.assertLess(gw.submitted[0][1], 0)

    async def test_rejection_is_recorded_and_notified(self):
        gw = FakeGateway()
        gw.submit_error = OrderRejected("not enough money")
        eng = _engine(gw, armed=True, notify=True)
        _seed_instrument(eng)
        p_vote, p_size = self._patch_target(eng, 1, 50)
        with p_vote, p_size, mock.patch("engine.notifier.notify_order_rejected") as notify:
            await eng.decision_tick()
            await asyncio.gather(*list(eng._background))

        intent = eng.intents[-1]
        self.assertEqual((intent.status, intent.reason), ("rejected", "not enough money"))
        self.assertEqual(eng.counters["orders_rejected"], 1)
        notify.assert_called_once()
        self.assertEqual(notify.call_args.args[0], "X")
        self.assertEqual(eng.risk.brake_count, 0)

    async def test_server_fault_on_submit_is_failed_not_rejected(self):
        gw = FakeGateway()
        gw.submit_error = ServerFault("boom", status=500)
        eng = _engine(gw, armed=True)
        _seed_instrument(eng)
        p_vote, p_size = self._patch_target(eng, 1, 50)
        with p_vote, p_size:
            await eng.decision_tick()

        self.assertEqual(eng.intents[-1].status, "failed")
        self.assertEqual(eng.counters["orders_failed"], 1)
        self.assertEqual(eng.counters["orders_rejected"], 0)

    async def test_sentinel_instrument_is_never_traded(self):
        gw = FakeGateway(prices={"-": 10.0})
        eng = _engine(gw, armed=True)
        _seed_instrument(eng, "-")
        p_vote, p_size = self._patch_target(eng, 1, 50)
        with p_vote, p_size:
            await eng.decision_tick()
        self.assertEqual(gw.submitted, [])

    async def test_random_targets_respect_execution_limits(self):
        rng = random.Random(99)
        gw = FakeGateway(prices={"X": 10.0}, balance=1000.0)
        eng = _engine(gw, armed=True, seed=3)
        _seed_instrument(eng)
        for _ in range(200):
            gw.positions = {"X": rng.randint(0, 600)}
            vote = rng.choice((-1, 0, 1))
            shares = rng.randint(0, 5000)
            p_vote, p_size = self._patch_target(eng, vote, shares)
            with p_vote, p_size:
                await eng.decision_tick()

        for name, qty in gw.submitted:
            self.assertLessEqual(abs(qty), 500)
            if qty > 0:
                self.assertLessEqual(qty * 10.0, 0.95 * 1000.0)


class IngestTickTests(unittest.IsolatedAsyncioTestCase):
    async def test_ingest_records_prices_and_skips_sentinel(self):
        gw = FakeGateway(prices={"X": 10.0, "-": 1.0})
        eng = _engine(gw)
        self.assertEqual(await eng.ingest_tick(), 1)
        self.assertEqual(eng.history.names(), ["X"])
        self.assertIn("X", eng.strategies)

    async def test_warmup_then_recompute_keeps_weights_valid(self):
        clock = Clock(0.0)
        gw = FakeGateway(prices={"X": 10.0})
        eng = _engine(gw, clock=clock, warmup_points=30)
        rng = random.Random(4)
        for i in range(60):
            clock.now = i * 0.5
            gw.prices["X"] = round(10.0 * (1 + rng.uniform(-0.02, 0.02)), 2)
            await eng.ingest_tick()
            if i < 29:
                self.assertTrue(all(len(s.returns) == 0 for s in eng.strategies["X"]))

        self.assertEqual(check_weights(eng.ensembles["X"].weights), [])
        self.assertTrue(all(len(s.returns) == 31 for s in eng.strategies["X"]))

    async def test_stale_quote_response_is_discarded(self):
        release = asyncio.Event()
        prices = iter([10.0, 11.0])

        class SlowFirst(FakeGateway):
            async def list_instruments(self, fresh=False):
                self.list_calls += 1
                price = next(prices)
                if self.list_calls == 1:
                    await release.wait()
                return [Instrument("X", price, 1)]

        gw = SlowFirst()
        eng = _engine(gw)
        slow = asyncio.create_task(eng.ingest_tick())
        await asyncio.sleep(0)
        fast = await eng.ingest_tick()
        release.set()
        stale = await slow

        self.assertEqual((fast, stale), (1, 0))
        self.assertEqual(eng.counters["ingest_discarded"], 1)
        self.assertEqual(eng.history.last_price("X"), 11.0)
        self.assertEqual(len(eng.history.snapshot("X")), 1)

    async def test_quote_failure_is_counted(self):
        gw = FakeGateway()
        gw.fail_list_after = 0
        eng = _engine(gw, max_consecutive_errors=2, notify=True)
        with mock.patch("engine.notifier.notify_error") as notify:
            with self.assertLogs("engine", level="WARNING"):
                for _ in range(3):
                    self.assertEqual(await eng.ingest_tick(), 0)
            await asyncio.gather(*list(eng._background))

        self.assertEqual(eng.error_streaks["ingest"], 3)
        notify.assert_called_once()

    async def test_not_modified_quotes_record_nothing(self):
        clock = Clock(0.0)
        eng = _engine(HttpGateway("http://test"), clock=clock)
        rows = [{"name": "X", "price": 10.0, "numberAvailable": 1}]
        recorded = []
        with mock.patch("gateway._request", side_effect=[(200, rows), (304, None), (304, None)]):
            for now in (0.0, 0.5, 1.0):
                clock.now = now
                recorded.append(await eng.ingest_tick())

        self.assertEqual(recorded, [1, 0, 0])
        self.assertEqual([(p.timestamp, p.price) for p in eng.history.snapshot("X")], [(0.0, 10.0)])
        self.assertEqual(eng.counters["ingest_not_modified"], 2)
        self.assertEqual(eng.counters["gateway_errors"], 0)

    async def test_error_streaks_are_kept_per_tick_kind(self):
        gw = FakeGateway()
        gw.account_error = ServerFault("account down", status=500)
        eng = _engine(gw, max_consecutive_errors=2, notify=True)
        with mock.patch("engine.notifier.notify_error") as notify:
            with self.assertLogs("engine", level="WARNING"):
                for _ in range(2):
                    self.assertEqual(await eng.ingest_tick(), 1)
                    self.assertEqual(await eng.decision_tick(), "account_error")
            await asyncio.gather(*list(eng._background))

        self.assertEqual(eng.error_streaks, {"ingest": 0, "decision": 2})
        notify.assert_called_once()
        self.assertIn("decision", notify.call_args.args[0])


class ControlTests(unittest.IsolatedAsyncioTestCase):
    async def test_arm_and_disarm(self):
        eng = _engine(FakeGateway())
        self.assertEqual(eng.arm(), (True, "armed"))
        self.assertTrue(eng.risk.armed)
        self.assertEqual(eng.arm(), (True, "already armed"))
        self.assertEqual(eng.disarm(), (True, "disarmed"))
        self.assertFalse(eng.risk.armed)

    async def test_reset_brake_uses_current_balance(self):
        gw = FakeGateway(balance=800.0)
        eng = _engine(gw)
        eng.risk = RiskState(peak_balance=2000.0, mode="BRAKED")
        await eng.decision_tick()
        ok, msg = eng.reset_drawdown_brake()
        self.assertTrue(ok)
        self.assertIn("800.00", msg)
        self.assertEqual(eng.risk.peak_balance, 800.0)
        self.assertEqual(eng.risk.mode, "NORMAL")

    async def test_reset_before_account_load_clears_peak(self):
        eng = _engine(FakeGateway())
        eng.risk = RiskState(peak_balance=500.0)
        eng.reset_drawdown_brake()
        self.assertIsNone(eng.risk.peak_balance)

    async def test_status_payload_is_json_serializable(self):
        clock = Clock(0.0)
        gw = FakeGateway(prices={"X": 10.0, "Y": 3.0})
        eng = _engine(gw, clock=clock)
        for i in range(40):
            clock.now = i * 0.5
            gw.prices["X"] = 10.0 + (i % 5) * 0.1
            await eng.ingest_tick()
        await eng.decision_tick()

        payload = json.loads(json.dumps(eng.status_payload()))
        self.assertFalse(payload["armed"])
        self.assertEqual(payload["balance"], 1000.0)
        self.assertEqual(set(payload["instruments"]), {"X", "Y"})
        self.assertEqual(payload["instruments"]["X"]["points"], 40)
        self.assertEqual(len(payload["instruments"]["X"]["weights"]), 5)


if __name__ == "__main__":
    unittest.main()
