import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from io import StringIO

import backtest


class FrameLoadingTests(unittest.TestCase):
    def test_csv_rows_are_grouped_by_timestamp(self):
        rows = "\n".join([
            "timestamp,name,price",
            "2,BASF,75.0",
            "1,Allianz,326.42",
            "1,BASF,74.21",
            "2,Allianz,bad",
            "3,Allianz,-1",
            "3,,10",
            "2025-01-01T00:00:00Z,Bayer,5.64",
        ])
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "prices.csv")
            with open(path, "w", encoding="utf-8") as f:
                f.write(rows + "\n")
            frames = backtest.load_frames_csv(path)

        self.assertEqual(frames[0], (1.0, {"Allianz": 326.42, "BASF": 74.21}))
        self.assertEqual(frames[1], (2.0, {"BASF": 75.0}))
        self.assertEqual(frames[2][1], {"Bayer": 5.64})
        self.assertEqual(len(frames), 3)

    def test_csv_without_required_columns(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "bad.csv")
            with open(path, "w", encoding="utf-8") as f:
                f.write("when,what\n1,2\n")
            with self.assertRaises(ValueError):
                backtest.load_frames_csv(path)

    def test_synthetic_frames_are_seeded(self):
        a = backtest.synthetic_frames(50, {"X": 10.0}, seed=5)
        b = backtest.synthetic_frames(50, {"X": 10.0}, seed=5)
        self.assertEqual(a, b)
        self.assertEqual(len(a), 50)
        self.assertEqual(a[0], (0.0, {"X": 10.0}))
        self.assertEqual(a[1][0], 0.5)


class BacktestRunnerTests(unittest.TestCase):
    def _frames(self, count=150):
        return backtest.synthetic_frames(count, {"A": 50.0, "B": 5.0}, seed=11, volatility=0.02)

    def test_armed_replay_reports_consistent_stats(self):
        stats = backtest.BacktestRunner(self._frames(), balance=10000.0, seed=11, armed=True).run()

        self.assertEqual(stats.frames, 150)
        self.assertEqual(stats.instruments, 2)
        self.assertEqual(stats.start_equity, 10000.0)
        self.assertGreater(stats.final_equity, 0.0)
        self.assertGreaterEqual(stats.final_balance, 0.0)
        self.assertGreaterEqual(stats.max_drawdown, 0.0)
        self.assertEqual(stats.orders_simulated, 0)

    def test_unarmed_replay_never_fills(self):
        stats = backtest.BacktestRunner(self._frames(), balance=10000.0, seed=11, armed=False).run()

        self.assertEqual(stats.orders_submitted, 0)
        self.assertEqual(stats.final_positions, {})
        self.assertEqual(stats.final_equity, 10000.0)
        self.assertEqual(stats.max_drawdown, 0.0)

    def test_replay_is_deterministic_for_a_seed(self):
        first = backtest.BacktestRunner(self._frames(), seed=3).run()
        second = backtest.BacktestRunner(self._frames(), seed=3).run()
        self.assertEqual(first, second)

    def test_empty_frames_rejected(self):
        with self.assertRaises(ValueError):
            backtest.BacktestRunner([])

    def test_main_writes_json_summary(self):
        with tempfile.TemporaryDirectory() as tmp:
            out = os.path.join(tmp, "summary.json")
            printed = StringIO()
            with redirect_stdout(printed):
                backtest.main(["--synthetic", "60", "--seed", "1", "--no-armed", "--json-out", out])
            with open(out, encoding="utf-8") as f:
                summary = json.load(f)

        self.assertEqual(summary["frames"], 60)
        self.assertFalse(summary["armed"])
        self.assertEqual(summary["orders_submitted"], 0)
        self.assertEqual(summary["final_equity"], summary["start_equity"])
        self.assertIn("ENSEMBLE BACKTEST SUMMARY", printed.getvalue())


if __name__ == "__main__":
    unittest.main()
