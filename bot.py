"""
Ensemble trading bot runtime.

- per-instrument ensemble of five signal strategies, Sharpe-weighted vote
- ensemble-weighted Kelly sizing, randomized clips, hard execution limits
- drawdown brake with self-healing peak reset
- simulate-by-default; arm from env, CLI flag or the control server
- Telegram notifications + JSON status/control endpoints
"""

from __future__ import annotations

import argparse
import asyncio
import concurrent.futures
import json
import logging
import signal
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Any, Callable

import config
import notifier
from engine import EngineConfig, TradingEngine
from gateway import GatewayError, HttpGateway, PaperGateway
from kelly_sizer import KellyConfig
from risk_governor import RiskConfig
from scheduler import Scheduler


logger = logging.getLogger(__name__)

ACTIONS = ("arm", "disarm", "reset_brake")
ACTION_TIMEOUT_SEC = 5.0


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def build_engine_config() -> EngineConfig:
    return EngineConfig(
        history_cap=config.HISTORY_CAP,
        returns_cap=config.RETURNS_CAP,
        warmup_points=config.WARMUP_POINTS,
        tick_period=config.INGEST_INTERVAL_SEC,
        max_consecutive_errors=config.MAX_CONSECUTIVE_ERRORS,
        kelly=KellyConfig(
            kelly_cap=config.KELLY_CAP,
            max_position_fraction=config.MAX_POSITION_FRACTION,
            log_kelly_updates=config.LOG_LEVEL.upper() == "DEBUG",
        ),
        risk=RiskConfig(
            max_drawdown=config.MAX_DRAWDOWN,
            max_shares_per_order=config.MAX_SHARES_PER_ORDER,
            affordability_fraction=config.AFFORDABILITY_FRACTION,
            clip_noise=config.CLIP_NOISE,
            skip_warn_interval_sec=config.SKIP_WARN_INTERVAL_SEC,
        ),
    )


def build_gateway(paper: bool | None = None):
    if paper is None:
        paper = config.PAPER_MODE
    if paper:
        prices = config.parse_paper_instruments(config.PAPER_INSTRUMENTS)
        if not prices:
            raise ValueError(f"PAPER_INSTRUMENTS has no usable entries: {config.PAPER_INSTRUMENTS!r}")
        logger.info("Using paper market with %d instruments", len(prices))
        return PaperGateway(prices, balance=config.PAPER_STARTING_BALANCE)
    if not config.API_SESSION_COOKIE:
        logger.warning("API_SESSION_COOKIE not set -- account endpoints will likely return 401")
    return HttpGateway(config.API_BASE_URL, config.API_SESSION_COOKIE, config.HTTP_TIMEOUT_SEC)


def build_engine(paper: bool | None = None, armed: bool | None = None) -> TradingEngine:
    if armed is None:
        armed = config.ARMED
    return TradingEngine(build_gateway(paper), build_engine_config(), armed=armed)


def build_scheduler(engine: TradingEngine) -> Scheduler:
    return Scheduler(
        engine,
        ingest_interval=config.INGEST_INTERVAL_SEC,
        decision_interval=config.DECISION_INTERVAL_SEC,
        decoupled=config.DECOUPLED_SCHEDULE,
        max_consecutive_errors=config.MAX_CONSECUTIVE_ERRORS,
    )


_ENGINE: TradingEngine | None = None
_SCHEDULER: Scheduler | None = None
_LOOP: asyncio.AbstractEventLoop | None = None


def _on_loop(fn: Callable[[], Any]) -> Any:
    """Run fn on the event loop thread and wait for its result."""
    if _LOOP is None or not _LOOP.is_running():
        return fn()

    async def _call():
        return fn()

    return asyncio.run_coroutine_threadsafe(_call(), _LOOP).result(ACTION_TIMEOUT_SEC)


def status_payload() -> dict:
    payload = _ENGINE.status_payload()
    if _SCHEDULER is not None:
        payload["scheduler"] = _SCHEDULER.status_payload()
    return payload


def perform_action(action: str) -> tuple[bool, str]:
    if action == "arm":
        return _ENGINE.arm()
    if action == "disarm":
        return _ENGINE.disarm()
    if action == "reset_brake":
        return _ENGINE.reset_drawdown_brake()
    return False, f"unknown action: {action}"


class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


class ControlHandler(BaseHTTPRequestHandler):
    def log_message(self, fmt: str, *args: Any) -> None:  # noqa: D401
        logger.debug("HTTP %s - %s", self.address_string(), fmt % args)

    def _send_json(self, data: dict, code: int = 200) -> None:
        payload = json.dumps(data).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _read_json(self) -> dict:
        n = int(self.headers.get("Content-Length", "0") or "0")
        if n <= 0:
            return {}
        raw = self.rfile.read(n)
        try:
            body = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValueError("invalid request body") from exc
        if not isinstance(body, dict):
            raise ValueError("invalid request body")
        return body

    def do_GET(self) -> None:  # noqa: N802
        if self.path.startswith("/api/status"):
            if _ENGINE is None:
                self._send_json({"error": "engine not ready"}, 503)
                return
            try:
                payload = _on_loop(status_payload)
            except concurrent.futures.TimeoutError:
                logger.warning("Status request timed out waiting for the event loop")
                self._send_json({"error": "status unavailable"}, 503)
                return
            except Exception:
                logger.exception("Unhandled exception in /api/status")
                self._send_json({"error": "internal server error"}, 500)
                return
            self._send_json(payload)
            return

        self._send_json({"error": "not found"}, 404)

    def do_POST(self) -> None:  # noqa: N802
        try:
            if not self.path.startswith("/api/action"):
                self._send_json({"ok": False, "message": "not found"}, 404)
                return
            if _ENGINE is None:
                self._send_json({"ok": False, "message": "engine not ready"}, 503)
                return

            try:
                body = self._read_json()
            except ValueError:
                self._send_json({"ok": False, "message": "invalid request body"}, 400)
                return

            action = str(body.get("action") or "").strip()
            if action not in ACTIONS:
                self._send_json({"ok": False, "message": f"unknown action: {action}"}, 400)
                return

            ok, msg = _on_loop(lambda: perform_action(action))
            self._send_json({"ok": bool(ok), "message": str(msg)}, 200 if ok else 400)
        except Exception:
            logger.exception("Unhandled exception in /api/action")
            self._send_json({"ok": False, "message": "internal server error"}, 500)


def start_http_server(port: int | None = None) -> ThreadingHTTPServer | None:
    if port is None:
        port = config.HEALTH_PORT
    if port <= 0:
        return None
    server = ThreadingHTTPServer(("0.0.0.0", int(port)), ControlHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True, name="control-server")
    thread.start()
    logger.info("Control server started on :%s", server.server_address[1])
    return server


async def _announce(engine: TradingEngine) -> None:
    try:
        instruments = await engine.gateway.list_instruments()
    except GatewayError as e:
        logger.warning("Initial quote fetch failed: %s", e)
        instruments = []
    logger.info("Tracking %d instruments, %s", len(instruments), "ARMED" if engine.risk.armed else "simulating")
    await asyncio.to_thread(notifier.notify_startup, len(instruments), engine.risk.armed)


async def _serve(engine: TradingEngine, scheduler: Scheduler) -> None:
    global _LOOP
    _LOOP = asyncio.get_running_loop()

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received", signum)
        _LOOP.call_soon_threadsafe(scheduler.stop)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGBREAK"):
        signal.signal(signal.SIGBREAK, _handle_signal)

    server = start_http_server()
    try:
        await _announce(engine)
        await scheduler.run()
    finally:
        if server is not None:
            server.shutdown()
        _LOOP = None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ensemble trading bot")
    parser.add_argument("--paper", action="store_true", default=None,
                        help="Trade against the in-memory paper market")
    parser.add_argument("--armed", action="store_true", default=None,
                        help="Submit orders instead of only logging them")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    global _ENGINE, _SCHEDULER
    args = parse_args(argv)
    setup_logging()
    config.print_banner()

    engine = build_engine(paper=args.paper, armed=args.armed)
    scheduler = build_scheduler(engine)
    _ENGINE, _SCHEDULER = engine, scheduler

    reason = "process exit"
    try:
        asyncio.run(_serve(engine, scheduler))
    except Exception as e:
        reason = f"crash: {e}"
        logger.exception("Bot crashed")
        raise
    finally:
        notifier.notify_shutdown(reason)
        logger.info("Bot stopped (%s)", reason)


if __name__ == "__main__":
    run()
