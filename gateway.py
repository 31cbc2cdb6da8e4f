"""
gateway.py -- Quote/account/order access for the trading bot.

Handles:
  - HTTP account API (quotes, balance, positions, order submission)
  - Error taxonomy (network failure, 422 validation rejection, server fault)
  - 304 handling (reuse the last instrument list, or NotModified for fresh polls)
  - Client-side order validation before anything goes on the wire
  - PaperGateway: in-memory market for local runs, replays and tests

WIRE FORMAT:
  GET  /api/stocks            -> [{"name", "price", "numberAvailable"}]
  GET  /api/user              -> {"balance", ...}
  GET  /api/account           -> {"positions": [{"stock": {"name", ...}, "number"}], "value"}
  POST /api/account/positions <- {"stock": {"name"}, "number": signed_qty}

The engine only ever awaits the async methods; HTTP calls run on a worker
thread with urllib so the event loop never blocks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import random
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Protocol

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# API paths
# ---------------------------------------------------------------------------
STOCKS_PATH = "/api/stocks"
USER_PATH = "/api/user"
ACCOUNT_PATH = "/api/account"
POSITIONS_PATH = "/api/account/positions"

SENTINEL_NAME = "-"
MAX_NAME_LENGTH = 50


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class GatewayError(Exception):
    """Any failed gateway call.  status 0 means no HTTP response at all."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status
        self.message = message


class NetworkError(GatewayError):
    pass


class OrderRejected(GatewayError):
    """Validation rejection (HTTP 422 or client-side checks)."""

    def __init__(self, message: str, status: int = 422):
        super().__init__(message, status)


class ServerFault(GatewayError):
    pass


class NotModified(Exception):
    """A fresh-only quote poll got 304: there is nothing new to record."""


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instrument:
    name: str
    price: float
    available: int = 0


@dataclass(frozen=True)
class AccountSnapshot:
    balance: float
    positions: dict = field(default_factory=dict)   # name -> qty

    def owned(self, name: str) -> int:
        return int(self.positions.get(name, 0))


@dataclass(frozen=True)
class OrderAck:
    name: str
    signed_qty: int
    status: int = 200
    payload: dict | None = None


class Gateway(Protocol):
    async def list_instruments(self, fresh: bool = False) -> list[Instrument]: ...

    async def get_account(self) -> AccountSnapshot: ...

    async def submit_order(self, name: str, signed_qty: int) -> OrderAck: ...


def validate_order(name: str, signed_qty: int) -> None:
    """Raise OrderRejected for orders the API would refuse anyway."""
    if not isinstance(name, str) or not name.strip() or name == SENTINEL_NAME:
        raise OrderRejected(f"invalid instrument name: {name!r}", status=0)
    if len(name) > MAX_NAME_LENGTH:
        raise OrderRejected(f"instrument name too long: {name!r}", status=0)
    if isinstance(signed_qty, bool) or not isinstance(signed_qty, int):
        raise OrderRejected(f"quantity must be an integer: {signed_qty!r}", status=0)
    if signed_qty == 0:
        raise OrderRejected("quantity must not be 0", status=0)


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

def parse_instruments(payload) -> list[Instrument]:
    """Parse the /api/stocks body, dropping malformed rows."""
    if not isinstance(payload, list):
        raise ServerFault(f"unexpected stocks payload: {type(payload).__name__}", status=200)
    out = []
    for row in payload:
        try:
            name = str(row["name"])
            price = float(row["price"])
            available = int(row.get("numberAvailable", row.get("available", 0)) or 0)
        except (KeyError, TypeError, ValueError, AttributeError):
            log.warning("Bad stock row: %s", row)
            continue
        if not name or not math.isfinite(price) or price <= 0:
            log.debug("Skipping stock row without usable price: %s", row)
            continue
        out.append(Instrument(name=name, price=price, available=max(0, available)))
    return out


def parse_positions(payload) -> dict:
    """Parse /api/account positions into {name: qty}."""
    positions = {}
    rows = payload.get("positions") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        return positions
    for row in rows:
        try:
            name = row["stock"]["name"]
            qty = int(row["number"])
        except (KeyError, TypeError, ValueError):
            continue
        if name is None:
            continue
        positions[str(name)] = qty
    return positions


def parse_balance(payload) -> float:
    try:
        balance = float(payload["balance"])
    except (KeyError, TypeError, ValueError) as e:
        raise ServerFault(f"unexpected user payload: {e}", status=200) from e
    if not math.isfinite(balance) or balance < 0:
        raise ServerFault(f"invalid balance: {balance}", status=200)
    return balance


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------

def _error_message(body: str, status: int) -> str:
    try:
        data = json.loads(body)
    except (ValueError, TypeError):
        return f"HTTP {status}"
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return f"HTTP {status}"


def _request(url: str, data: bytes = None, headers: dict = None, timeout: float = 5.0,
             method: str | None = None) -> tuple[int, object]:
    """
    Make an HTTP request and return (status, parsed JSON body).
    Uses urllib only -- no external dependencies.

    Returns (304, None) for "not modified".

    Raises:
        OrderRejected on 422, ServerFault on other HTTP errors or bad JSON,
        NetworkError when no response arrives.
    """
    headers = headers or {}
    headers.setdefault("User-Agent", "EnsembleTradingBot/1.0")
    headers.setdefault("Accept", "application/json")

    req = urllib.request.Request(url, data=data, headers=headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            status = resp.status
            body = resp.read().decode("utf-8")
    except urllib.error.HTTPError as e:
        if e.code == 304:
            return 304, None
        body = e.read().decode("utf-8", errors="replace")
        message = _error_message(body, e.code)
        if e.code == 422:
            raise OrderRejected(message, status=422) from e
        logger_fn = log.error if e.code >= 500 else log.warning
        logger_fn("HTTP %d from %s: %s", e.code, url, body[:500])
        raise ServerFault(message, status=e.code) from e
    except urllib.error.URLError as e:
        raise NetworkError(f"network error for {url}: {e.reason}") from e
    except (TimeoutError, OSError) as e:
        raise NetworkError(f"network error for {url}: {e}") from e

    if status == 304:
        return 304, None
    if not body:
        return status, None
    try:
        return status, json.loads(body)
    except ValueError as e:
        raise ServerFault(f"invalid JSON from {url}", status=status) from e


class HttpGateway:
    """Gateway over the account HTTP API."""

    def __init__(self, base_url: str, session_cookie: str = "", timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.session_cookie = session_cookie
        self.timeout = float(timeout)
        self._last_instruments: list[Instrument] = []

    def _headers(self) -> dict:
        headers = {}
        if self.session_cookie:
            headers["Cookie"] = self.session_cookie
        return headers

    def _get(self, path: str, params: dict | None = None) -> tuple[int, object]:
        url = self.base_url + path
        if params:
            url += "?" + urllib.parse.urlencode(params)
        return _request(url, headers=self._headers(), timeout=self.timeout)

    def _post(self, path: str, body: dict) -> tuple[int, object]:
        headers = self._headers()
        headers["Content-Type"] = "application/json"
        data = json.dumps(body).encode("utf-8")
        return _request(self.base_url + path, data=data, headers=headers,
                        timeout=self.timeout, method="POST")

    # ------------------ sync bodies (run on a worker thread) ------------------

    def fetch_instruments(self, fresh: bool = False) -> list[Instrument]:
        """
        Current quotes.  On 304 the cached list is returned, unless *fresh*
        is set: then NotModified is raised so no stale point gets recorded.
        """
        status, payload = self._get(STOCKS_PATH)
        if status == 304 or payload is None:
            if fresh:
                raise NotModified(STOCKS_PATH)
            log.debug("Stocks not modified, reusing %d cached rows", len(self._last_instruments))
            return list(self._last_instruments)
        instruments = parse_instruments(payload)
        self._last_instruments = instruments
        return list(instruments)

    def fetch_account(self) -> AccountSnapshot:
        _, user = self._get(USER_PATH)
        if user is None:
            raise ServerFault("empty user payload", status=304)
        status, account = self._get(ACCOUNT_PATH)
        # Without a positions list we cannot tell what is owned.
        if account is None:
            raise ServerFault("empty account payload", status=304)
        if not isinstance(account, dict) or not isinstance(account.get("positions"), list):
            raise ServerFault("account payload has no positions list", status=status)
        return AccountSnapshot(balance=parse_balance(user), positions=parse_positions(account))

    def post_order(self, name: str, signed_qty: int) -> OrderAck:
        validate_order(name, signed_qty)
        status, payload = self._post(POSITIONS_PATH, {"stock": {"name": name}, "number": signed_qty})
        log.info("Submitted %s %+d -> HTTP %d", name, signed_qty, status)
        return OrderAck(name=name, signed_qty=signed_qty, status=status,
                        payload=payload if isinstance(payload, dict) else None)

    # ------------------ async API ------------------

    async def list_instruments(self, fresh: bool = False) -> list[Instrument]:
        return await asyncio.to_thread(self.fetch_instruments, fresh)

    async def get_account(self) -> AccountSnapshot:
        return await asyncio.to_thread(self.fetch_account)

    async def submit_order(self, name: str, signed_qty: int) -> OrderAck:
        return await asyncio.to_thread(self.post_order, name, signed_qty)


# ===========================================================================
# PAPER MARKET
# ===========================================================================

class PaperGateway:
    """
    In-memory market with the same contract as HttpGateway.

    Prices follow a seeded multiplicative random walk on step().  Orders
    fill immediately at the current price; buys beyond the cash balance,
    sells beyond holdings and unknown names are rejected like a 422.
    """

    def __init__(self, prices: dict, balance: float = 10000.0, seed: int | None = None,
                 volatility: float = 0.01, available: int = 100000):
        self.prices = {str(k): float(v) for k, v in prices.items()}
        self.balance = float(balance)
        self.positions: dict[str, int] = {}
        self.available = int(available)
        self.volatility = float(volatility)
        self.rng = random.Random(seed)
        self.orders: list[OrderAck] = []
        self.calls = {"list_instruments": 0, "get_account": 0, "submit_order": 0}

    def step(self) -> dict:
        for name, px in self.prices.items():
            shock = self.rng.gauss(0.0, self.volatility)
            self.prices[name] = max(0.01, round(px * math.exp(shock), 2))
        return dict(self.prices)

    def set_prices(self, prices: dict) -> None:
        for name, px in prices.items():
            if px > 0:
                self.prices[str(name)] = float(px)

    def equity(self) -> float:
        held = sum(self.prices.get(n, 0.0) * q for n, q in self.positions.items())
        return self.balance + held

    def _fill(self, name: str, signed_qty: int) -> OrderAck:
        validate_order(name, signed_qty)
        price = self.prices.get(name)
        if price is None:
            raise OrderRejected(f"unknown stock: {name}")
        if signed_qty > 0:
            cost = price * signed_qty
            if cost > self.balance:
                raise OrderRejected(f"insufficient funds for {signed_qty} {name}")
            self.balance -= cost
        else:
            owned = self.positions.get(name, 0)
            if -signed_qty > owned:
                raise OrderRejected(f"cannot sell {-signed_qty} {name}, own {owned}")
            self.balance += price * -signed_qty
        self.positions[name] = self.positions.get(name, 0) + signed_qty
        if self.positions[name] == 0:
            del self.positions[name]
        ack = OrderAck(name=name, signed_qty=signed_qty, status=201,
                       payload={"price": price, "at": time.time()})
        self.orders.append(ack)
        return ack

    async def list_instruments(self, fresh: bool = False) -> list[Instrument]:
        self.calls["list_instruments"] += 1
        return [Instrument(name=n, price=p, available=self.available) for n, p in self.prices.items()]

    async def get_account(self) -> AccountSnapshot:
        self.calls["get_account"] += 1
        return AccountSnapshot(balance=round(self.balance, 2), positions=dict(self.positions))

    async def submit_order(self, name: str, signed_qty: int) -> OrderAck:
        self.calls["submit_order"] += 1
        return self._fill(name, signed_qty)
