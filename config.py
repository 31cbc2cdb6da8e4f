"""
config.py -- Tunable parameters for the ensemble trading bot.

Values come from environment variables (a shell export or a local .env
loaded by your process manager), so changing the stock API endpoint, the
brake threshold or the tick cadence never needs a code edit.

Knobs are grouped by the component that reads them.  The comment above each
one gives its unit and what moves when you change it.
"""

import os


# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Account API
# ---------------------------------------------------------------------------

# Base URL of the trading account API (serves /api/stocks, /api/account, ...).
API_BASE_URL: str = _env("API_BASE_URL", "http://localhost:3000")

# Session cookie forwarded with every request ("name=value").
# Login itself happens elsewhere; the bot only reuses an existing session.
API_SESSION_COOKIE: str = _env("API_SESSION_COOKIE", "")

# Per-request timeout.  The decision tick waits on these calls, so keep it
# well below a few seconds or ticks start getting skipped.
HTTP_TIMEOUT_SEC: float = _env("HTTP_TIMEOUT_SEC", 5.0, float)

# ---------------------------------------------------------------------------
# ARMED -- the most important toggle
# ---------------------------------------------------------------------------

# When False (the default!), the bot:
#   - Fetches REAL quotes and account data
#   - Runs every strategy, sizing and risk check
#   - LOGS the orders it would send, but never submits them
#
# Flip to True (or POST {"action": "arm"} to /api/action) only after you've
# watched the simulated intents for a while.
ARMED: bool = _env("ARMED", False, bool)

# Run against an in-memory paper market instead of the HTTP API.
PAPER_MODE: bool = _env("PAPER_MODE", False, bool)

# Paper market starting cash and instrument list (comma separated name:price).
PAPER_STARTING_BALANCE: float = _env("PAPER_STARTING_BALANCE", 10000.0, float)
PAPER_INSTRUMENTS: str = _env(
    "PAPER_INSTRUMENTS",
    "Allianz:326.42,BASF:74.21,Bayer:5.64,Beiersdorf:127.19,Daimler:230.81",
)

# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

# How often quotes are pulled into the price history.
# 0.5s matches the server's price step, so every step lands in its own bucket.
INGEST_INTERVAL_SEC: float = _env("INGEST_INTERVAL_SEC", 0.5, float)

# How often the decision pipeline runs.  Only used when DECOUPLED_SCHEDULE
# is on; otherwise ingest and decision share one timer.
DECISION_INTERVAL_SEC: float = _env("DECISION_INTERVAL_SEC", 0.5, float)

# False = one timer runs ingest then decision back to back (legacy behaviour).
# True  = two independent timers.
DECOUPLED_SCHEDULE: bool = _env("DECOUPLED_SCHEDULE", False, bool)

# ---------------------------------------------------------------------------
# History & strategies
# ---------------------------------------------------------------------------

# Price points kept per instrument (oldest evicted first).
HISTORY_CAP: int = _env("HISTORY_CAP", 200, int)

# Return samples kept per strategy (oldest evicted first).
RETURNS_CAP: int = _env("RETURNS_CAP", 100, int)

# Points an instrument needs before strategies and weights are recomputed.
# At 30 every strategy's own minimum (10 or 20 points) is already met.
WARMUP_POINTS: int = _env("WARMUP_POINTS", 30, int)

# ---------------------------------------------------------------------------
# Sizing & risk
# ---------------------------------------------------------------------------

# Largest slice of the balance a single instrument may tie up.
MAX_POSITION_FRACTION: float = _env("MAX_POSITION_FRACTION", 0.25, float)

# Upper clip on the raw Kelly fraction (quarter-Kelly style cap).
KELLY_CAP: float = _env("KELLY_CAP", 0.25, float)

# DRAWDOWN BRAKE -- fraction below the peak balance that trips the brake.
# On trip the peak resets to the current balance and the tick is skipped.
# Raising it: the bot fights through deeper dips.
# Lowering it: the brake trips on ordinary noise.
MAX_DRAWDOWN: float = _env("MAX_DRAWDOWN", 0.30, float)

# Hard ceiling on shares per order, regardless of any other computation.
MAX_SHARES_PER_ORDER: int = _env("MAX_SHARES_PER_ORDER", 500, int)

# Never spend more than this fraction of the balance on one buy.
AFFORDABILITY_FRACTION: float = _env("AFFORDABILITY_FRACTION", 0.95, float)

# Relative noise applied to every order size (0.10 = +/-10%).
CLIP_NOISE: float = _env("CLIP_NOISE", 0.10, float)

# Minimum gap between repeated "can't sell, not enough shares" warnings.
SKIP_WARN_INTERVAL_SEC: float = _env("SKIP_WARN_INTERVAL_SEC", 60.0, float)

# Consecutive failing ticks before the operator is alerted.
MAX_CONSECUTIVE_ERRORS: int = _env("MAX_CONSECUTIVE_ERRORS", 5, int)

# ---------------------------------------------------------------------------
# Operator surface
# ---------------------------------------------------------------------------

# Port for the status/control HTTP server.  0 disables it.
HEALTH_PORT: int = _env("HEALTH_PORT", 8080, int)

# Python logging level name.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

# Telegram bot token (from @BotFather) and your chat ID (from @userinfobot).
TELEGRAM_BOT_TOKEN: str = _env("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID: str = _env("TELEGRAM_CHAT_ID", "")


def parse_paper_instruments(raw: str) -> dict:
    """Parse "name:price,name:price" into {name: price}, skipping bad entries."""
    out = {}
    for chunk in (raw or "").split(","):
        name, sep, price = chunk.partition(":")
        name = name.strip()
        if not sep or not name:
            continue
        try:
            px = float(price)
        except ValueError:
            continue
        if px > 0:
            out[name] = px
    return out


# ---------------------------------------------------------------------------
# Startup banner -- printed when the bot launches
# ---------------------------------------------------------------------------

def print_banner():
    """Print a clear summary of all active settings so you know what's running."""
    mode = "ARMED (orders are submitted!)" if ARMED else "SIMULATE (orders only logged)"
    source = "paper market" if PAPER_MODE else API_BASE_URL
    if DECOUPLED_SCHEDULE:
        schedule = f"ingest {INGEST_INTERVAL_SEC}s / decision {DECISION_INTERVAL_SEC}s"
    else:
        schedule = f"ingest+decision every {INGEST_INTERVAL_SEC}s"
    lines = [
        "",
        "=" * 60,
        "  ENSEMBLE TRADING BOT",
        "=" * 60,
        f"  Mode:            {mode}",
        f"  Market:          {source}",
        f"  Schedule:        {schedule}",
        f"  History cap:     {HISTORY_CAP} points (warmup {WARMUP_POINTS})",
        f"  Max position:    {MAX_POSITION_FRACTION * 100:.0f}% of balance",
        f"  Kelly cap:       {KELLY_CAP:.2f}",
        f"  Drawdown brake:  {MAX_DRAWDOWN * 100:.0f}% below peak",
        f"  Max order:       {MAX_SHARES_PER_ORDER} shares",
        f"  Health port:     {HEALTH_PORT}",
        f"  Log level:       {LOG_LEVEL}",
        f"  Session cookie:  {'configured' if API_SESSION_COOKIE else 'NOT SET'}",
        f"  Telegram:        {'configured' if TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID else 'NOT SET'}",
        "=" * 60,
        "",
    ]
    print("\n".join(lines))
