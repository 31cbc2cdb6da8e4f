"""
notifier.py -- Operator alerts over Telegram.

Covers the events an operator has to see without reading logs:
startup/shutdown, drawdown brake trips, arm/disarm/reset, orders the account
API refused, and repeated tick failures.

Configure TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID; with either one missing
every notify_* call is a logged no-op.  Delivery problems are logged and
reported through the bool return value, never raised, so a Telegram outage
cannot stall the trading loop.
"""

import json
import logging
import urllib.error
import urllib.request

import config

logger = logging.getLogger(__name__)

SEND_MESSAGE_URL = "https://api.telegram.org/bot{token}/sendMessage"
SEND_TIMEOUT_SEC = 10

RISK_EMOJI = {
    "brake": "🚨",
    "reset": "♻️",
    "arm": "▶️",
    "disarm": "⏸️",
}


def _send_message(text: str) -> bool:
    """POST one HTML message to the configured chat.  True when Telegram accepted it."""
    token = config.TELEGRAM_BOT_TOKEN
    chat_id = config.TELEGRAM_CHAT_ID
    if not token or not chat_id:
        logger.debug("Telegram not configured, dropping alert: %s", text.splitlines()[0] if text else "")
        return False

    body = json.dumps({
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
        "disable_web_page_preview": True,
    }).encode("utf-8")
    req = urllib.request.Request(
        SEND_MESSAGE_URL.format(token=token),
        data=body,
        headers={"Content-Type": "application/json", "User-Agent": "EnsembleTradingBot/1.0"},
    )

    try:
        with urllib.request.urlopen(req, timeout=SEND_TIMEOUT_SEC) as resp:
            reply = json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        detail = e.read().decode("utf-8", errors="replace")[:200]
        logger.warning("Telegram alert rejected (HTTP %d): %s", e.code, detail)
        return False
    except (urllib.error.URLError, OSError, ValueError) as e:
        logger.warning("Telegram alert not delivered: %s", e)
        return False

    if not isinstance(reply, dict) or not reply.get("ok"):
        logger.warning("Telegram alert refused: %s", reply)
        return False
    return True


def _prefix(armed: bool | None = None) -> str:
    """Tag messages sent while orders are only simulated."""
    if armed is None:
        armed = config.ARMED
    return "" if armed else "[SIM] "


def notify_startup(instruments: int, armed: bool) -> bool:
    return _send_message(
        f"🤖 <b>{_prefix(armed)}Trading bot started</b>\n\n"
        f"instruments: {instruments}\n"
        f"mode: {'ARMED' if armed else 'simulate'}"
    )


def notify_shutdown(reason: str = "Manual") -> bool:
    return _send_message(f"🛑 <b>Trading bot stopped</b>\n\nreason: {reason}")


def notify_risk_event(event_type: str, details: str, armed: bool | None = None) -> bool:
    """event_type is one of brake, reset, arm, disarm."""
    emoji = RISK_EMOJI.get(event_type, "⚠️")
    return _send_message(
        f"{emoji} <b>{_prefix(armed)}Risk: {event_type.upper()}</b>\n\n{details}"
    )


def notify_order_rejected(name: str, signed_qty: int, reason: str) -> bool:
    side = "BUY" if signed_qty > 0 else "SELL"
    return _send_message(
        f"⚠️ <b>Order rejected</b>\n\n"
        f"{side} {abs(signed_qty)} {name}\n"
        f"reason: {reason}"
    )


def notify_error(error_msg: str) -> bool:
    return _send_message(f"❌ <b>Bot error</b>\n\n{error_msg}\n\n<i>see logs</i>")
