"""
Telegram Reminder System
Sends periodic portfolio summaries to users via Telegram
"""
import calendar
import html
import logging
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional

import requests

import config
import models

logger = logging.getLogger(__name__)

FREQUENCIES = ("immediate", "bi-weekly", "monthly")


def telegram_api() -> Optional[str]:
    if not config.TELEGRAM_BOT_TOKEN:
        return None
    return f"https://api.telegram.org/bot{config.TELEGRAM_BOT_TOKEN}"


def send_telegram(chat_id: str, message: str) -> bool:
    """Send message via Telegram"""
    api = telegram_api()
    if not api:
        logger.warning("[Alerts] Telegram BOT_TOKEN not configured")
        return False

    try:
        response = requests.post(
            f"{api}/sendMessage",
            data={"chat_id": chat_id, "text": message, "parse_mode": "HTML"},
            timeout=10,
        )
        if response.status_code != 200:
            logger.error(f"[Alerts] Telegram returned {response.status_code}: {response.text[:200]}")
        return response.status_code == 200
    except requests.RequestException as e:
        logger.error(f"[Alerts] Error sending Telegram: {e}")
        return False


# --- Scheduling ---

def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def _at(year: int, month: int, day: int, at: time) -> datetime:
    day = min(day, calendar.monthrange(year, month)[1])
    return datetime(year, month, day, at.hour, at.minute, tzinfo=timezone.utc)


def _previous_month(year: int, month: int):
    return (year - 1, 12) if month == 1 else (year, month - 1)


def last_scheduled(settings, now: datetime) -> Optional[datetime]:
    """
    Most recent scheduled send time at or before `now`.

    immediate: every day at the reminder time
    monthly:   on reminder_day (clamped to the month's last day)
    bi-weekly: on reminder_day and exactly 14 days after it, each month
    """
    frequency = settings.reminder_frequency
    if frequency not in FREQUENCIES:
        return None

    now = _as_utc(now)
    at = settings.reminder_time or time(0, 0)
    day = settings.reminder_day or 1

    if frequency == "immediate":
        today = datetime(now.year, now.month, now.day, at.hour, at.minute, tzinfo=timezone.utc)
        return today if today <= now else today - timedelta(days=1)

    candidates = []
    for year, month in ((now.year, now.month), _previous_month(now.year, now.month)):
        first = _at(year, month, day, at)
        candidates.append(first)
        if frequency == "bi-weekly":
            # Second slot may roll into the next month
            candidates.append(first + timedelta(days=14))
    past = [c for c in candidates if c <= now]
    return max(past) if past else None


def is_reminder_due(settings, now: datetime, last_sent: Optional[datetime] = None) -> bool:
    """True when a reminder is enabled and its latest slot has not been served"""
    if not settings or not settings.reminder_enabled:
        return False
    slot = last_scheduled(settings, now)
    if slot is None:
        return False
    return last_sent is None or _as_utc(last_sent) < slot


# --- Message composition ---

def build_portfolio_summary(investments: List[models.Investment]) -> str:
    """Holdings count, invested value and a table of positions (Telegram HTML)"""
    total_value = sum(inv.purchase_price * inv.shares for inv in investments)

    lines = [
        "📈 <b>Your Investment Portfolio Summary</b>",
        "",
        f"Total number of investments: <b>{len(investments)}</b>",
        f"Total invested value: <b>${total_value:,.2f}</b>",
    ]

    if investments:
        rows = [f"{'Symbol':<8}{'Date':<12}{'Shares':>10}{'Price':>12}{'Value':>14}"]
        for inv in investments:
            rows.append(
                f"{inv.symbol:<8}{inv.purchase_date.isoformat():<12}{inv.shares:>10g}"
                f"{inv.purchase_price:>12,.2f}{inv.purchase_price * inv.shares:>14,.2f}"
            )
        lines += ["", "<pre>" + html.escape("\n".join(rows)) + "</pre>"]

    if config.APP_URL:
        lines += ["", f'<a href="{config.APP_URL}/investments">View Portfolio</a>']
    return "\n".join(lines)


def send_portfolio_reminder(db, settings: models.ReminderSettings) -> bool:
    if not settings.telegram_chat_id:
        logger.warning(f"[Alerts] User {settings.user_id} has no Telegram chat id")
        return False

    investments = db.query(models.Investment).filter(
        models.Investment.user_id == settings.user_id
    ).order_by(models.Investment.purchase_date.asc()).all()

    return send_telegram(settings.telegram_chat_id, build_portfolio_summary(investments))


def send_due_reminders(db, now: Optional[datetime] = None) -> int:
    """Send every due reminder; returns how many were delivered"""
    now = now or datetime.now(timezone.utc)
    sent = 0

    enabled = db.query(models.ReminderSettings).filter(
        models.ReminderSettings.reminder_enabled == True  # noqa: E712
    ).all()
    for settings in enabled:
        if not is_reminder_due(settings, now, settings.last_sent_at):
            continue
        if send_portfolio_reminder(db, settings):
            settings.last_sent_at = now
            db.commit()
            sent += 1
            logger.info(f"[Alerts] Reminder sent to user {settings.user_id}")
    return sent
