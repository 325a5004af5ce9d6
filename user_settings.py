"""
User Settings
Capital and risk-per-trade settings, position sizing and reminder preferences.
"""
from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional
from datetime import time
import logging

import alerts
import positions
from database import get_db
import models
import auth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


class SettingsUpdate(BaseModel):
    total_capital: Optional[float] = None
    risk_per_trade: Optional[float] = None

class PositionSizeRequest(BaseModel):
    entry_price: float
    stop_loss: float
    total_capital: Optional[float] = None
    risk_percent: Optional[float] = None

class ReminderUpdate(BaseModel):
    reminder_enabled: Optional[bool] = None
    reminder_frequency: Optional[str] = None
    reminder_day: Optional[int] = None
    reminder_time: Optional[time] = None
    telegram_chat_id: Optional[str] = None


def get_or_create_settings(db: Session, user_id: int) -> models.UserSettings:
    settings = db.query(models.UserSettings).filter(models.UserSettings.user_id == user_id).first()
    if not settings:
        settings = models.UserSettings(user_id=user_id, total_capital=0.0, risk_per_trade=1.0)
        db.add(settings)
        db.commit()
        db.refresh(settings)
    return settings


def get_or_create_reminders(db: Session, user_id: int) -> models.ReminderSettings:
    reminders = db.query(models.ReminderSettings).filter(models.ReminderSettings.user_id == user_id).first()
    if not reminders:
        reminders = models.ReminderSettings(user_id=user_id, reminder_enabled=False)
        db.add(reminders)
        db.commit()
        db.refresh(reminders)
    return reminders


def serialize_settings(s: models.UserSettings) -> dict:
    return {"total_capital": s.total_capital, "risk_per_trade": s.risk_per_trade}


def serialize_reminders(r: models.ReminderSettings) -> dict:
    return {
        "reminder_enabled": bool(r.reminder_enabled),
        "reminder_frequency": r.reminder_frequency,
        "reminder_day": r.reminder_day,
        "reminder_time": r.reminder_time.strftime('%H:%M') if r.reminder_time else None,
        "telegram_chat_id": r.telegram_chat_id,
        "last_sent_at": r.last_sent_at.isoformat() if r.last_sent_at else None,
    }


@router.get("")
def get_settings(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return serialize_settings(get_or_create_settings(db, current_user.id))


@router.put("")
def update_settings(update: SettingsUpdate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    if update.total_capital is not None and update.total_capital < 0:
        raise HTTPException(status_code=400, detail="Total capital cannot be negative")
    if update.risk_per_trade is not None and not (0 < update.risk_per_trade <= 100):
        raise HTTPException(status_code=400, detail="Risk per trade must be between 0 and 100")

    settings = get_or_create_settings(db, current_user.id)
    for field, value in update.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(settings, field, value)
    db.commit()
    db.refresh(settings)
    logger.info(f"[Settings] User {current_user.id}: capital={settings.total_capital} risk={settings.risk_per_trade}%")
    return serialize_settings(settings)


@router.post("/position-size")
def calculate_position_size(req: PositionSizeRequest, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Shares to buy so that hitting the stop loses at most the configured risk"""
    settings = get_or_create_settings(db, current_user.id)
    capital = req.total_capital if req.total_capital is not None else settings.total_capital
    risk = req.risk_percent if req.risk_percent is not None else settings.risk_per_trade

    result = positions.position_size(capital, risk, req.entry_price, req.stop_loss)
    if result is None:
        raise HTTPException(
            status_code=400,
            detail="Position size needs total capital, an entry price and a stop loss different from entry"
        )
    return {**result, "total_capital": capital, "risk_percent": risk}


@router.get("/reminders")
def get_reminders(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return serialize_reminders(get_or_create_reminders(db, current_user.id))


@router.put("/reminders")
def update_reminders(update: ReminderUpdate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    changes = update.model_dump(exclude_unset=True)
    if "reminder_enabled" in changes and changes["reminder_enabled"] is None:
        raise HTTPException(status_code=400, detail="reminder_enabled must be true or false")
    if changes.get('reminder_frequency') is not None and changes['reminder_frequency'] not in alerts.FREQUENCIES:
        raise HTTPException(status_code=400, detail=f"Invalid frequency. Use one of: {', '.join(alerts.FREQUENCIES)}")
    if changes.get('reminder_day') is not None and not (1 <= changes['reminder_day'] <= 31):
        raise HTTPException(status_code=400, detail="Reminder day must be between 1 and 31")

    reminders = get_or_create_reminders(db, current_user.id)
    for field, value in changes.items():
        setattr(reminders, field, value)

    if reminders.reminder_enabled and not reminders.reminder_frequency:
        raise HTTPException(status_code=400, detail="Choose a reminder frequency before enabling reminders")

    db.commit()
    db.refresh(reminders)
    return serialize_reminders(reminders)


@router.post("/reminders/test")
def send_test_reminder(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    reminders = get_or_create_reminders(db, current_user.id)
    if not reminders.telegram_chat_id:
        raise HTTPException(status_code=400, detail="Set a Telegram chat id first")
    if not alerts.send_portfolio_reminder(db, reminders):
        raise HTTPException(status_code=502, detail="Failed to deliver Telegram message")
    return {"status": "sent"}
