"""
Portfolio Snapshots Module
Daily portfolio value and benchmark tracking per user.
Snapshots are taken by the scheduler in main.py or on demand.
"""

from datetime import date, timedelta
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import auth
import investments
import models
from database import SessionLocal, get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/portfolio", tags=["portfolio"])


def serialize_snapshot(s: models.PortfolioSnapshot) -> dict:
    return {
        "date": s.date.isoformat(),
        "total_value": s.total_value,
        "total_cost": s.total_cost,
        "total_gain_loss": s.total_gain_loss,
        "total_gain_loss_pct": s.total_gain_loss_pct,
        "benchmark_value": s.benchmark_value,
    }


def _snapshot_user(db: Session, user: models.User, on_date: date, benchmark: Optional[float]) -> dict:
    holdings = db.query(models.Investment).filter(models.Investment.user_id == user.id).all()
    valued = [investments.value_investment(inv, investments.current_price_for(db, inv)) for inv in holdings]

    total_value = sum(v["current_value"] for v in valued)
    total_cost = sum(v["total_cost"] for v in valued)
    gain = total_value - total_cost
    gain_pct = gain / total_cost * 100 if total_cost > 0 else 0

    snapshot = db.query(models.PortfolioSnapshot).filter(
        models.PortfolioSnapshot.user_id == user.id,
        models.PortfolioSnapshot.date == on_date
    ).first()
    if snapshot is None:
        snapshot = models.PortfolioSnapshot(user_id=user.id, date=on_date)
        db.add(snapshot)

    snapshot.total_value = round(total_value, 2)
    snapshot.total_cost = round(total_cost, 2)
    snapshot.total_gain_loss = round(gain, 2)
    snapshot.total_gain_loss_pct = round(gain_pct, 2)
    snapshot.benchmark_value = benchmark
    db.commit()

    logger.info(f"[Snapshot] User {user.id}: value=${total_value:.2f} cost=${total_cost:.2f}")
    return serialize_snapshot(snapshot)


def take_snapshot(user_id: int = None, db: Session = None, on_date: Optional[date] = None) -> List[dict]:
    """
    Take a snapshot of the portfolio state.

    Args:
        user_id: ID of a specific user. If None, snapshots ALL users (scheduled runs).
        db: Database session. If None, a new one is opened and closed here.
    """
    close_db = False
    if db is None:
        db = SessionLocal()
        close_db = True

    try:
        query = db.query(models.User)
        if user_id is not None:
            query = query.filter(models.User.id == user_id)
        users = query.all()

        on_date = on_date or date.today()
        benchmark = investments.current_benchmark() if users else None
        results = []
        for user in users:
            try:
                results.append(_snapshot_user(db, user, on_date, benchmark))
            except Exception as e:
                db.rollback()
                logger.error(f"[Snapshot] Failed for user {user.id}: {e}")
        return results
    finally:
        if close_db:
            db.close()


def with_daily_change(snapshots: List[dict]) -> List[dict]:
    """Adds value change against the previous snapshot"""
    rows = []
    previous = None
    for s in snapshots:
        row = dict(s)
        if previous is None:
            row["daily_change"] = 0.0
            row["daily_change_pct"] = 0.0
        else:
            change = s["total_value"] - previous["total_value"]
            row["daily_change"] = round(change, 2)
            row["daily_change_pct"] = round(change / previous["total_value"] * 100, 2) if previous["total_value"] else 0.0
        rows.append(row)
        previous = s
    return rows


def get_history(user_id: int, days: int = 365, db: Session = None) -> List[dict]:
    """Snapshots of the last `days` days, oldest first"""
    close_db = False
    if db is None:
        db = SessionLocal()
        close_db = True
    try:
        cutoff = date.today() - timedelta(days=days)
        rows = db.query(models.PortfolioSnapshot).filter(
            models.PortfolioSnapshot.user_id == user_id,
            models.PortfolioSnapshot.date >= cutoff
        ).order_by(models.PortfolioSnapshot.date.asc()).all()
        return with_daily_change([serialize_snapshot(r) for r in rows])
    finally:
        if close_db:
            db.close()


@router.get("/snapshots")
def get_portfolio_snapshots(days: int = 365, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Portfolio history for charts"""
    return get_history(current_user.id, days, db)


@router.post("/snapshot/take")
def take_manual_snapshot(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    results = take_snapshot(current_user.id, db)
    return results[0] if results else {}
