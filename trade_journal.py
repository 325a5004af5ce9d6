"""
Trade Journal & Performance Tracker
Records trades and their partial exits, and computes performance metrics
(win rate, P&L, R multiples, equity curve, drawdown) per user.
"""
from fastapi import APIRouter, HTTPException, Depends, Query
from sqlalchemy.orm import Session
from sqlalchemy import desc
from pydantic import BaseModel
from typing import List, Optional
from datetime import date, datetime, timedelta, timezone
import logging

import positions
import price_service
import market_brain
import user_settings
from database import get_db
import models
import auth

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_STRATEGIES = [
    "Base on Base", "Box", "Channel", "Cheat", "CwH", "Flag", "iH&S",
    "Inside Day", "Intraday", "IPO base", "Low Cheat", "Pennant", "Shakeout",
    "Tight Closes", "Trendline", "Triangle", "VCP", "W-pattern", "Wedge",
    "Cup", "Reversal",
]

EXIT_TRIGGERS = ["Breakeven exit", "Market Pressure", "R multiples", "Random"]

# Columns a trade update may change but never set to null
REQUIRED_TRADE_FIELDS = ("symbol", "direction", "market", "entry_date", "quantity", "fees")


# Pydantic Models

class TradeCreate(BaseModel):
    symbol: str
    direction: str = 'long'
    market: str = 'US'
    entry_date: date
    entry_price: Optional[float] = None
    quantity: float
    fees: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    strategy: Optional[str] = None
    notes: Optional[str] = None
    screenshot: Optional[str] = None
    market_conditions: Optional[str] = None
    emotional_state: Optional[str] = None
    trade_setup: Optional[str] = None
    proficiency: Optional[str] = None
    growth_areas: Optional[str] = None
    exit_trigger: Optional[str] = None

class TradeUpdate(BaseModel):
    symbol: Optional[str] = None
    direction: Optional[str] = None
    market: Optional[str] = None
    entry_date: Optional[date] = None
    entry_price: Optional[float] = None
    quantity: Optional[float] = None
    fees: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    strategy: Optional[str] = None
    notes: Optional[str] = None
    screenshot: Optional[str] = None
    market_conditions: Optional[str] = None
    emotional_state: Optional[str] = None
    trade_setup: Optional[str] = None
    proficiency: Optional[str] = None
    growth_areas: Optional[str] = None
    exit_trigger: Optional[str] = None

class ExitCreate(BaseModel):
    exit_date: Optional[date] = None
    exit_price: float
    quantity: float
    fees: float = 0.0
    notes: Optional[str] = None
    exit_trigger: Optional[str] = None

class ExitUpdate(BaseModel):
    exit_date: Optional[date] = None
    exit_price: Optional[float] = None
    quantity: Optional[float] = None
    fees: Optional[float] = None
    notes: Optional[str] = None
    exit_trigger: Optional[str] = None

class ExitImport(ExitCreate):
    exit_date: date

class TradeImport(TradeCreate):
    exits: List[ExitImport] = []

class JournalImport(BaseModel):
    trades: List[TradeImport]

class StrategyCreate(BaseModel):
    name: str


# --- Validation & serialization helpers ---

def _validate_trade_fields(direction: Optional[str], market: Optional[str], quantity: Optional[float]):
    if direction is not None and direction.lower() not in ('long', 'short'):
        raise HTTPException(status_code=400, detail="Invalid direction. Use long or short.")
    if market is not None and market.upper() not in ('US', 'IN'):
        raise HTTPException(status_code=400, detail="Invalid market. Use US or IN.")
    if quantity is not None and quantity <= 0:
        raise HTTPException(status_code=400, detail="Quantity must be greater than zero")


def get_user_trade(db: Session, user: models.User, trade_id: int) -> models.Trade:
    trade = db.query(models.Trade).filter(
        models.Trade.id == trade_id,
        models.Trade.user_id == user.id
    ).first()
    if not trade:
        raise HTTPException(status_code=404, detail="Trade not found")
    return trade


def serialize_exit(trade: models.Trade, e: models.TradeExit) -> dict:
    return {
        "id": e.id,
        "trade_id": e.trade_id,
        "exit_date": e.exit_date.isoformat() if e.exit_date else None,
        "exit_price": e.exit_price,
        "quantity": e.quantity,
        "fees": e.fees or 0,
        "notes": e.notes,
        "exit_trigger": e.exit_trigger,
        "pnl": round(positions.exit_pnl(trade.direction, trade.entry_price, e), 2),
    }


def serialize_trade(trade: models.Trade, total_capital: Optional[float] = None) -> dict:
    rr = positions.risk_reward_ratio(trade)
    return {
        "id": trade.id,
        "symbol": trade.symbol,
        "direction": trade.direction,
        "market": trade.market,
        "entry_date": trade.entry_date.isoformat() if trade.entry_date else None,
        "entry_price": trade.entry_price,
        "quantity": trade.quantity,
        "remaining_quantity": trade.remaining_quantity,
        "average_exit_price": trade.average_exit_price,
        "exit_date": trade.exit_date.isoformat() if trade.exit_date else None,
        "exit_price": trade.exit_price,
        "fees": trade.fees or 0,
        "status": trade.status,
        "stop_loss": trade.stop_loss,
        "take_profit": trade.take_profit,
        "strategy": trade.strategy,
        "notes": trade.notes,
        "screenshot": trade.screenshot,
        "market_conditions": trade.market_conditions,
        "emotional_state": trade.emotional_state,
        "trade_setup": trade.trade_setup,
        "proficiency": trade.proficiency,
        "growth_areas": trade.growth_areas,
        "exit_trigger": trade.exit_trigger,
        "ai_feedback": {
            "performance": trade.ai_feedback_performance,
            "lessons": trade.ai_feedback_lessons,
            "mistakes": trade.ai_feedback_mistakes,
            "generated_at": trade.ai_feedback_generated_at.isoformat() if trade.ai_feedback_generated_at else None,
        },
        "exits": [serialize_exit(trade, e) for e in trade.exits],
        "pnl": round(positions.realized_pnl(trade), 2),
        "pnl_percent": round(positions.pnl_percent(trade), 2),
        "risk_reward": round(rr, 2) if rr is not None else None,
        "position_weight": round(positions.position_weight(trade.entry_price, trade.quantity, total_capital), 2),
    }


def _date_range_start(date_range: str, today: date) -> Optional[date]:
    if date_range == 'today':
        return today
    if date_range == 'week':
        return today - timedelta(days=7)
    if date_range == 'month':
        return today - timedelta(days=30)
    if date_range == 'year':
        return today - timedelta(days=365)
    return None


# --- Performance calculations ---

def compute_metrics(trades: List[models.Trade]) -> dict:
    """Aggregate performance over closed trades"""
    closed = [t for t in trades if t.status == 'closed']
    empty = {
        "total_trades": len(trades), "closed_trades": 0, "win_rate": 0, "total_pnl": 0,
        "average_rr": 0, "profit_factor": 0, "avg_win": 0, "avg_loss": 0,
        "best_trade": None, "worst_trade": None,
    }
    if not closed:
        return empty

    pnls = [(t, positions.realized_pnl(t)) for t in closed]
    wins = [p for _, p in pnls if p > 0]
    losses = [p for _, p in pnls if p < 0]

    total_wins = sum(wins)
    total_losses = abs(sum(losses))
    profit_factor = total_wins / total_losses if total_losses > 0 else (999 if total_wins > 0 else 0)

    rr_sum = sum(rr for rr in (positions.risk_reward_ratio(t) for t in closed) if rr is not None)

    by_pct = sorted(closed, key=lambda t: positions.pnl_percent(t))
    worst, best = by_pct[0], by_pct[-1]

    def brief(t):
        return {"id": t.id, "symbol": t.symbol, "pnl_percent": round(positions.pnl_percent(t), 2)}

    return {
        "total_trades": len(trades),
        "closed_trades": len(closed),
        "win_rate": round(len(wins) / len(closed) * 100, 2),
        "total_pnl": round(sum(p for _, p in pnls), 2),
        "average_rr": round(rr_sum / len(closed), 2),
        "profit_factor": round(profit_factor, 2),
        "avg_win": round(total_wins / len(wins), 2) if wins else 0,
        "avg_loss": round(-total_losses / len(losses), 2) if losses else 0,
        "best_trade": brief(best) if positions.realized_pnl(best) > 0 else None,
        "worst_trade": brief(worst) if positions.realized_pnl(worst) < 0 else None,
    }


def monthly_performance(trades: List[models.Trade], months: int = 6, today: Optional[date] = None) -> List[dict]:
    """P&L, win rate and trade count per calendar month of exit date"""
    today = today or date.today()
    first = today.replace(day=1)
    month_starts = []
    for _ in range(months):
        month_starts.append(first)
        first = (first - timedelta(days=1)).replace(day=1)
    month_starts.reverse()

    result = []
    for start in month_starts:
        month_trades = [
            t for t in trades
            if t.exit_date and (t.exit_date.year, t.exit_date.month) == (start.year, start.month)
        ]
        closed = [t for t in month_trades if t.status == 'closed']
        pnl = sum(positions.realized_pnl(t) for t in month_trades)
        wins = [t for t in closed if positions.realized_pnl(t) > 0]
        result.append({
            "month": start.strftime('%b %Y'),
            "profit_loss": round(pnl, 2),
            "win_rate": round(len(wins) / len(closed) * 100, 2) if closed else 0,
            "trade_count": len(closed),
            "average_return": round(pnl / len(closed), 2) if closed else 0,
        })
    return result


def equity_curve(trades: List[models.Trade], initial_capital: float) -> List[dict]:
    """Cumulative equity starting from capital, ordered by entry date"""
    equity = initial_capital
    points = []
    for t in sorted(trades, key=lambda t: (t.entry_date, t.id or 0)):
        equity += positions.realized_pnl(t)
        points.append({"date": t.entry_date.isoformat(), "equity": round(equity, 2)})
    return points


def drawdown_stats(trades: List[models.Trade], initial_capital: float) -> dict:
    equity = initial_capital
    peak = initial_capital
    max_dd = 0.0
    max_dd_date = None
    dd_start = None
    longest_period = 0
    total_dd = 0.0
    dd_count = 0
    series = []
    recovery_days = None
    awaiting_recovery = None  # (date of max drawdown, peak to regain)

    for t in sorted(trades, key=lambda t: (t.entry_date, t.id or 0)):
        equity += positions.realized_pnl(t)

        if equity > peak:
            peak = equity
            if dd_start is not None:
                longest_period = max(longest_period, (t.entry_date - dd_start).days)
                dd_start = None

        if awaiting_recovery and equity >= awaiting_recovery[1]:
            recovery_days = (t.entry_date - awaiting_recovery[0]).days
            awaiting_recovery = None

        current = (peak - equity) / peak * 100 if peak > 0 else 0.0
        if current > 0:
            if dd_start is None:
                dd_start = t.entry_date
            total_dd += current
            dd_count += 1

        if current > max_dd:
            max_dd = current
            max_dd_date = t.entry_date
            awaiting_recovery = (t.entry_date, peak)
            recovery_days = None

        series.append({"date": t.entry_date.isoformat(), "drawdown": round(-current, 2), "equity": round(equity, 2)})

    return {
        "series": series,
        "max_drawdown": round(max_dd, 2),
        "max_drawdown_date": max_dd_date.isoformat() if max_dd_date else None,
        "average_drawdown": round(total_dd / dd_count, 2) if dd_count else 0,
        "longest_drawdown_days": longest_period,
        "recovery_days": recovery_days,
    }


def daily_realized_pnl(trades: List[models.Trade]) -> List[dict]:
    """Realized P&L grouped by exit date"""
    days = {}
    for t in trades:
        if t.exits:
            for e in t.exits:
                bucket = days.setdefault(e.exit_date, {"pnl": 0.0, "count": 0})
                bucket["pnl"] += positions.exit_pnl(t.direction, t.entry_price, e)
                bucket["count"] += 1
            # Entry fees land on the latest exit, matching realized_pnl
            last = max(t.exits, key=lambda e: e.exit_date)
            days[last.exit_date]["pnl"] -= t.fees or 0
        elif t.exit_date and t.exit_price is not None:
            bucket = days.setdefault(t.exit_date, {"pnl": 0.0, "count": 0})
            bucket["pnl"] += positions.realized_pnl(t)
            bucket["count"] += 1

    return [
        {"date": d.isoformat(), "pnl": round(v["pnl"], 2), "count": v["count"]}
        for d, v in sorted(days.items())
    ]


def strategy_analytics(trades: List[models.Trade]) -> List[dict]:
    """Closed-trade count, wins, win rate and P&L per strategy, best P&L first"""
    stats = {}
    for t in trades:
        if t.status != 'closed' or not t.strategy:
            continue
        pnl = positions.realized_pnl(t)
        s = stats.setdefault(t.strategy, {"strategy": t.strategy, "total_trades": 0, "wins": 0, "profit_loss": 0.0})
        s["total_trades"] += 1
        s["wins"] += 1 if pnl > 0 else 0
        s["profit_loss"] += pnl

    rows = [
        {**s, "profit_loss": round(s["profit_loss"], 2), "win_rate": round(s["wins"] / s["total_trades"] * 100, 2)}
        for s in stats.values()
    ]
    return sorted(rows, key=lambda r: r["profit_loss"], reverse=True)


def aggregate_feedback(trades: List[models.Trade]) -> dict:
    """
    Stored AI feedback across trades, one list per section with duplicate
    lines dropped (first occurrence wins, oldest analysis first).
    """
    analyzed = sorted(
        (t for t in trades if t.ai_feedback_generated_at),
        key=lambda t: t.ai_feedback_generated_at,
    )
    sections = {"performance": [], "lessons": [], "mistakes": []}
    for t in analyzed:
        for kind, text in (("performance", t.ai_feedback_performance),
                           ("lessons", t.ai_feedback_lessons),
                           ("mistakes", t.ai_feedback_mistakes)):
            for line in (text or "").splitlines():
                line = line.strip()
                if line and line not in sections[kind]:
                    sections[kind].append(line)

    closed = [t for t in trades if t.status == 'closed']
    return {
        "analyzed_trades": len(analyzed),
        "pending_trades": sum(1 for t in closed if not t.ai_feedback_generated_at),
        "overall_performance": sections["performance"],
        "key_lessons": sections["lessons"],
        "improvement_areas": sections["mistakes"],
        "last_analyzed_at": analyzed[-1].ai_feedback_generated_at.isoformat() if analyzed else None,
    }


def _user_trades(db: Session, user: models.User) -> List[models.Trade]:
    return db.query(models.Trade).filter(models.Trade.user_id == user.id).all()


def _capital(db: Session, user: models.User) -> float:
    return user_settings.get_or_create_settings(db, user.id).total_capital or 0.0


# --- API Endpoints ---

@router.post("/api/trades")
def add_trade(trade_in: TradeCreate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Log a new open position"""
    _validate_trade_fields(trade_in.direction, trade_in.market, trade_in.quantity)

    trade = models.Trade(
        user_id=current_user.id,
        **trade_in.model_dump(exclude={'symbol', 'direction', 'market'}),
        symbol=trade_in.symbol.upper().strip(),
        direction=trade_in.direction.lower(),
        market=trade_in.market.upper(),
        remaining_quantity=trade_in.quantity,
        status='open',
    )
    db.add(trade)
    db.commit()
    db.refresh(trade)
    logger.info(f"[Trade Journal] User {current_user.id} opened {trade.direction} {trade.symbol} x{trade.quantity}")
    return serialize_trade(trade)


@router.get("/api/trades")
def get_trades(
    symbol: Optional[str] = None,
    status: Optional[str] = None,
    strategy: Optional[str] = None,
    direction: Optional[str] = None,
    market: Optional[str] = None,
    date_range: str = Query('all', pattern='^(today|week|month|year|all)$'),
    limit: int = 500,
    current_user: models.User = Depends(auth.get_current_user),
    db: Session = Depends(get_db)
):
    """List trades, newest entry first"""
    query = db.query(models.Trade).filter(models.Trade.user_id == current_user.id)

    if symbol:
        query = query.filter(models.Trade.symbol == symbol.upper())
    if status:
        query = query.filter(models.Trade.status == status.lower())
    if strategy:
        query = query.filter(models.Trade.strategy == strategy)
    if direction:
        query = query.filter(models.Trade.direction == direction.lower())
    if market:
        query = query.filter(models.Trade.market == market.upper())

    start = _date_range_start(date_range, date.today())
    if start:
        query = query.filter(models.Trade.entry_date >= start)

    trades = query.order_by(desc(models.Trade.entry_date), desc(models.Trade.id)).limit(limit).all()
    capital = _capital(db, current_user)
    return {"trades": [serialize_trade(t, capital) for t in trades]}


@router.get("/api/trades/open-positions")
def get_open_positions(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Open positions with exposure and risk-to-stop summary"""
    trades = db.query(models.Trade).filter(
        models.Trade.user_id == current_user.id,
        models.Trade.status == 'open'
    ).order_by(desc(models.Trade.entry_date)).all()

    capital = _capital(db, current_user)
    return {
        "positions": [serialize_trade(t, capital) for t in trades],
        "summary": positions.open_positions_summary(trades, capital),
    }


@router.get("/api/trades/metrics")
def get_metrics(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return compute_metrics(_user_trades(db, current_user))


@router.get("/api/trades/monthly")
def get_monthly(months: int = Query(6, ge=1, le=36), current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return monthly_performance(_user_trades(db, current_user), months)


@router.get("/api/trades/equity-curve")
def get_equity_curve(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    capital = _capital(db, current_user)
    return {"initial_capital": capital, "points": equity_curve(_user_trades(db, current_user), capital)}


@router.get("/api/trades/drawdown")
def get_drawdown(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    capital = _capital(db, current_user)
    return drawdown_stats(_user_trades(db, current_user), capital)


@router.get("/api/trades/calendar")
def get_calendar_data(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Daily realized P&L for calendar visualization"""
    return daily_realized_pnl(_user_trades(db, current_user))


@router.get("/api/trades/strategy-analytics")
def get_strategy_analytics(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return strategy_analytics(_user_trades(db, current_user))


@router.get("/api/trades/feedback-summary")
def get_feedback_summary(refine: bool = False, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Lessons across all analyzed trades; `refine` condenses each section with Gemini"""
    summary = aggregate_feedback(_user_trades(db, current_user))
    if refine:
        try:
            for kind, key in (("performance", "overall_performance"), ("lessons", "key_lessons"), ("mistakes", "improvement_areas")):
                summary[key] = market_brain.refine_points(summary[key], kind)
        except market_brain.FeedbackError as e:
            raise HTTPException(status_code=502, detail=str(e))
    return summary


@router.get("/api/trades/export")
def export_trades(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    trades = db.query(models.Trade).filter(
        models.Trade.user_id == current_user.id
    ).order_by(models.Trade.entry_date.asc()).all()
    return {"trades": [serialize_trade(t) for t in trades]}


@router.post("/api/trades/import")
def import_trades(payload: JournalImport, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Import trades (with exits) exported by /api/trades/export"""
    imported = 0
    try:
        for item in payload.trades:
            _validate_trade_fields(item.direction, item.market, item.quantity)
            trade = models.Trade(
                user_id=current_user.id,
                **item.model_dump(exclude={'symbol', 'direction', 'market', 'exits'}),
                symbol=item.symbol.upper().strip(),
                direction=item.direction.lower(),
                market=item.market.upper(),
            )
            exits = []
            for ex in item.exits:
                positions.validate_exit(trade, exits, ex.quantity, ex.exit_price, ex.fees)
                exits.append(models.TradeExit(user_id=current_user.id, **ex.model_dump()))
            trade.exits = exits
            positions.apply_exits(trade, exits)
            db.add(trade)
            imported += 1
        db.commit()
    except positions.ExitValidationError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=f"Trade {imported + 1}: {e}")
    except HTTPException:
        db.rollback()
        raise

    logger.info(f"[Trade Journal] Imported {imported} trades for user {current_user.id}")
    return {"status": "success", "imported": imported}


@router.get("/api/trades/{trade_id}")
def get_trade(trade_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    trade = get_user_trade(db, current_user, trade_id)
    return serialize_trade(trade, _capital(db, current_user))


@router.put("/api/trades/{trade_id}")
def update_trade(trade_id: int, trade_update: TradeUpdate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Update specific fields of a trade"""
    trade = get_user_trade(db, current_user, trade_id)
    _validate_trade_fields(trade_update.direction, trade_update.market, trade_update.quantity)

    changes = trade_update.model_dump(exclude_unset=True)
    if not changes:
        return {"status": "ignored", "message": "No fields to update", "trade": serialize_trade(trade)}

    cleared = sorted(f for f in REQUIRED_TRADE_FIELDS if f in changes and changes[f] is None)
    if cleared:
        raise HTTPException(status_code=400, detail=f"Cannot clear required fields: {', '.join(cleared)}")

    if 'quantity' in changes and changes['quantity'] + positions.EPSILON < positions.total_exited(trade.exits):
        raise HTTPException(status_code=400, detail="Quantity cannot be below the already exited quantity")

    for field, value in changes.items():
        if field == 'symbol' and value:
            value = value.upper().strip()
        elif field == 'direction' and value:
            value = value.lower()
        elif field == 'market' and value:
            value = value.upper()
        setattr(trade, field, value)

    positions.apply_exits(trade, trade.exits)
    db.commit()
    db.refresh(trade)
    return {"status": "success", "message": "Trade updated", "trade": serialize_trade(trade)}


@router.delete("/api/trades/{trade_id}")
def delete_trade(trade_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    trade = get_user_trade(db, current_user, trade_id)
    # SQLite does not enforce ON DELETE SET NULL without the foreign_keys pragma
    db.query(models.Note).filter(models.Note.trade_id == trade.id).update({models.Note.trade_id: None})
    db.delete(trade)
    db.commit()
    return {"status": "deleted", "trade_id": trade_id}


# --- Exits ---

@router.post("/api/trades/{trade_id}/exits")
def add_exit(trade_id: int, exit_in: ExitCreate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Record a partial or full exit against an open position"""
    trade = get_user_trade(db, current_user, trade_id)

    try:
        positions.validate_exit(trade, trade.exits, exit_in.quantity, exit_in.exit_price, exit_in.fees)
    except positions.ExitValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    new_exit = models.TradeExit(
        trade_id=trade.id,
        user_id=current_user.id,
        exit_date=exit_in.exit_date or date.today(),
        exit_price=exit_in.exit_price,
        quantity=exit_in.quantity,
        fees=exit_in.fees,
        notes=exit_in.notes,
        exit_trigger=exit_in.exit_trigger,
    )
    trade.exits.append(new_exit)
    positions.apply_exits(trade, trade.exits)
    db.commit()
    db.refresh(trade)

    logger.info(f"[Trade Journal] Exit on trade {trade.id}: {exit_in.quantity} @ {exit_in.exit_price} -> {trade.status}")
    return serialize_trade(trade)


def _get_trade_exit(trade: models.Trade, exit_id: int) -> models.TradeExit:
    found = next((e for e in trade.exits if e.id == exit_id), None)
    if not found:
        raise HTTPException(status_code=404, detail="Exit not found")
    return found


@router.put("/api/trades/{trade_id}/exits/{exit_id}")
def update_exit(trade_id: int, exit_id: int, exit_update: ExitUpdate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    trade = get_user_trade(db, current_user, trade_id)
    existing = _get_trade_exit(trade, exit_id)
    changes = exit_update.model_dump(exclude_unset=True)

    try:
        positions.validate_exit(
            trade, trade.exits,
            changes.get('quantity', existing.quantity),
            changes.get('exit_price', existing.exit_price),
            changes.get('fees', existing.fees),
            replacing_id=existing.id,
        )
    except positions.ExitValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    for field, value in changes.items():
        if value is not None:
            setattr(existing, field, value)

    positions.apply_exits(trade, trade.exits)
    db.commit()
    db.refresh(trade)
    return serialize_trade(trade)


@router.delete("/api/trades/{trade_id}/exits/{exit_id}")
def delete_exit(trade_id: int, exit_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Remove an exit; removing the last one reopens the trade"""
    trade = get_user_trade(db, current_user, trade_id)
    existing = _get_trade_exit(trade, exit_id)

    trade.exits.remove(existing)
    positions.apply_exits(trade, trade.exits)
    db.commit()
    db.refresh(trade)
    return serialize_trade(trade)


# --- AI feedback & chart ---

@router.post("/api/trades/{trade_id}/feedback")
def generate_feedback(trade_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    trade = get_user_trade(db, current_user, trade_id)
    if not trade.entry_price or not trade.exit_price:
        raise HTTPException(status_code=400, detail="Trade must have both entry and exit prices")

    try:
        feedback = market_brain.generate_trade_feedback(trade)
    except market_brain.FeedbackError as e:
        raise HTTPException(status_code=502, detail=str(e))

    trade.ai_feedback_performance = feedback['performance']
    trade.ai_feedback_lessons = feedback['lessons']
    trade.ai_feedback_mistakes = feedback['mistakes']
    trade.ai_feedback_generated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(trade)
    return serialize_trade(trade)["ai_feedback"]


@router.get("/api/trades/{trade_id}/chart")
def get_trade_chart(trade_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Daily candles around the trade's holding period"""
    trade = get_user_trade(db, current_user, trade_id)
    rng = price_service.chart_date_range(trade.entry_date, trade.exit_date)
    try:
        candles = price_service.get_history(trade.symbol, rng["start_date"], rng["end_date"], trade.market)
    except price_service.PriceUnavailableError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "symbol": trade.symbol,
        "start_date": rng["start_date"].isoformat(),
        "end_date": rng["end_date"].isoformat(),
        "candles": candles,
    }


# --- Strategies ---

def ensure_default_strategies(db: Session, user_id: int):
    if db.query(models.Strategy).filter(models.Strategy.user_id == user_id).first():
        return
    db.add_all([models.Strategy(user_id=user_id, name=name) for name in DEFAULT_STRATEGIES])
    db.commit()


@router.get("/api/strategies")
def list_strategies(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    ensure_default_strategies(db, current_user.id)
    rows = db.query(models.Strategy).filter(
        models.Strategy.user_id == current_user.id
    ).order_by(models.Strategy.name).all()
    return [{"id": s.id, "name": s.name} for s in rows]


@router.post("/api/strategies")
def add_strategy(strategy_in: StrategyCreate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    name = strategy_in.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Strategy name is required")
    ensure_default_strategies(db, current_user.id)

    exists = db.query(models.Strategy).filter(
        models.Strategy.user_id == current_user.id,
        models.Strategy.name == name
    ).first()
    if exists:
        raise HTTPException(status_code=400, detail="Strategy already exists")

    strategy = models.Strategy(user_id=current_user.id, name=name)
    db.add(strategy)
    db.commit()
    db.refresh(strategy)
    return {"id": strategy.id, "name": strategy.name}


@router.delete("/api/strategies/{strategy_id}")
def delete_strategy(strategy_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    strategy = db.query(models.Strategy).filter(
        models.Strategy.id == strategy_id,
        models.Strategy.user_id == current_user.id
    ).first()
    if not strategy:
        raise HTTPException(status_code=404, detail="Strategy not found")
    db.delete(strategy)
    db.commit()
    return {"status": "deleted", "strategy_id": strategy_id}


@router.get("/api/exit-triggers")
def list_exit_triggers(current_user: models.User = Depends(auth.get_current_user)):
    return EXIT_TRIGGERS
