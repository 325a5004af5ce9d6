"""
Investment Portfolio
Long-term holdings valued at current prices and compared against the
S&P 500 over the same holding period.
"""
from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Dict, List, Optional
from datetime import date, timedelta
import logging

import pandas as pd

import config
import price_service
from database import get_db
import models
import auth

logger = logging.getLogger(__name__)

router = APIRouter()

SMA_WINDOW = 200
SMA_SYMBOLS = ["VOO", "QQQM"]
REQUIRED_INVESTMENT_FIELDS = ("symbol", "purchase_date", "purchase_price", "shares", "commission")


class InvestmentCreate(BaseModel):
    symbol: str
    purchase_date: date
    purchase_price: float
    shares: float
    commission: float = 0.0
    notes: Optional[str] = None

class InvestmentUpdate(BaseModel):
    symbol: Optional[str] = None
    purchase_date: Optional[date] = None
    purchase_price: Optional[float] = None
    shares: Optional[float] = None
    commission: Optional[float] = None
    notes: Optional[str] = None


def _validate_amounts(purchase_price=None, shares=None, commission=None):
    if purchase_price is not None and purchase_price <= 0:
        raise HTTPException(status_code=400, detail="Purchase price must be greater than zero")
    if shares is not None and shares <= 0:
        raise HTTPException(status_code=400, detail="Shares must be greater than zero")
    if commission is not None and commission < 0:
        raise HTTPException(status_code=400, detail="Commission cannot be negative")


# --- Valuation ---

def total_cost(inv) -> float:
    return inv.purchase_price * inv.shares + (inv.commission or 0)


def value_investment(inv, current_price: float, benchmark_start: Optional[float] = None,
                     benchmark_now: Optional[float] = None) -> dict:
    """Current value, gain/loss and benchmark return for one holding"""
    cost = total_cost(inv)
    value = current_price * inv.shares
    gain = value - cost

    benchmark_pct = None
    if benchmark_start and benchmark_now:
        benchmark_pct = round((benchmark_now - benchmark_start) / benchmark_start * 100, 2)

    return {
        "id": inv.id,
        "symbol": inv.symbol,
        "purchase_date": inv.purchase_date.isoformat(),
        "purchase_price": inv.purchase_price,
        "shares": inv.shares,
        "commission": inv.commission or 0,
        "notes": inv.notes,
        "current_price": current_price,
        "current_value": round(value, 2),
        "total_cost": round(cost, 2),
        "gain_loss": round(gain, 2),
        "gain_loss_percentage": round(gain / cost * 100, 2) if cost else 0,
        "benchmark_return_percentage": benchmark_pct,
    }


def summarize(valued: List[dict], benchmark_start: Optional[float], benchmark_now: Optional[float]) -> dict:
    """Portfolio totals; benchmark return runs from the oldest purchase date"""
    if not valued:
        return {
            "total_value": 0, "total_cost": 0, "total_gain_loss": 0,
            "total_gain_loss_percentage": 0, "sp500_comparison_percentage": 0,
            "relative_performance": 0, "holdings": 0,
        }

    value = sum(v["current_value"] for v in valued)
    cost = sum(v["total_cost"] for v in valued)
    gain = value - cost
    gain_pct = gain / cost * 100 if cost else 0

    sp500_pct = 0.0
    if benchmark_start and benchmark_now:
        sp500_pct = (benchmark_now - benchmark_start) / benchmark_start * 100

    return {
        "total_value": round(value, 2),
        "total_cost": round(cost, 2),
        "total_gain_loss": round(gain, 2),
        "total_gain_loss_percentage": round(gain_pct, 2),
        "sp500_comparison_percentage": round(sp500_pct, 2),
        "relative_performance": round(gain_pct - sp500_pct, 2),
        "holdings": len(valued),
    }


def portfolio_value_series(investments, closes: pd.DataFrame) -> List[dict]:
    """
    Daily portfolio value from a frame of closes (index: dates, one column
    per symbol). A holding only counts from its purchase date on.
    """
    if closes is None or closes.empty or not investments:
        return []

    closes = closes.sort_index().ffill()
    series = []
    for day, row in closes.iterrows():
        total = 0.0
        for inv in investments:
            if inv.purchase_date > day or inv.symbol not in row.index:
                continue
            price = row[inv.symbol]
            if pd.isna(price):
                continue
            total += float(price) * inv.shares
        series.append({"date": day.isoformat(), "value": round(total, 2)})
    return series


def market_position(closes: pd.Series, window: int = SMA_WINDOW) -> Optional[dict]:
    """Last close relative to its simple moving average"""
    closes = closes.dropna()
    if len(closes) < window:
        return None
    sma = float(closes.rolling(window).mean().iloc[-1])
    current = float(closes.iloc[-1])
    return {
        "current_price": round(current, 2),
        "sma": round(sma, 2),
        "is_above_sma": current > sma,
        "sma_distance": round((current - sma) / sma * 100, 2),
    }


def analyze_portfolio(valued: List[dict], sma_positions: Dict[str, Optional[dict]]) -> dict:
    """Diversification, ranking by gain % and buy-the-dip recommendations"""
    if not valued:
        recommendations = ["Consider adding VOO or QQQM to start building your portfolio."]
        diversification = 0
    else:
        unique_symbols = len({v["symbol"] for v in valued})
        diversification = unique_symbols / len(valued) * 100
        recommendations = []

    if valued:
        for symbol, pos in sma_positions.items():
            if pos and not pos["is_above_sma"]:
                recommendations.append(
                    f"{symbol} is currently {abs(pos['sma_distance']):.1f}% below its {SMA_WINDOW} SMA - Consider a buying opportunity"
                )
        if not recommendations:
            recommendations.append(
                f"Both ETFs are currently above their {SMA_WINDOW} SMA. Monitor for potential future buying opportunities."
            )

    ranked = sorted(valued, key=lambda v: v["gain_loss_percentage"], reverse=True)
    return {
        "diversification_score": round(diversification, 1),
        "top_performers": [{"symbol": v["symbol"], "gain_loss_percentage": v["gain_loss_percentage"]} for v in ranked],
        "recommendations": recommendations,
        "sma_positions": sma_positions,
    }


# --- Benchmark & price lookups ---

def get_benchmark_value(db: Session, on_date: date) -> Optional[float]:
    """Benchmark close for a date, stored in benchmark_values once fetched"""
    row = db.query(models.BenchmarkValue).filter(
        models.BenchmarkValue.symbol == config.BENCHMARK_SYMBOL,
        models.BenchmarkValue.date == on_date
    ).first()
    if row:
        return row.value

    value = price_service.get_benchmark_close(on_date)
    if value is None:
        logger.warning(f"[Investments] No benchmark close for {on_date}")
        return None

    db.add(models.BenchmarkValue(symbol=config.BENCHMARK_SYMBOL, date=on_date, value=value))
    db.commit()
    return value


def current_benchmark() -> Optional[float]:
    try:
        return float(price_service.get_benchmark_price()['price'])
    except price_service.PriceUnavailableError as e:
        logger.warning(f"[Investments] {e}")
        return None


def current_price_for(db: Session, inv) -> float:
    """Cached current price; falls back to the purchase price when no quote exists"""
    try:
        return price_service.get_cached_price(db, inv.symbol)
    except price_service.PriceUnavailableError as e:
        logger.warning(f"[Investments] {e}, using purchase price")
        return inv.purchase_price


def _user_investments(db: Session, user: models.User) -> List[models.Investment]:
    return db.query(models.Investment).filter(
        models.Investment.user_id == user.id
    ).order_by(models.Investment.purchase_date.asc()).all()


def _valued_holdings(db: Session, investments) -> List[dict]:
    benchmark_now = current_benchmark() if investments else None
    valued = []
    for inv in investments:
        valued.append(value_investment(
            inv,
            current_price_for(db, inv),
            benchmark_start=get_benchmark_value(db, inv.purchase_date),
            benchmark_now=benchmark_now,
        ))
    return valued


def _get_user_investment(db: Session, user: models.User, investment_id: int) -> models.Investment:
    inv = db.query(models.Investment).filter(
        models.Investment.id == investment_id,
        models.Investment.user_id == user.id
    ).first()
    if not inv:
        raise HTTPException(status_code=404, detail="Investment not found")
    return inv


# --- API Endpoints ---

@router.post("/api/investments")
def add_investment(inv_in: InvestmentCreate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    _validate_amounts(inv_in.purchase_price, inv_in.shares, inv_in.commission)

    inv = models.Investment(
        user_id=current_user.id,
        symbol=inv_in.symbol.upper().strip(),
        purchase_date=inv_in.purchase_date,
        purchase_price=inv_in.purchase_price,
        shares=inv_in.shares,
        commission=inv_in.commission,
        notes=inv_in.notes,
    )
    db.add(inv)
    db.commit()
    db.refresh(inv)

    get_benchmark_value(db, inv.purchase_date)
    logger.info(f"[Investments] User {current_user.id} added {inv.shares} {inv.symbol} @ {inv.purchase_price}")
    return {
        "id": inv.id,
        "symbol": inv.symbol,
        "purchase_date": inv.purchase_date.isoformat(),
        "purchase_price": inv.purchase_price,
        "shares": inv.shares,
        "commission": inv.commission,
        "notes": inv.notes,
        "total_cost": round(total_cost(inv), 2),
    }


@router.get("/api/investments")
def list_investments(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Holdings with current valuation"""
    return _valued_holdings(db, _user_investments(db, current_user))


@router.get("/api/investments/summary")
def get_summary(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    investments = _user_investments(db, current_user)
    valued = _valued_holdings(db, investments)
    if not investments:
        return summarize([], None, None)

    oldest = min(inv.purchase_date for inv in investments)
    return summarize(valued, get_benchmark_value(db, oldest), current_benchmark())


@router.get("/api/investments/history")
def get_history(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    investments = _user_investments(db, current_user)
    if not investments:
        return []

    oldest = min(inv.purchase_date for inv in investments)
    try:
        closes = price_service.get_close_history([inv.symbol for inv in investments], oldest)
    except Exception as e:
        logger.error(f"[Investments] History download failed: {e}")
        raise HTTPException(status_code=502, detail="Price history unavailable")
    return portfolio_value_series(investments, closes)


@router.get("/api/investments/analytics")
def get_analytics(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    valued = _valued_holdings(db, _user_investments(db, current_user))

    start = date.today() - timedelta(days=SMA_WINDOW * 2)
    sma_positions = {}
    for symbol in SMA_SYMBOLS:
        try:
            closes = price_service.get_close_history([symbol], start)
            sma_positions[symbol] = market_position(closes[symbol]) if symbol in closes else None
        except Exception as e:
            logger.warning(f"[Investments] SMA check failed for {symbol}: {e}")
            sma_positions[symbol] = None

    return analyze_portfolio(valued, sma_positions)


@router.put("/api/investments/{investment_id}")
def update_investment(investment_id: int, inv_update: InvestmentUpdate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    inv = _get_user_investment(db, current_user, investment_id)
    changes = inv_update.model_dump(exclude_unset=True)
    cleared = sorted(f for f in REQUIRED_INVESTMENT_FIELDS if f in changes and changes[f] is None)
    if cleared:
        raise HTTPException(status_code=400, detail=f"Cannot clear required fields: {', '.join(cleared)}")
    _validate_amounts(changes.get('purchase_price'), changes.get('shares'), changes.get('commission'))

    for field, value in changes.items():
        if field == 'symbol' and value:
            value = value.upper().strip()
        setattr(inv, field, value)
    db.commit()
    db.refresh(inv)

    if 'purchase_date' in changes:
        get_benchmark_value(db, inv.purchase_date)
    return {"status": "success", "id": inv.id, "total_cost": round(total_cost(inv), 2)}


@router.delete("/api/investments/{investment_id}")
def delete_investment(investment_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    inv = _get_user_investment(db, current_user, investment_id)
    db.delete(inv)
    db.commit()
    return {"status": "deleted", "investment_id": investment_id}
