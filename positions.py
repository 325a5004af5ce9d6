"""
Position & Exit Accounting
Partial exits against an open position, weighted-average exit price,
remaining-quantity tracking and realized P&L per exit.

Functions take ORM rows (models.Trade / models.TradeExit) or any object
exposing the same attributes, so they can run over plain records too.
"""
import math
from typing import Iterable, List, Optional

import config

# Float tolerance for quantity bookkeeping
EPSILON = 1e-9


class ExitValidationError(ValueError):
    """Raised when an exit cannot be recorded against a trade"""


def direction_multiplier(direction: Optional[str]) -> int:
    return -1 if (direction or "long").lower() == "short" else 1


def exit_pnl(direction: str, entry_price: float, exit) -> float:
    """Realized P&L of a single exit, net of the exit's fees"""
    gross = direction_multiplier(direction) * (exit.exit_price - (entry_price or 0)) * exit.quantity
    return gross - (exit.fees or 0)


def total_exited(exits: Iterable) -> float:
    return sum((e.quantity or 0) for e in exits)


def remaining_quantity(quantity: float, exits: Iterable) -> float:
    remaining = (quantity or 0) - total_exited(exits)
    return 0.0 if remaining < EPSILON else remaining


def average_exit_price(exits: Iterable) -> Optional[float]:
    """Quantity-weighted average exit price, None without exits"""
    exits = list(exits)
    qty = total_exited(exits)
    if not exits or qty <= 0:
        return None
    return sum(e.exit_price * e.quantity for e in exits) / qty


def validate_exit(trade, exits: Iterable, quantity: float, exit_price: float,
                  fees: float = 0.0, replacing_id: Optional[int] = None):
    """
    Check a new (or edited) exit against the trade's open quantity.

    When editing, pass the id of the exit being replaced so its current
    quantity is returned to the pool before checking.
    """
    if trade.entry_price is None:
        raise ExitValidationError("Trade has no entry price")
    if quantity is None or quantity <= 0:
        raise ExitValidationError("Exit quantity must be greater than zero")
    if exit_price is None or exit_price < 0:
        raise ExitValidationError("Exit price cannot be negative")
    if fees is not None and fees < 0:
        raise ExitValidationError("Exit fees cannot be negative")

    others = [e for e in exits if replacing_id is None or e.id != replacing_id]
    available = remaining_quantity(trade.quantity, others)

    if available <= 0:
        raise ExitValidationError("No remaining quantity to exit")
    if quantity - available > EPSILON:
        raise ExitValidationError(
            f"Exit quantity cannot exceed remaining position size ({available:g})"
        )


def apply_exits(trade, exits: Iterable):
    """
    Recompute the derived position fields of a trade from its exits.
    Status is closed once the exited quantity covers the position.
    """
    exits = sorted(exits, key=lambda e: e.exit_date)
    exited = total_exited(exits)

    trade.remaining_quantity = remaining_quantity(trade.quantity, exits)
    trade.average_exit_price = average_exit_price(exits)

    if exits and exited + EPSILON >= (trade.quantity or 0):
        trade.status = "closed"
        trade.exit_date = exits[-1].exit_date
        trade.exit_price = trade.average_exit_price
    else:
        trade.status = "open"
        trade.exit_date = None
        trade.exit_price = None
    return trade


def realized_pnl(trade, exits: Optional[Iterable] = None) -> float:
    """Net realized P&L: exit P&L minus the trade's entry fees"""
    exits = list(trade.exits if exits is None else exits)
    if exits:
        pnl = sum(exit_pnl(trade.direction, trade.entry_price, e) for e in exits)
        return pnl - (trade.fees or 0)

    # Trades closed before exits were tracked only carry an exit price
    if trade.exit_price is not None and trade.entry_price:
        pnl = direction_multiplier(trade.direction) * (trade.exit_price - trade.entry_price) * trade.quantity
        return pnl - (trade.fees or 0)
    return 0.0


def pnl_percent(trade, exits: Optional[Iterable] = None) -> float:
    exits = list(trade.exits if exits is None else exits)
    qty = total_exited(exits) if exits else (trade.quantity if trade.exit_price is not None else 0)
    basis = (trade.entry_price or 0) * (qty or 0)
    if basis <= 0:
        return 0.0
    return realized_pnl(trade, exits) / basis * 100


def risk_reward_ratio(trade) -> Optional[float]:
    """Reward per share over risk per share. Uses exit price, else take profit."""
    if not trade.entry_price or not trade.stop_loss:
        return None

    mult = direction_multiplier(trade.direction)
    risk = mult * (trade.entry_price - trade.stop_loss)
    if risk <= 0:
        return None

    target = trade.exit_price if trade.exit_price else trade.take_profit
    reward = mult * (target - trade.entry_price) if target else 0.0
    return reward / risk


def r_multiple_risk_percent(trade) -> Optional[float]:
    """Distance to stop as a percentage of the entry price"""
    if not trade.entry_price or not trade.stop_loss:
        return None
    return abs(trade.entry_price - trade.stop_loss) / trade.entry_price * 100


def position_size(total_capital: float, risk_percent: float,
                  entry_price: Optional[float], stop_loss: Optional[float]) -> Optional[dict]:
    """
    Suggested share count so that a stop-out loses at most risk_percent
    of total capital.
    """
    if not entry_price or not stop_loss or not total_capital:
        return None

    price_risk = abs(entry_price - stop_loss)
    if price_risk == 0:
        return None

    max_risk_amount = total_capital * (risk_percent / 100)
    size = math.floor(max_risk_amount / price_risk)
    return {
        "suggested_size": size,
        "risk_amount": size * price_risk,
        "max_risk_amount": max_risk_amount,
        "price_risk": price_risk,
    }


def position_weight(entry_price: Optional[float], quantity: Optional[float], total_capital: Optional[float]) -> float:
    """Position value as % of total capital"""
    if not entry_price or not quantity or not total_capital:
        return 0.0
    return entry_price * quantity / total_capital * 100


def open_quantity(trade) -> float:
    if trade.remaining_quantity is not None:
        return trade.remaining_quantity
    return trade.quantity or 0


def open_positions_summary(trades: List, total_capital: Optional[float] = None) -> dict:
    """Aggregate exposure and stop-loss risk over open positions"""
    capital = total_capital or config.DEFAULT_TOTAL_CAPITAL

    total_invested = 0.0
    net_exposure = 0.0
    potential_loss = 0.0

    for t in trades:
        if not t.entry_price:
            continue
        qty = open_quantity(t)
        cost = t.entry_price * qty
        total_invested += cost

        mult = direction_multiplier(t.direction)
        net_exposure += mult * cost
        if t.stop_loss:
            potential_loss += mult * (t.entry_price - t.stop_loss) * qty

    return {
        "total_positions": len(trades),
        "total_invested": round(total_invested, 2),
        "total_exposure": round(abs(net_exposure), 2),
        "exposure_percentage": round(abs(net_exposure) / capital * 100, 2),
        "total_potential_loss": round(abs(potential_loss), 2),
        "loss_percentage": round(abs(potential_loss) / capital * 100, 2),
        "total_capital": capital,
    }
