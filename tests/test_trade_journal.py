from datetime import date
from types import SimpleNamespace

import pytest

import market_brain
import price_service
import trade_journal


def open_trade(client, headers, **kw):
    payload = {"symbol": "aapl", "entry_date": "2024-01-02", "entry_price": 100.0, "quantity": 100}
    payload.update(kw)
    resp = client.post("/api/trades", json=payload, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def add_exit(client, headers, trade_id, **kw):
    return client.post(f"/api/trades/{trade_id}/exits", json=kw, headers=headers)


def test_create_trade_starts_open(client, auth_headers):
    trade = open_trade(client, auth_headers, stop_loss=95.0)
    assert trade["symbol"] == "AAPL"
    assert trade["status"] == "open"
    assert trade["remaining_quantity"] == 100
    assert trade["exits"] == []
    assert trade["pnl"] == 0


def test_create_trade_validates_direction(client, auth_headers):
    resp = client.post("/api/trades", json={
        "symbol": "AAPL", "entry_date": "2024-01-02", "entry_price": 1, "quantity": 1, "direction": "sideways",
    }, headers=auth_headers)
    assert resp.status_code == 400


def test_partial_then_full_exit_closes_trade(client, auth_headers):
    trade = open_trade(client, auth_headers, fees=10)

    resp = add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=40)
    assert resp.status_code == 200
    partial = resp.json()
    assert partial["status"] == "open"
    assert partial["remaining_quantity"] == 60
    assert partial["exit_date"] is None

    resp = add_exit(client, auth_headers, trade["id"], exit_date="2024-01-09", exit_price=120, quantity=60, fees=5)
    closed = resp.json()
    assert closed["status"] == "closed"
    assert closed["remaining_quantity"] == 0
    assert closed["average_exit_price"] == pytest.approx(116)
    assert closed["exit_price"] == pytest.approx(116)
    assert closed["exit_date"] == "2024-01-09"
    assert [e["pnl"] for e in closed["exits"]] == [400, 1195]
    assert closed["pnl"] == pytest.approx(1585)


def test_exit_beyond_remaining_is_rejected(client, auth_headers):
    trade = open_trade(client, auth_headers)
    add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=40)

    resp = add_exit(client, auth_headers, trade["id"], exit_date="2024-01-06", exit_price=110, quantity=61)
    assert resp.status_code == 400
    assert "remaining position size" in resp.json()["detail"]


def test_deleting_last_exit_reopens_trade(client, auth_headers):
    trade = open_trade(client, auth_headers)
    closed = add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=100).json()
    assert closed["status"] == "closed"

    exit_id = closed["exits"][0]["id"]
    resp = client.delete(f"/api/trades/{trade['id']}/exits/{exit_id}", headers=auth_headers)
    reopened = resp.json()
    assert reopened["status"] == "open"
    assert reopened["exit_date"] is None
    assert reopened["exit_price"] is None
    assert reopened["remaining_quantity"] == 100


def test_editing_exit_recomputes_position(client, auth_headers):
    trade = open_trade(client, auth_headers)
    first = add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=40).json()
    exit_id = first["exits"][0]["id"]

    resp = client.put(f"/api/trades/{trade['id']}/exits/{exit_id}", json={"quantity": 100}, headers=auth_headers)
    assert resp.json()["status"] == "closed"

    resp = client.put(f"/api/trades/{trade['id']}/exits/{exit_id}", json={"quantity": 101}, headers=auth_headers)
    assert resp.status_code == 400


def test_quantity_cannot_drop_below_exited(client, auth_headers):
    trade = open_trade(client, auth_headers)
    add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=40)

    resp = client.put(f"/api/trades/{trade['id']}", json={"quantity": 30}, headers=auth_headers)
    assert resp.status_code == 400

    resp = client.put(f"/api/trades/{trade['id']}", json={"quantity": 40}, headers=auth_headers)
    assert resp.json()["trade"]["status"] == "closed"


def test_update_rejects_null_required_fields(client, auth_headers):
    trade = open_trade(client, auth_headers, stop_loss=95.0)

    for field in ("quantity", "symbol", "entry_date"):
        resp = client.put(f"/api/trades/{trade['id']}", json={field: None}, headers=auth_headers)
        assert resp.status_code == 400
        assert field in resp.json()["detail"]

    # optional fields can still be cleared
    resp = client.put(f"/api/trades/{trade['id']}", json={"stop_loss": None}, headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["trade"]["stop_loss"] is None
    assert resp.json()["trade"]["symbol"] == "AAPL"


def test_trades_are_private(client, auth_headers, other_headers):
    trade = open_trade(client, auth_headers)
    assert client.get(f"/api/trades/{trade['id']}", headers=other_headers).status_code == 404
    assert client.delete(f"/api/trades/{trade['id']}", headers=other_headers).status_code == 404
    assert client.get("/api/trades", headers=other_headers).json()["trades"] == []


def test_list_filters(client, auth_headers):
    open_trade(client, auth_headers, symbol="AAPL")
    msft = open_trade(client, auth_headers, symbol="MSFT", strategy="VCP")
    add_exit(client, auth_headers, msft["id"], exit_date="2024-01-05", exit_price=110, quantity=100)

    closed = client.get("/api/trades?status=closed", headers=auth_headers).json()["trades"]
    assert [t["symbol"] for t in closed] == ["MSFT"]
    vcp = client.get("/api/trades?strategy=VCP", headers=auth_headers).json()["trades"]
    assert [t["symbol"] for t in vcp] == ["MSFT"]
    assert client.get("/api/trades?date_range=decade", headers=auth_headers).status_code == 422


def test_open_positions_use_settings_capital(client, auth_headers):
    client.put("/api/settings", json={"total_capital": 100000}, headers=auth_headers)
    open_trade(client, auth_headers, entry_price=50, quantity=200, stop_loss=48)

    data = client.get("/api/trades/open-positions", headers=auth_headers).json()
    assert len(data["positions"]) == 1
    assert data["positions"][0]["position_weight"] == pytest.approx(10)
    summary = data["summary"]
    assert summary["total_capital"] == 100000
    assert summary["exposure_percentage"] == pytest.approx(10)
    assert summary["total_potential_loss"] == pytest.approx(400)


def test_metrics_endpoint(client, auth_headers):
    win = open_trade(client, auth_headers, symbol="WIN")
    loss = open_trade(client, auth_headers, symbol="LOSS")
    open_trade(client, auth_headers, symbol="OPEN")
    add_exit(client, auth_headers, win["id"], exit_date="2024-01-05", exit_price=110, quantity=100)
    add_exit(client, auth_headers, loss["id"], exit_date="2024-01-06", exit_price=95, quantity=100)

    metrics = client.get("/api/trades/metrics", headers=auth_headers).json()
    assert metrics["total_trades"] == 3
    assert metrics["closed_trades"] == 2
    assert metrics["win_rate"] == 50
    assert metrics["total_pnl"] == 500
    assert metrics["profit_factor"] == 2
    assert metrics["best_trade"]["symbol"] == "WIN"
    assert metrics["worst_trade"]["symbol"] == "LOSS"


def test_calendar_reconciles_with_metrics(client, auth_headers):
    trade = open_trade(client, auth_headers, fees=10)
    add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=40)
    add_exit(client, auth_headers, trade["id"], exit_date="2024-01-08", exit_price=120, quantity=60)

    days = client.get("/api/trades/calendar", headers=auth_headers).json()
    assert days == [
        {"date": "2024-01-05", "pnl": 400, "count": 1},
        {"date": "2024-01-08", "pnl": 1190, "count": 1},
    ]
    metrics = client.get("/api/trades/metrics", headers=auth_headers).json()
    assert sum(d["pnl"] for d in days) == metrics["total_pnl"] == 1590


def test_strategies_seeded_and_unique(client, auth_headers):
    names = [s["name"] for s in client.get("/api/strategies", headers=auth_headers).json()]
    assert len(names) == len(trade_journal.DEFAULT_STRATEGIES)
    assert "VCP" in names

    assert client.post("/api/strategies", json={"name": "VCP"}, headers=auth_headers).status_code == 400
    created = client.post("/api/strategies", json={"name": "Gap Up"}, headers=auth_headers).json()
    assert client.delete(f"/api/strategies/{created['id']}", headers=auth_headers).status_code == 200


def test_exit_triggers_listed(client, auth_headers):
    triggers = client.get("/api/exit-triggers", headers=auth_headers).json()
    assert "R multiples" in triggers
    assert client.get("/api/exit-triggers").status_code == 401


def test_import_rebuilds_exits(client, auth_headers):
    payload = {"trades": [{
        "symbol": "tsla", "entry_date": "2024-02-01", "entry_price": 200, "quantity": 10,
        "exits": [
            {"exit_date": "2024-02-05", "exit_price": 210, "quantity": 4},
            {"exit_date": "2024-02-07", "exit_price": 220, "quantity": 6},
        ],
    }]}
    resp = client.post("/api/trades/import", json=payload, headers=auth_headers)
    assert resp.json() == {"status": "success", "imported": 1}

    exported = client.get("/api/trades/export", headers=auth_headers).json()["trades"]
    assert exported[0]["status"] == "closed"
    assert exported[0]["average_exit_price"] == pytest.approx(216)


def test_import_rejects_over_exit(client, auth_headers):
    payload = {"trades": [{
        "symbol": "TSLA", "entry_date": "2024-02-01", "entry_price": 200, "quantity": 1,
        "exits": [{"exit_date": "2024-02-05", "exit_price": 210, "quantity": 2}],
    }]}
    resp = client.post("/api/trades/import", json=payload, headers=auth_headers)
    assert resp.status_code == 400
    assert client.get("/api/trades", headers=auth_headers).json()["trades"] == []


def test_feedback_is_stored(client, auth_headers, monkeypatch):
    trade = open_trade(client, auth_headers)
    assert client.post(f"/api/trades/{trade['id']}/feedback", headers=auth_headers).status_code == 400

    add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=100)
    monkeypatch.setattr(market_brain, "generate_trade_feedback",
                        lambda t: {"performance": "p", "lessons": "l", "mistakes": "m"})
    resp = client.post(f"/api/trades/{trade['id']}/feedback", headers=auth_headers)
    assert resp.json()["performance"] == "p"
    stored = client.get(f"/api/trades/{trade['id']}", headers=auth_headers).json()
    assert stored["ai_feedback"]["mistakes"] == "m"
    assert stored["ai_feedback"]["generated_at"] is not None


def test_feedback_provider_failure_is_502(client, auth_headers, monkeypatch):
    trade = open_trade(client, auth_headers)
    add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=100)

    def fail(t):
        raise market_brain.FeedbackError("Failed to generate trade feedback")

    monkeypatch.setattr(market_brain, "generate_trade_feedback", fail)
    assert client.post(f"/api/trades/{trade['id']}/feedback", headers=auth_headers).status_code == 502


def test_chart_uses_trade_window(client, auth_headers, monkeypatch):
    trade = open_trade(client, auth_headers, symbol="reliance", market="IN")
    add_exit(client, auth_headers, trade["id"], exit_date="2024-01-10", exit_price=110, quantity=100)
    calls = {}

    def history(symbol, start, end, market):
        calls.update(symbol=symbol, start=start, end=end, market=market)
        return [{"time": "2024-01-02", "open": 1, "high": 2, "low": 0.5, "close": 1.5}]

    monkeypatch.setattr(price_service, "get_history", history)
    data = client.get(f"/api/trades/{trade['id']}/chart", headers=auth_headers).json()
    assert calls == {"symbol": "RELIANCE", "start": date(2023, 12, 2), "end": date(2024, 1, 24), "market": "IN"}
    assert len(data["candles"]) == 1


def test_chart_without_history_is_502(client, auth_headers, monkeypatch):
    trade = open_trade(client, auth_headers)

    def no_history(*args):
        raise price_service.PriceUnavailableError("No history available")

    monkeypatch.setattr(price_service, "get_history", no_history)
    assert client.get(f"/api/trades/{trade['id']}/chart", headers=auth_headers).status_code == 502


# --- Pure performance calculations ---

def legacy_trade(trade_id, entry_date, pnl, exit_date=None):
    """Closed trade of 10 shares from 100 with the given P&L"""
    return SimpleNamespace(
        id=trade_id, symbol=f"T{trade_id}", direction="long", entry_price=100.0, quantity=10.0,
        fees=0.0, exits=[], stop_loss=None, take_profit=None, status="closed",
        exit_price=100.0 + pnl / 10, entry_date=entry_date, exit_date=exit_date or entry_date,
    )


def test_equity_curve_starts_from_capital():
    trades = [legacy_trade(2, date(2024, 1, 10), -550), legacy_trade(1, date(2024, 1, 2), 1000)]
    points = trade_journal.equity_curve(trades, 10000)
    assert points == [
        {"date": "2024-01-02", "equity": 11000},
        {"date": "2024-01-10", "equity": 10450},
    ]


def test_drawdown_stats_track_depth_and_recovery():
    trades = [
        legacy_trade(1, date(2024, 1, 2), 1000),
        legacy_trade(2, date(2024, 1, 10), -550),
        legacy_trade(3, date(2024, 1, 20), 600),
    ]
    stats = trade_journal.drawdown_stats(trades, 10000)
    assert stats["max_drawdown"] == pytest.approx(5.0)
    assert stats["max_drawdown_date"] == "2024-01-10"
    assert stats["longest_drawdown_days"] == 10
    assert stats["recovery_days"] == 10
    assert [p["drawdown"] for p in stats["series"]] == [0, -5.0, 0]


def test_drawdown_without_capital_does_not_divide_by_zero():
    stats = trade_journal.drawdown_stats([legacy_trade(1, date(2024, 1, 2), -100)], 0)
    assert stats["max_drawdown"] == 0


def test_calendar_groups_by_exit_date():
    trades = [
        legacy_trade(1, date(2024, 1, 2), 100, exit_date=date(2024, 1, 5)),
        legacy_trade(2, date(2024, 1, 3), -40, exit_date=date(2024, 1, 5)),
        legacy_trade(3, date(2024, 1, 3), 10, exit_date=date(2024, 1, 8)),
    ]
    assert trade_journal.daily_realized_pnl(trades) == [
        {"date": "2024-01-05", "pnl": 60, "count": 2},
        {"date": "2024-01-08", "pnl": 10, "count": 1},
    ]


def test_monthly_performance_buckets_by_exit_month():
    trades = [
        legacy_trade(1, date(2024, 3, 2), 100, exit_date=date(2024, 3, 5)),
        legacy_trade(2, date(2024, 3, 3), -50, exit_date=date(2024, 3, 20)),
        legacy_trade(3, date(2024, 1, 3), 30, exit_date=date(2024, 1, 8)),
    ]
    months = trade_journal.monthly_performance(trades, months=3, today=date(2024, 3, 25))
    assert [m["month"] for m in months] == ["Jan 2024", "Feb 2024", "Mar 2024"]
    assert months[2]["profit_loss"] == 50
    assert months[2]["win_rate"] == 50
    assert months[2]["trade_count"] == 2
    assert months[1]["trade_count"] == 0


def test_best_and_worst_trade_need_a_winner_and_a_loser():
    winners = [legacy_trade(1, date(2024, 1, 2), 100), legacy_trade(2, date(2024, 1, 3), 20)]
    metrics = trade_journal.compute_metrics(winners)
    assert metrics["best_trade"]["id"] == 1
    assert metrics["worst_trade"] is None

    losers = [legacy_trade(1, date(2024, 1, 2), -100), legacy_trade(2, date(2024, 1, 3), -20)]
    metrics = trade_journal.compute_metrics(losers)
    assert metrics["best_trade"] is None
    assert metrics["worst_trade"]["id"] == 1


def test_strategy_analytics_groups_closed_trades():
    trades = [
        legacy_trade(1, date(2024, 1, 2), 100),
        legacy_trade(2, date(2024, 1, 3), -40),
        legacy_trade(3, date(2024, 1, 4), 300),
        legacy_trade(4, date(2024, 1, 5), 50),
    ]
    for t, strategy in zip(trades, ["VCP", "VCP", "Flag", None]):
        t.strategy = strategy
    trades.append(SimpleNamespace(**{**vars(legacy_trade(5, date(2024, 1, 6), 0)), "status": "open", "strategy": "VCP"}))

    assert trade_journal.strategy_analytics(trades) == [
        {"strategy": "Flag", "total_trades": 1, "wins": 1, "profit_loss": 300, "win_rate": 100},
        {"strategy": "VCP", "total_trades": 2, "wins": 1, "profit_loss": 60, "win_rate": 50},
    ]


def test_strategy_analytics_endpoint(client, auth_headers):
    trade = open_trade(client, auth_headers, strategy="VCP")
    add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=100)

    [row] = client.get("/api/trades/strategy-analytics", headers=auth_headers).json()
    assert row["strategy"] == "VCP"
    assert row["profit_loss"] == 1000


def test_feedback_summary_dedupes_stored_feedback(client, auth_headers, monkeypatch):
    replies = iter([
        {"performance": "Good entry\nTight stop", "lessons": "Be patient", "mistakes": "Sold early"},
        {"performance": "Good entry", "lessons": "Be patient\nSize down", "mistakes": "Chased"},
    ])
    monkeypatch.setattr(market_brain, "generate_trade_feedback", lambda t: next(replies))
    for symbol in ("AAA", "BBB"):
        trade = open_trade(client, auth_headers, symbol=symbol)
        add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=100)
        assert client.post(f"/api/trades/{trade['id']}/feedback", headers=auth_headers).status_code == 200
    pending = open_trade(client, auth_headers, symbol="CCC")
    add_exit(client, auth_headers, pending["id"], exit_date="2024-01-06", exit_price=90, quantity=100)

    summary = client.get("/api/trades/feedback-summary", headers=auth_headers).json()
    assert summary["analyzed_trades"] == 2
    assert summary["pending_trades"] == 1
    assert summary["overall_performance"] == ["Good entry", "Tight stop"]
    assert summary["key_lessons"] == ["Be patient", "Size down"]
    assert summary["improvement_areas"] == ["Sold early", "Chased"]
    assert summary["last_analyzed_at"] is not None


def test_feedback_summary_refine(client, auth_headers, monkeypatch):
    trade = open_trade(client, auth_headers)
    add_exit(client, auth_headers, trade["id"], exit_date="2024-01-05", exit_price=110, quantity=100)
    monkeypatch.setattr(market_brain, "generate_trade_feedback",
                        lambda t: {"performance": "p1\np2", "lessons": "l1", "mistakes": "m1"})
    client.post(f"/api/trades/{trade['id']}/feedback", headers=auth_headers)

    monkeypatch.setattr(market_brain, "refine_points", lambda points, kind: [f"{kind}: {len(points)}"])
    summary = client.get("/api/trades/feedback-summary?refine=true", headers=auth_headers).json()
    assert summary["overall_performance"] == ["performance: 2"]
    assert summary["improvement_areas"] == ["mistakes: 1"]

    def fail(points, kind):
        raise market_brain.FeedbackError("Failed to refine trade feedback")

    monkeypatch.setattr(market_brain, "refine_points", fail)
    assert client.get("/api/trades/feedback-summary?refine=true", headers=auth_headers).status_code == 502
