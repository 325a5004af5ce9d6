from datetime import date
from types import SimpleNamespace

import pandas as pd
import pytest

import investments
import models
import price_service


@pytest.fixture
def market(quotes, monkeypatch):
    """AAPL at 200, S&P 500 up 10% since any purchase date"""
    quotes.update({"AAPL": 200.0, "^GSPC": 5500.0})
    monkeypatch.setattr(price_service, "get_benchmark_close", lambda on_date: 5000.0)
    return quotes


def buy(client, headers, **kw):
    payload = {"symbol": "aapl", "purchase_date": "2024-01-02", "purchase_price": 150, "shares": 10, "commission": 5}
    payload.update(kw)
    resp = client.post("/api/investments", json=payload, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_add_investment_records_cost_and_benchmark(client, auth_headers, market, db):
    inv = buy(client, auth_headers)
    assert inv["symbol"] == "AAPL"
    assert inv["total_cost"] == 1505

    stored = db.query(models.BenchmarkValue).filter(models.BenchmarkValue.date == date(2024, 1, 2)).one()
    assert stored.value == 5000.0


def test_list_values_holdings(client, auth_headers, market):
    buy(client, auth_headers)
    [holding] = client.get("/api/investments", headers=auth_headers).json()

    assert holding["current_price"] == 200.0
    assert holding["current_value"] == 2000
    assert holding["gain_loss"] == 495
    assert holding["gain_loss_percentage"] == pytest.approx(32.89)
    assert holding["benchmark_return_percentage"] == pytest.approx(10.0)


def test_summary_compares_against_benchmark(client, auth_headers, market):
    buy(client, auth_headers)
    summary = client.get("/api/investments/summary", headers=auth_headers).json()

    assert summary["total_value"] == 2000
    assert summary["total_cost"] == 1505
    assert summary["total_gain_loss_percentage"] == pytest.approx(32.89)
    assert summary["sp500_comparison_percentage"] == pytest.approx(10.0)
    assert summary["relative_performance"] == pytest.approx(22.89)


def test_empty_portfolio_summary_is_zero(client, auth_headers):
    summary = client.get("/api/investments/summary", headers=auth_headers).json()
    assert summary["total_value"] == 0
    assert summary["sp500_comparison_percentage"] == 0
    assert summary["relative_performance"] == 0


def test_missing_quote_falls_back_to_purchase_price(client, auth_headers):
    buy(client, auth_headers, symbol="ZZZZ")
    [holding] = client.get("/api/investments", headers=auth_headers).json()
    assert holding["current_price"] == 150
    assert holding["benchmark_return_percentage"] is None


def test_invalid_amounts_rejected(client, auth_headers):
    resp = client.post("/api/investments", json={
        "symbol": "AAPL", "purchase_date": "2024-01-02", "purchase_price": 0, "shares": 1,
    }, headers=auth_headers)
    assert resp.status_code == 400


def test_update_and_delete_are_owner_only(client, auth_headers, other_headers, market):
    inv = buy(client, auth_headers)
    assert client.put(f"/api/investments/{inv['id']}", json={"shares": 20}, headers=other_headers).status_code == 404

    resp = client.put(f"/api/investments/{inv['id']}", json={"shares": 20}, headers=auth_headers)
    assert resp.json()["total_cost"] == 3005

    assert client.delete(f"/api/investments/{inv['id']}", headers=other_headers).status_code == 404
    assert client.delete(f"/api/investments/{inv['id']}", headers=auth_headers).status_code == 200
    assert client.get("/api/investments", headers=auth_headers).json() == []


def test_portfolio_value_series_counts_holdings_from_purchase():
    holdings = [
        SimpleNamespace(symbol="AAPL", shares=10, purchase_date=date(2024, 1, 2)),
        SimpleNamespace(symbol="MSFT", shares=2, purchase_date=date(2024, 1, 3)),
    ]
    closes = pd.DataFrame(
        {"AAPL": [100.0, 101.0, 102.0], "MSFT": [300.0, None, 310.0]},
        index=[date(2024, 1, 2), date(2024, 1, 3), date(2024, 1, 4)],
    )
    series = investments.portfolio_value_series(holdings, closes)
    assert series == [
        {"date": "2024-01-02", "value": 1000.0},
        {"date": "2024-01-03", "value": 1610.0},
        {"date": "2024-01-04", "value": 1640.0},
    ]


def test_history_endpoint(client, auth_headers, market, monkeypatch):
    buy(client, auth_headers)
    closes = pd.DataFrame({"AAPL": [150.0, 160.0]}, index=[date(2024, 1, 2), date(2024, 1, 3)])
    monkeypatch.setattr(price_service, "get_close_history", lambda symbols, start: closes)

    series = client.get("/api/investments/history", headers=auth_headers).json()
    assert [p["value"] for p in series] == [1500, 1600]


def test_market_position_against_200_sma():
    closes = pd.Series([100.0] * 199 + [90.0])
    pos = investments.market_position(closes)
    assert pos["is_above_sma"] is False
    assert pos["sma"] == pytest.approx(99.95)
    assert pos["sma_distance"] == pytest.approx(-9.95)

    assert investments.market_position(pd.Series([100.0] * 50)) is None


def test_analyze_portfolio_scores_and_recommends():
    valued = [
        {"symbol": "VOO", "gain_loss_percentage": 5.0},
        {"symbol": "VOO", "gain_loss_percentage": 2.0},
        {"symbol": "QQQM", "gain_loss_percentage": 12.0},
    ]
    sma = {
        "VOO": {"is_above_sma": True, "sma_distance": 3.0},
        "QQQM": {"is_above_sma": False, "sma_distance": -4.3},
    }
    result = investments.analyze_portfolio(valued, sma)

    assert result["diversification_score"] == pytest.approx(66.7)
    assert [p["symbol"] for p in result["top_performers"]] == ["QQQM", "VOO", "VOO"]
    assert result["recommendations"] == [
        "QQQM is currently 4.3% below its 200 SMA - Consider a buying opportunity"
    ]


def test_analyze_empty_portfolio_suggests_starting():
    result = investments.analyze_portfolio([], {"VOO": None, "QQQM": None})
    assert result["diversification_score"] == 0
    assert "VOO or QQQM" in result["recommendations"][0]


def test_analytics_endpoint(client, auth_headers, market, monkeypatch):
    buy(client, auth_headers)
    closes = {
        "VOO": pd.DataFrame({"VOO": [100.0] * 200}),
        "QQQM": pd.DataFrame({"QQQM": [100.0] * 10}),
    }
    monkeypatch.setattr(price_service, "get_close_history", lambda symbols, start: closes[symbols[0]])

    data = client.get("/api/investments/analytics", headers=auth_headers).json()
    assert data["diversification_score"] == 100
    assert data["sma_positions"]["QQQM"] is None
    assert data["sma_positions"]["VOO"]["is_above_sma"] is False
    assert data["recommendations"] == [
        "VOO is currently 0.0% below its 200 SMA - Consider a buying opportunity"
    ]


def test_update_rejects_null_required_fields(client, auth_headers, market):
    inv = buy(client, auth_headers)
    resp = client.put(f"/api/investments/{inv['id']}", json={"shares": None}, headers=auth_headers)
    assert resp.status_code == 400
    assert "shares" in resp.json()["detail"]

    resp = client.put(f"/api/investments/{inv['id']}", json={"notes": None}, headers=auth_headers)
    assert resp.status_code == 200
