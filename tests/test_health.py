import health


def test_health_reports_database_and_providers(client):
    data = client.get("/api/health").json()
    assert data["components"]["database"]["status"] == "ok"
    assert data["components"]["providers"]["finnhub"] == "disabled"
    assert "market_data" not in data["components"]


def test_deep_health_includes_market_check(monkeypatch):
    monkeypatch.setattr(health, "check_market_data", lambda: {"status": "error", "message": "offline"})
    data = health.get_full_health(deep=True)
    assert data["components"]["market_data"]["status"] == "error"
    assert data["overall_status"] in ("warning", "error")
