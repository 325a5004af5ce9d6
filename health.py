import time
from datetime import datetime, timezone

import psutil
import requests
from sqlalchemy import inspect, text

import config
import price_service
from database import engine

REQUIRED_TABLES = ("users", "trades", "trade_exits", "investments", "notes")


def check_database():
    """Check the database is reachable and the journal tables exist."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        tables = set(inspect(engine).get_table_names())
        missing = [t for t in REQUIRED_TABLES if t not in tables]
        if missing:
            return {"status": "warning", "message": f"Connected but tables missing: {', '.join(missing)}"}
        return {"status": "ok", "message": "Connected and tables exist"}
    except Exception as e:
        return {"status": "error", "message": str(e)}


YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"


def check_market_data():
    """One chart request for the benchmark symbol against Yahoo Finance."""
    try:
        started = time.perf_counter()
        response = requests.get(
            YAHOO_CHART_URL.format(symbol=config.BENCHMARK_SYMBOL),
            params={"interval": "1d", "range": "1d"},
            headers={"User-Agent": "Mozilla/5.0"},
            timeout=5,
        )
        latency = (time.perf_counter() - started) * 1000

        if response.status_code == 200:
            data = response.json()
            last_price = data['chart']['result'][0]['meta']['regularMarketPrice']
            return {
                "status": "ok",
                "message": "Connected to Yahoo Finance",
                "latency_ms": round(latency, 2),
                "last_price": last_price
            }
        return {"status": "error", "message": f"Yahoo API returned status {response.status_code}"}
    except Exception as e:
        return {"status": "error", "message": f"Yahoo connection failed or timed out: {e}"}


def check_system_resources():
    """Check server resource usage."""
    try:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('.')
        return {
            "cpu_usage_pct": psutil.cpu_percent(interval=None),
            "ram_usage_pct": memory.percent,
            "ram_available_mb": round(memory.available / (1024 * 1024), 2),
            "disk_free_gb": round(disk.free / (1024 * 1024 * 1024), 2),
            "status": "ok" if memory.percent < 90 and disk.percent < 95 else "warning"
        }
    except Exception as e:
        return {"status": "error", "message": f"Resource check failed: {e}"}


def get_full_health(deep: bool = False):
    """Aggregate all health checks. `deep` adds a live Yahoo round trip."""
    database = check_database()
    resources = check_system_resources()
    providers = {
        "finnhub": "enabled" if config.FINNHUB_ENABLED else "disabled",
        "gemini": "enabled" if config.GEMINI_API_KEY else "disabled",
        "telegram": "enabled" if config.TELEGRAM_BOT_TOKEN else "disabled",
    }
    components = {
        "database": database,
        "providers": providers,
        "price_cache": price_service.cache_stats(),
        "resources": resources,
    }

    overall = "ok"
    if database["status"] == "error":
        overall = "error"
    elif database["status"] == "warning" or resources["status"] != "ok":
        overall = "warning"

    if deep:
        market = check_market_data()
        components["market_data"] = market
        if market["status"] != "ok" and overall == "ok":
            overall = "warning"

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "overall_status": overall,
        "components": components,
    }
