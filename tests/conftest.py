import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Configure before any project module reads config.
_TMP = Path(tempfile.mkdtemp(prefix="journal_tests_"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'journal_test.db'}"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["QUOTE_MIN_INTERVAL"] = "0"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["FINNHUB_API_KEY"] = ""
os.environ["GEMINI_API_KEY"] = ""
os.environ["TELEGRAM_BOT_TOKEN"] = ""

from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
import models  # noqa: E402
import price_service  # noqa: E402
from main import app  # noqa: E402

_REAL_FETCH_QUOTE = price_service._fetch_quote


@pytest.fixture(autouse=True)
def fresh_db():
    database.Base.metadata.drop_all(bind=database.engine)
    database.Base.metadata.create_all(bind=database.engine)
    price_service._price_cache.clear()
    yield


@pytest.fixture(autouse=True)
def offline_quotes(monkeypatch):
    """No test reaches a real quote provider unless it patches one in."""
    def no_quote(symbol):
        raise price_service.PriceUnavailableError(f"No quote available for {symbol}")

    monkeypatch.setattr(price_service, "_fetch_quote", no_quote)
    monkeypatch.setattr(price_service, "get_benchmark_close", lambda on_date: None)


@pytest.fixture
def quotes(monkeypatch):
    """Mutable symbol -> price map served by the quote fetcher."""
    prices = {}

    def fetch(symbol):
        if symbol not in prices:
            raise price_service.PriceUnavailableError(f"No quote available for {symbol}")
        return {"price": prices[symbol], "change": 0, "change_pct": 0, "prev_close": prices[symbol],
                "source": "test", "timestamp": 0}

    monkeypatch.setattr(price_service, "_fetch_quote", fetch)
    return prices


@pytest.fixture
def real_quotes(monkeypatch):
    """Restore the provider chain; tests patch the individual providers."""
    monkeypatch.setattr(price_service, "_fetch_quote", _REAL_FETCH_QUOTE)


@pytest.fixture
def db():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


def _register(client, email):
    resp = client.post("/api/auth/register", json={"email": email, "password": "s3cret-pass"})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def auth_headers(client):
    return _register(client, "trader@example.com")


@pytest.fixture
def other_headers(client):
    return _register(client, "other@example.com")
