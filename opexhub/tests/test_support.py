"""Tests for formatting, the query cache, the session store and settings."""
from __future__ import annotations

from datetime import date, datetime

import pytest

from opexhub.cache import QueryCache
from opexhub.config import LOCAL_API_URL, PILOT_API_URL, PRODUCTION_API_URL, Settings, get_settings, resolve_base_url
from opexhub.formatting import format_currency_lakhs, format_datetime
from opexhub.schemas import User
from opexhub.session import MemorySessionStore, SessionStore


class TestCurrency:
    @pytest.mark.parametrize("amount,expected", [
        (0, "₹0"),
        (None, "₹0"),
        (500, "₹500"),
        (12.5, "₹12.5"),
        (1500, "₹1.5K"),
        (850000, "₹8.5L"),
        (100000, "₹1L"),
        (25000000, "₹2.5Cr"),
        (20000000000, "₹2TCr"),
        (1000000000000, "₹1T"),
        (0.5, "₹0.5"),
    ])
    def test_format(self, amount, expected):
        assert format_currency_lakhs(amount) == expected


class TestDates:
    def test_datetime(self):
        assert format_datetime(datetime(2025, 1, 20, 9, 5)) == "20 Jan 2025, 09:05"

    def test_date(self):
        assert format_datetime(date(2025, 2, 28)) == "28 Feb 2025"

    def test_iso_string(self):
        assert format_datetime("2025-01-20T09:05:00") == "20 Jan 2025, 09:05"

    def test_empty_and_unparseable(self):
        assert format_datetime(None) == ""
        assert format_datetime("") == ""
        assert format_datetime("yesterday") == "yesterday"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestQueryCache:
    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = QueryCache(ttl_for=lambda family: 120.0 if family == "tx" else 600.0, clock=clock)
        cache.set(("tx", 1), [1])
        cache.set(("users", "NDS"), [2])
        clock.now += 121
        assert cache.get(("tx", 1)) is None
        assert cache.get(("users", "NDS")) == [2]

    def test_invalidate_by_family(self):
        cache = QueryCache()
        cache.set(("tx", 1), "a")
        cache.set(("tx", 2), "b")
        cache.set(("progress", 1), 36)
        cache.set(("users", "NDS"), "c")
        assert cache.invalidate("tx", "progress") == 3
        assert ("tx", 1) not in cache
        assert ("users", "NDS") in cache

    @pytest.mark.asyncio
    async def test_get_or_fetch_caches(self):
        cache = QueryCache()
        calls = []

        async def fetch():
            calls.append(1)
            return False

        assert await cache.get_or_fetch(("gate", 1), fetch) is False
        assert await cache.get_or_fetch(("gate", 1), fetch) is False
        assert len(calls) == 1

    def test_settings_ttls(self):
        settings = Settings()
        assert settings.ttl_for("visible-workflow-transactions") == 120.0
        assert settings.ttl_for("initiatives") == 300.0
        assert settings.ttl_for("initiative-leads") == 600.0


class TestSessionStore:
    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "nested" / "session.json"
        SessionStore(path).save("tok", User(id=3, email="a@godeepak.com", role="IL", full_name="A"))
        store = SessionStore(path)
        assert store.token == "tok"
        assert store.user.email == "a@godeepak.com"
        assert store.user.full_name == "A"

    def test_clear(self, tmp_path):
        path = tmp_path / "session.json"
        store = SessionStore(path)
        store.save("tok", User(email="a@godeepak.com"))
        store.clear()
        assert store.token is None
        assert store.user is None
        assert not path.exists()

    def test_corrupt_file_means_signed_out(self, tmp_path):
        path = tmp_path / "session.json"
        path.write_text("{not json", encoding="utf-8")
        assert SessionStore(path).token is None

    def test_memory_store(self):
        store = MemorySessionStore("tok", User(email="a@godeepak.com"))
        assert store.token == "tok"
        store.clear()
        assert store.token is None


class TestBaseUrl:
    @pytest.mark.parametrize("host,expected", [
        ("localhost", LOCAL_API_URL),
        ("127.0.0.1", LOCAL_API_URL),
        ("localhost:8080", LOCAL_API_URL),
        ("dgapps.godeepak.com", PRODUCTION_API_URL),
        ("DGPILOTAPPS.godeepak.com", PILOT_API_URL),
        ("intranet.example.com", LOCAL_API_URL),
        (None, LOCAL_API_URL),
    ])
    def test_resolve(self, host, expected):
        assert resolve_base_url(host) == expected

    def test_settings_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("OPEXHUB_HOME", str(tmp_path))
        monkeypatch.setenv("OPEXHUB_HOST", "dgapps.godeepak.com")
        monkeypatch.setenv("OPEXHUB_DEMO", "1")
        monkeypatch.delenv("OPEXHUB_API_URL", raising=False)
        get_settings.cache_clear()
        try:
            settings = get_settings()
            assert settings.api_url == PRODUCTION_API_URL
            assert settings.demo_mode is True
            assert settings.session_file == tmp_path.resolve() / "session.json"
        finally:
            get_settings.cache_clear()

    def test_explicit_api_url_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv("OPEXHUB_HOME", str(tmp_path))
        monkeypatch.setenv("OPEXHUB_HOST", "dgapps.godeepak.com")
        monkeypatch.setenv("OPEXHUB_API_URL", "http://staging:9090/opexhub/api/")
        get_settings.cache_clear()
        try:
            assert get_settings().api_url == "http://staging:9090/opexhub/api"
        finally:
            get_settings.cache_clear()
