"""Shared pytest fixtures."""

import os
import sys
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from hypothesis import HealthCheck, settings

from hdb_insights.config import Settings
from hdb_insights.db import MarketStorage
from hdb_insights.models import Transaction


def pytest_configure(config: pytest.Config) -> None:
    """Force line-buffered stdout when piped."""
    if hasattr(sys.stdout, "reconfigure") and not sys.stdout.isatty():
        sys.stdout.reconfigure(line_buffering=True)
    if hasattr(sys.stderr, "reconfigure") and not sys.stderr.isatty():
        sys.stderr.reconfigure(line_buffering=True)


# Hypothesis settings profiles for different environments
settings.register_profile("fast", max_examples=10)
settings.register_profile(
    "ci",
    max_examples=200,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture(autouse=True)
def _isolate_settings_from_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent the local .env file from leaking into test Settings instances."""
    monkeypatch.setattr(
        Settings,
        "model_config",
        {**Settings.model_config, "env_file": None},
    )


@pytest_asyncio.fixture
async def storage() -> AsyncGenerator[MarketStorage, None]:
    """Initialized in-memory storage, closed on teardown."""
    s = MarketStorage(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def make_transaction() -> Callable[..., Transaction]:
    """Factory for transactions with sensible Tampines 4-room defaults."""

    def _make(**overrides: Any) -> Transaction:
        defaults: dict[str, Any] = {
            "month": "2024-06",
            "town": "TAMPINES",
            "flat_type": "4 ROOM",
            "block": "123",
            "street_name": "TAMPINES ST 11",
            "storey_range": "07 TO 09",
            "floor_area_sqm": 92.0,
            "flat_model": "Model A",
            "lease_commence_date": 1985,
            "remaining_lease": "60 years 02 months",
            "remaining_lease_years": 60,
            "resale_price": 500000,
        }
        defaults.update(overrides)
        return Transaction(**defaults)

    return _make


@pytest.fixture
def raw_record() -> Callable[..., dict[str, Any]]:
    """Factory for upstream datastore records (all values are strings, as upstream)."""

    def _make(**overrides: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "_id": 1,
            "month": "2024-06",
            "town": "TAMPINES",
            "flat_type": "4 ROOM",
            "block": "123",
            "street_name": "TAMPINES ST 11",
            "storey_range": "07 TO 09",
            "floor_area_sqm": "92",
            "flat_model": "Model A",
            "lease_commence_date": "1985",
            "remaining_lease": "60 years 02 months",
            "resale_price": "500000",
        }
        record.update(overrides)
        return record

    return _make
