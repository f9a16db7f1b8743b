"""Tests for application startup and shutdown wiring."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from tagchain_escrow.config import get_settings
from tagchain_escrow.domain.exceptions import ConfigurationError
from tagchain_escrow.infrastructure.consensus import SimulatedConsensusClient
from tagchain_escrow.infrastructure.database import close_db
from tagchain_escrow.main import create_app, lifespan
from tagchain_escrow.services import EscrowOrchestrator

NO_REDIS = AsyncMock(side_effect=ConnectionError("redis unavailable"))


@pytest_asyncio.fixture
async def app_env(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("APP_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setenv("FEATURE_ONCHAIN", "true")
    monkeypatch.setenv("CONSENSUS_BACKEND", "simulated")
    monkeypatch.setenv("CONSENSUS_TOPIC_ESCROW", "0.0.5001")
    get_settings.cache_clear()
    yield monkeypatch
    await close_db()
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_lifespan_wires_services(app_env) -> None:
    app = create_app()

    with patch("tagchain_escrow.main.init_redis", NO_REDIS):
        async with lifespan(app):
            assert isinstance(app.state.orchestrator, EscrowOrchestrator)
            assert app.state.orchestrator.config.ledger_enabled
            assert isinstance(app.state.consensus_client, SimulatedConsensusClient)

            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.post(
                    "/api/v1/escrow",
                    json={
                        "transaction_id": "T1",
                        "buyer_id": "B",
                        "seller_id": "S",
                        "amount": "100",
                        "currency": "USD",
                    },
                )

    assert response.status_code == 201
    assert response.json()["consensus_confirmed"] is True
    assert app.state.consensus_client.submissions[0].topic_id == "0.0.5001"


@pytest.mark.asyncio
async def test_missing_operator_credentials_abort_startup(app_env) -> None:
    app_env.setenv("CONSENSUS_BACKEND", "hedera")
    app_env.setenv("HEDERA_OPERATOR_ID", "")
    app_env.setenv("HEDERA_OPERATOR_KEY", "")
    get_settings.cache_clear()
    app = create_app()

    with patch("tagchain_escrow.main.init_redis", NO_REDIS), pytest.raises(ConfigurationError):
        async with lifespan(app):
            pass
