"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from cryptography.fernet import Fernet
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.routes.health import router as health_router


def _client():
    app = FastAPI()
    app.include_router(health_router)
    return TestClient(app)


def _configured():
    return (
        patch("app.routes.health.settings.ENCRYPTION_KEY", Fernet.generate_key().decode()),
        patch("app.routes.health.settings.OPENAI_API_KEY", "sk-test"),
        patch("app.routes.health.settings.HUBSPOT_CLIENT_ID", "hs-client"),
    )


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = _client().get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "crm-chat-assistant"}


def test_health_all_checks_pass():
    db_check = AsyncMock(return_value={"healthy": True, "pool_stats": {"pool_size": 2}})
    key, openai_key, client_id = _configured()
    with patch("app.routes.health.db_health_check", db_check), key, openai_key, client_id:
        response = _client().get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["database"]["ok"] is True
    assert data["checks"]["database"]["pool_stats"] == {"pool_size": 2}
    assert data["checks"]["configuration"]["issues"] is None


def test_health_database_unhealthy():
    db_check = AsyncMock(return_value={"healthy": False, "error": "pool not initialized"})
    key, openai_key, client_id = _configured()
    with patch("app.routes.health.db_health_check", db_check), key, openai_key, client_id:
        response = _client().get("/health")

    # Still 200, overall_ok carries the verdict
    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "pool not initialized"


def test_health_database_check_raises():
    db_check = AsyncMock(side_effect=ConnectionError("refused"))
    key, openai_key, client_id = _configured()
    with patch("app.routes.health.db_health_check", db_check), key, openai_key, client_id:
        response = _client().get("/health")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "ConnectionError: refused"


def test_health_reports_missing_configuration():
    db_check = AsyncMock(return_value={"healthy": True})
    with (
        patch("app.routes.health.db_health_check", db_check),
        patch("app.routes.health.settings.ENCRYPTION_KEY", None),
        patch("app.routes.health.settings.OPENAI_API_KEY", None),
        patch("app.routes.health.settings.HUBSPOT_CLIENT_ID", None),
        patch("app.routes.health.settings.SALESFORCE_CLIENT_ID", None),
    ):
        response = _client().get("/health")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["configuration"]["issues"] == [
        "ENCRYPTION_KEY not set",
        "OPENAI_API_KEY not set",
        "No CRM OAuth client configured",
    ]


def test_health_reports_unusable_encryption_key():
    db_check = AsyncMock(return_value={"healthy": True})
    _, openai_key, client_id = _configured()
    with (
        patch("app.routes.health.db_health_check", db_check),
        patch("app.routes.health.settings.ENCRYPTION_KEY", "not-a-fernet-key"),
        openai_key,
        client_id,
    ):
        response = _client().get("/health")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["configuration"]["issues"] == ["ENCRYPTION_KEY is not a valid Fernet key"]
