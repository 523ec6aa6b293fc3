from datetime import timedelta

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.models.domain.crm_domain import Provider
from app.routes.crm import router as crm_router
from app.services.crm.errors import ContactNotFoundError, MissingEndpointError
from tests.fakes import (
    FakeCompletionService,
    FakeCredentialStore,
    FakeCrmClient,
    FakeMeetingStore,
    FakeMessageStore,
    make_contact,
    make_credential,
    make_record,
    make_services,
)

JOHN = make_contact("101", Provider.HUBSPOT, firstname="John")


def _create_app(apply_auth_override, credential_store=None, clients=None):
    clients = clients or {
        Provider.HUBSPOT: FakeCrmClient(
            Provider.HUBSPOT, records={"101": make_record(JOHN, phone="555-0101")}
        ),
        Provider.SALESFORCE: FakeCrmClient(Provider.SALESFORCE),
    }
    app = FastAPI()
    apply_auth_override(app)
    app.state.services = make_services(
        credential_store or FakeCredentialStore(make_credential(Provider.HUBSPOT)),
        FakeMessageStore(),
        FakeMeetingStore(),
        FakeCompletionService(),
        clients,
    )
    app.include_router(crm_router)
    return app


def test_status_reports_each_provider(apply_auth_override):
    client = TestClient(_create_app(apply_auth_override))

    response = client.get("/crm/status")

    assert response.status_code == 200
    payload = response.json()
    assert payload["connected_count"] == 1
    hubspot, salesforce = payload["connections"]
    assert hubspot["provider"] == "hubspot"
    assert hubspot["connected"] is True
    assert hubspot["expired"] is False
    assert hubspot["needs_refresh"] is False
    assert hubspot["has_refresh_token"] is True
    assert salesforce == {
        "provider": "salesforce",
        "label": "Salesforce",
        "connected": False,
        "expires_at": None,
        "expired": False,
        "needs_refresh": False,
        "has_refresh_token": False,
        "instance_url": None,
    }


def test_status_requires_auth():
    app = FastAPI()
    app.include_router(crm_router)
    client = TestClient(app)

    response = client.get("/crm/status")

    assert response.status_code in (401, 403)


def test_apply_updates(apply_auth_override):
    app = _create_app(apply_auth_override)
    client = TestClient(app)

    response = client.post(
        "/crm/hubspot/contacts/101/updates",
        json={
            "updates": [
                {"field": "phone", "new_value": "555-0202", "apply": True},
                {"field": "jobtitle", "new_value": "CEO", "apply": False},
            ]
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["applied"] is True
    assert payload["contact"]["phone"] == "555-0202"
    fake = app.state.services.clients[Provider.HUBSPOT]
    assert fake.applied[0][0] == "101"


def test_apply_updates_nothing_selected(apply_auth_override):
    client = TestClient(_create_app(apply_auth_override))

    response = client.post(
        "/crm/hubspot/contacts/101/updates",
        json={"updates": [{"field": "phone", "new_value": "555-0202"}]},
    )

    assert response.status_code == 200
    assert response.json() == {"applied": False, "contact": None}


def test_apply_updates_without_connection(apply_auth_override):
    client = TestClient(_create_app(apply_auth_override))

    response = client.post(
        "/crm/salesforce/contacts/003A/updates",
        json={"updates": [{"field": "Title", "new_value": "CRO", "apply": True}]},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "missing_credential"


def test_unknown_provider_rejected(apply_auth_override):
    client = TestClient(_create_app(apply_auth_override))

    response = client.post("/crm/pipedrive/contacts/1/updates", json={"updates": []})

    assert response.status_code == 422


class RaisingClient(FakeCrmClient):
    def __init__(self, provider, error):
        super().__init__(provider)
        self.error = error

    async def apply_updates(self, credential, contact_id, updates):
        raise self.error


def test_apply_updates_maps_missing_endpoint(apply_auth_override):
    store = FakeCredentialStore(make_credential(Provider.SALESFORCE, instance_url=None))
    clients = {
        Provider.HUBSPOT: FakeCrmClient(Provider.HUBSPOT),
        Provider.SALESFORCE: RaisingClient(
            Provider.SALESFORCE, MissingEndpointError(Provider.SALESFORCE)
        ),
    }
    client = TestClient(_create_app(apply_auth_override, store, clients))

    response = client.post(
        "/crm/salesforce/contacts/003A/updates",
        json={"updates": [{"field": "Title", "new_value": "CRO", "apply": True}]},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "missing_endpoint"


def test_apply_updates_maps_not_found(apply_auth_override):
    clients = {
        Provider.HUBSPOT: RaisingClient(Provider.HUBSPOT, ContactNotFoundError("999")),
        Provider.SALESFORCE: FakeCrmClient(Provider.SALESFORCE),
    }
    client = TestClient(_create_app(apply_auth_override, clients=clients))

    response = client.post(
        "/crm/hubspot/contacts/999/updates",
        json={"updates": [{"field": "phone", "new_value": "1", "apply": True}]},
    )

    assert response.status_code == 404
    assert response.json()["detail"]["reason"] == "not_found"


def test_preview_updates_drops_unchanged_fields(apply_auth_override):
    client = TestClient(_create_app(apply_auth_override))

    response = client.post(
        "/crm/hubspot/contacts/101/updates/preview",
        json={
            "updates": [
                {"field": "phone", "new_value": "555-0101"},
                {"field": "jobtitle", "new_value": "CEO"},
            ]
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["contact"]["id"] == "101"
    assert [u["field"] for u in payload["updates"]] == ["jobtitle"]


def test_status_flags_expired_credential(apply_auth_override):
    store = FakeCredentialStore(
        make_credential(Provider.HUBSPOT, expires_in=timedelta(minutes=-10))
    )
    client = TestClient(_create_app(apply_auth_override, store))

    hubspot = client.get("/crm/status").json()["connections"][0]

    assert hubspot["expired"] is True
    assert hubspot["needs_refresh"] is True
