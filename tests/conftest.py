import pytest

from app.auth.verify import auth_dependency
from app.models.domain.crm_domain import Provider
from tests.fakes import (
    USER_ID,
    FakeCompletionService,
    FakeCredentialStore,
    FakeMeetingStore,
    FakeMessageStore,
    make_credential,
    make_provider_configs,
)


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": USER_ID}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


@pytest.fixture
def provider_configs():
    return make_provider_configs()


@pytest.fixture
def credential_store():
    return FakeCredentialStore(
        make_credential(Provider.HUBSPOT), make_credential(Provider.SALESFORCE)
    )


@pytest.fixture
def message_store():
    return FakeMessageStore()


@pytest.fixture
def meeting_store():
    return FakeMeetingStore()


@pytest.fixture
def completion_service():
    return FakeCompletionService()
