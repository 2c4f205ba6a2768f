"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from relaychat.config import (
    AppSettings,
    ClientSettings,
    JWTSecrets,
    RelaySettings,
    Secrets,
    reset_config,
    set_config,
)
from relaychat.main import app
from relaychat.relay.hub import hub
from relaychat.relay.message_store import MessageStore
from relaychat.relay.tokens import TokenIssuer

TEST_SECRET = "test-secret-key-with-enough-length-for-hs256"


@pytest.fixture
def test_settings():
    """Settings pointing the relay at an in-memory DuckDB."""
    settings = AppSettings(
        relay=RelaySettings(
            db_path=":memory:",
            default_page_size=5,
            max_page_size=10,
            auth_timeout_seconds=2.0,
        ),
        client=ClientSettings(page_size=5),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )
    set_config(settings)
    yield settings
    reset_config()


@pytest.fixture
def message_store(test_settings):
    """Use an in-memory MessageStore for each test."""
    MessageStore.reset_instance()
    store = MessageStore.get_instance(db_path=":memory:", max_page_size=test_settings.relay.max_page_size)
    yield store
    MessageStore.reset_instance()


@pytest.fixture
def token_issuer(test_settings):
    return TokenIssuer.from_settings(test_settings)


@pytest.fixture
def api_client(message_store):
    """Provide a TestClient for the main FastAPI app."""
    yield TestClient(app)
    hub.clear()
