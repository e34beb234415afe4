"""Shared fixtures for API tests."""

import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

from field_scheduler.api.main import create_app
from field_scheduler.api.deps import get_estimator, get_event_sink, get_store
from field_scheduler.data_interface import RecordingEventSink


# --- Test API Key Fixture ---
@pytest.fixture
def test_api_key():
    """Valid API key for testing."""
    return "test-api-key"


# --- Mock Settings Fixture ---
@pytest.fixture
def mock_settings(test_api_key):
    """Mock settings for API tests."""
    return {
        "database_url": "sqlite:///:memory:",
        "api_keys": [test_api_key],
        "travel_time_api_key": None,
        "travel_time_api_url": None,
        "event_webhook_url": None,
        "log_level": "INFO",
    }


@pytest.fixture
def headers(test_api_key, org_id):
    return {"api-key": test_api_key, "organization-id": org_id}


@pytest.fixture
def api_events():
    return RecordingEventSink()


# --- Test Client Fixture ---
@pytest.fixture
def client(mock_settings, store, api_events):
    """
    Create a FastAPI TestClient backed by the in-memory store, without a
    travel-time estimator and with a recording event sink.
    """
    with patch("field_scheduler.api.deps.get_settings", return_value=mock_settings):
        app = create_app(create_tables=False)
        app.dependency_overrides[get_store] = lambda: store
        app.dependency_overrides[get_estimator] = lambda: None
        app.dependency_overrides[get_event_sink] = lambda: api_events

        with TestClient(app) as test_client:
            yield test_client

        # Clean up dependency overrides after tests
        app.dependency_overrides = {}
