"""Shared fixtures. Environment is set before any application module is imported."""
import json
import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "warehouse_sync_test.db")
)
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("RECONCILE_ON_STARTUP", "false")
os.environ.setdefault("RECONCILE_INTERVAL_SECONDS", "0")

import pytest
from unittest.mock import Mock, patch
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from warehouse_sync.core.auth import create_access_token
from warehouse_sync.core.websocket import InventorySyncHub
from warehouse_sync.main import create_app


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket in hub unit tests."""

    def __init__(self, open=True, fail_on_send=False):
        self.client_state = WebSocketState.CONNECTED if open else WebSocketState.DISCONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.fail_on_send = fail_on_send
        self.sent = []

    async def send_text(self, data: str):
        if self.fail_on_send:
            raise RuntimeError("connection reset")
        self.sent.append(json.loads(data))

    def close(self):
        self.client_state = WebSocketState.DISCONNECTED


@pytest.fixture
def hub():
    return InventorySyncHub()


@pytest.fixture
def redis_mock():
    """Redis stand-in for the rate limiter: every request opens a new window."""
    client = Mock()
    client.get.return_value = None
    with patch("warehouse_sync.api.middleware.rate_limiter.get_redis_client", return_value=client):
        yield client


@pytest.fixture
def client(hub, redis_mock):
    app = create_app(hub=hub)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token('warehouse_ops')}"}
