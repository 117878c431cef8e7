"""
Pytest configuration and shared fixtures.

Apps under test are built with explicit Settings and an in-process fake
sender, so no .env file or network access is involved.
"""

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports so tests never reuse a stale instance
from inbox.config import Settings, get_settings
get_settings.cache_clear()

from inbox.errors import UpstreamSendFailure
from inbox.main import create_app


TEST_APP_SECRET = "test-app-secret"
TEST_VERIFY_TOKEN = "test-verify-token"


class FakeSender:
    """Records every send; raises for recipients listed in ``fail_for``."""

    def __init__(self, fail_for=()):
        self.calls = []
        self.fail_for = set(fail_for)

    async def send_text(self, to, text, reply_to_message_id=None):
        if to in self.fail_for:
            raise UpstreamSendFailure(f"(#131030) Recipient phone number not in allowed list: {to}")
        self.calls.append({"to": to, "text": text, "reply_to_message_id": reply_to_message_id})
        return {"messaging_product": "whatsapp", "messages": [{"id": f"wamid.out.{len(self.calls)}"}]}


class EventRecorder:
    """Realtime subscriber that keeps every published event."""

    def __init__(self):
        self.events = []

    async def __call__(self, message):
        self.events.append(message)

    def named(self, name):
        return [e for e in self.events if e["event"] == name]


def make_settings(**overrides) -> Settings:
    values = {
        "DATABASE_URL": "",
        "LOG_LEVEL": "WARNING",
        "META_APP_SECRET": TEST_APP_SECRET,
        "WHATSAPP_VERIFY_TOKEN": TEST_VERIFY_TOKEN,
        "ADMIN_TOKEN": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def app(fake_sender):
    return create_app(make_settings(), sender=fake_sender)


@pytest.fixture
def events(app):
    recorder = EventRecorder()
    app.state.broadcaster.subscribe(recorder)
    return recorder


@pytest.fixture(scope="function")
def client(app):
    """Test client with a fresh volatile store for each test."""
    with TestClient(app) as test_client:
        yield test_client
