import os
import threading
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from threadline.database import Base
from threadline.models import AgentProfile, Contact, Conversation, Lead
from threadline.services.errors import ProviderSendError
from threadline.services.providers import MessagingProvider


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = Session(bind=engine)
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite shared by threads, for race tests."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'threadline.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("QDRANT_API_KEY", "test-key")


class FakeProvider(MessagingProvider):
    """Records sends; optionally fails or runs a hook while "on the wire"."""

    name = "fake"

    def __init__(self, error: Exception | None = None, on_send=None):
        self.error = error
        self.on_send = on_send
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def send_text(self, destination: str, text: str) -> str:
        with self._lock:
            self.calls.append((destination, text))
            count = len(self.calls)
        if self.on_send is not None:
            self.on_send()
        if self.error is not None:
            raise self.error
        return f"wamid.out.{count}"


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def failing_provider():
    return FakeProvider(error=ProviderSendError("whatsapp API error: 503 - unavailable", retryable=True, status_code=503))


def make_contact(db, **kwargs) -> Contact:
    values = {"full_name": "Sara Khan", "phone": "+971500000001", "created_at": datetime.now(timezone.utc)}
    values.update(kwargs)
    contact = Contact(**values)
    db.add(contact)
    db.flush()
    return contact


def make_profile(db, **kwargs) -> AgentProfile:
    values = {
        "name": "Default agent",
        "is_active": True,
        "is_default": True,
        "timezone": "UTC",
        "business_hours_start": "09:00",
        "business_hours_end": "18:00",
        "business_hours_mode": "always",
    }
    values.update(kwargs)
    profile = AgentProfile(**values)
    db.add(profile)
    db.flush()
    return profile


def make_lead(db, contact, **kwargs) -> Lead:
    lead = Lead(contact_id=contact.id, created_at=datetime.now(timezone.utc), **kwargs)
    db.add(lead)
    db.flush()
    return lead


def make_conversation(db, contact, channel="whatsapp", **kwargs) -> Conversation:
    now = datetime.now(timezone.utc)
    values = {"status": "open", "unread_count": 0, "known_fields": {}, "created_at": now, "updated_at": now}
    values.update(kwargs)
    conversation = Conversation(contact_id=contact.id, channel=channel, **values)
    db.add(conversation)
    db.flush()
    return conversation
