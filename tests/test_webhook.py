from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import make_contact, make_lead, make_profile
from threadline.database import get_db
from threadline.main import app
from threadline.models import InboundMessageDedup, Message, OutboundJob
from threadline.services.auto_reply_service import handle_inbound_auto_reply
from threadline.services.errors import ConfigurationError
from threadline.services.job_queue import InlineJobQueue
from threadline.services.llm import LLMProvider, LLMResponse
from threadline.services.retrieval_service import RetrievalResult


@pytest.fixture
def client(db):
    def _override_get_db():
        yield db

    original_queue = app.state.job_queue
    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.job_queue = original_queue


@pytest.fixture
def contact(db):
    contact = make_contact(db)
    db.commit()
    return contact


def _payload(contact, **kwargs):
    payload = {
        "provider": "whatsapp",
        "providerMessageId": "wamid.A",
        "contactId": contact.id,
        "channel": "WhatsApp",
        "text": "What are your opening hours?",
        "sender": "+971500000001",
    }
    payload.update(kwargs)
    return payload


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "job_queue": "outbox"}


class TestInboundWebhook:
    def test_accepts_and_queues(self, client, db, contact):
        response = client.post("/webhooks/inbound", json=_payload(contact))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["duplicate"] is False
        assert data["conversation_id"] is not None

        message = db.query(Message).one()
        assert message.channel == "whatsapp"
        assert message.direction == "INBOUND"
        job = db.query(OutboundJob).one()
        assert job.status == "PENDING"
        assert job.payload_json["trigger_provider_message_id"] == "wamid.A"
        assert db.query(InboundMessageDedup).one().processing_status == "COMPLETED"

    def test_provider_retry_is_acknowledged_as_duplicate(self, client, db, contact):
        first = client.post("/webhooks/inbound", json=_payload(contact)).json()

        response = client.post("/webhooks/inbound", json=_payload(contact))

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "duplicate": True,
            "conversation_id": first["conversation_id"],
        }
        assert db.query(Message).count() == 1
        assert db.query(OutboundJob).count() == 1

    def test_snake_case_fields_accepted(self, client, contact):
        payload = {
            "provider": "instagram",
            "provider_message_id": "mid.1",
            "contact_id": contact.id,
            "channel": "ig",
            "external_thread_id": "thread-9",
        }

        assert client.post("/webhooks/inbound", json=payload).status_code == 200

    def test_unknown_channel_rejected(self, client, contact):
        response = client.post("/webhooks/inbound", json=_payload(contact, channel="fax"))

        assert response.status_code == 422

    def test_blank_message_id_rejected(self, client, contact):
        response = client.post("/webhooks/inbound", json=_payload(contact, providerMessageId="  "))

        assert response.status_code == 422

    def test_unconfigured_provider_returns_503(self, client, db, contact):
        def handler(session, job):
            raise ConfigurationError("WhatsApp is not configured")

        app.state.job_queue = InlineJobQueue(handler=handler)

        response = client.post("/webhooks/inbound", json=_payload(contact))

        assert response.status_code == 503
        assert response.json()["success"] is False
        row = db.query(InboundMessageDedup).one()
        db.refresh(row)
        assert row.processing_status == "FAILED"
        assert "ConfigurationError" in row.error

    def test_inline_queue_replies_once_per_inbound_message(self, client, db, contact, provider):
        make_profile(db)
        lead = make_lead(db, contact)
        db.commit()
        llm = Mock(spec=LLMProvider)
        llm.generate.return_value = LLMResponse(content="We are open from 9am to 6pm.", model="gpt-4o-mini")
        app.state.job_queue = InlineJobQueue(
            handler=lambda session, job: handle_inbound_auto_reply(session, job, provider=provider, llm=llm)
        )
        retrieval = RetrievalResult(can_respond=False, score=None, reason="No relevant training found for this topic")

        with patch("threadline.services.auto_reply_service.retrieve_and_guard", return_value=retrieval):
            client.post("/webhooks/inbound", json=_payload(contact, leadId=lead.id))
            client.post("/webhooks/inbound", json=_payload(contact, leadId=lead.id))

        assert provider.calls == [("+971500000001", "We are open from 9am to 6pm.")]
        assert db.query(Message).filter(Message.direction == "OUTBOUND").count() == 1
