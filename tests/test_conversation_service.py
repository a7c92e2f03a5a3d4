from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_contact, make_conversation, make_lead
from threadline.models import Contact, Conversation
from threadline.services.conversation_service import (
    CHANNEL_ALIASES,
    CHANNELS,
    get_known_field,
    mark_known_field,
    normalize_channel,
    resolve_or_create,
    touch_outbound,
)


class TestNormalizeChannel:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("WHATSAPP", "whatsapp"),
            ("wa", "whatsapp"),
            (" WhatsApp ", "whatsapp"),
            ("ig", "instagram"),
            ("Instagram", "instagram"),
            ("fb", "facebook"),
            ("messenger", "facebook"),
            ("E-Mail", "email"),
            ("web", "webchat"),
            ("web chat", "webchat"),
        ],
    )
    def test_aliases(self, raw, expected):
        assert normalize_channel(raw) == expected

    def test_aliases_map_onto_fixed_vocabulary(self):
        assert set(CHANNEL_ALIASES.values()) == set(CHANNELS)

    def test_unknown_channel_raises(self):
        with pytest.raises(ValueError):
            normalize_channel("carrier-pigeon")

    def test_empty_channel_raises(self):
        with pytest.raises(ValueError):
            normalize_channel(None)


class TestResolveOrCreate:
    def test_creates_conversation_with_normalized_channel(self, db):
        contact = make_contact(db)

        conversation_id = resolve_or_create(db, contact_id=contact.id, channel="WHATSAPP")
        db.commit()

        conversation = db.get(Conversation, conversation_id)
        assert conversation.channel == "whatsapp"
        assert conversation.status == "open"
        assert conversation.unread_count == 1
        assert conversation.last_inbound_at is not None
        assert conversation.last_outbound_at is None

    def test_same_contact_and_channel_reuses_row(self, db):
        contact = make_contact(db)

        first = resolve_or_create(db, contact_id=contact.id, channel="whatsapp")
        second = resolve_or_create(db, contact_id=contact.id, channel="WA")
        db.commit()

        assert first == second
        assert db.query(Conversation).count() == 1
        assert db.get(Conversation, first).unread_count == 2

    def test_different_channels_get_different_threads(self, db):
        contact = make_contact(db)

        whatsapp_id = resolve_or_create(db, contact_id=contact.id, channel="whatsapp")
        instagram_id = resolve_or_create(db, contact_id=contact.id, channel="instagram")

        assert whatsapp_id != instagram_id

    def test_lead_id_filled_in_when_newly_known(self, db):
        contact = make_contact(db)
        lead = make_lead(db, contact)

        conversation_id = resolve_or_create(db, contact_id=contact.id, channel="whatsapp")
        resolve_or_create(db, contact_id=contact.id, channel="whatsapp", lead_id=lead.id)
        resolve_or_create(db, contact_id=contact.id, channel="whatsapp")
        db.commit()

        assert db.get(Conversation, conversation_id).lead_id == lead.id

    def test_external_thread_match_updates_in_place(self, db):
        contact = make_contact(db)
        existing = make_conversation(db, contact, channel="instagram", external_thread_id="thread-1", status="closed")
        db.commit()

        conversation_id = resolve_or_create(
            db, contact_id=contact.id, channel="IG", external_thread_id="thread-1", status="open"
        )
        db.commit()

        assert conversation_id == existing.id
        db.refresh(existing)
        assert existing.status == "open"
        assert existing.unread_count == 1

    def test_new_message_reopens_closed_conversation(self, db):
        contact = make_contact(db)
        existing = make_conversation(db, contact, status="closed")
        db.commit()

        resolve_or_create(db, contact_id=contact.id, channel="whatsapp")
        db.commit()

        db.refresh(existing)
        assert existing.status == "open"

    def test_outbound_direction_touches_outbound_timestamp(self, db):
        contact = make_contact(db)
        sent_at = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

        conversation_id = resolve_or_create(
            db, contact_id=contact.id, channel="whatsapp", direction="outbound", timestamp=sent_at
        )
        db.commit()

        conversation = db.get(Conversation, conversation_id)
        assert conversation.unread_count == 0
        assert conversation.last_outbound_at.replace(tzinfo=None) == sent_at.replace(tzinfo=None)
        assert conversation.last_inbound_at is None

    def test_concurrent_calls_create_one_row(self, file_session_factory):
        with file_session_factory() as session:
            contact = Contact(full_name="Race", phone="+971500000009")
            session.add(contact)
            session.commit()
            contact_id = contact.id

        def call(_):
            with file_session_factory() as session:
                conversation_id = resolve_or_create(session, contact_id=contact_id, channel="whatsapp")
                session.commit()
                return conversation_id

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(call, range(8)))

        assert len(set(ids)) == 1
        with file_session_factory() as session:
            assert session.query(Conversation).count() == 1
            assert session.get(Conversation, ids[0]).unread_count == 8


class TestTouchOutbound:
    def test_updates_thread_timestamps(self, db):
        contact = make_contact(db)
        conversation = make_conversation(db, contact)
        db.commit()
        sent_at = datetime.now(timezone.utc) - timedelta(minutes=1)

        touch_outbound(db, conversation.id, sent_at)
        db.commit()
        db.refresh(conversation)

        assert conversation.last_outbound_at is not None
        assert conversation.last_message_at == conversation.last_outbound_at


class TestKnownFields:
    def test_sets_field_once(self, db):
        contact = make_contact(db)
        conversation = make_conversation(db, contact)
        db.commit()

        assert mark_known_field(db, conversation.id, "first_greeting_sent_at", "2026-01-01T00:00:00") is True
        assert mark_known_field(db, conversation.id, "first_greeting_sent_at", "2026-02-02T00:00:00") is False
        db.commit()

        assert get_known_field(db, conversation.id, "first_greeting_sent_at") == "2026-01-01T00:00:00"

    def test_missing_conversation(self, db):
        assert mark_known_field(db, 999, "anything", True) is False
