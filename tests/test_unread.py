"""
Tests for unread accounting.
"""

import threading

import pytest

from badgerswap.conversations import get_conversation, get_or_create_conversation
from badgerswap.errors import NotAParticipantError, NotFoundError
from badgerswap.messages import send_message
from badgerswap.storage import SessionLocal
from badgerswap.unread import mark_conversation_as_read, record_message_sent, recipient_role


@pytest.fixture
def conversation(db, feed):
    conversation, _ = get_or_create_conversation(db, feed, "u1", "u2", "p1", "Calc Textbook", "Alice")
    return conversation


class TestUnreadCounters:

    def test_buyer_messages_count_for_seller(self, db, feed, conversation):
        """N buyer messages leave the seller with N unread and the buyer with none."""
        for i in range(4):
            send_message(db, feed, conversation.id, "u1", f"ping {i}")

        refreshed = get_conversation(db, conversation.id)
        assert refreshed.unread_by_seller == 4
        assert refreshed.unread_by_buyer == 0

    def test_counters_are_independent(self, db, feed, conversation):
        send_message(db, feed, conversation.id, "u1", "a")
        send_message(db, feed, conversation.id, "u2", "b")
        send_message(db, feed, conversation.id, "u2", "c")

        refreshed = get_conversation(db, conversation.id)
        assert refreshed.unread_by_seller == 1
        assert refreshed.unread_by_buyer == 2

    def test_message_then_read(self, db, feed, conversation):
        send_message(db, feed, conversation.id, "u1", "Is this available?")
        assert get_conversation(db, conversation.id).unread_by_seller == 1

        changed = mark_conversation_as_read(db, feed, conversation.id, "u2")

        refreshed = get_conversation(db, conversation.id)
        assert changed is True
        assert refreshed.unread_by_seller == 0
        assert refreshed.unread_by_buyer == 0

    def test_mark_read_is_idempotent(self, db, feed, conversation):
        send_message(db, feed, conversation.id, "u1", "hello")

        mark_conversation_as_read(db, feed, conversation.id, "u2")
        second = mark_conversation_as_read(db, feed, conversation.id, "u2")

        assert second is False
        assert get_conversation(db, conversation.id).unread_by_seller == 0

    def test_mark_read_by_stranger_is_noop(self, db, feed, conversation):
        send_message(db, feed, conversation.id, "u1", "hello")

        changed = mark_conversation_as_read(db, feed, conversation.id, "u3")

        assert changed is False
        assert get_conversation(db, conversation.id).unread_by_seller == 1

    def test_mark_read_only_touches_own_counter(self, db, feed, conversation):
        send_message(db, feed, conversation.id, "u1", "hello")
        send_message(db, feed, conversation.id, "u2", "hi")

        mark_conversation_as_read(db, feed, conversation.id, "u1")

        refreshed = get_conversation(db, conversation.id)
        assert refreshed.unread_by_buyer == 0
        assert refreshed.unread_by_seller == 1

    def test_mark_read_missing_conversation(self, db, feed):
        with pytest.raises(NotFoundError):
            mark_conversation_as_read(db, feed, "missing", "u1")

    def test_recipient_role(self, conversation):
        assert recipient_role(conversation, "u1") == "seller"
        assert recipient_role(conversation, "u2") == "buyer"
        with pytest.raises(NotAParticipantError):
            recipient_role(conversation, "u3")

    def test_increment_reads_current_value(self, db, feed, conversation):
        """Increments from separate sessions add up instead of overwriting."""
        with SessionLocal() as other:
            stale = get_conversation(other, conversation.id)
            record_message_sent(db, conversation, "u1")
            db.commit()
            # `stale` still believes the counter is zero
            record_message_sent(other, stale, "u1")
            other.commit()

        assert get_conversation(db, conversation.id).unread_by_seller == 2

    def test_concurrent_sends_do_not_lose_increments(self, db, feed, conversation):
        errors = []

        def worker(n: int):
            with SessionLocal() as session:
                try:
                    for i in range(5):
                        send_message(session, feed, conversation.id, "u1", f"worker {n} message {i}")
                except Exception as e:  # surfaced through the assertion below
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert get_conversation(db, conversation.id).unread_by_seller == 20


class TestReadRoute:

    def test_mark_read_via_http(self, client, headers_for):
        created = client.post(
            "/conversations", json={"seller_id": "u2", "product_id": "p1"}, headers=headers_for("u1")
        ).json()
        conversation_id = created["conversation"]["id"]
        client.post(f"/conversations/{conversation_id}/messages", json={"text": "hi"}, headers=headers_for("u1"))

        before = client.get(f"/conversations/{conversation_id}", headers=headers_for("u2")).json()
        assert before["unread_by_seller"] == 1

        response = client.post(f"/conversations/{conversation_id}/read", headers=headers_for("u2"))
        assert response.status_code == 200
        assert response.json()["changed"] is True

        after = client.get(f"/conversations/{conversation_id}", headers=headers_for("u2")).json()
        assert after["unread_by_seller"] == 0
        assert after["unread_by_buyer"] == 0
