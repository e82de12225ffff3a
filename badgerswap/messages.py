"""
Message repository.

Sending is two writes: the append, then the conversation summary
(last message, timestamp, recipient's unread counter). Only the append is
required to succeed; a failed summary write is logged and repaired later by
conversations.reconcile_conversation_summary.
"""

import logging
import uuid
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from badgerswap.config import settings
from badgerswap.conversations import conversation_topics, load_conversation
from badgerswap.errors import ChatError, NotAParticipantError, StoreUnavailableError, ValidationError
from badgerswap.metrics import record_message_outcome, record_summary_failure
from badgerswap.models import Conversation, Message
from badgerswap.realtime import ChangeFeed, Subscription, messages_topic
from badgerswap.schemas import MessageResponse
from badgerswap.storage import SessionLocal, run_with_retry
from badgerswap.unread import record_message_sent
from badgerswap.utils import server_timestamp

logger = logging.getLogger(__name__)


def _find_by_client_id(
    db: Session,
    conversation_id: str,
    sender_id: str,
    client_message_id: str
) -> Optional[Message]:
    # Keys belong to the sender; the other party may reuse the same string
    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.sender_id == sender_id,
            Message.client_message_id == client_message_id,
        )
        .first()
    )


def _validate_send(db: Session, conversation_id: str, sender_id: str, text: str) -> Conversation:
    if not conversation_id:
        raise ValidationError("conversation_id is required")
    if not sender_id:
        raise ValidationError("sender_id is required")
    if text is None or not text.strip():
        raise ValidationError("Message text must not be empty")
    if len(text) > settings.MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message text exceeds {settings.MAX_MESSAGE_LENGTH} characters")

    conversation = load_conversation(db, conversation_id)
    if not conversation.is_participant(sender_id):
        raise NotAParticipantError(sender_id, conversation_id)
    return conversation


def _update_summary(db: Session, conversation: Conversation, message: Message) -> None:
    """Second write of a send. Failures are swallowed: the message stays."""
    try:
        record_message_sent(db, conversation, message.sender_id)
        # An older message finishing late must not overwrite a newer summary
        db.query(Conversation).filter(
            Conversation.id == conversation.id,
            Conversation.timestamp <= message.timestamp,
        ).update(
            {Conversation.last_message: message.text, Conversation.timestamp: message.timestamp},
            synchronize_session=False,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        record_summary_failure()
        logger.warning(
            f"Message {message.id} stored but summary update of {conversation.id} failed: {e}"
        )
    finally:
        db.expire(conversation)


def send_message(
    db: Session,
    feed: ChangeFeed,
    conversation_id: str,
    sender_id: str,
    text: str,
    client_message_id: Optional[str] = None
) -> tuple[Message, bool]:
    """
    Append a message to a conversation.

    All checks happen before any write. With a client_message_id, resending
    the same key returns the stored message instead of appending again, so
    callers may retry a send safely.

    Args:
        db: Database session
        feed: Change feed notified after the append
        conversation_id: Target conversation
        sender_id: Must be the conversation's buyer or seller
        text: Non-empty after trimming
        client_message_id: Optional idempotency key

    Returns:
        Tuple of (message, duplicate)

    Raises:
        ValidationError: empty text, missing ids
        NotAParticipantError: sender is not a party to the conversation
        NotFoundError: conversation does not exist
        StoreUnavailableError: the append could not be written
    """
    try:
        conversation = _validate_send(db, conversation_id, sender_id, text)
    except ChatError:
        record_message_outcome("rejected")
        raise

    if client_message_id:
        existing = run_with_retry(
            lambda: _find_by_client_id(db, conversation_id, sender_id, client_message_id),
            "find_message_by_client_id",
        )
        if existing is not None:
            logger.info(f"Duplicate send {client_message_id} in {conversation_id}, returning {existing.id}")
            record_message_outcome("duplicate")
            return existing, True

    topics = [messages_topic(conversation_id)] + conversation_topics(conversation)

    message = Message(
        id=uuid.uuid4().hex,
        conversation_id=conversation_id,
        sender_id=sender_id,
        text=text,
        timestamp=server_timestamp(),
        client_message_id=client_message_id,
    )

    try:
        db.add(message)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = None
        if client_message_id:
            existing = _find_by_client_id(db, conversation_id, sender_id, client_message_id)
        if existing is None:
            raise
        logger.info(f"Concurrent duplicate send {client_message_id} in {conversation_id}")
        record_message_outcome("duplicate")
        return existing, True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to append message to {conversation_id}: {e}")
        raise StoreUnavailableError("send_message", details=str(e)) from e

    logger.info(f"Message {message.id} appended to {conversation_id} by {sender_id}")
    record_message_outcome("created")

    _update_summary(db, conversation, message)

    feed.publish(*topics)
    return message, False


def _ordered_messages(db: Session, conversation_id: str) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.asc(), Message.seq.asc())
        .all()
    )


def get_messages(db: Session, conversation_id: str) -> list[Message]:
    """All messages of a conversation, ascending by timestamp then insertion."""
    return run_with_retry(lambda: _ordered_messages(db, conversation_id), "get_messages")


def subscribe_to_messages(
    feed: ChangeFeed,
    conversation_id: str,
    on_update: Callable[[list[MessageResponse]], None],
    session_factory: sessionmaker = SessionLocal,
    on_error: Optional[Callable[[Exception], None]] = None
) -> Subscription:
    """
    Live, ordered message list of one conversation.

    on_update gets the full list now and after every change. Cancel the
    returned subscription when it is no longer needed.
    """
    def load() -> list[MessageResponse]:
        with session_factory() as db:
            return [MessageResponse.model_validate(m) for m in _ordered_messages(db, conversation_id)]

    logger.info(f"Subscribing to messages of {conversation_id}")
    return Subscription(
        feed,
        [messages_topic(conversation_id)],
        load,
        on_update,
        on_error=on_error,
        name=f"messages:{conversation_id}",
        kind="messages",
    )
