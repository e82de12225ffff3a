"""
Conversation repository.

A conversation is identified by its (buyer, seller, product) triple. Its id
is derived from the triple, so a second create for the same triple collides
on the primary key and resolves to the existing row.

Deleting a conversation deletes its messages in the same transaction.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from badgerswap.config import settings
from badgerswap.directory import find_listing, get_display_name
from badgerswap.errors import ChatError, NotAParticipantError, NotFoundError, ValidationError
from badgerswap.metrics import record_conversation_outcome
from badgerswap.models import Conversation, Message
from badgerswap.realtime import ChangeFeed, MergedSubscription, buyer_topic, messages_topic, seller_topic
from badgerswap.schemas import ConversationResponse
from badgerswap.storage import SessionLocal, run_with_retry
from badgerswap.utils import conversation_key, server_timestamp

logger = logging.getLogger(__name__)


def conversation_topics(conversation: Conversation) -> list[str]:
    """Topics observers of this conversation's summary listen on."""
    return [buyer_topic(conversation.buyer_id), seller_topic(conversation.seller_id)]


def load_conversation(db: Session, conversation_id: str) -> Conversation:
    """
    Read a conversation fresh from the store.

    Raises:
        NotFoundError: no conversation with this id
    """
    conversation = run_with_retry(
        lambda: db.get(Conversation, conversation_id, populate_existing=True),
        "load_conversation",
    )
    if conversation is None:
        raise NotFoundError("Conversation", conversation_id)
    return conversation


def find_conversation(db: Session, buyer_id: str, seller_id: str, product_id: str) -> Optional[Conversation]:
    return run_with_retry(
        lambda: (
            db.query(Conversation)
            .filter(
                Conversation.buyer_id == buyer_id,
                Conversation.seller_id == seller_id,
                Conversation.product_id == product_id,
            )
            .populate_existing()
            .first()
        ),
        "find_conversation",
    )


def _resolve_buyer_name(db: Session, buyer_id: str) -> str:
    try:
        name = get_display_name(db, buyer_id)
    except (ChatError, SQLAlchemyError) as e:
        logger.warning(f"Buyer name lookup failed for {buyer_id}: {e}")
        name = None
    return name or settings.DEFAULT_BUYER_NAME


def _resolve_seller_name(db: Session, seller_id: str, seller_name: Optional[str]) -> str:
    if seller_name and seller_name.strip():
        return seller_name.strip()
    try:
        name = get_display_name(db, seller_id)
    except (ChatError, SQLAlchemyError) as e:
        logger.warning(f"Seller name lookup failed for {seller_id}: {e}")
        name = None
    return name or settings.DEFAULT_SELLER_NAME


def _resolve_product_title(db: Session, product_id: str, product_title: Optional[str]) -> str:
    if product_title and product_title.strip():
        return product_title.strip()
    try:
        listing = find_listing(db, product_id)
    except (ChatError, SQLAlchemyError) as e:
        logger.warning(f"Listing lookup failed for {product_id}: {e}")
        listing = None
    return listing.title if listing is not None else settings.DEFAULT_PRODUCT_TITLE


def get_or_create_conversation(
    db: Session,
    feed: ChangeFeed,
    buyer_id: str,
    seller_id: str,
    product_id: str,
    product_title: Optional[str] = None,
    seller_name: Optional[str] = None
) -> tuple[Conversation, bool]:
    """
    Return the conversation for a (buyer, seller, product) triple, creating it if absent.

    An existing conversation is returned untouched (no writes). A new one
    starts with an empty last message and both unread counters at zero;
    its buyer name comes from the user directory, falling back to
    DEFAULT_BUYER_NAME when the lookup fails.

    Args:
        db: Database session
        feed: Change feed notified when a conversation is created
        buyer_id: Identity of the buyer (the caller)
        seller_id: Identity of the listing's seller
        product_id: Listing under discussion
        product_title: Listing title; looked up when omitted
        seller_name: Seller display name; looked up when omitted

    Returns:
        Tuple of (conversation, created)

    Raises:
        ValidationError: missing ids, or buyer and seller are the same user
    """
    for field, value in (("buyer_id", buyer_id), ("seller_id", seller_id), ("product_id", product_id)):
        if not value or not value.strip():
            raise ValidationError(f"{field} is required")
    if buyer_id == seller_id:
        raise ValidationError("buyer and seller must be different users")

    existing = find_conversation(db, buyer_id, seller_id, product_id)
    if existing is not None:
        logger.info(f"Conversation found: {existing.id}")
        record_conversation_outcome("existing")
        return existing, False

    now = server_timestamp()
    conversation = Conversation(
        id=conversation_key(buyer_id, seller_id, product_id),
        buyer_id=buyer_id,
        seller_id=seller_id,
        product_id=product_id,
        buyer_name=_resolve_buyer_name(db, buyer_id),
        seller_name=_resolve_seller_name(db, seller_id, seller_name),
        product_title=_resolve_product_title(db, product_id, product_title),
        last_message="",
        timestamp=now,
        created_at=now,
        unread_by_buyer=0,
        unread_by_seller=0,
    )

    try:
        db.add(conversation)
        db.commit()
    except IntegrityError:
        # Another request created the same triple between our read and write
        db.rollback()
        logger.info(f"Conversation for ({buyer_id}, {seller_id}, {product_id}) created concurrently")
        existing = find_conversation(db, buyer_id, seller_id, product_id)
        if existing is None:
            raise
        record_conversation_outcome("existing")
        return existing, False

    logger.info(f"Conversation created: {conversation.id} buyer={buyer_id} seller={seller_id} product={product_id}")
    record_conversation_outcome("created")
    feed.publish(*conversation_topics(conversation))
    return conversation, True


def reconcile_conversation_summary(db: Session, conversation: Conversation) -> bool:
    """
    Repair a summary left stale by a failed post-send update.

    If the newest message is more recent than the conversation's timestamp,
    last_message and timestamp are recomputed from it.

    Returns:
        True if the summary was rewritten
    """
    latest = (
        db.query(Message)
        .filter(Message.conversation_id == conversation.id)
        .order_by(Message.timestamp.desc(), Message.seq.desc())
        .first()
    )
    if latest is None or latest.timestamp <= conversation.timestamp:
        return False

    try:
        db.query(Conversation).filter(
            Conversation.id == conversation.id,
            Conversation.timestamp < latest.timestamp,
        ).update(
            {Conversation.last_message: latest.text, Conversation.timestamp: latest.timestamp},
            synchronize_session=False,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Summary reconciliation failed for {conversation.id}: {e}")
        return False

    db.refresh(conversation)
    logger.info(f"Reconciled summary of conversation {conversation.id}")
    return True


def get_conversation(db: Session, conversation_id: str) -> Conversation:
    """
    Fetch a conversation, repairing a stale summary on the way.

    Raises:
        NotFoundError: no conversation with this id
    """
    conversation = load_conversation(db, conversation_id)
    reconcile_conversation_summary(db, conversation)
    return conversation


def delete_conversation(
    db: Session,
    feed: ChangeFeed,
    conversation_id: str,
    actor_id: Optional[str] = None
) -> None:
    """
    Delete a conversation and all of its messages.

    Args:
        db: Database session
        feed: Change feed notified of the deletion
        conversation_id: Conversation to delete
        actor_id: When given, must be the buyer or the seller

    Raises:
        NotFoundError: no conversation with this id
        NotAParticipantError: actor is not a party to the conversation
    """
    conversation = load_conversation(db, conversation_id)
    if actor_id is not None and not conversation.is_participant(actor_id):
        raise NotAParticipantError(actor_id, conversation_id)

    topics = [messages_topic(conversation_id)] + conversation_topics(conversation)

    deleted = db.query(Message).filter(Message.conversation_id == conversation_id).delete(
        synchronize_session=False
    )
    db.delete(conversation)
    db.commit()
    logger.info(f"Conversation {conversation_id} deleted with {deleted} messages")

    feed.publish(*topics)


def get_conversations_for_user(db: Session, user_id: str) -> list[Conversation]:
    """
    Conversations where user_id is the buyer, followed by those where they are the seller.

    No particular order is promised within each half.
    """
    as_buyer = run_with_retry(
        lambda: db.query(Conversation).filter(Conversation.buyer_id == user_id).populate_existing().all(),
        "conversations_as_buyer",
    )
    as_seller = run_with_retry(
        lambda: db.query(Conversation).filter(Conversation.seller_id == user_id).populate_existing().all(),
        "conversations_as_seller",
    )

    seen = set()
    result = []
    for conversation in as_buyer + as_seller:
        if conversation.id not in seen:
            seen.add(conversation.id)
            result.append(conversation)
    return result


def _side_loader(session_factory: sessionmaker, column, user_id: str) -> Callable[[], list[ConversationResponse]]:
    def load() -> list[ConversationResponse]:
        with session_factory() as db:
            rows = db.query(Conversation).filter(column == user_id).all()
            return [ConversationResponse.model_validate(row) for row in rows]
    return load


def subscribe_to_conversations(
    feed: ChangeFeed,
    user_id: str,
    on_update: Callable[[list[ConversationResponse]], None],
    session_factory: sessionmaker = SessionLocal,
    on_error: Optional[Callable[[Exception], None]] = None
) -> MergedSubscription:
    """
    Live list of a user's conversations.

    The buyer-side and seller-side lists are tracked as two independent
    subscriptions; on_update receives their union whenever either changes.
    Cancel the returned subscription when the view goes away.
    """
    logger.info(f"Subscribing to conversations of {user_id}")
    return MergedSubscription(
        feed,
        left=(buyer_topic(user_id), _side_loader(session_factory, Conversation.buyer_id, user_id)),
        right=(seller_topic(user_id), _side_loader(session_factory, Conversation.seller_id, user_id)),
        on_update=on_update,
        key=lambda conversation: conversation.id,
        on_error=on_error,
        name=f"conversations:{user_id}",
        kind="conversations",
    )
