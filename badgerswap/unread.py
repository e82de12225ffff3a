"""
Per-party unread counters kept on the conversation row.

Increments are done in SQL (counter = counter + 1) so concurrent sends
never overwrite each other's increments.
"""

import logging

from sqlalchemy.orm import Session

from badgerswap.conversations import conversation_topics, load_conversation
from badgerswap.errors import NotAParticipantError
from badgerswap.models import BUYER, SELLER, Conversation
from badgerswap.realtime import ChangeFeed

logger = logging.getLogger(__name__)

UNREAD_COLUMNS = {
    BUYER: Conversation.unread_by_buyer,
    SELLER: Conversation.unread_by_seller,
}


def recipient_role(conversation: Conversation, sender_id: str) -> str:
    """
    Return the role of the party who is not the sender.

    Raises:
        NotAParticipantError: sender is neither buyer nor seller
    """
    role = conversation.role_of(sender_id)
    if role is None:
        raise NotAParticipantError(sender_id, conversation.id)
    return SELLER if role == BUYER else BUYER


def record_message_sent(db: Session, conversation: Conversation, sender_id: str) -> str:
    """
    Increment the recipient's unread counter by one.

    The sender's counter is left alone. The caller owns the transaction;
    nothing is committed here.

    Returns:
        The recipient's role
    """
    role = recipient_role(conversation, sender_id)
    column = UNREAD_COLUMNS[role]

    db.query(Conversation).filter(Conversation.id == conversation.id).update(
        {column: column + 1},
        synchronize_session=False,
    )
    logger.debug(f"Incremented unread_by_{role} on {conversation.id}")
    return role


def mark_conversation_as_read(
    db: Session,
    feed: ChangeFeed,
    conversation_id: str,
    user_id: str
) -> bool:
    """
    Reset the counter belonging to user_id's role in the conversation.

    A user who is neither party is ignored. Calling this repeatedly leaves
    the counter at zero.

    Returns:
        True if a counter was changed, False otherwise

    Raises:
        NotFoundError: conversation does not exist
    """
    conversation = load_conversation(db, conversation_id)
    role = conversation.role_of(user_id)
    if role is None:
        logger.info(f"mark-as-read ignored: {user_id} is not a party to {conversation_id}")
        return False

    column = UNREAD_COLUMNS[role]
    if getattr(conversation, column.key) == 0:
        return False

    topics = conversation_topics(conversation)

    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {column: 0},
        synchronize_session=False,
    )
    db.commit()
    db.expire(conversation)
    logger.info(f"Conversation {conversation_id} marked read by {role} {user_id}")

    feed.publish(*topics)
    return True
