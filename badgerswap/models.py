"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

All timestamps are ISO-8601 UTC strings produced by utils.server_timestamp(),
so ordering by the column is ordering by time.
"""

from typing import Optional

from sqlalchemy import CheckConstraint, Column, Float, ForeignKey, Integer, String, Text, UniqueConstraint

from badgerswap.storage import Base

BUYER = "buyer"
SELLER = "seller"


class Conversation(Base):
    """
    A thread tying one buyer, one seller and one listing together.

    Table: conversations
    Primary Key: id, derived from (buyer_id, seller_id, product_id)
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("buyer_id", "seller_id", "product_id", name="uq_conversation_triple"),
        CheckConstraint("unread_by_buyer >= 0", name="ck_unread_by_buyer"),
        CheckConstraint("unread_by_seller >= 0", name="ck_unread_by_seller"),
    )

    id = Column(String(32), primary_key=True)
    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=False)

    # Denormalized display fields, captured once at creation
    buyer_name = Column(String, nullable=False)
    seller_name = Column(String, nullable=False)
    product_title = Column(String, nullable=False)

    last_message = Column(Text, nullable=False, default="")
    timestamp = Column(String, nullable=False)  # last activity
    created_at = Column(String, nullable=False)
    unread_by_buyer = Column(Integer, nullable=False, default=0)
    unread_by_seller = Column(Integer, nullable=False, default=0)

    def role_of(self, user_id: str) -> Optional[str]:
        """Return "buyer", "seller" or None for a user id."""
        if user_id == self.buyer_id:
            return BUYER
        if user_id == self.seller_id:
            return SELLER
        return None

    def is_participant(self, user_id: str) -> bool:
        return self.role_of(user_id) is not None


class Message(Base):
    """
    A single text entry within a conversation. Immutable once written.

    Table: messages
    Primary Key: seq (insertion order, breaks timestamp ties)
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sender_id", "client_message_id", name="uq_message_idempotency"),
    )

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(32), nullable=False, unique=True, index=True)
    conversation_id = Column(
        String(32),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sender_id = Column(String, nullable=False)
    text = Column(Text, nullable=False)
    timestamp = Column(String, nullable=False, index=True)
    client_message_id = Column(String, nullable=True)


class User(Base):
    """User profile, the source of truth for display names."""
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    bio = Column(Text, nullable=True)
    reputation_score = Column(Float, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Listing(Base):
    """A product posted by a seller."""
    __tablename__ = "listings"

    id = Column(String(32), primary_key=True)
    seller_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (
        UniqueConstraint("user_id", "listing_id", name="uq_favorite"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    listing_id = Column(String(32), nullable=False)
    created_at = Column(String, nullable=False)


class Report(Base):
    """An abuse report against a listing or a user."""
    __tablename__ = "reports"

    id = Column(String(32), primary_key=True)
    reporter_id = Column(String, nullable=False, index=True)
    target_id = Column(String, nullable=False, index=True)
    target_type = Column(String, nullable=False)  # listing | user
    reason = Column(Text, nullable=False)
    details = Column(Text, nullable=False, default="")
    product_title = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
