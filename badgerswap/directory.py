"""
User and listing lookup.

Conversations only reference users and listings by id; this module is where
their display names and titles come from.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from badgerswap.config import settings
from badgerswap.errors import ForbiddenError, NotFoundError, ValidationError
from badgerswap.models import Listing, User
from badgerswap.storage import run_with_retry
from badgerswap.utils import server_timestamp

logger = logging.getLogger(__name__)


# =============================================================================
# Users
# =============================================================================

def upsert_user_profile(
    db: Session,
    user_id: str,
    name: str,
    email: str,
    bio: Optional[str] = None
) -> User:
    """
    Create or update a user's profile.

    Args:
        db: Database session
        user_id: Identity provider id
        name: Display name
        email: Must belong to the institution's email domain
        bio: Optional free text

    Raises:
        ValidationError: bad email domain or email already taken
    """
    domain = settings.INSTITUTION_EMAIL_DOMAIN.lower()
    email = email.strip().lower()
    if not email.endswith("@" + domain):
        raise ValidationError(f"Email must be a @{domain} address")

    now = server_timestamp()
    user = db.get(User, user_id)
    if user is None:
        user = User(
            id=user_id,
            name=name,
            email=email,
            bio=bio,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        logger.info(f"Creating profile for user {user_id}")
    else:
        user.name = name
        user.email = email
        user.bio = bio
        user.updated_at = now
        logger.info(f"Updating profile for user {user_id}")

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError("Email is already registered", details=email)

    return user


def get_user(db: Session, user_id: str) -> User:
    user = run_with_retry(lambda: db.get(User, user_id), "get_user")
    if user is None:
        raise NotFoundError("User", user_id)
    return user


def get_display_name(db: Session, user_id: str) -> Optional[str]:
    """Return the user's name, or None if there is no profile."""
    user = run_with_retry(lambda: db.get(User, user_id), "get_display_name")
    if user is None or not user.name:
        return None
    return user.name


# =============================================================================
# Listings
# =============================================================================

def create_listing(
    db: Session,
    seller_id: str,
    title: str,
    price: float,
    description: Optional[str] = None,
    category: Optional[str] = None
) -> Listing:
    if not title.strip():
        raise ValidationError("Listing title is required")
    if price < 0:
        raise ValidationError("Listing price must not be negative")

    listing = Listing(
        id=uuid.uuid4().hex,
        seller_id=seller_id,
        title=title.strip(),
        price=price,
        description=description,
        category=category,
        created_at=server_timestamp(),
    )
    db.add(listing)
    db.commit()
    logger.info(f"Listing {listing.id} created by {seller_id}")
    return listing


def get_listing(db: Session, listing_id: str) -> Listing:
    listing = run_with_retry(lambda: db.get(Listing, listing_id), "get_listing")
    if listing is None:
        raise NotFoundError("Listing", listing_id)
    return listing


def find_listing(db: Session, listing_id: str) -> Optional[Listing]:
    return run_with_retry(lambda: db.get(Listing, listing_id), "find_listing")


def get_listings_by_seller(db: Session, seller_id: str) -> list[Listing]:
    return run_with_retry(
        lambda: (
            db.query(Listing)
            .filter(Listing.seller_id == seller_id)
            .order_by(Listing.created_at.desc())
            .all()
        ),
        "get_listings_by_seller",
    )


def list_listings(db: Session, category: Optional[str] = None) -> list[Listing]:
    """Browse listings, newest first, optionally within one category."""
    query = db.query(Listing)
    if category:
        query = query.filter(Listing.category == category)
    return run_with_retry(lambda: query.order_by(Listing.created_at.desc()).all(), "list_listings")


def _owned_listing(db: Session, listing_id: str, actor_id: str) -> Listing:
    listing = get_listing(db, listing_id)
    if listing.seller_id != actor_id:
        raise ForbiddenError("Only the seller can change this listing")
    return listing


def update_listing(
    db: Session,
    listing_id: str,
    actor_id: str,
    title: Optional[str] = None,
    price: Optional[float] = None,
    description: Optional[str] = None,
    category: Optional[str] = None
) -> Listing:
    """
    Partially update a listing. Fields left as None are kept.

    Conversations keep the title they captured when they were opened.

    Raises:
        NotFoundError: no such listing
        ForbiddenError: actor is not the listing's seller
        ValidationError: blank title or negative price
    """
    listing = _owned_listing(db, listing_id, actor_id)

    if title is not None:
        if not title.strip():
            raise ValidationError("Listing title is required")
        listing.title = title.strip()
    if price is not None:
        if price < 0:
            raise ValidationError("Listing price must not be negative")
        listing.price = price
    if description is not None:
        listing.description = description
    if category is not None:
        listing.category = category

    db.commit()
    logger.info(f"Listing {listing_id} updated by {actor_id}")
    return listing


def delete_listing(db: Session, listing_id: str, actor_id: str) -> None:
    """
    Delete a listing. Favorites pointing at it drop out of favorite lists.

    Raises:
        NotFoundError: no such listing
        ForbiddenError: actor is not the listing's seller
    """
    listing = _owned_listing(db, listing_id, actor_id)
    db.delete(listing)
    db.commit()
    logger.info(f"Listing {listing_id} deleted by {actor_id}")
