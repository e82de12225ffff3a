import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from badgerswap.directory import get_listing
from badgerswap.models import Favorite, Listing
from badgerswap.storage import run_with_retry
from badgerswap.utils import server_timestamp

logger = logging.getLogger(__name__)


def add_favorite(db: Session, user_id: str, listing_id: str) -> bool:
    """
    Favorite a listing. Favoriting twice is a no-op.

    Returns:
        True if a new favorite was stored
    """
    get_listing(db, listing_id)

    if is_favorited(db, user_id, listing_id):
        return False

    try:
        db.add(Favorite(user_id=user_id, listing_id=listing_id, created_at=server_timestamp()))
        db.commit()
    except IntegrityError:
        db.rollback()
        return False

    logger.info(f"User {user_id} favorited {listing_id}")
    return True


def remove_favorite(db: Session, user_id: str, listing_id: str) -> bool:
    removed = db.query(Favorite).filter(
        Favorite.user_id == user_id,
        Favorite.listing_id == listing_id,
    ).delete(synchronize_session=False)
    db.commit()
    if removed:
        logger.info(f"User {user_id} unfavorited {listing_id}")
    return bool(removed)


def is_favorited(db: Session, user_id: str, listing_id: str) -> bool:
    return run_with_retry(
        lambda: db.query(Favorite).filter(
            Favorite.user_id == user_id,
            Favorite.listing_id == listing_id,
        ).first() is not None,
        "is_favorited",
    )


def get_favorites(db: Session, user_id: str) -> list[Listing]:
    """Favorited listings, most recent first. Listings deleted since are skipped."""
    return run_with_retry(
        lambda: (
            db.query(Listing)
            .join(Favorite, Favorite.listing_id == Listing.id)
            .filter(Favorite.user_id == user_id)
            .order_by(Favorite.created_at.desc())
            .all()
        ),
        "get_favorites",
    )
