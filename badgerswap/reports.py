"""
Abuse reports against listings and users.

Submitting a report costs the reported user (or the listing's seller) a
fixed amount of reputation. That deduction is best effort: the report is
stored even when it fails.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from badgerswap.config import settings
from badgerswap.errors import NotFoundError, ValidationError
from badgerswap.models import Listing, Report, User
from badgerswap.storage import run_with_retry
from badgerswap.utils import server_timestamp

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_REVIEWED = "reviewed"
STATUS_RESOLVED = "resolved"
STATUS_DISMISSED = "dismissed"
REPORT_STATUSES = (STATUS_PENDING, STATUS_REVIEWED, STATUS_RESOLVED, STATUS_DISMISSED)

TARGET_LISTING = "listing"
TARGET_USER = "user"
TARGET_TYPES = (TARGET_LISTING, TARGET_USER)


def _deduct_reputation(db: Session, user_id: str) -> Optional[float]:
    """Lower a user's reputation score, never below zero."""
    user = db.get(User, user_id)
    if user is None:
        return None

    current = user.reputation_score
    if current is None:
        current = settings.DEFAULT_REPUTATION_SCORE
    user.reputation_score = max(0.0, round(current - settings.REPORT_REPUTATION_PENALTY, 4))
    db.commit()
    logger.info(f"Reputation of {user_id} lowered to {user.reputation_score}")
    return user.reputation_score


def _reported_user_id(db: Session, report: Report) -> Optional[str]:
    if report.target_type == TARGET_USER:
        return report.target_id
    listing = db.get(Listing, report.target_id)
    return listing.seller_id if listing is not None else None


def submit_report(
    db: Session,
    reporter_id: str,
    target_id: str,
    target_type: str,
    reason: str,
    details: Optional[str] = None,
    product_title: Optional[str] = None
) -> Report:
    """
    Store a new pending report and penalise the reported user.

    Raises:
        ValidationError: missing reporter/target/reason or unknown target type
    """
    if not reporter_id:
        raise ValidationError("Reporter ID is required")
    if not target_id:
        raise ValidationError("Target ID is required")
    if target_type not in TARGET_TYPES:
        raise ValidationError("Valid target type is required (listing or user)")
    if not reason or not reason.strip():
        raise ValidationError("Report reason is required")

    now = server_timestamp()
    report = Report(
        id=uuid.uuid4().hex,
        reporter_id=reporter_id,
        target_id=target_id,
        target_type=target_type,
        reason=reason.strip(),
        details=details or "",
        product_title=product_title,
        status=STATUS_PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(report)
    db.commit()
    logger.info(f"Report {report.id} filed by {reporter_id} against {target_type} {target_id}")

    try:
        reported = _reported_user_id(db, report)
        if reported:
            _deduct_reputation(db, reported)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error deducting reputation score for report {report.id}: {e}")

    return report


def get_report(db: Session, report_id: str) -> Report:
    report = run_with_retry(lambda: db.get(Report, report_id), "get_report")
    if report is None:
        raise NotFoundError("Report", report_id)
    return report


def list_reports(
    db: Session,
    reporter_id: Optional[str] = None,
    target_id: Optional[str] = None,
    status: Optional[str] = None,
    target_type: Optional[str] = None
) -> list[Report]:
    """Reports matching every given filter, newest first."""
    if status is not None and status not in REPORT_STATUSES:
        raise ValidationError("Invalid status")
    if target_type is not None and target_type not in TARGET_TYPES:
        raise ValidationError("Invalid target type")

    query = db.query(Report)
    if reporter_id:
        query = query.filter(Report.reporter_id == reporter_id)
    if target_id:
        query = query.filter(Report.target_id == target_id)
    if status:
        query = query.filter(Report.status == status)
    if target_type:
        query = query.filter(Report.target_type == target_type)

    return run_with_retry(lambda: query.order_by(Report.created_at.desc()).all(), "list_reports")


def update_report_status(
    db: Session,
    report_id: str,
    status: str,
    admin_notes: Optional[str] = None
) -> Report:
    if status not in REPORT_STATUSES:
        raise ValidationError("Invalid status")

    report = get_report(db, report_id)
    report.status = status
    if admin_notes is not None:
        report.admin_notes = admin_notes
    report.updated_at = server_timestamp()
    db.commit()
    logger.info(f"Report {report_id} is now {status}")
    return report


def delete_report(db: Session, report_id: str) -> None:
    report = get_report(db, report_id)
    db.delete(report)
    db.commit()
    logger.info(f"Report {report_id} deleted")


def has_already_reported(db: Session, reporter_id: str, target_id: str) -> bool:
    return get_report_count(db, target_id, reporter_id=reporter_id) > 0


def get_report_count(db: Session, target_id: str, reporter_id: Optional[str] = None) -> int:
    query = db.query(func.count(Report.id)).filter(Report.target_id == target_id)
    if reporter_id:
        query = query.filter(Report.reporter_id == reporter_id)
    return run_with_retry(lambda: query.scalar() or 0, "get_report_count")
