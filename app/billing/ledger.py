"""Prepaid ledger: billing state for emails that have no Account yet."""
import logging
from datetime import datetime
from typing import Optional

from app.extensions import db
from app.billing.identity import find_account_by_customer
from app.models import Account, PrepaidRecord, STATUS_NONE
from app.utils.helpers import normalize_email, utcnow

logger = logging.getLogger(__name__)


def upsert(
    email: str,
    customer_id: str | None,
    subscription_id: str | None,
    status: str,
    period_end: datetime | None,
) -> PrepaidRecord:
    """Insert or overwrite the record keyed by email (last write wins). Caller commits."""
    key = normalize_email(email)
    if not key:
        raise ValueError("prepaid upsert requires an email")

    rec = PrepaidRecord.query.filter_by(email=key).first()
    if rec is None:
        rec = PrepaidRecord(email=key, status=status)
        db.session.add(rec)
    rec.stripe_customer_id = customer_id
    rec.subscription_id = subscription_id
    rec.status = status
    rec.current_period_end = period_end
    db.session.flush()

    logger.info("billing.prepaid.upsert", extra={"email": key, "status": status, "customer_id": customer_id})
    return rec


def find_unclaimed(email: str | None) -> Optional[PrepaidRecord]:
    key = normalize_email(email)
    if not key:
        return None
    return PrepaidRecord.query.filter_by(email=key, claimed_by_account_id=None).first()


def claim_for_account(account: Account) -> Optional[PrepaidRecord]:
    """
    Move an unclaimed prepaid subscription onto `account`. Caller commits.

    The record stays unclaimed for manual review when the account is already
    linked to a different Stripe customer, or when that customer already
    belongs to another account. A record without a customer id carries no
    billing link, so the account stays at status ``none``.
    """
    rec = find_unclaimed(account.email)
    if rec is None:
        return None
    if account.stripe_customer_id and account.stripe_customer_id != rec.stripe_customer_id:
        logger.warning(
            "billing.prepaid.claim_conflict",
            extra={"account_id": account.id, "email": rec.email, "customer_id": rec.stripe_customer_id},
        )
        return None
    owner = find_account_by_customer(rec.stripe_customer_id)
    if owner is not None and owner.id != account.id:
        logger.warning(
            "billing.prepaid.customer_taken",
            extra={"account_id": account.id, "owner_id": owner.id, "email": rec.email, "customer_id": rec.stripe_customer_id},
        )
        return None

    account.stripe_customer_id = rec.stripe_customer_id
    account.subscription_id = rec.subscription_id
    account.subscription_status = rec.status if rec.stripe_customer_id else STATUS_NONE
    account.current_period_end = rec.current_period_end
    rec.claimed_by_account_id = account.id
    rec.claimed_at = utcnow()
    db.session.flush()

    logger.info("billing.prepaid.claimed", extra={"account_id": account.id, "email": rec.email, "status": account.subscription_status})
    return rec
