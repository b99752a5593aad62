import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.billing import ledger
from app.errors import PersistenceError, ValidationError
from app.extensions import db
from app.models import Account
from app.services.identity import Identity
from app.utils.validators import clean_str

logger = logging.getLogger(__name__)


def provision_account(identity: Identity) -> Optional[Account]:
    """
    Account for a verified identity, created on first sight.

    A new account immediately claims any prepaid subscription recorded for
    its email, so a payment made before signup is not stranded. The account
    row is committed first; a failed claim never loses it.
    """
    account = db.session.get(Account, identity.id)
    if account is not None:
        if identity.email and account.email != identity.email:
            account.email = identity.email
            db.session.commit()
        return account

    account = Account(id=identity.id, email=identity.email, display_name=identity.name)
    db.session.add(account)
    try:
        db.session.commit()
    except IntegrityError:
        # a concurrent request provisioned it first
        db.session.rollback()
        return db.session.get(Account, identity.id)

    claimed = None
    try:
        claimed = ledger.claim_for_account(account)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        claimed = None
        logger.exception("accounts.prepaid_claim_failed", extra={"account_id": account.id})

    logger.info(
        "accounts.provisioned",
        extra={"account_id": account.id, "prepaid_claimed": claimed is not None},
    )
    return account


def update_profile(account: Account, *, display_name: str | None) -> Account:
    """The only account fields an owner may edit; billing fields belong to the webhook."""
    name = clean_str(display_name, max_len=255)
    if name is None:
        raise ValidationError("Name is required")
    account.display_name = name
    try:
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.exception("accounts.update_profile_failed", extra={"account_id": account.id})
        raise PersistenceError("Could not update profile") from exc
    return account
