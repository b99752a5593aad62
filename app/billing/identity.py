"""
Identity resolution for billing events.

Stripe events can arrive before, during or after the account exists, so a
payload is mapped to exactly one of:

- ``account``    — an existing Account was found
- ``email``      — no account, but the payload names an email (prepaid path)
- ``unresolved`` — nothing to go on; logged and dropped

Lookup order, first match wins:
1. ``metadata.account_id`` set at checkout time (legacy key ``userId``)
2. ``client_reference_id`` on the checkout session
3. case-insensitive match of the customer email against Account.email
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import func

from app.extensions import db
from app.models import Account
from app.utils.helpers import normalize_email

logger = logging.getLogger(__name__)

KIND_ACCOUNT = "account"
KIND_EMAIL = "email"
KIND_UNRESOLVED = "unresolved"

METADATA_ACCOUNT_KEYS = ("account_id", "userId")


@dataclass(frozen=True)
class Resolution:
    kind: str
    account: Optional[Account] = None
    email: Optional[str] = None
    source: Optional[str] = None

    @property
    def account_id(self) -> Optional[str]:
        return self.account.id if self.account is not None else None


def event_email(obj: Dict[str, Any]) -> Optional[str]:
    """Customer email carried by a checkout session, invoice or charge payload."""
    details = obj.get("customer_details") or {}
    return normalize_email(
        obj.get("customer_email")
        or details.get("email")
        or obj.get("receipt_email")
    )


def _account_by_id(account_id: Any) -> Optional[Account]:
    if not account_id:
        return None
    return db.session.get(Account, str(account_id))


def find_account_by_email(email: str | None) -> Optional[Account]:
    email = normalize_email(email)
    if not email:
        return None
    return (
        Account.query
        .filter(func.lower(Account.email) == email)
        .order_by(Account.created_at.asc())
        .first()
    )


def find_account_by_customer(customer_id: str | None) -> Optional[Account]:
    if not customer_id:
        return None
    return Account.query.filter_by(stripe_customer_id=customer_id).first()


def resolve_identity(obj: Dict[str, Any]) -> Resolution:
    meta = obj.get("metadata") or {}
    for key in METADATA_ACCOUNT_KEYS:
        account = _account_by_id(meta.get(key))
        if account is not None:
            return Resolution(KIND_ACCOUNT, account=account, email=account.email, source=f"metadata.{key}")

    account = _account_by_id(obj.get("client_reference_id"))
    if account is not None:
        return Resolution(KIND_ACCOUNT, account=account, email=account.email, source="client_reference_id")

    email = event_email(obj)
    account = find_account_by_email(email)
    if account is not None:
        return Resolution(KIND_ACCOUNT, account=account, email=email, source="email")

    if email:
        return Resolution(KIND_EMAIL, email=email, source="email")

    logger.warning(
        "billing.identity.unresolved",
        extra={"object_id": obj.get("id"), "object_type": obj.get("object")},
    )
    return Resolution(KIND_UNRESOLVED)
