"""
Subscription lifecycle: applies Stripe billing events to Account rows.

This is an overwrite model keyed by event type, not a guarded FSM. Each
event is applied on its own and every write is an update/upsert by key, so
redelivery of the same event converges to the same state. Ordering is only
enforced by the event-time guard: an event whose ``created`` is older than
the newest one already applied to the account is skipped.

    checkout.session.completed      -> active (+ customer, subscription, period end)
    customer.subscription.updated   -> provider status, refreshed period end
    customer.subscription.deleted   -> canceled, period end = now
    invoice.payment_succeeded       -> active (+ link by email / prepaid fallback)
    invoice.payment_failed          -> past_due, period end untouched
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from app.billing import ledger
from app.billing.identity import (
    KIND_ACCOUNT,
    KIND_EMAIL,
    Resolution,
    find_account_by_customer,
    resolve_identity,
)
from app.extensions import db
from app.models import (
    Account,
    SUBSCRIPTION_STATUSES,
    STATUS_NONE,
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    STATUS_CANCELED,
)
from app.utils.helpers import days_from_now, from_unix, stripe_id, utcnow

logger = logging.getLogger(__name__)

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_INVOICE_SUCCEEDED = "invoice.payment_succeeded"
EVENT_INVOICE_FAILED = "invoice.payment_failed"

# Stripe statuses that have no counterpart in the account enum
_PROVIDER_STATUS_MAP = {
    "incomplete": STATUS_NONE,
    "incomplete_expired": STATUS_CANCELED,
    "unpaid": STATUS_PAST_DUE,
    "paused": STATUS_PAST_DUE,
}

APPLIED = "applied"
PREPAID = "prepaid"
STALE = "stale"
SUPERSEDED = "superseded"
NO_ACCOUNT = "no_account"
UNRESOLVED = "unresolved"
IGNORED = "ignored"


@dataclass(frozen=True)
class Outcome:
    action: str
    account_id: Optional[str] = None
    email: Optional[str] = None


def map_provider_status(status: str | None) -> Optional[str]:
    if status in SUBSCRIPTION_STATUSES:
        return status
    return _PROVIDER_STATUS_MAP.get(status or "")


def subscription_period_end(sub: Dict[str, Any]) -> Optional[datetime]:
    """current_period_end lives on the subscription (older API) or its first item (newer API)."""
    end = from_unix(sub.get("current_period_end"))
    if end is not None:
        return end
    items = (sub.get("items") or {}).get("data") or []
    if items:
        return from_unix(items[0].get("current_period_end"))
    return None


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = stripe_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return stripe_id(details.get("subscription"))


class SubscriptionLifecycle:
    """
    Applies one verified Stripe event at a time.

    `provider` is the billing handle (see app.services.billing.StripeBilling);
    only ``retrieve_subscription`` is used here.
    """

    def __init__(self, provider, *, default_period_days: int = 30, now: Callable[[], datetime] = utcnow):
        self.provider = provider
        self.default_period_days = default_period_days
        self.now = now
        self._handlers = {
            EVENT_CHECKOUT_COMPLETED: self._checkout_completed,
            EVENT_SUBSCRIPTION_UPDATED: self._subscription_updated,
            EVENT_SUBSCRIPTION_DELETED: self._subscription_deleted,
            EVENT_INVOICE_SUCCEEDED: self._invoice_succeeded,
            EVENT_INVOICE_FAILED: self._invoice_failed,
        }

    def handles(self, event_type: str | None) -> bool:
        return event_type in self._handlers

    def apply(self, event: Dict[str, Any]) -> Outcome:
        """Apply `event` and commit. Database errors propagate to the caller."""
        ev_type = event.get("type")
        handler = self._handlers.get(ev_type)
        if handler is None:
            return Outcome(IGNORED)

        obj = (event.get("data") or {}).get("object") or {}
        event_at = from_unix(event.get("created"))
        outcome = handler(obj, event_at)
        db.session.commit()

        logger.info(
            "billing.lifecycle.%s",
            outcome.action,
            extra={"event_id": event.get("id"), "event_type": ev_type, "account_id": outcome.account_id},
        )
        return outcome

    # ----- helpers -----
    def _period_end(self, subscription_id: str | None) -> datetime:
        """Period end from Stripe; falls back to now + default days if the fetch fails."""
        if subscription_id:
            try:
                end = subscription_period_end(self.provider.retrieve_subscription(subscription_id))
                if end is not None:
                    return end
            except Exception as exc:
                logger.warning(
                    "billing.lifecycle.period_end_fallback",
                    extra={"subscription_id": subscription_id, "error": str(exc)},
                )
        return days_from_now(self.default_period_days)

    @staticmethod
    def _is_stale(account: Account, event_at: datetime | None) -> bool:
        return bool(event_at and account.billing_event_at and event_at < account.billing_event_at)

    @staticmethod
    def _stamp(account: Account, event_at: datetime | None) -> None:
        if event_at and (account.billing_event_at is None or event_at > account.billing_event_at):
            account.billing_event_at = event_at

    @staticmethod
    def _is_superseded(account: Account, subscription_id: str | None) -> bool:
        # events about an older subscription must not touch the current one
        return bool(subscription_id and account.subscription_id and account.subscription_id != subscription_id)

    def _activate(self, account: Account, *, customer_id, subscription_id, event_at) -> Outcome:
        if self._is_stale(account, event_at):
            return Outcome(STALE, account_id=account.id)
        if customer_id:
            account.stripe_customer_id = customer_id
        if subscription_id:
            account.subscription_id = subscription_id
        account.subscription_status = STATUS_ACTIVE if account.stripe_customer_id else STATUS_NONE
        account.current_period_end = self._period_end(subscription_id)
        self._stamp(account, event_at)
        return Outcome(APPLIED, account_id=account.id)

    def _linked_account(self, obj: Dict[str, Any], event_at) -> tuple[Optional[Account], Optional[Outcome]]:
        """Account linked by customer id, or the Outcome explaining why there is none to touch."""
        customer_id = stripe_id(obj.get("customer"))
        account = find_account_by_customer(customer_id)
        if account is None:
            return None, Outcome(NO_ACCOUNT)
        if self._is_stale(account, event_at):
            return None, Outcome(STALE, account_id=account.id)
        return account, None

    def _fallback(self, res: Resolution, *, customer_id, subscription_id, event_at) -> Outcome:
        if res.kind == KIND_ACCOUNT:
            return self._activate(
                res.account,
                customer_id=customer_id,
                subscription_id=subscription_id,
                event_at=event_at,
            )
        if res.kind == KIND_EMAIL:
            status = STATUS_ACTIVE if customer_id else STATUS_NONE
            ledger.upsert(res.email, customer_id, subscription_id, status, self._period_end(subscription_id))
            return Outcome(PREPAID, email=res.email)
        return Outcome(UNRESOLVED)

    # ----- event handlers -----
    def _checkout_completed(self, obj, event_at) -> Outcome:
        return self._fallback(
            resolve_identity(obj),
            customer_id=stripe_id(obj.get("customer")),
            subscription_id=stripe_id(obj.get("subscription")),
            event_at=event_at,
        )

    def _subscription_updated(self, obj, event_at) -> Outcome:
        account, skipped = self._linked_account(obj, event_at)
        if skipped:
            return skipped
        if self._is_superseded(account, obj.get("id")):
            return Outcome(SUPERSEDED, account_id=account.id)

        status = map_provider_status(obj.get("status"))
        if status is not None:
            account.subscription_status = status
        else:
            logger.warning("billing.lifecycle.unknown_status", extra={"status": obj.get("status"), "account_id": account.id})
        if obj.get("id"):
            account.subscription_id = obj["id"]
        period_end = subscription_period_end(obj)
        if period_end is not None:
            account.current_period_end = period_end
        self._stamp(account, event_at)
        return Outcome(APPLIED, account_id=account.id)

    def _subscription_deleted(self, obj, event_at) -> Outcome:
        account, skipped = self._linked_account(obj, event_at)
        if skipped:
            return skipped
        if self._is_superseded(account, obj.get("id")):
            return Outcome(SUPERSEDED, account_id=account.id)

        # access is revoked now, not at the end of the paid period
        account.subscription_status = STATUS_CANCELED
        account.current_period_end = self.now()
        self._stamp(account, event_at)
        return Outcome(APPLIED, account_id=account.id)

    def _invoice_succeeded(self, obj, event_at) -> Outcome:
        customer_id = stripe_id(obj.get("customer"))
        subscription_id = invoice_subscription_id(obj)

        account = find_account_by_customer(customer_id)
        if account is not None:
            return self._activate(
                account,
                customer_id=customer_id,
                subscription_id=subscription_id,
                event_at=event_at,
            )
        return self._fallback(
            resolve_identity(obj),
            customer_id=customer_id,
            subscription_id=subscription_id,
            event_at=event_at,
        )

    def _invoice_failed(self, obj, event_at) -> Outcome:
        account, skipped = self._linked_account(obj, event_at)
        if skipped:
            return skipped
        if self._is_superseded(account, invoice_subscription_id(obj)):
            return Outcome(SUPERSEDED, account_id=account.id)
        account.subscription_status = STATUS_PAST_DUE
        self._stamp(account, event_at)
        return Outcome(APPLIED, account_id=account.id)
