from typing import Dict, Any
from urllib.parse import urljoin
import hashlib
import json
import logging

import stripe
from stripe import StripeClient

from app.errors import SignatureError, UpstreamError

logger = logging.getLogger(__name__)


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "checkout:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

def _params_hash(d: Dict[str, Any]) -> str:
    # Stable across runs if params identical; changes when you change fields
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()[:16]

def _as_dict(obj: Any) -> Dict[str, Any]:
    # Stripe objects may need converting to dicts
    if isinstance(obj, dict) and not hasattr(obj, "to_dict_recursive"):
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeBilling:
    """
    Stateless handle over the Stripe API, built once per app and stored on
    ``app.extensions["billing_provider"]``.
    """

    def __init__(self, *, secret_key: str | None, webhook_secret: str | None, price_id: str | None, base_url: str):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.price_id = price_id
        self.base_url = (base_url or "").rstrip("/") + "/"

    def _client(self) -> StripeClient:
        if not self.secret_key:
            raise UpstreamError("STRIPE_SECRET_KEY is not configured", status_code=500)
        return StripeClient(self.secret_key)

    def _absolute_url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    # ----- webhooks -----
    def construct_event(self, raw_body: bytes, sig_header: str) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event as a plain dict."""
        if not self.webhook_secret:
            raise UpstreamError("Stripe webhook secret not configured", status_code=500)
        payload = raw_body.decode("utf-8")
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise SignatureError(f"Webhook Error: {exc}") from exc
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise SignatureError("Webhook Error: payload is not JSON") from exc

    # ----- reads -----
    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            sub = self._client().subscriptions.retrieve(subscription_id)
        except stripe.StripeError as exc:
            raise UpstreamError(f"Could not retrieve subscription {subscription_id}") from exc
        return _as_dict(sub)

    # ----- sessions -----
    def create_customer(self, *, email: str, account_id: str) -> str:
        params = {"email": email, "metadata": {"account_id": account_id}}
        try:
            customer = self._client().customers.create(
                params=params,
                options={"idempotency_key": make_idempotency_key("customer", account_id)},
            )
        except stripe.StripeError as exc:
            raise UpstreamError("Could not create billing customer") from exc
        return customer.id

    def create_checkout_session(self, *, customer_id: str, account_id: str, trial_days: int) -> Dict[str, Any]:
        """
        Create a Stripe Checkout Session for the subscription Price.
        Returns: {"id": <session_id>, "url": <redirect_url or None>}
        """
        if not self.price_id:
            raise UpstreamError("STRIPE_PRICE_ID is not configured", status_code=500)
        params: Dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "client_reference_id": account_id,
            "line_items": [{"price": self.price_id, "quantity": 1}],
            "allow_promotion_codes": True,
            "success_url": self._absolute_url("chat?success=true"),
            "cancel_url": self._absolute_url("chat?canceled=true"),
            # Webhook context: the identity resolver reads metadata.account_id first
            "metadata": {"account_id": account_id},
            "subscription_data": {
                "metadata": {"account_id": account_id},
            },
        }
        # Stripe rejects trial_period_days=0; omitting it charges immediately
        if trial_days > 0:
            params["subscription_data"]["trial_period_days"] = trial_days
        idem = make_idempotency_key("checkout", "v1", account_id, customer_id, _params_hash(params))
        try:
            session = self._client().checkout.sessions.create(params=params, options={"idempotency_key": idem})
        except stripe.StripeError as exc:
            raise UpstreamError("Could not create checkout session") from exc
        return {"id": session.id, "url": getattr(session, "url", None)}

    def create_portal_session(self, *, customer_id: str) -> Dict[str, Any]:
        """Create a Stripe Customer Portal session for an existing Customer."""
        params = {"customer": customer_id, "return_url": self._absolute_url("settings")}
        try:
            session = self._client().billing_portal.sessions.create(params=params)
        except stripe.StripeError as exc:
            raise UpstreamError("Could not create portal session") from exc
        return {"url": session.url}
