from flask import Blueprint, request, current_app, jsonify
from flask_login import login_required, current_user
from app.extensions import db, get_billing_provider

billing_bp = Blueprint("billing", __name__)


def _ensure_customer(account, provider) -> str:
    """Stripe customer for the account, created (and linked) on first checkout."""
    if account.stripe_customer_id:
        return account.stripe_customer_id
    customer_id = provider.create_customer(email=account.email, account_id=account.id)
    account.stripe_customer_id = customer_id
    db.session.commit()
    current_app.logger.info("billing.customer_created", extra={"account_id": account.id, "customer_id": customer_id})
    return customer_id


@billing_bp.post("/checkout")
@login_required
def checkout():
    """
    Create a Checkout Session and return its URL for client-side redirect.
    Body: {"isTrial": bool} — true starts a TRIAL_PERIOD_DAYS trial, false charges now.
    """
    data = request.get_json(silent=True) or {}
    is_trial = bool(data.get("isTrial"))
    account = current_user._get_current_object()
    provider = get_billing_provider()

    customer_id = _ensure_customer(account, provider)
    trial_days = current_app.config.get("TRIAL_PERIOD_DAYS", 30) if is_trial else 0
    payload = provider.create_checkout_session(customer_id=customer_id, account_id=account.id, trial_days=trial_days)

    url = payload.get("url")
    if not url:
        return jsonify({"error": "Could not create checkout session"}), 502
    return jsonify({"url": url})


@billing_bp.post("/portal")
@login_required
def portal():
    account = current_user._get_current_object()
    if not account.stripe_customer_id:
        return jsonify({"error": "No subscription found"}), 400

    payload = get_billing_provider().create_portal_session(customer_id=account.stripe_customer_id)
    url = payload.get("url")
    if not url:
        return jsonify({"error": "Could not create portal session"}), 502
    return jsonify({"url": url})
