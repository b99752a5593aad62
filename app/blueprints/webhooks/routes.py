import hashlib
from flask import request, jsonify, current_app
from sqlalchemy.exc import SQLAlchemyError
from . import bp
from app.billing.lifecycle import SubscriptionLifecycle
from app.errors import SignatureError
from app.extensions import db, get_billing_provider
from app.models import BillingEventLog
from app.utils.helpers import utcnow


def _log_invalid_signature(raw_bytes: bytes) -> None:
    # Deterministic synthetic id (no payload trust); repeats of the same body log once
    digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
    synthetic_id = f"invalid:{digest}"
    if BillingEventLog.query.filter_by(stripe_event_id=synthetic_id).first():
        return
    db.session.add(BillingEventLog(
        stripe_event_id=synthetic_id,
        type="signature_invalid",
        signature_valid=False,
        payload={},
    ))
    db.session.commit()


def _note_failure(ev_id: str, note: str) -> None:
    try:
        log = BillingEventLog.query.filter_by(stripe_event_id=ev_id).first()
        if log is not None:
            log.notes = note[:255]
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("stripe_webhook.note_failed", extra={"event_id": ev_id})


# ----- Stripe Webhook (subscriptions lifecycle) -----
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe → /webhooks/stripe
    Verifies signature, logs the delivery, applies it to the owning account.

    400 on a bad signature (Stripe does not retry), 500 when applying fails
    (Stripe retries), otherwise {"received": true}, including for events that
    resolve to nobody.
    """
    provider = get_billing_provider()

    # 1) Verify signature
    raw_bytes = request.get_data(cache=False, as_text=False)
    sig_header = request.headers.get("Stripe-Signature", "")
    try:
        event = provider.construct_event(raw_bytes, sig_header)
    except SignatureError as e:
        current_app.logger.warning("stripe_webhook.signature_invalid", extra={"error": e.message})
        _log_invalid_signature(raw_bytes)
        return jsonify({"error": e.message}), 400

    ev_id = event.get("id")
    ev_type = event.get("type")
    if not ev_id or not ev_type:
        return jsonify({"error": "malformed_event"}), 400

    # 2) Idempotency guard: only a successfully applied delivery short-circuits
    log = BillingEventLog.query.filter_by(stripe_event_id=ev_id).first()
    if log is not None and log.processed_at is not None:
        return jsonify({"received": True, "duplicate": True}), 200

    # 3) Persist raw payload to log (for audit/forensics and `flask billing replay-event`)
    if log is None:
        log = BillingEventLog(stripe_event_id=ev_id, type=ev_type, signature_valid=True, payload=event, retries=0)
        db.session.add(log)
    else:
        log.retries = (log.retries or 0) + 1
    db.session.commit()

    # 4) Apply
    lifecycle = SubscriptionLifecycle(
        provider,
        default_period_days=current_app.config.get("DEFAULT_PERIOD_DAYS", 30),
    )
    try:
        outcome = lifecycle.apply(event)
    except Exception as e:
        db.session.rollback()
        current_app.logger.exception(
            "stripe_webhook_handler_error",
            extra={"event_id": ev_id, "event_type": ev_type},
        )
        _note_failure(ev_id, f"handler_error:{type(e).__name__}")
        return jsonify({"error": "Webhook handler failed"}), 500

    log.processed_at = utcnow()
    log.notes = outcome.action
    db.session.commit()

    return jsonify({"received": True}), 200
