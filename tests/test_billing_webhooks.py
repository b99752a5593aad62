import json
import time
from datetime import timedelta

from conftest import sign_payload
from app.billing.lifecycle import SubscriptionLifecycle
from app.extensions import db
from app.models import Account, BillingEventLog, PrepaidRecord, SUBSCRIPTION_STATUSES
from app.utils.helpers import from_unix, utcnow

DAY = 24 * 60 * 60


def _event(ev_id, ev_type, obj, created=None):
    return {
        "id": ev_id,
        "object": "event",
        "type": ev_type,
        "created": created or int(time.time()),
        "data": {"object": obj},
    }


def _checkout(ev_id="evt_checkout", created=None, **obj):
    body = {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": "cus_1",
        "subscription": "sub_1",
        "client_reference_id": "acc_1",
        "metadata": {},
    }
    body.update(obj)
    return _event(ev_id, "checkout.session.completed", body, created)


def _account(app, account_id="acc_1"):
    with app.app_context():
        return db.session.get(Account, account_id)


def test_checkout_completed_activates_account(app, send_event, make_account, billing):
    make_account()
    end_ts = int(time.time()) + 30 * DAY
    billing.subscriptions["sub_1"] = {"id": "sub_1", "current_period_end": end_ts}

    resp = send_event(_checkout())
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True}

    acc = _account(app)
    assert acc.subscription_status == "active"
    assert acc.stripe_customer_id == "cus_1"
    assert acc.subscription_id == "sub_1"
    assert acc.current_period_end == from_unix(end_ts)
    assert billing.retrieved == ["sub_1"]


def test_checkout_period_end_from_subscription_item(app, send_event, make_account, billing):
    make_account()
    end_ts = int(time.time()) + 10 * DAY
    billing.subscriptions["sub_1"] = {"id": "sub_1", "items": {"data": [{"current_period_end": end_ts}]}}

    send_event(_checkout())

    assert _account(app).current_period_end == from_unix(end_ts)


def test_checkout_falls_back_to_default_period_when_fetch_fails(app, send_event, make_account, billing):
    make_account()
    billing.retrieve_fails = True

    resp = send_event(_checkout())
    assert resp.status_code == 200

    acc = _account(app)
    assert acc.subscription_status == "active"
    drift = acc.current_period_end - (utcnow() + timedelta(days=30))
    assert abs(drift) < timedelta(minutes=1)


def test_redelivery_is_a_noop(app, send_event, make_account, billing):
    make_account()
    billing.subscriptions["sub_1"] = {"id": "sub_1", "current_period_end": int(time.time()) + 30 * DAY}
    event = _checkout()

    first = send_event(event)
    before = _account(app)
    second = send_event(event)
    after = _account(app)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.get_json() == {"received": True, "duplicate": True}
    assert (before.subscription_status, before.subscription_id, before.current_period_end) == (
        after.subscription_status, after.subscription_id, after.current_period_end
    )
    with app.app_context():
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_checkout").one()
        assert log.processed_at is not None
        assert log.notes == "applied"


def test_invalid_signature_is_rejected_and_logged(app, client, make_account):
    make_account()
    body = json.dumps(_checkout())

    resp = client.post(
        "/webhooks/stripe",
        data=body,
        headers={"Stripe-Signature": sign_payload(body, secret="whsec_wrong")},
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"].startswith("Webhook Error:")

    # a second identical bad delivery does not add another row
    client.post("/webhooks/stripe", data=body, headers={"Stripe-Signature": "t=1,v1=nope"})

    assert _account(app).subscription_status == "none"
    with app.app_context():
        rows = BillingEventLog.query.filter_by(signature_valid=False).all()
        assert len(rows) == 1
        assert rows[0].type == "signature_invalid"


def test_missing_signature_header_is_rejected(client):
    resp = client.post("/webhooks/stripe", data=json.dumps(_checkout()))
    assert resp.status_code == 400


def test_malformed_event_is_rejected(send_event):
    resp = send_event({"object": "event", "data": {"object": {}}})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "malformed_event"}


def test_unhandled_event_type_is_acknowledged(app, send_event):
    resp = send_event(_event("evt_other", "customer.created", {"id": "cus_1"}))
    assert resp.status_code == 200
    with app.app_context():
        assert BillingEventLog.query.filter_by(stripe_event_id="evt_other").one().notes == "ignored"


def test_subscription_updated_maps_status_and_period(app, send_event, make_account):
    make_account(stripe_customer_id="cus_1", subscription_id="sub_1", subscription_status="active")
    end_ts = int(time.time()) + 60 * DAY

    send_event(_event("evt_upd", "customer.subscription.updated", {
        "id": "sub_1", "object": "subscription", "customer": "cus_1",
        "status": "trialing", "current_period_end": end_ts,
    }))

    acc = _account(app)
    assert acc.subscription_status == "trialing"
    assert acc.current_period_end == from_unix(end_ts)


def test_subscription_updated_with_provider_only_status(app, send_event, make_account):
    make_account(stripe_customer_id="cus_1", subscription_id="sub_1", subscription_status="active")

    send_event(_event("evt_unpaid", "customer.subscription.updated", {
        "id": "sub_1", "customer": "cus_1", "status": "unpaid",
    }))
    assert _account(app).subscription_status == "past_due"

    send_event(_event("evt_weird", "customer.subscription.updated", {
        "id": "sub_1", "customer": "cus_1", "status": "something_new",
    }))
    assert _account(app).subscription_status == "past_due"


def test_subscription_updated_for_unknown_customer_is_dropped(app, send_event, make_account):
    make_account()
    resp = send_event(_event("evt_upd", "customer.subscription.updated", {
        "id": "sub_x", "customer": "cus_nobody", "status": "active",
    }))
    assert resp.status_code == 200
    assert _account(app).subscription_status == "none"
    with app.app_context():
        assert BillingEventLog.query.filter_by(stripe_event_id="evt_upd").one().notes == "no_account"


def test_event_for_replaced_subscription_is_ignored(app, send_event, make_account):
    make_account(stripe_customer_id="cus_1", subscription_id="sub_new", subscription_status="active")

    send_event(_event("evt_old", "customer.subscription.deleted", {"id": "sub_old", "customer": "cus_1"}))

    acc = _account(app)
    assert acc.subscription_status == "active"
    assert acc.subscription_id == "sub_new"


def test_subscription_deleted_cancels_immediately(app, send_event, make_account):
    future = utcnow() + timedelta(days=20)
    make_account(stripe_customer_id="cus_1", subscription_id="sub_1", subscription_status="active", current_period_end=future)

    send_event(_event("evt_del", "customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1", "status": "canceled"}))

    acc = _account(app)
    assert acc.subscription_status == "canceled"
    assert abs(acc.current_period_end - utcnow()) < timedelta(minutes=1)


def test_invoice_failed_sets_past_due_and_keeps_period(app, send_event, make_account):
    end = (utcnow() + timedelta(days=12)).replace(microsecond=0)
    make_account(stripe_customer_id="cus_1", subscription_id="sub_1", subscription_status="active", current_period_end=end)

    send_event(_event("evt_fail", "invoice.payment_failed", {"id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1"}))

    acc = _account(app)
    assert acc.subscription_status == "past_due"
    assert acc.current_period_end == end


def test_invoice_succeeded_reactivates_linked_account(app, send_event, make_account, billing):
    make_account(stripe_customer_id="cus_1", subscription_id="sub_1", subscription_status="past_due")
    end_ts = int(time.time()) + 30 * DAY
    billing.subscriptions["sub_1"] = {"id": "sub_1", "current_period_end": end_ts}

    send_event(_event("evt_paid", "invoice.payment_succeeded", {
        "id": "in_1", "object": "invoice", "customer": "cus_1",
        "parent": {"subscription_details": {"subscription": "sub_1"}},
    }))

    acc = _account(app)
    assert acc.subscription_status == "active"
    assert acc.current_period_end == from_unix(end_ts)


def test_invoice_succeeded_links_account_by_email(app, send_event, make_account):
    make_account(email="Payer@Example.com")

    send_event(_event("evt_paid", "invoice.payment_succeeded", {
        "id": "in_1", "object": "invoice", "customer": "cus_9",
        "subscription": "sub_9", "customer_email": "payer@example.COM",
    }))

    acc = _account(app)
    assert acc.subscription_status == "active"
    assert acc.stripe_customer_id == "cus_9"
    assert acc.subscription_id == "sub_9"


def test_invoice_succeeded_without_account_records_prepaid(app, send_event):
    resp = send_event(_event("evt_paid", "invoice.payment_succeeded", {
        "id": "in_1", "object": "invoice", "customer": "cus_9",
        "subscription": "sub_9", "customer_email": "New@Example.com",
    }))
    assert resp.status_code == 200

    with app.app_context():
        rec = PrepaidRecord.query.filter_by(email="new@example.com").one()
        assert rec.status == "active"
        assert rec.stripe_customer_id == "cus_9"
        assert rec.subscription_id == "sub_9"
        assert rec.claimed_by_account_id is None
        assert Account.query.count() == 0


def test_unresolvable_event_is_acknowledged(app, send_event):
    resp = send_event(_checkout(client_reference_id=None, customer=None))
    assert resp.status_code == 200
    with app.app_context():
        assert BillingEventLog.query.filter_by(stripe_event_id="evt_checkout").one().notes == "unresolved"
        assert PrepaidRecord.query.count() == 0


def test_older_event_does_not_overwrite_newer_state(app, send_event, make_account):
    make_account(stripe_customer_id="cus_1", subscription_id="sub_1", subscription_status="active")
    now = int(time.time())

    send_event(_event("evt_new", "customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}, created=now))
    send_event(_event("evt_old", "customer.subscription.updated", {"id": "sub_1", "customer": "cus_1", "status": "active"}, created=now - 60))

    assert _account(app).subscription_status == "canceled"
    with app.app_context():
        assert BillingEventLog.query.filter_by(stripe_event_id="evt_old").one().notes == "stale"


def test_status_always_in_enum(app, send_event, make_account):
    make_account(stripe_customer_id="cus_1", subscription_id="sub_1")
    for i, status in enumerate(["incomplete", "active", "paused", "incomplete_expired", "bogus"]):
        send_event(_event(f"evt_{i}", "customer.subscription.updated", {"id": "sub_1", "customer": "cus_1", "status": status}))
        assert _account(app).subscription_status in SUBSCRIPTION_STATUSES


def test_handler_failure_returns_500_and_retry_succeeds(app, send_event, make_account, monkeypatch):
    make_account()

    def _boom(self, obj, event_at):
        raise RuntimeError("db went away")

    with monkeypatch.context() as m:
        m.setattr(SubscriptionLifecycle, "_checkout_completed", _boom)
        resp = send_event(_checkout())
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Webhook handler failed"}
    assert _account(app).subscription_status == "none"

    with app.app_context():
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_checkout").one()
        assert log.processed_at is None
        assert log.notes == "handler_error:RuntimeError"

    retry = send_event(_checkout())
    assert retry.status_code == 200
    assert _account(app).subscription_status == "active"
    with app.app_context():
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_checkout").one()
        assert log.retries == 1
        assert log.processed_at is not None


def test_second_prepaid_event_overwrites_record(app, send_event, billing):
    billing.subscriptions["sub_b"] = {"id": "sub_b", "current_period_end": int(time.time()) + 90 * DAY}
    send_event(_checkout("evt_a", client_reference_id=None, customer="cus_a", subscription="sub_a",
                         customer_details={"email": "buyer@example.com"}))
    send_event(_checkout("evt_b", client_reference_id=None, customer="cus_b", subscription="sub_b",
                         customer_details={"email": "Buyer@Example.com"}))

    with app.app_context():
        rows = PrepaidRecord.query.all()
        assert len(rows) == 1
        assert (rows[0].email, rows[0].stripe_customer_id, rows[0].subscription_id) == ("buyer@example.com", "cus_b", "sub_b")


def _state(acc):
    return (acc.subscription_status, acc.stripe_customer_id, acc.subscription_id, acc.current_period_end, acc.billing_event_at)


def test_applying_same_checkout_twice_leaves_same_state(app, make_account, billing):
    make_account()
    billing.subscriptions["sub_1"] = {"id": "sub_1", "current_period_end": int(time.time()) + 30 * DAY}
    event = _checkout()

    with app.app_context():
        lifecycle = SubscriptionLifecycle(billing)
        lifecycle.apply(event)
        first = _state(db.session.get(Account, "acc_1"))
        lifecycle.apply(event)
        second = _state(db.session.get(Account, "acc_1"))

    assert first == second
    assert first[0] == "active"


def test_failed_invoice_for_replaced_subscription_is_ignored(app, send_event, make_account):
    make_account(stripe_customer_id="cus_1", subscription_id="sub_new", subscription_status="active")

    send_event(_event("evt_fail_old", "invoice.payment_failed", {
        "id": "in_old", "object": "invoice", "customer": "cus_1", "subscription": "sub_old",
    }))

    acc = _account(app)
    assert acc.subscription_status == "active"
    assert acc.subscription_id == "sub_new"
    with app.app_context():
        assert BillingEventLog.query.filter_by(stripe_event_id="evt_fail_old").one().notes == "superseded"


def test_stale_events_skip_subscription_fetch(app, send_event, make_account, billing):
    now = int(time.time())
    make_account(stripe_customer_id="cus_1", subscription_id="sub_1", subscription_status="canceled",
                 billing_event_at=from_unix(now))

    send_event(_checkout("evt_old_checkout", created=now - 60))
    send_event(_event("evt_old_paid", "invoice.payment_succeeded", {
        "id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1",
    }, created=now - 60))

    assert billing.retrieved == []
    assert _account(app).subscription_status == "canceled"
