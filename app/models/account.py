from flask_login import UserMixin
from sqlalchemy import func, text
from app.extensions import db, login_manager

STATUS_NONE = "none"
STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"

SUBSCRIPTION_STATUSES = (STATUS_NONE, STATUS_TRIALING, STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELED)


class Account(db.Model, UserMixin):
    __tablename__ = "accounts"

    # Identity-provider user id (accounts are created by the external signup flow)
    id = db.Column(db.String(64), primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)  # matched case-insensitively
    display_name = db.Column(db.String(255), nullable=True)

    subscription_status = db.Column(db.String(32), nullable=False, default=STATUS_NONE, server_default=text("'none'"), index=True)
    subscription_id = db.Column(db.String(64), nullable=True, index=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    stripe_customer_id = db.Column(db.String(64), nullable=True, unique=True, index=True)

    # `created` of the newest billing event applied; older deliveries are skipped
    billing_event_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        db.CheckConstraint(
            "subscription_status IN ('none','trialing','active','past_due','canceled')",
            name="ck_accounts_subscription_status",
        ),
    )

    def get_id(self) -> str:
        return str(self.id)

    @property
    def has_active_subscription(self) -> bool:
        return self.subscription_status in (STATUS_ACTIVE, STATUS_TRIALING)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.display_name,
            "subscriptionStatus": self.subscription_status,
            "subscriptionId": self.subscription_id,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
            "hasBillingProfile": bool(self.stripe_customer_id),
        }

    def __repr__(self) -> str:
        return f"<Account id={self.id!r} status={self.subscription_status!r} customer={self.stripe_customer_id!r}>"


@login_manager.request_loader
def load_account_from_request(request):
    """
    Bearer token -> verified identity -> Account (provisioned on first sight).
    Returning None lets Flask-Login answer with the unauthorized handler.
    """
    header = request.headers.get("Authorization") or ""
    if not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    if not token:
        return None

    from app.extensions import get_identity_client
    from app.services.accounts import provision_account

    identity = get_identity_client().verify(token)
    if identity is None:
        return None
    return provision_account(identity)


@login_manager.unauthorized_handler
def unauthorized():
    from flask import jsonify, request
    if not (request.headers.get("Authorization") or "").startswith("Bearer "):
        return jsonify({"error": "Unauthorized: No token provided"}), 401
    return jsonify({"error": "Unauthorized: Invalid token"}), 401
