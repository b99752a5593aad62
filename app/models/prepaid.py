from sqlalchemy import func
from app.extensions import db

class PrepaidRecord(db.Model):
    """Billing state for a payment that arrived before its account existed."""
    __tablename__ = "prepaid_records"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)  # lowercase
    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    subscription_id = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(32), nullable=False)
    current_period_end = db.Column(db.DateTime, nullable=True)

    claimed_by_account_id = db.Column(db.String(64), db.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True)
    claimed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<PrepaidRecord email={self.email!r} status={self.status!r} claimed_by={self.claimed_by_account_id!r}>"
