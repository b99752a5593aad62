from sqlalchemy import func, text
from sqlalchemy.dialects.postgresql import JSONB
from app.extensions import db

class BillingEventLog(db.Model):
    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    signature_valid = db.Column(db.Boolean, nullable=False, server_default=text("true"))
    payload = db.Column(db.JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    retries = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    notes = db.Column(db.String(255), nullable=True)

    # Set only once the event was applied without error
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
