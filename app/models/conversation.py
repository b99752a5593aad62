import uuid
from sqlalchemy import UniqueConstraint
from app.extensions import db
from app.utils.helpers import utcnow

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


def _uuid() -> str:
    return str(uuid.uuid4())


class Conversation(db.Model):
    __tablename__ = "conversations"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    account_id = db.Column(db.String(64), db.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    title = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class Message(db.Model):
    __tablename__ = "messages"

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.String(36), db.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    # Position in the transcript; unique per conversation so concurrent sends cannot tie
    seq = db.Column(db.Integer, nullable=False)
    role = db.Column(db.String(16), nullable=False)
    content = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("conversation_id", "seq", name="uq_messages_conversation_seq"),
        db.CheckConstraint("role IN ('user','assistant')", name="ck_messages_role"),
    )

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}

    def __repr__(self) -> str:
        return f"<Message conversation={self.conversation_id!r} seq={self.seq} role={self.role!r}>"
