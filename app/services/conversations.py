"""
Conversation store: the only code that reads or writes conversations and
messages. No business rules live here.
"""
import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.errors import PersistenceError
from app.extensions import db
from app.models import Conversation, Message
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# Attempts at claiming the next seq when a concurrent send took it first
_SEQ_ATTEMPTS = 3


class ConversationStore:
    def __init__(self, session=None):
        self._db = session or db.session

    def create_conversation(self, account_id: str, title: str | None) -> Conversation:
        conv = Conversation(account_id=account_id, title=title)
        self._db.add(conv)
        self._commit("create_conversation")
        return conv

    def get_conversation(self, account_id: str, conversation_id: str) -> Optional[Conversation]:
        """Conversation owned by `account_id`; None for unknown ids and other accounts' ids."""
        return (
            self._db.query(Conversation)
            .filter_by(id=conversation_id, account_id=account_id)
            .one_or_none()
        )

    def list_conversations(self, account_id: str) -> List[Conversation]:
        return (
            self._db.query(Conversation)
            .filter_by(account_id=account_id)
            .order_by(Conversation.updated_at.desc())
            .all()
        )

    def append_message(self, conversation_id: str, role: str, content: str) -> Message:
        """Append at the next seq; retries when a concurrent writer took that seq."""
        for attempt in range(1, _SEQ_ATTEMPTS + 1):
            max_seq = (
                self._db.query(func.max(Message.seq))
                .filter(Message.conversation_id == conversation_id)
                .scalar()
            )
            msg = Message(conversation_id=conversation_id, seq=(max_seq or 0) + 1, role=role, content=content)
            self._db.add(msg)

            conv = self._db.get(Conversation, conversation_id)
            if conv is not None:
                conv.updated_at = utcnow()

            try:
                self._db.commit()
                return msg
            except IntegrityError as exc:
                self._db.rollback()
                if attempt == _SEQ_ATTEMPTS:
                    logger.error("conversations.append_message.seq_conflict", extra={"conversation_id": conversation_id})
                    raise PersistenceError("Could not save message") from exc
            except SQLAlchemyError as exc:
                self._db.rollback()
                logger.exception("conversations.append_message_failed", extra={"conversation_id": conversation_id})
                raise PersistenceError("Could not save message") from exc

    def recent_messages(self, conversation_id: str, limit: int = 10) -> List[Message]:
        """The last `limit` messages, oldest first."""
        newest = (
            self._db.query(Message)
            .filter_by(conversation_id=conversation_id)
            .order_by(Message.seq.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(newest))

    def transcript(self, conversation_id: str) -> List[Message]:
        return (
            self._db.query(Message)
            .filter_by(conversation_id=conversation_id)
            .order_by(Message.seq.asc())
            .all()
        )

    def _commit(self, op: str) -> None:
        try:
            self._db.commit()
        except SQLAlchemyError as exc:
            self._db.rollback()
            logger.exception("conversations.%s_failed", op)
            raise PersistenceError("Could not save conversation") from exc
