"""
Streaming chat orchestration.

One call to ``send_message`` is one model invocation and one buffered
assistant write:

    user message saved  ->  model stream started  ->  tokens relayed  ->  reply saved

The user message is committed before the model is called, so input is never
lost. The reply is saved once the stream ends; if that save fails the client
has already received the text, so the failure is only logged. A model error
persists nothing for the assistant. If the client disconnects mid-stream the
text buffered so far is saved.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterator

from app.errors import NotFoundError, ServiceError, ValidationError
from app.models import ROLE_ASSISTANT, ROLE_USER
from app.services.conversations import ConversationStore
from app.utils.validators import conversation_title

logger = logging.getLogger(__name__)

NDJSON_MIMETYPE = "application/x-ndjson"


@dataclass
class ChatStream:
    conversation_id: str
    created: bool
    tokens: Iterator[str]
    # raw model iterator behind `tokens`; holds the upstream connection
    source: Any = None

    def close(self) -> None:
        """Idempotent; safe before, during or after iteration."""
        self.tokens.close()
        close = getattr(self.source, "close", None)
        if close is not None:
            close()


class ChatOrchestrator:
    def __init__(self, store: ConversationStore, model, *, history_limit: int = 10):
        self.store = store
        self.model = model
        self.history_limit = history_limit

    def send_message(self, account_id: str, conversation_id: str | None, text: str | None) -> ChatStream:
        if not text or not text.strip():
            raise ValidationError("Message is required")

        created = False
        if conversation_id:
            conv = self.store.get_conversation(account_id, conversation_id)
            if conv is None:
                raise NotFoundError("Conversation not found")
        else:
            conv = self.store.create_conversation(account_id, conversation_title(text))
            created = True

        self.store.append_message(conv.id, ROLE_USER, text)

        history = [m.to_dict() for m in self.store.recent_messages(conv.id, limit=self.history_limit)]
        tokens = self.model.stream(history)

        logger.info(
            "chat.stream_started",
            extra={"account_id": account_id, "conversation_id": conv.id, "history": len(history)},
        )
        return ChatStream(conversation_id=conv.id, created=created, tokens=self._relay(conv.id, tokens), source=tokens)

    def _relay(self, conversation_id: str, tokens: Iterator[str]) -> Iterator[str]:
        buffer = []
        try:
            for token in tokens:
                buffer.append(token)
                yield token
        except GeneratorExit:
            # client went away; keep what it already received
            if buffer:
                self._save_reply(conversation_id, "".join(buffer), partial=True)
            raise
        finally:
            close = getattr(tokens, "close", None)
            if close is not None:
                close()
        self._save_reply(conversation_id, "".join(buffer))

    def _save_reply(self, conversation_id: str, content: str, partial: bool = False) -> None:
        try:
            self.store.append_message(conversation_id, ROLE_ASSISTANT, content)
        except Exception:
            logger.exception(
                "chat.save_reply_failed",
                extra={"conversation_id": conversation_id, "chars": len(content), "partial": partial},
            )


def plain_text(stream: ChatStream) -> Iterator[str]:
    """Raw token relay; a model failure mid-stream ends the body early."""
    try:
        yield from stream.tokens
    except ServiceError as exc:
        logger.error("chat.stream_failed", extra={"conversation_id": stream.conversation_id, "error": exc.message})
    finally:
        stream.close()


def ndjson_frames(stream: ChatStream) -> Iterator[str]:
    """
    Framed relay: one JSON object per line so metadata travels in-band.

        {"type": "meta", "conversationId": ..., "created": ...}
        {"type": "delta", "content": ...}     (per token)
        {"type": "done"} | {"type": "error", "error": ...}
    """
    def _frame(payload: dict) -> str:
        return json.dumps(payload, separators=(",", ":")) + "\n"

    try:
        yield _frame({"type": "meta", "conversationId": stream.conversation_id, "created": stream.created})
        try:
            for token in stream.tokens:
                yield _frame({"type": "delta", "content": token})
        except ServiceError as exc:
            logger.error("chat.stream_failed", extra={"conversation_id": stream.conversation_id, "error": exc.message})
            yield _frame({"type": "error", "error": exc.message})
            return
        yield _frame({"type": "done"})
    finally:
        stream.close()
