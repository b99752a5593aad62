from flask import request, jsonify, current_app, Response, stream_with_context
from flask_login import login_required, current_user
from . import bp
from app.billing.entitlements import require_active_subscription
from app.errors import NotFoundError, UpstreamError, ValidationError
from app.extensions import get_chat_model
from app.services.chat import ChatOrchestrator, NDJSON_MIMETYPE, ndjson_frames, plain_text
from app.services.conversations import ConversationStore


def _orchestrator() -> ChatOrchestrator:
    return ChatOrchestrator(
        ConversationStore(),
        get_chat_model(),
        history_limit=current_app.config.get("CHAT_HISTORY_LIMIT", 10),
    )


@bp.post("/chat")
@login_required
@require_active_subscription
def send_message():
    """
    Body: {"message": str, "conversationId": str | null}

    Streams the reply as raw UTF-8 text with the conversation id in the
    X-Conversation-Id header. Clients that send Accept: application/x-ndjson
    get framed output instead (conversation id in the first frame).
    """
    data = request.get_json(silent=True) or {}
    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message is required")
    conversation_id = data.get("conversationId") or None
    if conversation_id is not None and not isinstance(conversation_id, str):
        raise ValidationError("conversationId must be a string")

    try:
        stream = _orchestrator().send_message(current_user.id, conversation_id, message)
    except UpstreamError as e:
        # model never started streaming: the user message is saved, nothing else
        current_app.logger.error("chat.model_call_failed", extra={"account_id": current_user.id, "error": e.message})
        return jsonify({"error": e.message}), 500

    headers = {
        "X-Conversation-Id": stream.conversation_id,
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    }
    if NDJSON_MIMETYPE in (request.headers.get("Accept") or "").lower():
        resp = Response(stream_with_context(ndjson_frames(stream)), mimetype=NDJSON_MIMETYPE, headers=headers)
    else:
        resp = Response(stream_with_context(plain_text(stream)), content_type="text/plain; charset=utf-8", headers=headers)
    # the body generator never runs if the client leaves before the first chunk
    resp.call_on_close(stream.close)
    return resp


@bp.get("/conversations")
@login_required
def list_conversations():
    convs = ConversationStore().list_conversations(current_user.id)
    return jsonify({"conversations": [c.to_dict() for c in convs]})


@bp.get("/conversations/<conversation_id>/messages")
@login_required
def conversation_messages(conversation_id):
    store = ConversationStore()
    conv = store.get_conversation(current_user.id, conversation_id)
    if conv is None:
        raise NotFoundError("Conversation not found")
    return jsonify({
        "conversationId": conv.id,
        "messages": [m.to_dict() for m in store.transcript(conv.id)],
    })
