from functools import wraps
from typing import Callable
from flask import current_app, jsonify
from flask_login import current_user
from app.models import STATUS_ACTIVE, STATUS_TRIALING
from app.utils.helpers import utcnow

_ACTIVE = {STATUS_ACTIVE, STATUS_TRIALING}

def has_access(account) -> bool:
    """
    Access policy:
      - Allowed: status in {"active","trialing"} and the paid period has not ended.
      - Blocked: none, past_due, canceled.
    """
    if getattr(account, "subscription_status", None) not in _ACTIVE:
        return False
    end = getattr(account, "current_period_end", None)
    return end is None or end > utcnow()

def require_active_subscription(fn: Callable):
    """Gate a view on an active subscription when CHAT_REQUIRE_SUBSCRIPTION is on."""
    @wraps(fn)
    def _wrap(*args, **kwargs):
        if current_app.config.get("CHAT_REQUIRE_SUBSCRIPTION") and not has_access(current_user):
            return jsonify({"error": "An active subscription is required"}), 402
        return fn(*args, **kwargs)
    return _wrap
