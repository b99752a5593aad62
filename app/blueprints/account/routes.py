from flask import request, jsonify
from flask_login import login_required, current_user
from . import bp
from app.services.accounts import update_profile


@bp.get("")
@login_required
def show():
    return jsonify(current_user.to_dict())


@bp.patch("")
@login_required
def update():
    """Profile edits: display name only. Subscription fields are webhook-owned."""
    data = request.get_json(silent=True) or {}
    account = update_profile(current_user._get_current_object(), display_name=data.get("name"))
    return jsonify(account.to_dict())
