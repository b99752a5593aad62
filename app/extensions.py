from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager

db = SQLAlchemy()
migrate = Migrate()

# API-only: identity comes from the bearer token on each request (see app.models.account)
login_manager = LoginManager()
login_manager.session_protection = None


def get_billing_provider():
    from flask import current_app
    return current_app.extensions["billing_provider"]


def get_identity_client():
    from flask import current_app
    return current_app.extensions["identity_client"]


def get_chat_model():
    from flask import current_app
    return current_app.extensions["chat_model"]
