import os
from flask import Flask

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    # Always load .env if present and override any pre-set envs (prod: no .env → no-op)
    load_dotenv(".env", override=True)


from .config import get_config
from .extensions import db, migrate, login_manager
from .errors import register_error_handlers
from .security import init_security
from .observability import init_logging, init_sentry

def create_app():
    app = Flask(__name__)

    # Config: clean, explicit, class-based
    app.config.from_object(get_config())

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    env_key = (os.getenv("APP_ENV", "development") or "development").lower()
    if env_key in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("STRIPE_SECRET_KEY")
        _require("STRIPE_WEBHOOK_SECRET")
        _require("STRIPE_PRICE_ID")
        _require("OPENAI_API_KEY")
        _require("IDENTITY_URL")

    # --- Observability & Security ---
    init_logging(app)
    init_sentry(app)

    # Apply HTTPS, HSTS & CSP only in staging/production
    if env_key in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    login_manager.init_app(app)

    # Collaborator handles (stateless; swapped for fakes in tests)
    init_services(app)

    # Blueprints (explicit, consistent prefixes)
    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.chat import bp as chat_bp
    from .blueprints.account import bp as account_bp
    from .blueprints.billing.routes import billing_bp

    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(chat_bp, url_prefix="/api")
    app.register_blueprint(account_bp, url_prefix="/api/account")
    app.register_blueprint(billing_bp, url_prefix="/api/stripe")

    # Health
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    register_error_handlers(app)

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    return app


def init_services(app):
    from .services.billing import StripeBilling
    from .services.identity import IdentityClient
    from .services.llm import ChatModel

    cfg = app.config
    if not cfg.get("STRIPE_SECRET_KEY"):
        app.logger.warning("Stripe secret key missing; billing features will not work")
    if not cfg.get("OPENAI_API_KEY"):
        app.logger.warning("OpenAI API key missing; chat will answer 500")

    app.extensions["billing_provider"] = StripeBilling(
        secret_key=cfg.get("STRIPE_SECRET_KEY"),
        webhook_secret=cfg.get("STRIPE_WEBHOOK_SECRET"),
        price_id=cfg.get("STRIPE_PRICE_ID"),
        base_url=cfg.get("APP_BASE_URL", ""),
    )
    app.extensions["identity_client"] = IdentityClient(
        cfg.get("IDENTITY_URL"),
        api_key=cfg.get("IDENTITY_API_KEY"),
        timeout=cfg.get("IDENTITY_TIMEOUT", 5.0),
    )
    app.extensions["chat_model"] = ChatModel(
        api_key=cfg.get("OPENAI_API_KEY"),
        model_name=cfg.get("CHAT_MODEL", "gpt-4o-mini"),
    )
