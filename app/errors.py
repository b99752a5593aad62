"""
Error taxonomy shared by the blueprints and services.

Every handler isolates its own failure and answers with ``{"error": <message>}``
and the status carried by the exception class.
"""
from flask import jsonify


class ServiceError(Exception):
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code


class AuthError(ServiceError):
    status_code = 401
    default_message = "Unauthorized"


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Not found"


class UpstreamError(ServiceError):
    """Stripe, OpenAI or the identity provider failed."""
    status_code = 502
    default_message = "Upstream service failed"


class PersistenceError(ServiceError):
    status_code = 500
    default_message = "Could not save changes"


class SignatureError(ServiceError):
    status_code = 400
    default_message = "Invalid signature"


def register_error_handlers(app):
    @app.errorhandler(ServiceError)
    def handle_service_error(e: ServiceError):
        if e.status_code >= 500:
            app.logger.error("service_error", extra={"error_type": type(e).__name__, "error": e.message})
        return jsonify({"error": e.message}), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not Found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method Not Allowed"}), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal Server Error"}), 500
