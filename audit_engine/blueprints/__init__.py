"""
Audit Orchestration Engine
Blueprint helpers shared by the audit API blueprints.

organization_id and user_id are resolved from the query string or the JSON
body. Authentication stays outside the engine; services own all business
logic and commits.
"""

import logging

from flask import g, jsonify, request
from werkzeug.exceptions import HTTPException

from audit_engine.core.exceptions import InvariantViolationError, NotFoundError, ValidationError
from audit_engine.models import db

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/audit"


def _organization_id() -> str | None:
    """Extract organization_id from query string or JSON body."""
    org = request.args.get("organization_id")
    if org:
        return org
    data = request.get_json(silent=True) or {}
    return data.get("organization_id") if isinstance(data, dict) else None


def _user_id() -> str | None:
    """Extract user_id from query string or JSON body."""
    user = request.args.get("user_id")
    if user:
        return user
    data = request.get_json(silent=True) or {}
    return data.get("user_id") if isinstance(data, dict) else None


def scope_required(*, user=False):
    """Return (organization_id, user_id, error_response)."""
    org = _organization_id()
    if not org:
        return None, None, (jsonify({"error": "organization_id is required"}), 400)
    user_id = _user_id()
    if user and not user_id:
        return None, None, (jsonify({"error": "user_id is required"}), 400)
    g.organization_id = str(org)
    g.user_id = str(user_id) if user_id else None
    return g.organization_id, g.user_id, None


def json_body():
    """Return (body, error_response); the body must be a JSON object."""
    if not request.data:
        return {}, None
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, (jsonify({"error": "Request body must be a JSON object"}), 400)
    return data, None


def query_filters():
    """Query-string filters minus the scope parameters."""
    return {k: v for k, v in request.args.items() if k not in ("organization_id", "user_id")}


def paginated(result):
    """Serialise a service page dict."""
    return {**result, "items": [item.to_dict() for item in result["items"]]}


def register_error_handlers(bp):
    """Map the engine's exception hierarchy onto HTTP status codes."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return jsonify({"error": str(error)}), 404

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return jsonify({"error": str(error), "details": error.details}), 422

    @bp.errorhandler(InvariantViolationError)
    def _handle_invariant(error: InvariantViolationError):
        return jsonify({"error": str(error)}), 409

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return jsonify({"error": "Internal server error"}), 500
