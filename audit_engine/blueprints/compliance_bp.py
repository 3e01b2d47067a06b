"""Compliance copilot, compliance check and knowledge store blueprint.

URL prefix: /api/v1/audit/compliance

Routes:
    POST   /chat                       — one copilot turn (always answers)
    GET    /conversations              — caller's conversations
    GET    /conversations/<id>         — conversation with transcript
    POST   /checks                     — run a compliance check
    GET    /checks                     — list checks
    GET    /checks/<id>                — single check
    GET    /knowledge                  — list knowledge entries
    POST   /knowledge                  — add entry (embedding + summary)
    POST   /knowledge/search           — ranked search (bumps usage counts)
    GET    /knowledge/<id>             — single entry
    PUT    /knowledge/<id>             — update entry
    DELETE /knowledge/<id>             — delete entry
"""

import logging

from flask import Blueprint, jsonify

from audit_engine.blueprints import (
    API_PREFIX,
    json_body,
    paginated,
    query_filters,
    register_error_handlers,
    scope_required,
)
from audit_engine.services import compliance_service, knowledge_service

logger = logging.getLogger(__name__)

compliance_bp = Blueprint("audit_compliance", __name__, url_prefix=f"{API_PREFIX}/compliance")
register_error_handlers(compliance_bp)


# ═════════════════════════════════════════════════════════════════════════
# Copilot
# ═════════════════════════════════════════════════════════════════════════


@compliance_bp.route("/chat", methods=["POST"])
def chat():
    """Ask the compliance copilot.

    Body: { organization_id, user_id, message, conversation_id?, context? }
    Returns: { conversation_id, message, sources: [{id, title, category, relevance_score}], degraded }
    """
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    return jsonify(compliance_service.chat(org, user, body)), 200


@compliance_bp.route("/conversations", methods=["GET"])
def list_conversations():
    org, user, err = scope_required(user=True)
    if err:
        return err
    conversations = compliance_service.list_conversations(org, user)
    return jsonify([c.to_dict(include_messages=False) for c in conversations]), 200


@compliance_bp.route("/conversations/<conversation_id>", methods=["GET"])
def get_conversation(conversation_id):
    org, user, err = scope_required(user=True)
    if err:
        return err
    conversation = compliance_service.get_conversation(org, user, conversation_id)
    return jsonify(conversation.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Compliance checks
# ═════════════════════════════════════════════════════════════════════════


@compliance_bp.route("/checks", methods=["POST"])
def run_check():
    """Body: { organization_id, user_id, entity_type, entity_id, standards? }"""
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    check = compliance_service.run_compliance_check(org, user, body)
    return jsonify(check.to_dict()), 201


@compliance_bp.route("/checks", methods=["GET"])
def list_checks():
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(paginated(compliance_service.list_compliance_checks(org, query_filters()))), 200


@compliance_bp.route("/checks/<check_id>", methods=["GET"])
def get_check(check_id):
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(compliance_service.get_compliance_check(org, check_id).to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Knowledge store
# ═════════════════════════════════════════════════════════════════════════


@compliance_bp.route("/knowledge", methods=["GET"])
def list_knowledge():
    org, _, err = scope_required()
    if err:
        return err
    entries = knowledge_service.list_entries(org, query_filters())
    return jsonify([e.to_dict(include_content=False) for e in entries]), 200


@compliance_bp.route("/knowledge", methods=["POST"])
def add_knowledge():
    """Body: { organization_id, user_id, title, content, category?, document_type?,
               standard_code?, summary?, tags?, effective_date?, expiry_date? }
    """
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    entry = knowledge_service.add_entry(org, user, body)
    return jsonify(entry.to_dict()), 201


@compliance_bp.route("/knowledge/search", methods=["POST"])
def search_knowledge():
    """Body: { organization_id, query, category?, document_type?, limit?, semantic? }"""
    body, err = json_body()
    if err:
        return err
    org, _, err = scope_required()
    if err:
        return err
    results = knowledge_service.search(org, body)
    return jsonify([
        {**entry.to_dict(include_content=False), "relevance_score": score}
        for entry, score in results
    ]), 200


@compliance_bp.route("/knowledge/<entry_id>", methods=["GET"])
def get_knowledge(entry_id):
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(knowledge_service.get_entry(org, entry_id).to_dict()), 200


@compliance_bp.route("/knowledge/<entry_id>", methods=["PUT"])
def update_knowledge(entry_id):
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required()
    if err:
        return err
    entry = knowledge_service.update_entry(org, user, entry_id, body)
    return jsonify(entry.to_dict()), 200


@compliance_bp.route("/knowledge/<entry_id>", methods=["DELETE"])
def delete_knowledge(entry_id):
    org, _, err = scope_required()
    if err:
        return err
    knowledge_service.delete_entry(org, entry_id)
    return jsonify({"deleted": True}), 200
