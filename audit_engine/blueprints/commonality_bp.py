"""Commonality study and improvement proposal blueprint.

URL prefix: /api/v1/audit

Routes:
    POST /commonality/studies                     — run a ReAct investigation
    GET  /commonality/studies                     — list studies
    GET  /commonality/studies/<id>                — study with reasoning trace
    POST /commonality/studies/<id>/approve        — single sign-off decision
    GET  /commonality/supplier-insights           — insights across studies
    GET  /proposals                               — list proposals
    POST /proposals                               — create draft
    GET  /proposals/<id>                          — single proposal
    PUT  /proposals/<id>                          — update (content in draft only)
    POST /proposals/<id>/submit                   — install approval chain
    POST /proposals/<id>/approve                  — resolve current level
    POST /proposals/<id>/start-implementation     — approved → implementing
    POST /proposals/<id>/complete                 — implementing → completed
"""

import logging

from flask import Blueprint, jsonify, request

from audit_engine.blueprints import (
    API_PREFIX,
    json_body,
    paginated,
    query_filters,
    register_error_handlers,
    scope_required,
)
from audit_engine.services import commonality_service, proposal_service

logger = logging.getLogger(__name__)

commonality_bp = Blueprint("audit_commonality", __name__, url_prefix=API_PREFIX)
register_error_handlers(commonality_bp)


# ═════════════════════════════════════════════════════════════════════════
# Studies
# ═════════════════════════════════════════════════════════════════════════


@commonality_bp.route("/commonality/studies", methods=["POST"])
def run_study():
    """Run a commonality study.

    Body: { organization_id, user_id, title, study_type, description?,
            entity_filters?, analysis_start_date?, analysis_end_date?,
            max_iterations?, requires_approval? }
    """
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    study = commonality_service.run_commonality_analysis(org, user, body)
    return jsonify(study.to_dict()), 201


@commonality_bp.route("/commonality/studies", methods=["GET"])
def list_studies():
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(paginated(commonality_service.list_studies(org, query_filters()))), 200


@commonality_bp.route("/commonality/studies/<study_id>", methods=["GET"])
def get_study(study_id):
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(commonality_service.get_study(org, study_id).to_dict()), 200


@commonality_bp.route("/commonality/studies/<study_id>/approve", methods=["POST"])
def approve_study(study_id):
    """Body: { organization_id, user_id, approved: bool, comments? }"""
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    study = commonality_service.approve_study(org, user, study_id, body)
    return jsonify(study.to_dict()), 200


@commonality_bp.route("/commonality/supplier-insights", methods=["GET"])
def supplier_insights():
    org, _, err = scope_required()
    if err:
        return err
    insights = commonality_service.get_supplier_insights(org, request.args.get("supplier_id"))
    return jsonify(insights), 200


# ═════════════════════════════════════════════════════════════════════════
# Proposals
# ═════════════════════════════════════════════════════════════════════════


@commonality_bp.route("/proposals", methods=["GET"])
def list_proposals():
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(paginated(proposal_service.list_proposals(org, query_filters()))), 200


@commonality_bp.route("/proposals", methods=["POST"])
def create_proposal():
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    proposal = proposal_service.create_proposal(org, user, body)
    return jsonify(proposal.to_dict()), 201


@commonality_bp.route("/proposals/<proposal_id>", methods=["GET"])
def get_proposal(proposal_id):
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(proposal_service.get_proposal(org, proposal_id).to_dict()), 200


@commonality_bp.route("/proposals/<proposal_id>", methods=["PUT"])
def update_proposal(proposal_id):
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    proposal = proposal_service.update_proposal(org, user, proposal_id, body)
    return jsonify(proposal.to_dict()), 200


@commonality_bp.route("/proposals/<proposal_id>/submit", methods=["POST"])
def submit_proposal(proposal_id):
    """Body: { organization_id, user_id, approval_chain?: [{role, min_proposal_priority?}] }

    Without approval_chain the configured levels whose min_proposal_priority
    is at or below the proposal priority are used. When none apply (a low
    priority proposal under the default levels) the response is 422 and the
    caller must send approval_chain.
    """
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    proposal = proposal_service.submit_proposal(org, user, proposal_id, body)
    return jsonify(proposal.to_dict()), 200


@commonality_bp.route("/proposals/<proposal_id>/approve", methods=["POST"])
def approve_proposal(proposal_id):
    """Body: { organization_id, user_id, approved: bool, comments? }"""
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    proposal = proposal_service.approve_proposal(org, user, proposal_id, body)
    return jsonify(proposal.to_dict()), 200


@commonality_bp.route("/proposals/<proposal_id>/start-implementation", methods=["POST"])
def start_implementation(proposal_id):
    org, user, err = scope_required(user=True)
    if err:
        return err
    proposal = proposal_service.start_implementation(org, user, proposal_id)
    return jsonify(proposal.to_dict()), 200


@commonality_bp.route("/proposals/<proposal_id>/complete", methods=["POST"])
def complete_implementation(proposal_id):
    """Body: { organization_id, user_id, actual_results?, lessons_learned? }"""
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    proposal = proposal_service.complete_implementation(org, user, proposal_id, body)
    return jsonify(proposal.to_dict()), 200
