"""Risk data and assessment blueprint.

URL prefix: /api/v1/audit/risk

Routes:
    POST /data-points                          — append an operational signal
    GET  /data-points                          — list signals (oldest first)
    POST /assessments                          — run an AI risk assessment
    GET  /assessments                          — filtered, paginated list
    GET  /assessments/<id>                     — single assessment
    POST /assessments/<id>/generate-tasks      — derive audit tasks
    GET  /dashboard                            — recent, trend, high-risk
"""

import logging

from flask import Blueprint, jsonify

from audit_engine.blueprints import API_PREFIX, json_body, query_filters, register_error_handlers, scope_required
from audit_engine.services import risk_service
from audit_engine.services.configuration_service import get_configuration

logger = logging.getLogger(__name__)

risk_bp = Blueprint("audit_risk", __name__, url_prefix=f"{API_PREFIX}/risk")
register_error_handlers(risk_bp)


def _thresholds(org):
    return dict(get_configuration(org).risk_thresholds)


@risk_bp.route("/data-points", methods=["POST"])
def add_data_point():
    """Body: { organization_id, entity_type, entity_id, metric_name, value, unit?, source?, timestamp? }"""
    body, err = json_body()
    if err:
        return err
    org, _, err = scope_required()
    if err:
        return err
    point = risk_service.add_data_point(org, body)
    return jsonify(point.to_dict()), 201


@risk_bp.route("/data-points", methods=["GET"])
def list_data_points():
    org, _, err = scope_required()
    if err:
        return err
    points = risk_service.list_data_points(org, query_filters())
    return jsonify([p.to_dict() for p in points]), 200


@risk_bp.route("/assessments", methods=["POST"])
def run_assessment():
    """Run a risk assessment.

    Body: { organization_id, user_id, assessment_type, entity_type?, entity_id?,
            period_start?, period_end? }
    """
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    assessment = risk_service.run_assessment(org, user, body)
    return jsonify(assessment.to_dict(_thresholds(org))), 201


@risk_bp.route("/assessments", methods=["GET"])
def list_assessments():
    org, _, err = scope_required()
    if err:
        return err
    result = risk_service.list_assessments(org, query_filters())
    thresholds = _thresholds(org)
    return jsonify({**result, "items": [a.to_dict(thresholds) for a in result["items"]]}), 200


@risk_bp.route("/assessments/<assessment_id>", methods=["GET"])
def get_assessment(assessment_id):
    org, _, err = scope_required()
    if err:
        return err
    assessment = risk_service.get_assessment(org, assessment_id)
    return jsonify(assessment.to_dict(_thresholds(org))), 200


@risk_bp.route("/assessments/<assessment_id>/generate-tasks", methods=["POST"])
def generate_tasks(assessment_id):
    """Body: { organization_id, user_id, min_risk_score?, max_tasks? }"""
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    tasks = risk_service.generate_tasks_from_assessment(org, user, {**body, "assessment_id": assessment_id})
    return jsonify({"tasks": [t.to_dict() for t in tasks], "count": len(tasks)}), 201


@risk_bp.route("/dashboard", methods=["GET"])
def risk_dashboard():
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(risk_service.get_risk_dashboard(org)), 200
