"""Schedules, configuration and dashboard blueprint.

URL prefix: /api/v1/audit

Routes:
    GET    /schedules              — list schedules
    POST   /schedules              — create schedule
    PUT    /schedules/<id>         — update schedule
    DELETE /schedules/<id>         — delete schedule
    POST   /schedules/<id>/runs    — external trigger reports a run
    GET    /configuration          — organization configuration (created on first access)
    PUT    /configuration          — update configuration
    GET    /dashboard              — headline audit metrics
"""

import logging

from flask import Blueprint, jsonify

from audit_engine.blueprints import API_PREFIX, json_body, query_filters, register_error_handlers, scope_required
from audit_engine.services import configuration_service, dashboard_service, schedule_service
from audit_engine.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

settings_bp = Blueprint("audit_settings", __name__, url_prefix=API_PREFIX)
register_error_handlers(settings_bp)


# ═════════════════════════════════════════════════════════════════════════
# Schedules
# ═════════════════════════════════════════════════════════════════════════


@settings_bp.route("/schedules", methods=["GET"])
def list_schedules():
    org, _, err = scope_required()
    if err:
        return err
    schedules = schedule_service.list_schedules(org, query_filters())
    return jsonify([s.to_dict() for s in schedules]), 200


@settings_bp.route("/schedules", methods=["POST"])
def create_schedule():
    """Body: { organization_id, user_id, name, schedule_type, frequency, config?, description? }"""
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    schedule = schedule_service.create_schedule(org, user, body)
    return jsonify(schedule.to_dict()), 201


@settings_bp.route("/schedules/<schedule_id>", methods=["PUT"])
def update_schedule(schedule_id):
    body, err = json_body()
    if err:
        return err
    org, _, err = scope_required()
    if err:
        return err
    schedule = schedule_service.update_schedule(org, schedule_id, body)
    return jsonify(schedule.to_dict()), 200


@settings_bp.route("/schedules/<schedule_id>", methods=["DELETE"])
def delete_schedule(schedule_id):
    org, _, err = scope_required()
    if err:
        return err
    schedule_service.delete_schedule(org, schedule_id)
    return jsonify({"deleted": True}), 200


@settings_bp.route("/schedules/<schedule_id>/runs", methods=["POST"])
def record_run(schedule_id):
    """Body: { organization_id, status: success|failed|partial, result?, ran_at? }"""
    body, err = json_body()
    if err:
        return err
    org, _, err = scope_required()
    if err:
        return err
    schedule = schedule_service.record_schedule_run(
        org, schedule_id, body.get("status"), body.get("result"),
        ran_at=parse_datetime(body.get("ran_at"), "ran_at"),
    )
    return jsonify(schedule.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Configuration + dashboard
# ═════════════════════════════════════════════════════════════════════════


@settings_bp.route("/configuration", methods=["GET"])
def get_configuration():
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(configuration_service.get_configuration(org).to_dict()), 200


@settings_bp.route("/configuration", methods=["PUT"])
def update_configuration():
    body, err = json_body()
    if err:
        return err
    org, _, err = scope_required()
    if err:
        return err
    data = {k: v for k, v in body.items() if k not in ("organization_id", "user_id")}
    return jsonify(configuration_service.update_configuration(org, data).to_dict()), 200


@settings_bp.route("/dashboard", methods=["GET"])
def dashboard():
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(dashboard_service.get_dashboard(org)), 200
