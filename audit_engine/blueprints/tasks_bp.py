"""Audit task and finding blueprint.

URL prefix: /api/v1/audit

Routes:
    GET    /tasks                     — filtered, paginated list
    POST   /tasks                     — create (manual or scheduled)
    GET    /tasks/stats               — counts by status/priority/type/source
    GET    /tasks/<id>                — single task with findings
    PUT    /tasks/<id>                — update open task
    DELETE /tasks/<id>                — delete task and its findings
    POST   /tasks/<id>/start          — pending → in_progress
    POST   /tasks/<id>/cancel         — open → cancelled
    POST   /tasks/<id>/complete       — create findings, then complete
    GET    /tasks/<id>/findings       — findings of one task
    GET    /findings                  — all findings
    POST   /findings                  — create finding (AI analysis attached)
    PUT    /findings/<id>             — update finding
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
from audit_engine.services import audit_task_service

logger = logging.getLogger(__name__)

tasks_bp = Blueprint("audit_tasks", __name__, url_prefix=API_PREFIX)
register_error_handlers(tasks_bp)


# ═════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════


@tasks_bp.route("/tasks", methods=["GET"])
def list_tasks():
    """List tasks.

    Query params: organization_id (required), status, audit_type, source,
    priority, assigned_to, ai_generated, min_risk_score, max_risk_score,
    search, page, limit, sort_by, sort_order
    """
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(paginated(audit_task_service.list_tasks(org, query_filters()))), 200


@tasks_bp.route("/tasks", methods=["POST"])
def create_task():
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    task = audit_task_service.create_task(org, user, body)
    return jsonify(task.to_dict()), 201


@tasks_bp.route("/tasks/stats", methods=["GET"])
def task_stats():
    org, _, err = scope_required()
    if err:
        return err
    return jsonify(audit_task_service.get_task_stats(org)), 200


@tasks_bp.route("/tasks/<task_id>", methods=["GET"])
def get_task(task_id):
    org, _, err = scope_required()
    if err:
        return err
    task = audit_task_service.get_task(org, task_id)
    return jsonify(task.to_dict(include_findings=True)), 200


@tasks_bp.route("/tasks/<task_id>", methods=["PUT"])
def update_task(task_id):
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    task = audit_task_service.update_task(org, user, task_id, body)
    return jsonify(task.to_dict()), 200


@tasks_bp.route("/tasks/<task_id>", methods=["DELETE"])
def delete_task(task_id):
    org, user, err = scope_required(user=True)
    if err:
        return err
    audit_task_service.delete_task(org, user, task_id)
    return jsonify({"deleted": True}), 200


@tasks_bp.route("/tasks/<task_id>/start", methods=["POST"])
def start_task(task_id):
    org, user, err = scope_required(user=True)
    if err:
        return err
    task = audit_task_service.start_task(org, user, task_id)
    return jsonify(task.to_dict()), 200


@tasks_bp.route("/tasks/<task_id>/cancel", methods=["POST"])
def cancel_task(task_id):
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    task = audit_task_service.cancel_task(org, user, task_id, reason=body.get("reason"))
    return jsonify(task.to_dict()), 200


@tasks_bp.route("/tasks/<task_id>/complete", methods=["POST"])
def complete_task(task_id):
    """Complete a task.

    Body: { organization_id, user_id, findings?: [{title, severity, ...}], notes? }
    """
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    task, findings = audit_task_service.complete_task(org, user, task_id, body)
    return jsonify({"task": task.to_dict(), "findings": [f.to_dict() for f in findings]}), 200


@tasks_bp.route("/tasks/<task_id>/findings", methods=["GET"])
def task_findings(task_id):
    org, _, err = scope_required()
    if err:
        return err
    findings = audit_task_service.list_findings(org, task_id=task_id, filters=query_filters())
    return jsonify([f.to_dict() for f in findings]), 200


# ═════════════════════════════════════════════════════════════════════════
# Findings
# ═════════════════════════════════════════════════════════════════════════


@tasks_bp.route("/findings", methods=["GET"])
def list_findings():
    org, _, err = scope_required()
    if err:
        return err
    filters = query_filters()
    findings = audit_task_service.list_findings(org, task_id=filters.pop("task_id", None), filters=filters)
    return jsonify([f.to_dict() for f in findings]), 200


@tasks_bp.route("/findings", methods=["POST"])
def create_finding():
    """Body: { organization_id, user_id, audit_task_id, title, severity, category?, description? }"""
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    finding = audit_task_service.create_finding(org, user, body)
    return jsonify(finding.to_dict()), 201


@tasks_bp.route("/findings/<finding_id>", methods=["PUT"])
def update_finding(finding_id):
    body, err = json_body()
    if err:
        return err
    org, user, err = scope_required(user=True)
    if err:
        return err
    finding = audit_task_service.update_finding(org, user, finding_id, body)
    return jsonify(finding.to_dict()), 200
