"""
Audit task lifecycle and finding tests.

Tests cover:
  - Manual task creation (never AI generated) and validation
  - start / complete / cancel transitions and illegal moves
  - Completing a task with findings, including degraded analysis
  - Deleting a task removes its findings
  - Filters, stats and audit trail rows
"""
from datetime import datetime, timedelta, timezone

import pytest

from audit_engine.core.exceptions import InvariantViolationError, NotFoundError, TransitionError, ValidationError
from audit_engine.models import db
from audit_engine.models.audit import AuditFinding, AuditLog, AuditTask
from audit_engine.services import audit_task_service as svc

from conftest import ORG, OTHER_ORG, USER, reply


ANALYSIS = {
    "analysis": "Work instruction outdated.",
    "recommendations": ["Revise WI", "Retrain", "Verify", "Update control plan", "Re-audit", "Extra"],
}


def _task(**overrides):
    return svc.create_task(ORG, USER, {"title": "Calibration audit", "audit_type": "process", **overrides})


# ═════════════════════════════════════════════════════════════════════════
# CREATE / UPDATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreateTask:
    def test_manual_task_defaults(self):
        t = _task()
        assert t.status == "pending"
        assert t.source == "manual"
        assert t.ai_generated is False
        assert t.priority == "medium"
        assert t.task_number.startswith("AUD-")

    def test_ai_generated_flag_is_ignored(self):
        t = _task(ai_generated=True)
        assert t.ai_generated is False

    def test_risk_assessment_source_not_allowed_manually(self):
        with pytest.raises(ValidationError):
            _task(source="risk_assessment")

    def test_scheduled_source(self):
        assert _task(source="scheduled").source == "scheduled"

    @pytest.mark.parametrize("payload", [
        {"title": ""},
        {"title": "x" * 256},
        {"audit_type": "financial"},
        {"priority": "urgent"},
        {"risk_score": 101},
        {"due_date": "next tuesday"},
    ])
    def test_validation(self, payload):
        with pytest.raises(ValidationError):
            _task(**payload)

    def test_creation_writes_audit_row(self):
        t = _task()
        log = db.session.query(AuditLog).filter_by(entity_id=t.id).one()
        assert log.action == "audit_task.create"
        assert log.actor == USER


class TestUpdateTask:
    def test_update_fields(self):
        t = _task()
        svc.update_task(ORG, USER, t.id, {"title": " Renamed ", "priority": "high",
                                          "due_date": "2026-12-01"})
        t = svc.get_task(ORG, t.id)
        assert t.title == "Renamed"
        assert t.priority == "high"
        assert t.due_date is not None

    def test_status_is_not_editable(self):
        t = _task()
        svc.update_task(ORG, USER, t.id, {"status": "completed"})
        assert svc.get_task(ORG, t.id).status == "pending"

    def test_closed_task_cannot_be_updated(self):
        t = _task()
        svc.cancel_task(ORG, USER, t.id)
        with pytest.raises(TransitionError):
            svc.update_task(ORG, USER, t.id, {"title": "Again"})

    def test_other_organization_sees_not_found(self):
        t = _task()
        with pytest.raises(NotFoundError):
            svc.get_task(OTHER_ORG, t.id)


# ═════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════

class TestTransitions:
    def test_start_then_complete(self, gateway):
        t = _task()
        svc.start_task(ORG, USER, t.id)
        assert svc.get_task(ORG, t.id).status == "in_progress"

        task, findings = svc.complete_task(ORG, USER, t.id, {}, gateway=gateway)
        assert task.status == "completed"
        assert task.completed_at is not None
        assert findings == []
        gateway.chat.assert_not_called()

    def test_complete_directly_from_pending(self, gateway):
        t = _task()
        task, _ = svc.complete_task(ORG, USER, t.id, None, gateway=gateway)
        assert task.status == "completed"

    def test_cancel_appends_reason(self):
        t = _task(notes="Initial")
        svc.cancel_task(ORG, USER, t.id, reason="Supplier closed")
        t = svc.get_task(ORG, t.id)
        assert t.status == "cancelled"
        assert t.notes == "Initial\nSupplier closed"

    @pytest.mark.parametrize("closer", ["complete", "cancel"])
    def test_closed_tasks_are_terminal(self, gateway, closer):
        t = _task()
        if closer == "complete":
            svc.complete_task(ORG, USER, t.id, {}, gateway=gateway)
        else:
            svc.cancel_task(ORG, USER, t.id)
        with pytest.raises(TransitionError):
            svc.start_task(ORG, USER, t.id)
        with pytest.raises(TransitionError):
            svc.cancel_task(ORG, USER, t.id)
        with pytest.raises(TransitionError):
            svc.complete_task(ORG, USER, t.id, {}, gateway=gateway)

    def test_start_twice_rejected(self):
        t = _task()
        svc.start_task(ORG, USER, t.id)
        with pytest.raises(InvariantViolationError):
            svc.start_task(ORG, USER, t.id)


# ═════════════════════════════════════════════════════════════════════════
# FINDINGS
# ═════════════════════════════════════════════════════════════════════════

class TestFindings:
    def test_complete_with_findings(self, gateway):
        gateway.chat.return_value = reply(ANALYSIS)
        t = _task()
        task, findings = svc.complete_task(ORG, USER, t.id, {"findings": [
            {"title": "Gauge out of calibration", "severity": "major", "category": "equipment"},
            {"title": "Missing signature", "severity": "minor"},
        ]}, gateway=gateway)

        assert task.status == "completed"
        assert len(findings) == 2
        for f in findings:
            assert f.audit_task_id == t.id
            assert f.status == "open"
            assert f.ai_analysis == "Work instruction outdated."
            assert len(f.ai_recommendations) == 5
        assert gateway.chat.call_count == 2

    def test_degraded_analysis_keeps_finding(self, failing_gateway):
        t = _task()
        _, findings = svc.complete_task(ORG, USER, t.id, {"findings": [
            {"title": "Expired certificate", "severity": "critical"},
        ]}, gateway=failing_gateway)
        f = findings[0]
        assert f.ai_analysis is None
        assert f.ai_recommendations == []
        assert svc.get_task(ORG, t.id).status == "completed"

    def test_invalid_finding_blocks_completion(self, gateway):
        t = _task()
        with pytest.raises(ValidationError):
            svc.complete_task(ORG, USER, t.id, {"findings": [
                {"title": "Fine", "severity": "minor"},
                {"title": "Bad", "severity": "catastrophic"},
            ]}, gateway=gateway)
        db.session.rollback()
        assert svc.get_task(ORG, t.id).status == "pending"
        assert db.session.query(AuditFinding).count() == 0

    def test_create_finding_on_open_task(self, gateway):
        gateway.chat.return_value = reply(ANALYSIS)
        t = _task()
        f = svc.create_finding(ORG, USER, {"audit_task_id": t.id, "title": "Torn label"}, gateway=gateway)
        assert f.severity == "minor"
        assert f.finding_number.startswith("FND-")

    def test_no_finding_on_cancelled_task(self, gateway):
        t = _task()
        svc.cancel_task(ORG, USER, t.id)
        with pytest.raises(TransitionError):
            svc.create_finding(ORG, USER, {"audit_task_id": t.id, "title": "Late"}, gateway=gateway)

    def test_finding_requires_existing_task(self, gateway):
        with pytest.raises(NotFoundError):
            svc.create_finding(ORG, USER, {"audit_task_id": "missing", "title": "X"}, gateway=gateway)

    def test_update_and_list_findings(self, gateway):
        t = _task()
        f = svc.create_finding(ORG, USER, {"audit_task_id": t.id, "title": "A", "severity": "major"},
                               gateway=gateway)
        svc.create_finding(ORG, USER, {"audit_task_id": t.id, "title": "B"}, gateway=gateway)
        svc.update_finding(ORG, USER, f.id, {"status": "closed", "corrective_action": "Replaced"})

        assert svc.get_finding(ORG, f.id).status == "closed"
        assert len(svc.list_findings(ORG, task_id=t.id)) == 2
        assert [x.title for x in svc.list_findings(ORG, filters={"severity": "major"})] == ["A"]


class TestDeleteTask:
    def test_delete_removes_findings(self, gateway):
        t = _task()
        svc.complete_task(ORG, USER, t.id, {"findings": [{"title": "F1"}, {"title": "F2"}]},
                          gateway=gateway)
        keep = _task(title="Other")
        svc.create_finding(ORG, USER, {"audit_task_id": keep.id, "title": "Stays"}, gateway=gateway)

        svc.delete_task(ORG, USER, t.id)

        assert db.session.get(AuditTask, t.id) is None
        remaining = db.session.query(AuditFinding).all()
        assert [f.title for f in remaining] == ["Stays"]
        log = db.session.query(AuditLog).filter_by(action="audit_task.delete").one()
        assert len(log.diff["deleted_findings"]) == 2

    def test_delete_unknown(self):
        with pytest.raises(NotFoundError):
            svc.delete_task(ORG, USER, "missing")


# ═════════════════════════════════════════════════════════════════════════
# LIST / STATS
# ═════════════════════════════════════════════════════════════════════════

class TestListAndStats:
    def test_filters(self):
        _task(title="Alpha", priority="high", risk_score=80)
        _task(title="Beta", priority="low", risk_score=20)
        _task(title="Gamma", audit_type="supplier")

        assert svc.list_tasks(ORG, {"priority": "high"})["total"] == 1
        assert svc.list_tasks(ORG, {"audit_type": "supplier"})["items"][0].title == "Gamma"
        assert svc.list_tasks(ORG, {"min_risk_score": "50"})["total"] == 1
        assert svc.list_tasks(ORG, {"search": "bet"})["items"][0].title == "Beta"
        assert svc.list_tasks(ORG, {"ai_generated": "true"})["total"] == 0

        ordered = svc.list_tasks(ORG, {"sort_by": "title", "sort_order": "asc"})["items"]
        assert [t.title for t in ordered] == ["Alpha", "Beta", "Gamma"]

    def test_invalid_score_filter(self):
        with pytest.raises(ValidationError):
            svc.list_tasks(ORG, {"max_risk_score": "lots"})

    def test_stats(self, gateway):
        past = (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()
        _task(due_date=past)
        done = _task()
        svc.complete_task(ORG, USER, done.id, {}, gateway=gateway)

        stats = svc.get_task_stats(ORG)
        assert stats["total"] == 2
        assert stats["by_status"] == {"cancelled": 0, "completed": 1, "in_progress": 0, "pending": 1}
        assert stats["overdue"] == 1
        assert stats["ai_generated"] == 0
