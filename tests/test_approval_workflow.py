"""
Improvement proposal approval workflow tests.

Tests cover:
  - Chain construction and the level invariant (pure functions)
  - submit → sequential approvals → approved
  - Rejection at a middle level leaves later levels untouched
  - Resolving a level twice or out of order is rejected
  - Concurrent resolution loses the compare-and-set and changes nothing
  - Chain selection from configured levels by proposal priority
  - Draft-only editing and the implementation phase
"""
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import update

from audit_engine.core.exceptions import InvariantViolationError, NotFoundError, TransitionError, ValidationError
from audit_engine.models import db
from audit_engine.models.audit import AuditLog
from audit_engine.models.commonality import ImprovementProposal
from audit_engine.services import approval_chain, configuration_service, proposal_service as svc

from conftest import ORG, OTHER_ORG, USER


THREE_LEVELS = [{"role": "Quality Manager"}, {"role": "Plant Manager"}, {"role": "Director"}]


def _proposal(**overrides):
    return svc.create_proposal(ORG, USER, {"title": "Poka-yoke on line 3", "priority": "high", **overrides})


def _submitted(levels=THREE_LEVELS, **overrides):
    p = _proposal(**overrides)
    return svc.submit_proposal(ORG, USER, p.id, {"approval_chain": levels})


# ═════════════════════════════════════════════════════════════════════════
# PURE CHAIN LOGIC
# ═════════════════════════════════════════════════════════════════════════

class TestChainLogic:
    def test_build_chain_numbers_levels(self):
        chain = approval_chain.build_chain([{"role": "A", "level": 7}, {"role": "B"}])
        assert [e["level"] for e in chain] == [1, 2]
        assert all(e["status"] == "pending" and e["approver_id"] is None for e in chain)

    @pytest.mark.parametrize("levels", [[], None, [{"role": ""}], [{"role": "A", "min_proposal_priority": "x"}]])
    def test_build_chain_rejects_bad_input(self, levels):
        with pytest.raises(ValidationError):
            approval_chain.build_chain(levels)

    def test_resolve_does_not_mutate_input(self):
        chain = approval_chain.build_chain(THREE_LEVELS)
        decision = approval_chain.resolve_level(chain, 1, "submitted", approved=True, approver_id="u",
                                                now=datetime(2026, 5, 1, tzinfo=timezone.utc))
        assert chain[0]["status"] == "pending"
        assert decision.chain[0]["status"] == "approved"
        assert decision.chain[0]["timestamp"] == "2026-05-01T00:00:00+00:00"
        assert (decision.status, decision.current_level, decision.resolved_level) == ("under_review", 2, 1)

    def test_invariant_detects_out_of_order_resolution(self):
        chain = approval_chain.build_chain(THREE_LEVELS)
        chain[2]["status"] = "approved"
        with pytest.raises(InvariantViolationError):
            approval_chain.check_invariant(chain, 1)

    def test_level_outside_chain(self):
        with pytest.raises(InvariantViolationError):
            approval_chain.check_invariant(approval_chain.build_chain(THREE_LEVELS), 0)

    def test_levels_for_priority(self):
        levels = [
            {"role": "QM", "min_proposal_priority": "medium"},
            {"role": "Director", "min_proposal_priority": "high"},
            {"role": "Anyone"},
        ]
        assert [l["role"] for l in approval_chain.levels_for_priority(levels, "low")] == ["Anyone"]
        assert [l["role"] for l in approval_chain.levels_for_priority(levels, "medium")] == ["QM", "Anyone"]
        assert len(approval_chain.levels_for_priority(levels, "critical")) == 3


# ═════════════════════════════════════════════════════════════════════════
# WORKFLOW
# ═════════════════════════════════════════════════════════════════════════

class TestSubmit:
    def test_create_is_draft(self):
        p = _proposal()
        assert p.status == "draft"
        assert p.current_approval_level == 0
        assert p.approval_chain == []
        assert p.proposal_number.startswith("IMP-")

    def test_submit_installs_chain(self):
        p = _submitted()
        assert p.status == "submitted"
        assert p.current_approval_level == 1
        assert p.submitted_by == USER
        assert [e["role"] for e in p.approval_chain] == ["Quality Manager", "Plant Manager", "Director"]

    def test_submit_twice_rejected(self):
        p = _submitted()
        with pytest.raises(TransitionError):
            svc.submit_proposal(ORG, USER, p.id, {"approval_chain": THREE_LEVELS})

    def test_empty_chain_rejected(self):
        p = _proposal()
        with pytest.raises(ValidationError):
            svc.submit_proposal(ORG, USER, p.id, {"approval_chain": []})
        assert svc.get_proposal(ORG, p.id).status == "draft"

    def test_chain_from_configuration_by_priority(self):
        p = svc.submit_proposal(ORG, USER, _proposal(priority="medium").id)
        assert [e["role"] for e in p.approval_chain] == ["Quality Manager"]

        p = svc.submit_proposal(ORG, USER, _proposal(priority="critical").id)
        assert [e["role"] for e in p.approval_chain] == ["Quality Manager", "Operations Director"]

    def test_low_priority_without_applicable_levels(self):
        p = _proposal(priority="low")
        with pytest.raises(ValidationError, match="send approval_chain explicitly") as exc:
            svc.submit_proposal(ORG, USER, p.id)
        assert exc.value.details["priority"] == "low"
        assert svc.get_proposal(ORG, p.id).status == "draft"

        p = svc.submit_proposal(ORG, USER, p.id, {"approval_chain": [{"role": "Team Lead"}]})
        assert p.status == "submitted"

    def test_configured_levels_snapshot_at_submit(self):
        p = svc.submit_proposal(ORG, USER, _proposal().id)
        configuration_service.update_configuration(ORG, {"approval_levels": [{"role": "Someone else"}]})
        p = svc.get_proposal(ORG, p.id)
        assert [e["role"] for e in p.approval_chain] == ["Quality Manager", "Operations Director"]


class TestApprove:
    def test_sequential_approval_to_approved(self):
        p = _submitted()
        p = svc.approve_proposal(ORG, "qm", p.id, {"approved": True})
        assert (p.status, p.current_approval_level) == ("under_review", 2)
        p = svc.approve_proposal(ORG, "pm", p.id, {"approved": True, "comments": "fine"})
        assert (p.status, p.current_approval_level) == ("under_review", 3)
        p = svc.approve_proposal(ORG, "dir", p.id, {"approved": True})

        assert p.status == "approved"
        assert p.current_approval_level == 3
        assert [e["status"] for e in p.approval_chain] == ["approved"] * 3
        assert [e["approver_id"] for e in p.approval_chain] == ["qm", "pm", "dir"]
        assert p.approval_chain[1]["comments"] == "fine"

    def test_rejection_at_middle_level(self):
        p = _submitted()
        svc.approve_proposal(ORG, "qm", p.id, {"approved": True})
        p = svc.approve_proposal(ORG, "pm", p.id, {"approved": False, "comments": "too costly"})

        assert p.status == "rejected"
        assert p.current_approval_level == 2
        assert [e["status"] for e in p.approval_chain] == ["approved", "rejected", "pending"]
        assert p.approval_chain[2]["approver_id"] is None
        assert p.approval_chain[2]["timestamp"] is None

    def test_rejected_proposal_cannot_be_approved(self):
        p = _submitted()
        svc.approve_proposal(ORG, "qm", p.id, {"approved": False})
        with pytest.raises(InvariantViolationError):
            svc.approve_proposal(ORG, "qm", p.id, {"approved": True})

    def test_draft_cannot_be_approved(self):
        p = _proposal()
        with pytest.raises(InvariantViolationError):
            svc.approve_proposal(ORG, "qm", p.id, {"approved": True})

    def test_approved_flag_must_be_boolean(self):
        p = _submitted()
        with pytest.raises(ValidationError):
            svc.approve_proposal(ORG, "qm", p.id, {"approved": "yes"})

    def test_concurrent_resolution_loses_compare_and_set(self):
        p = _submitted()
        real_resolve = approval_chain.resolve_level

        def racing_resolve(*args, **kwargs):
            decision = real_resolve(*args, **kwargs)
            # another request resolves level 1 in between read and write
            db.session.execute(
                update(ImprovementProposal)
                .where(ImprovementProposal.id == p.id)
                .values(status="under_review", current_approval_level=2)
            )
            return decision

        with patch("audit_engine.services.proposal_service.resolve_level", side_effect=racing_resolve):
            with pytest.raises(InvariantViolationError):
                svc.approve_proposal(ORG, "qm", p.id, {"approved": True})

        p = svc.get_proposal(ORG, p.id)
        assert p.status == "submitted"
        assert p.current_approval_level == 1
        assert p.approval_chain[0]["status"] == "pending"

    def test_audit_rows_written(self):
        p = _submitted()
        svc.approve_proposal(ORG, "qm", p.id, {"approved": True})
        svc.approve_proposal(ORG, "pm", p.id, {"approved": False})
        actions = [row.action for row in db.session.query(AuditLog).filter_by(entity_id=p.id)
                   .order_by(AuditLog.id)]
        assert actions == [
            "improvement_proposal.create",
            "improvement_proposal.submit",
            "improvement_proposal.approve",
            "improvement_proposal.reject",
        ]

    def test_other_organization(self):
        p = _submitted()
        with pytest.raises(NotFoundError):
            svc.approve_proposal(OTHER_ORG, "qm", p.id, {"approved": True})


# ═════════════════════════════════════════════════════════════════════════
# EDITING + IMPLEMENTATION
# ═════════════════════════════════════════════════════════════════════════

class TestEditing:
    def test_draft_content_editable(self):
        p = _proposal()
        svc.update_proposal(ORG, USER, p.id, {
            "title": "Updated", "affected_suppliers": ["S-1"],
            "implementation_steps": [{"description": "Design fixture", "due_date": "2026-07-01"}],
        })
        p = svc.get_proposal(ORG, p.id)
        assert p.title == "Updated"
        assert p.affected_suppliers == ["S-1"]
        assert p.implementation_steps[0]["step"] == 1
        assert p.implementation_steps[0]["status"] == "pending"

    def test_content_locked_after_submit(self):
        p = _submitted()
        with pytest.raises(TransitionError):
            svc.update_proposal(ORG, USER, p.id, {"title": "Sneaky"})

    def test_outcome_fields_editable_after_submit(self):
        p = _submitted()
        svc.update_proposal(ORG, USER, p.id, {"lessons_learned": "Involve maintenance"})
        assert svc.get_proposal(ORG, p.id).lessons_learned == "Involve maintenance"

    @pytest.mark.parametrize("payload", [
        {"title": ""}, {"title": "T", "category": "magic"}, {"title": "T", "priority": "urgent"},
        {"title": "T", "estimated_cost_saving": "lots"},
        {"title": "T", "implementation_steps": [{"assigned_to": "x"}]},
    ])
    def test_validation(self, payload):
        with pytest.raises(ValidationError):
            svc.create_proposal(ORG, USER, payload)

    def test_study_link_must_exist(self):
        with pytest.raises(NotFoundError):
            _proposal(commonality_study_id="missing")


class TestImplementation:
    def _approved(self):
        p = _submitted(levels=[{"role": "QM"}])
        return svc.approve_proposal(ORG, "qm", p.id, {"approved": True})

    def test_full_lifecycle(self):
        p = self._approved()
        assert p.status == "approved"
        p = svc.start_implementation(ORG, USER, p.id)
        assert p.status == "implementing"
        assert p.implementation_start_date is not None
        p = svc.complete_implementation(ORG, USER, p.id, {"actual_results": "Scrap -40%"})
        assert p.status == "completed"
        assert p.actual_results == "Scrap -40%"
        assert p.implementation_end_date is not None

    def test_concurrent_start_loses_compare_and_set(self):
        p = self._approved()
        real_check = svc._check_transition

        def racing_check(proposal, action):
            target = real_check(proposal, action)
            db.session.execute(
                update(ImprovementProposal)
                .where(ImprovementProposal.id == p.id)
                .values(status="implementing")
            )
            return target

        with patch("audit_engine.services.proposal_service._check_transition", side_effect=racing_check):
            with pytest.raises(InvariantViolationError):
                svc.start_implementation(ORG, USER, p.id)

        p = svc.get_proposal(ORG, p.id)
        assert p.status == "approved"
        assert p.implementation_start_date is None

    def test_cannot_start_unapproved(self):
        p = _submitted()
        with pytest.raises(TransitionError):
            svc.start_implementation(ORG, USER, p.id)

    def test_cannot_complete_before_start(self):
        p = self._approved()
        with pytest.raises(TransitionError):
            svc.complete_implementation(ORG, USER, p.id, {})

    def test_list_filters(self):
        self._approved()
        _proposal(category="training")
        assert svc.list_proposals(ORG, {"status": "approved"})["total"] == 1
        assert svc.list_proposals(ORG, {"category": "training"})["total"] == 1
        with pytest.raises(ValidationError):
            svc.list_proposals(ORG, {"status": "pending"})
