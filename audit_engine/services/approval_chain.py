"""
Approval chain state machine for improvement proposals.

Pure functions over the chain stored on ``ImprovementProposal``; nothing
here touches the session. ``proposal_service`` persists the returned
``Decision`` with a compare-and-set on ``current_approval_level``.

Chain invariant, with ``k = current_approval_level``:
    - entries 1..k-1 are approved
    - entry k is pending while the proposal is reviewable
    - entries k+1..n are pending
Rejection at level k is terminal: entry k becomes rejected and nothing
after it is touched.

Usage:
    from audit_engine.services.approval_chain import build_chain, resolve_level

    chain = build_chain(levels)
    decision = resolve_level(chain, 1, "submitted", approved=True, approver_id="u-1")
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from audit_engine.core.exceptions import InvariantViolationError, ValidationError
from audit_engine.models.commonality import PROPOSAL_PRIORITIES, PROPOSAL_REVIEWABLE

LEVEL_PENDING = "pending"
LEVEL_APPROVED = "approved"
LEVEL_REJECTED = "rejected"


@dataclass(frozen=True)
class Decision:
    """Result of resolving one level."""

    chain: list
    status: str
    current_level: int
    resolved_level: int


def priority_rank(priority):
    return PROPOSAL_PRIORITIES.index(priority)


def levels_for_priority(levels, priority):
    """Configured levels that apply to a proposal of ``priority``."""
    rank = priority_rank(priority)
    return [
        dict(level) for level in levels
        if priority_rank(level.get("min_proposal_priority", "low")) <= rank
    ]


def build_chain(levels):
    """Turn ``[{role, min_proposal_priority?}]`` into pending chain entries.

    Levels are renumbered 1..n in the given order.

    Raises:
        ValidationError: empty chain, missing role or unknown priority.
    """
    if not isinstance(levels, list) or not levels:
        raise ValidationError("approval chain must contain at least one level",
                              details={"approval_chain": "required"})
    chain = []
    for index, level in enumerate(levels, start=1):
        if not isinstance(level, dict) or not level.get("role"):
            raise ValidationError(f"approval level {index} requires a role")
        priority = level.get("min_proposal_priority")
        if priority is not None and priority not in PROPOSAL_PRIORITIES:
            raise ValidationError(f"Invalid min_proposal_priority: {priority}")
        chain.append({
            "level": index,
            "role": level["role"],
            "min_proposal_priority": priority,
            "approver_id": None,
            "status": LEVEL_PENDING,
            "comments": None,
            "timestamp": None,
        })
    return chain


def check_invariant(chain, current_level):
    """Raise InvariantViolationError if the chain disagrees with the level pointer."""
    if not 1 <= current_level <= len(chain):
        raise InvariantViolationError(
            f"approval level {current_level} is outside a chain of {len(chain)}",
        )
    for entry in chain[:current_level - 1]:
        if entry.get("status") != LEVEL_APPROVED:
            raise InvariantViolationError(f"approval level {entry.get('level')} is not approved")
    for entry in chain[current_level:]:
        if entry.get("status") != LEVEL_PENDING:
            raise InvariantViolationError(f"approval level {entry.get('level')} was resolved out of order")


def resolve_level(chain, current_level, status, *, approved, approver_id, comments=None, now=None):
    """Resolve the level awaiting a decision.

    Returns:
        Decision with a new chain list (the input is not modified).

    Raises:
        InvariantViolationError: the proposal is not under review, the level
            is already resolved, or the chain is out of order.
    """
    if status not in PROPOSAL_REVIEWABLE:
        raise InvariantViolationError(f"proposal is not awaiting approval (status={status})")
    check_invariant(chain, current_level)

    entry = chain[current_level - 1]
    if entry.get("status") != LEVEL_PENDING:
        raise InvariantViolationError(f"approval level {current_level} is already resolved")

    resolved = {
        **entry,
        "approver_id": approver_id,
        "status": LEVEL_APPROVED if approved else LEVEL_REJECTED,
        "comments": comments,
        "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
    }
    new_chain = [dict(e) for e in chain]
    new_chain[current_level - 1] = resolved

    if not approved:
        return Decision(new_chain, "rejected", current_level, current_level)
    if current_level == len(chain):
        return Decision(new_chain, "approved", current_level, current_level)
    return Decision(new_chain, "under_review", current_level + 1, current_level)
