"""Per-organization audit configuration.

``get_configuration`` is a get-or-initialize repository method: the row is
created with defaults on first access and every caller receives an
immutable ``ConfigurationSnapshot``. Nothing holds shared mutable
configuration in memory; ``update_configuration`` writes the row and
returns a fresh snapshot.
"""

import copy
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from audit_engine.core.exceptions import ValidationError
from audit_engine.models import db
from audit_engine.models.commonality import PROPOSAL_PRIORITIES
from audit_engine.models.risk import RISK_DIMENSIONS, RISK_LEVELS
from audit_engine.models.scheduling import (
    DEFAULT_APPROVAL_LEVELS,
    DEFAULT_AUTO_GENERATE_THRESHOLD,
    DEFAULT_NOTIFICATION_SETTINGS,
    DEFAULT_RISK_SCORE_WEIGHTS,
    DEFAULT_RISK_THRESHOLDS,
    DEFAULT_STANDARDS,
    AuditConfiguration,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """Read-only view of an organization's AuditConfiguration row."""

    organization_id: str
    risk_score_weights: Mapping[str, float]
    risk_thresholds: Mapping[str, float]
    approval_levels: tuple[Mapping, ...]
    default_standards: tuple[str, ...]
    auto_generate_tasks: bool
    auto_generate_threshold: float
    notification_settings: Mapping[str, bool]

    @classmethod
    def from_row(cls, row: AuditConfiguration) -> "ConfigurationSnapshot":
        return cls(
            organization_id=row.organization_id,
            risk_score_weights=MappingProxyType(dict(row.risk_score_weights or {})),
            risk_thresholds=MappingProxyType(dict(row.risk_thresholds or {})),
            approval_levels=tuple(MappingProxyType(dict(level)) for level in row.approval_levels or []),
            default_standards=tuple(row.default_standards or []),
            auto_generate_tasks=bool(row.auto_generate_tasks),
            auto_generate_threshold=float(row.auto_generate_threshold),
            notification_settings=MappingProxyType(dict(row.notification_settings or {})),
        )

    def to_dict(self) -> dict:
        return {
            "organization_id": self.organization_id,
            "risk_score_weights": dict(self.risk_score_weights),
            "risk_thresholds": dict(self.risk_thresholds),
            "approval_levels": [dict(level) for level in self.approval_levels],
            "default_standards": list(self.default_standards),
            "auto_generate_tasks": self.auto_generate_tasks,
            "auto_generate_threshold": self.auto_generate_threshold,
            "notification_settings": dict(self.notification_settings),
        }


def _default_row(organization_id: str) -> AuditConfiguration:
    return AuditConfiguration(
        organization_id=organization_id,
        risk_score_weights=dict(DEFAULT_RISK_SCORE_WEIGHTS),
        risk_thresholds=dict(DEFAULT_RISK_THRESHOLDS),
        approval_levels=copy.deepcopy(DEFAULT_APPROVAL_LEVELS),
        default_standards=list(DEFAULT_STANDARDS),
        auto_generate_tasks=False,
        auto_generate_threshold=DEFAULT_AUTO_GENERATE_THRESHOLD,
        notification_settings=dict(DEFAULT_NOTIFICATION_SETTINGS),
    )


def _get_or_create_row(organization_id: str) -> AuditConfiguration:
    stmt = select(AuditConfiguration).where(AuditConfiguration.organization_id == organization_id)
    row = db.session.execute(stmt).scalar_one_or_none()
    if row is not None:
        return row

    row = _default_row(organization_id)
    try:
        with db.session.begin_nested():
            db.session.add(row)
    except IntegrityError:
        # Another request initialised the row first.
        return db.session.execute(stmt).scalar_one()
    db.session.commit()
    logger.info("Initialised default audit configuration", extra={"organization_id": organization_id})
    return row


def get_configuration(organization_id: str) -> ConfigurationSnapshot:
    """Return the organization's configuration, creating defaults on first access."""
    return ConfigurationSnapshot.from_row(_get_or_create_row(organization_id))


# ── Update ───────────────────────────────────────────────────────────────


def _validate_weights(weights):
    if not isinstance(weights, dict):
        raise ValidationError("risk_score_weights must be an object")
    unknown = set(weights) - set(RISK_DIMENSIONS)
    if unknown:
        raise ValidationError(f"Unknown risk dimensions: {sorted(unknown)}")
    for key, value in weights.items():
        if not isinstance(value, (int, float)) or value < 0:
            raise ValidationError(f"Weight for {key} must be a non-negative number")
    return {k: float(v) for k, v in weights.items()}


def _validate_thresholds(thresholds):
    if not isinstance(thresholds, dict) or set(thresholds) != set(RISK_LEVELS):
        raise ValidationError(f"risk_thresholds must define exactly {list(RISK_LEVELS)}")
    bounds = [thresholds[level] for level in RISK_LEVELS]
    if any(not isinstance(b, (int, float)) for b in bounds):
        raise ValidationError("risk_thresholds values must be numbers")
    if bounds != sorted(bounds) or bounds[0] < 0 or bounds[-1] > 100:
        raise ValidationError("risk_thresholds must be ascending within 0-100")
    return {k: float(v) for k, v in thresholds.items()}


def _validate_approval_levels(levels):
    if not isinstance(levels, list):
        raise ValidationError("approval_levels must be a list")
    normalised = []
    for index, level in enumerate(levels, start=1):
        if not isinstance(level, dict) or not level.get("role"):
            raise ValidationError(f"approval level {index} requires a role")
        priority = level.get("min_proposal_priority", "low")
        if priority not in PROPOSAL_PRIORITIES:
            raise ValidationError(f"Invalid min_proposal_priority: {priority}")
        normalised.append({"level": index, "role": level["role"], "min_proposal_priority": priority})
    return normalised


def update_configuration(organization_id: str, data: dict) -> ConfigurationSnapshot:
    """Replace the supplied fields and return a new snapshot."""
    row = _get_or_create_row(organization_id)

    if "risk_score_weights" in data:
        row.risk_score_weights = {**(row.risk_score_weights or {}), **_validate_weights(data["risk_score_weights"])}
    if "risk_thresholds" in data:
        row.risk_thresholds = _validate_thresholds(data["risk_thresholds"])
    if "approval_levels" in data:
        row.approval_levels = _validate_approval_levels(data["approval_levels"])
    if "default_standards" in data:
        standards = data["default_standards"]
        if not isinstance(standards, list) or not all(isinstance(s, str) for s in standards):
            raise ValidationError("default_standards must be a list of strings")
        row.default_standards = list(standards)
    if "auto_generate_tasks" in data:
        row.auto_generate_tasks = bool(data["auto_generate_tasks"])
    if "auto_generate_threshold" in data:
        threshold = data["auto_generate_threshold"]
        if not isinstance(threshold, (int, float)) or not 0 <= threshold <= 100:
            raise ValidationError("auto_generate_threshold must be between 0 and 100")
        row.auto_generate_threshold = float(threshold)
    if "notification_settings" in data:
        settings = data["notification_settings"]
        if not isinstance(settings, dict):
            raise ValidationError("notification_settings must be an object")
        row.notification_settings = {**(row.notification_settings or {}),
                                     **{k: bool(v) for k, v in settings.items()}}

    db.session.commit()
    logger.info("Audit configuration updated: %s", sorted(data), extra={"organization_id": organization_id})
    return ConfigurationSnapshot.from_row(row)
