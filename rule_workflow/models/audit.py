"""
Stage history - the append-only audit trail of every realized stage change.

Rows are written by the transition engine only. This module also guards the
immutability of history rows and of version snapshot payloads at the ORM level.
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, String, event, inspect

from rule_workflow.database import Base
from rule_workflow.models.domain import RuleVersion
from rule_workflow.models.enums import Stage
from rule_workflow.services.errors import InvalidState


class RuleStageHistory(Base):
    """
    Immutable audit entry for one stage change of one rule version.

    Invariants:
    - Once written, never edited or deleted
    - One row per resolved approval, with (from_stage, to_stage) equal to
      (approval.from_stage, approval.moved_to_stage)
    """
    __tablename__ = "rule_stage_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rule_version_id = Column(Integer, ForeignKey("rule_versions.id"), nullable=False, index=True)
    approval_id = Column(Integer, ForeignKey("rule_approvals.id"), nullable=True, index=True)
    from_stage = Column(SQLEnum(Stage), nullable=False)
    to_stage = Column(SQLEnum(Stage), nullable=False)
    changed_by = Column(String, nullable=False)
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    reason = Column(String, nullable=True)


# Columns of a version that make up its snapshot
SNAPSHOT_COLUMNS = (
    "rule_id",
    "major_version",
    "minor_version",
    "rule_function_code",
    "rule_function_input_params",
    "rule_steps",
    "created_by",
    "comment",
    "created_at",
)


@event.listens_for(RuleStageHistory, "before_update")
def _refuse_history_update(mapper, connection, target):
    raise InvalidState(f"Stage history entry {target.id} is immutable")


@event.listens_for(RuleStageHistory, "before_delete")
def _refuse_history_delete(mapper, connection, target):
    raise InvalidState(f"Stage history entry {target.id} is immutable")


@event.listens_for(RuleVersion, "before_update")
def _refuse_snapshot_update(mapper, connection, target):
    state = inspect(target)
    changed = [name for name in SNAPSHOT_COLUMNS if state.attrs[name].history.has_changes()]
    if changed:
        raise InvalidState(
            f"Rule version {target.id} snapshot is immutable (attempted to change: {', '.join(changed)})"
        )
