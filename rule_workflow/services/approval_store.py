"""
Storage boundary for approval requests and the stage history audit trail.

Like VersionStore, it never commits; it runs inside the caller's transaction.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from rule_workflow.models.audit import RuleStageHistory
from rule_workflow.models.domain import Rule, RuleApproval
from rule_workflow.models.enums import ApprovalAction, ApprovalStatus, Permission, Stage
from rule_workflow.services.errors import Conflict, InvalidState, NotFound

logger = logging.getLogger(__name__)

NUMERIC_SEARCH = re.compile(r"[0-9]+")
# Largest value an INTEGER id column holds
MAX_ID = 2 ** 31 - 1

PENDING_EXISTS = "A pending approval already exists for this rule version"
NO_LONGER_PENDING = "This approval request is no longer pending"


@dataclass
class NewApproval:
    rule_version_id: int
    rule_id: int
    from_stage: Stage
    to_stage: Stage
    requested_by: str
    request_comment: Optional[str] = None


@dataclass
class Resolution:
    """Terminal outcome written onto an approval exactly once."""
    status: ApprovalStatus
    action: ApprovalAction
    action_by: str
    moved_to_stage: Stage
    action_comment: Optional[str] = None


@dataclass
class ApprovalFilter:
    status: Optional[ApprovalStatus] = None  # None means ALL
    rule_id: Optional[int] = None
    requested_by: Optional[str] = None
    search: Optional[str] = None


class ApprovalStore:
    """Reads and writes RuleApproval and RuleStageHistory rows."""

    def __init__(self, db: Session):
        self.db = db

    def _with_display(self, stmt):
        return stmt.options(
            joinedload(RuleApproval.rule),
            joinedload(RuleApproval.rule_version),
        ).execution_options(populate_existing=True)

    def get_approval(self, approval_id: int, for_update: bool = False) -> RuleApproval:
        """
        Load an approval with its rule and version.

        populate_existing makes this a fresh read of the row even when the
        session already holds it, so status checks see committed state.
        """
        stmt = self._with_display(select(RuleApproval).where(RuleApproval.id == approval_id))
        if for_update:
            stmt = stmt.with_for_update(of=RuleApproval)
        approval = self.db.execute(stmt).unique().scalar_one_or_none()
        if approval is None:
            raise NotFound("Approval", approval_id)
        return approval

    def find_pending_by_version(self, rule_version_id: int) -> Optional[RuleApproval]:
        return self.db.execute(
            select(RuleApproval).where(
                RuleApproval.rule_version_id == rule_version_id,
                RuleApproval.status == ApprovalStatus.PENDING,
            )
        ).scalar_one_or_none()

    def insert_approval(self, request: NewApproval) -> RuleApproval:
        """
        Insert a PENDING approval.

        Invariant: at most one PENDING approval per rule version. The check
        here gives the common case a clear error; the partial unique index on
        rule_version_id catches a concurrent insert that slipped past it.
        """
        if self.find_pending_by_version(request.rule_version_id) is not None:
            raise Conflict(PENDING_EXISTS)

        approval = RuleApproval(
            rule_version_id=request.rule_version_id,
            rule_id=request.rule_id,
            from_stage=request.from_stage,
            to_stage=request.to_stage,
            status=ApprovalStatus.PENDING,
            action=ApprovalAction.REQUESTED,
            requested_by=request.requested_by,
            requested_at=datetime.utcnow(),
            request_comment=request.request_comment,
        )
        self.db.add(approval)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise Conflict(PENDING_EXISTS) from e
        return approval

    def resolve_approval(self, approval_id: int, outcome: Resolution) -> RuleApproval:
        """
        Move a PENDING approval to its terminal state.

        The update only matches while the row is still PENDING, so of two
        concurrent resolutions exactly one changes the row; the other sees
        zero rows and fails with InvalidState.
        """
        result = self.db.execute(
            update(RuleApproval)
            .where(
                RuleApproval.id == approval_id,
                RuleApproval.status == ApprovalStatus.PENDING,
            )
            .values(
                status=outcome.status,
                action=outcome.action,
                action_by=outcome.action_by,
                action_at=datetime.utcnow(),
                action_comment=outcome.action_comment,
                moved_to_stage=outcome.moved_to_stage,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Distinguish a missing row from one another writer already resolved
            current = self.get_approval(approval_id)
            logger.info(
                "Approval already resolved",
                extra={"approval_id": approval_id, "status": current.status.value},
            )
            raise InvalidState(NO_LONGER_PENDING)
        return self.get_approval(approval_id)

    def append_history(
        self,
        rule_version_id: int,
        from_stage: Stage,
        to_stage: Stage,
        changed_by: str,
        reason: Optional[str] = None,
        approval_id: Optional[int] = None,
    ) -> RuleStageHistory:
        entry = RuleStageHistory(
            rule_version_id=rule_version_id,
            approval_id=approval_id,
            from_stage=from_stage,
            to_stage=to_stage,
            changed_by=changed_by,
            changed_at=datetime.utcnow(),
            reason=reason,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_history(self, rule_version_id: int) -> List[RuleStageHistory]:
        return list(self.db.execute(
            select(RuleStageHistory)
            .where(RuleStageHistory.rule_version_id == rule_version_id)
            .order_by(RuleStageHistory.changed_at, RuleStageHistory.id)
        ).scalars())

    def list_approvals(
        self,
        filters: ApprovalFilter,
        page: int,
        limit: int,
        actor_id: str,
        tier: Permission,
    ) -> Tuple[List[RuleApproval], int]:
        """
        Page through approvals visible at the caller's tier, newest first.

        Tiers: VIEW_ALL_REQUESTS sees everything, VIEW_PENDING_APPROVALS sees
        every pending request plus the caller's own, VIEW_OWN_REQUESTS sees
        only the caller's own.
        """
        conditions = [Rule.deleted_at.is_(None)]

        if tier is Permission.VIEW_PENDING_APPROVALS:
            conditions.append(or_(
                RuleApproval.status == ApprovalStatus.PENDING,
                RuleApproval.requested_by == actor_id,
            ))
        elif tier is Permission.VIEW_OWN_REQUESTS:
            conditions.append(RuleApproval.requested_by == actor_id)

        if filters.status is not None:
            conditions.append(RuleApproval.status == filters.status)
        if filters.rule_id is not None:
            conditions.append(RuleApproval.rule_id == filters.rule_id)
        if filters.requested_by:
            conditions.append(RuleApproval.requested_by == filters.requested_by)
        if filters.search:
            term = f"%{filters.search}%"
            matches = [
                Rule.name.ilike(term),
                Rule.slug.ilike(term),
                RuleApproval.request_comment.ilike(term),
                RuleApproval.requested_by.ilike(term),
            ]
            # Numeric searches also match the approval id exactly
            if NUMERIC_SEARCH.fullmatch(filters.search) and int(filters.search) <= MAX_ID:
                matches.insert(0, RuleApproval.id == int(filters.search))
            conditions.append(or_(*matches))

        total = self.db.execute(
            select(func.count(RuleApproval.id))
            .select_from(RuleApproval)
            .join(Rule, RuleApproval.rule_id == Rule.id)
            .where(*conditions)
        ).scalar_one()

        stmt = self._with_display(
            select(RuleApproval)
            .join(Rule, RuleApproval.rule_id == Rule.id)
            .where(*conditions)
            .order_by(RuleApproval.created_at.desc(), RuleApproval.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        approvals = list(self.db.execute(stmt).unique().scalars())
        return approvals, total
