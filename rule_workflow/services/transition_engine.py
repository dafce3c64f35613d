"""
Transition engine that moves rule versions through the promotion pipeline.

This is the core enforcement mechanism - every approval request, decision and
withdrawal MUST go through here. Each operation is one database transaction:
it either commits every row it touches or none of them.
"""
import logging
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from rule_workflow.models.audit import RuleStageHistory
from rule_workflow.models.domain import Rule, RuleApproval, RuleVersion
from rule_workflow.models.enums import ApprovalAction, ApprovalStatus, Decision, Stage
from rule_workflow.services import permissions, stage_graph
from rule_workflow.services.approval_store import (
    NO_LONGER_PENDING,
    ApprovalFilter,
    ApprovalStore,
    NewApproval,
    Resolution,
)
from rule_workflow.services.errors import (
    Forbidden,
    InvalidState,
    StorageFailure,
    ValidationError,
    WorkflowError,
)
from rule_workflow.services.permissions import Actor
from rule_workflow.services.version_store import VersionSnapshot, VersionStore

logger = logging.getLogger(__name__)

WITHDRAWN_REASON = "Approval request withdrawn"
DECISION_VERBS = {Decision.APPROVED: "approve", Decision.REJECTED: "reject"}


class TransitionEngine:
    """Enforces stage transition rules and approval lifecycle invariants."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """
        Run a block as one unit of work.

        Commits on success. Any exception rolls back every statement of the
        block; database errors surface as StorageFailure.
        """
        session = self.session_factory()
        try:
            with session.begin():
                yield session
        except WorkflowError:
            raise
        except SQLAlchemyError as e:
            logger.exception("Storage failure, transaction rolled back")
            raise StorageFailure("Storage failure, the operation was rolled back") from e
        finally:
            session.close()

    def _refuse(self, error: WorkflowError, **context: Any) -> WorkflowError:
        logger.warning("Transition refused: %s", error.message, extra=context)
        return error

    # Approval lifecycle

    def request_transition(
        self,
        rule_version_id: int,
        rule_id: int,
        from_stage: Stage,
        to_stage: Stage,
        actor: Actor,
        comment: Optional[str] = None,
    ) -> RuleApproval:
        """
        Open a PENDING approval to move a version from from_stage to to_stage.

        Invariants:
        - Only WIP->TEST, TEST->PENDING and PENDING->PROD may be requested
        - The actor needs the edge's request permission or the generic one
        - At most one PENDING approval per rule version
        - The version must currently sit at from_stage
        """
        context = {
            "rule_version_id": rule_version_id,
            "from_stage": from_stage.value,
            "to_stage": to_stage.value,
            "actor_id": actor.id,
        }

        if not stage_graph.is_legal_transition(from_stage, to_stage):
            raise self._refuse(ValidationError(
                f"{from_stage.value} to {to_stage.value} is not a legal stage transition"
            ), **context)

        if not permissions.can_request(actor.permissions, from_stage, to_stage):
            raise self._refuse(Forbidden(
                f"You don't have permission to create {from_stage.value} to "
                f"{to_stage.value} approval requests"
            ), **context)

        with self._transaction() as db:
            versions = VersionStore(db)
            approvals = ApprovalStore(db)

            # Lock the version row so concurrent requests for it serialize
            version = versions.get_version(rule_version_id, for_update=True)
            versions.get_rule(rule_id)

            if version.rule_id != rule_id:
                raise self._refuse(ValidationError(
                    f"Rule version {rule_version_id} does not belong to rule {rule_id}"
                ), **context)

            if version.stage != from_stage:
                raise self._refuse(InvalidState(
                    f"Rule version {rule_version_id} is in stage {version.stage.value}, "
                    f"not {from_stage.value}"
                ), **context)

            try:
                approval = approvals.insert_approval(NewApproval(
                    rule_version_id=rule_version_id,
                    rule_id=rule_id,
                    from_stage=from_stage,
                    to_stage=to_stage,
                    requested_by=actor.id,
                    request_comment=comment,
                ))
            except WorkflowError as e:
                raise self._refuse(e, **context)

            approval = approvals.get_approval(approval.id)

        logger.info("Approval requested", extra={**context, "approval_id": approval.id})
        return approval

    def decide(
        self,
        approval_id: int,
        decision: Decision,
        actor: Actor,
        comment: Optional[str] = None,
    ) -> RuleApproval:
        """
        Approve or reject a PENDING approval.

        Approval lands the version on to_stage. Rejection lands it on the
        stage graph's rejection target: WIP for WIP->TEST, TEST for both
        TEST->PENDING and PENDING->PROD.

        Side effects, all in one transaction:
        - approval resolved (status, action, action_by/at, moved_to_stage)
        - version stage set to moved_to_stage
        - rule status set to moved_to_stage when the version is the rule's current one
        - one stage history row appended
        """
        context = {"approval_id": approval_id, "decision": decision.value, "actor_id": actor.id}

        with self._transaction() as db:
            versions = VersionStore(db)
            approvals = ApprovalStore(db)

            approval = approvals.get_approval(approval_id, for_update=True)
            if approval.status != ApprovalStatus.PENDING:
                raise self._refuse(InvalidState(NO_LONGER_PENDING), **context)

            from_stage, to_stage = approval.from_stage, approval.to_stage
            if not permissions.can_decide(actor.permissions, from_stage, to_stage, decision):
                raise self._refuse(Forbidden(
                    f"You don't have permission to {DECISION_VERBS[decision]} "
                    f"{from_stage.value} to {to_stage.value} approval requests"
                ), **context)

            if decision is Decision.APPROVED:
                moved_to_stage = to_stage
                reason = f"Approved: {comment or 'No comment'}"
            else:
                moved_to_stage = stage_graph.rejection_target(from_stage, to_stage)
                reason = f"Rejected: {comment or 'No comment'}"

            try:
                approval = approvals.resolve_approval(approval_id, Resolution(
                    status=ApprovalStatus(decision.value),
                    action=ApprovalAction(decision.value),
                    action_by=actor.id,
                    action_comment=comment,
                    moved_to_stage=moved_to_stage,
                ))
            except InvalidState as e:
                raise self._refuse(e, **context)

            self._move_version(versions, approval.rule_version_id, moved_to_stage)
            approvals.append_history(
                rule_version_id=approval.rule_version_id,
                from_stage=from_stage,
                to_stage=moved_to_stage,
                changed_by=actor.id,
                reason=reason,
                approval_id=approval.id,
            )

        logger.info(
            "Approval %s", decision.value.lower(),
            extra={**context, "rule_version_id": approval.rule_version_id,
                   "moved_to_stage": moved_to_stage.value},
        )
        return approval

    def withdraw(self, approval_id: int, actor: Actor, comment: Optional[str] = None) -> RuleApproval:
        """
        Withdraw a PENDING approval without moving the version.

        The history row records from_stage -> from_stage.
        """
        context = {"approval_id": approval_id, "actor_id": actor.id}

        with self._transaction() as db:
            approvals = ApprovalStore(db)

            approval = approvals.get_approval(approval_id, for_update=True)
            if approval.status != ApprovalStatus.PENDING:
                raise self._refuse(InvalidState(NO_LONGER_PENDING), **context)

            from_stage = approval.from_stage
            try:
                approval = approvals.resolve_approval(approval_id, Resolution(
                    status=ApprovalStatus.WITHDRAWN,
                    action=ApprovalAction.WITHDRAWN,
                    action_by=actor.id,
                    action_comment=comment,
                    moved_to_stage=from_stage,
                ))
            except InvalidState as e:
                raise self._refuse(e, **context)

            approvals.append_history(
                rule_version_id=approval.rule_version_id,
                from_stage=from_stage,
                to_stage=from_stage,
                changed_by=actor.id,
                reason=f"{WITHDRAWN_REASON}: {comment}" if comment else WITHDRAWN_REASON,
                approval_id=approval.id,
            )

        logger.info("Approval withdrawn", extra={**context, "rule_version_id": approval.rule_version_id})
        return approval

    def _move_version(self, versions: VersionStore, rule_version_id: int, stage: Stage) -> None:
        """Set the version's stage and keep the rule's status mirror in step."""
        version = versions.set_version_stage(rule_version_id, stage)
        if versions.is_current_version(version):
            versions.set_rule_status(version.rule_id, stage)
        else:
            logger.info(
                "Version is not the rule's current version, rule status left unchanged",
                extra={"rule_id": version.rule_id, "rule_version_id": version.id},
            )

    # Queries

    def get_approval(self, approval_id: int, actor: Actor) -> RuleApproval:
        with self._transaction() as db:
            approval = ApprovalStore(db).get_approval(approval_id)
        if not permissions.can_view(actor.permissions, actor.id, approval.requested_by, approval.status):
            raise Forbidden("You don't have permission to view this approval request")
        return approval

    def list_approvals(
        self,
        filters: ApprovalFilter,
        page: int,
        limit: int,
        actor: Actor,
    ) -> Tuple[List[RuleApproval], int]:
        tier = permissions.visibility_tier(actor.permissions)
        if tier is None:
            raise Forbidden("You don't have permission to view approval requests")
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        with self._transaction() as db:
            return ApprovalStore(db).list_approvals(filters, page, limit, actor.id, tier)

    def list_history(self, rule_version_id: int) -> List[RuleStageHistory]:
        with self._transaction() as db:
            VersionStore(db).get_version(rule_version_id)
            return ApprovalStore(db).list_history(rule_version_id)

    # Rules and versions

    def create_rule(
        self,
        slug: str,
        name: str,
        description: Optional[str] = None,
        author: Optional[str] = None,
    ) -> Rule:
        with self._transaction() as db:
            return VersionStore(db).create_rule(slug, name, description=description, author=author)

    def delete_rule(self, rule_id: int) -> Rule:
        with self._transaction() as db:
            return VersionStore(db).soft_delete_rule(rule_id)

    def get_rule(self, rule_id: int) -> Rule:
        with self._transaction() as db:
            return VersionStore(db).get_rule(rule_id)

    def create_version(self, rule_id: int, snapshot: VersionSnapshot) -> RuleVersion:
        with self._transaction() as db:
            return VersionStore(db).create_version(rule_id, snapshot)

    def save_version(
        self,
        rule_id: int,
        code: str,
        input_params: Optional[List[Any]] = None,
        steps: Optional[List[Any]] = None,
        created_by: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> RuleVersion:
        with self._transaction() as db:
            return VersionStore(db).save_version(
                rule_id, code,
                input_params=input_params,
                steps=steps,
                created_by=created_by,
                comment=comment,
            )

    def get_version(self, rule_version_id: int) -> RuleVersion:
        with self._transaction() as db:
            return VersionStore(db).get_version(rule_version_id)

    def list_versions(self, rule_id: int) -> List[RuleVersion]:
        with self._transaction() as db:
            return VersionStore(db).list_versions(rule_id)
