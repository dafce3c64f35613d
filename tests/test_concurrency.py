"""
Tests for transactional consistency under interleaved operations.

Each race is staged deterministically: a competing operation is run, in its own
transaction, between the moment the operation under test has read its state and
the moment it writes.
"""
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from rule_workflow.models.domain import RuleApproval
from rule_workflow.models.enums import ApprovalStatus, Decision, Permission, Stage
from rule_workflow.services.approval_store import ApprovalStore
from rule_workflow.services.errors import Conflict, InvalidState, StorageFailure
from rule_workflow.services.permissions import Actor
from tests.conftest import ADMIN, ALICE, QA1

BOB = Actor.of("bob", [Permission.CREATE_APPROVAL_REQUEST])


def pending_count(session_factory, rule_version_id):
    with session_factory() as db:
        return db.execute(
            select(func.count(RuleApproval.id)).where(
                RuleApproval.rule_version_id == rule_version_id,
                RuleApproval.status == ApprovalStatus.PENDING,
            )
        ).scalar_one()


def race_before(monkeypatch, method_name, competitor):
    """Run competitor() once, just before the first call to ApprovalStore.<method_name>."""
    original = getattr(ApprovalStore, method_name)
    raced = []

    def racing(store, *args, **kwargs):
        if not raced:
            raced.append(True)
            competitor()
        return original(store, *args, **kwargs)

    monkeypatch.setattr(ApprovalStore, method_name, racing)
    return raced


def race_after(monkeypatch, method_name, competitor):
    """Run competitor() once, just after the first call to ApprovalStore.<method_name> returns."""
    original = getattr(ApprovalStore, method_name)
    raced = []

    def racing(store, *args, **kwargs):
        result = original(store, *args, **kwargs)
        if not raced:
            raced.append(True)
            competitor()
        return result

    monkeypatch.setattr(ApprovalStore, method_name, racing)
    return raced


class TestConcurrentRequests:
    """INVARIANT: at most one PENDING approval per version, even under concurrent requests."""

    def test_request_that_passed_the_check_still_conflicts(self, workflow, session_factory, sample_version, monkeypatch):
        v = sample_version
        winners = []

        # Bob's request commits after Alice's check saw no pending approval
        race_after(monkeypatch, "find_pending_by_version", lambda: winners.append(
            workflow.request_transition(v.id, v.rule_id, Stage.WIP, Stage.TEST, BOB)
        ))

        with pytest.raises(Conflict):
            workflow.request_transition(v.id, v.rule_id, Stage.WIP, Stage.TEST, ALICE)

        assert len(winners) == 1
        assert winners[0].requested_by == "bob"
        assert pending_count(session_factory, v.id) == 1

    def test_unique_index_rejects_second_pending_row_without_precheck(
        self, workflow, session_factory, sample_version, monkeypatch
    ):
        v = sample_version
        workflow.request_transition(v.id, v.rule_id, Stage.WIP, Stage.TEST, ALICE)

        monkeypatch.setattr(ApprovalStore, "find_pending_by_version", lambda store, rule_version_id: None)

        with pytest.raises(Conflict):
            workflow.request_transition(v.id, v.rule_id, Stage.WIP, Stage.TEST, BOB)

        assert pending_count(session_factory, v.id) == 1


class TestConcurrentDecisions:
    """Two resolutions of the same approval: exactly one succeeds."""

    def test_losing_decision_sees_invalid_state(self, workflow, sample_version, monkeypatch):
        v = sample_version
        a = workflow.request_transition(v.id, v.rule_id, Stage.WIP, Stage.TEST, ALICE)

        race_before(monkeypatch, "resolve_approval", lambda: workflow.decide(a.id, Decision.REJECTED, QA1))

        with pytest.raises(InvalidState):
            workflow.decide(a.id, Decision.APPROVED, QA1)

        monkeypatch.undo()
        final = workflow.get_approval(a.id, ADMIN)
        assert final.status == ApprovalStatus.REJECTED
        assert workflow.get_version(v.id).stage == Stage.WIP
        assert len(workflow.list_history(v.id)) == 1

    def test_withdraw_racing_an_approval_loses_cleanly(self, workflow, sample_version, monkeypatch):
        v = sample_version
        a = workflow.request_transition(v.id, v.rule_id, Stage.WIP, Stage.TEST, ALICE)

        race_before(monkeypatch, "resolve_approval", lambda: workflow.decide(a.id, Decision.APPROVED, QA1))

        with pytest.raises(InvalidState):
            workflow.withdraw(a.id, ALICE)

        history = workflow.list_history(v.id)
        assert len(history) == 1
        assert (history[0].from_stage, history[0].to_stage) == (Stage.WIP, Stage.TEST)
        assert workflow.get_version(v.id).stage == Stage.TEST


class TestRollback:
    """A storage failure mid-operation leaves no partial state behind."""

    def test_failed_history_write_rolls_back_the_whole_decision(self, workflow, sample_version, monkeypatch):
        v = sample_version
        a = workflow.request_transition(v.id, v.rule_id, Stage.WIP, Stage.TEST, ALICE)

        def broken_append(store, *args, **kwargs):
            raise OperationalError("INSERT INTO rule_stage_history", {}, Exception("disk I/O error"))

        monkeypatch.setattr(ApprovalStore, "append_history", broken_append)

        with pytest.raises(StorageFailure) as exc_info:
            workflow.decide(a.id, Decision.APPROVED, QA1)

        assert isinstance(exc_info.value.__cause__, OperationalError)

        # Approval, version and rule are exactly as before the call
        monkeypatch.undo()
        assert workflow.get_approval(a.id, QA1).status == ApprovalStatus.PENDING
        assert workflow.get_version(v.id).stage == Stage.WIP
        assert workflow.get_rule(v.rule_id).status == Stage.WIP
        assert workflow.list_history(v.id) == []

    def test_failed_withdraw_can_be_retried(self, workflow, sample_version, monkeypatch):
        v = sample_version
        a = workflow.request_transition(v.id, v.rule_id, Stage.WIP, Stage.TEST, ALICE)

        def broken_append(store, *args, **kwargs):
            raise OperationalError("INSERT INTO rule_stage_history", {}, Exception("database is locked"))

        monkeypatch.setattr(ApprovalStore, "append_history", broken_append)
        with pytest.raises(StorageFailure):
            workflow.withdraw(a.id, ALICE)

        monkeypatch.undo()
        withdrawn = workflow.withdraw(a.id, ALICE)

        assert withdrawn.status == ApprovalStatus.WITHDRAWN
        assert len(workflow.list_history(v.id)) == 1
