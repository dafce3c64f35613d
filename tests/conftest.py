"""Pytest configuration and shared fixtures."""
import pytest

from rule_workflow.database import build_engine, build_session_factory, init_db
from rule_workflow.models.enums import Decision, Permission, Stage
from rule_workflow.services.permissions import Actor
from rule_workflow.services.stage_graph import STAGE_ORDER
from rule_workflow.services.transition_engine import TransitionEngine

ADMIN = Actor.of("admin", list(Permission))
ALICE = Actor.of("alice", [
    Permission.CREATE_APPROVAL_REQUEST,
    Permission.VIEW_OWN_REQUESTS,
])
QA1 = Actor.of("qa1", [
    Permission.APPROVE_WIP_TO_TEST,
    Permission.APPROVE_TEST_TO_PENDING,
    Permission.VIEW_PENDING_APPROVALS,
])


@pytest.fixture
def session_factory(tmp_path):
    """
    Fresh file-backed SQLite database for each test.

    A file (not :memory:) so that separate sessions get separate connections
    and can interleave transactions.
    """
    db_engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(db_engine)

    yield build_session_factory(db_engine)

    db_engine.dispose()


@pytest.fixture
def workflow(session_factory):
    return TransitionEngine(session_factory)


@pytest.fixture
def sample_rule(workflow):
    """A rule in WIP at version 0.1."""
    return workflow.create_rule(
        slug="credit-limit",
        name="Credit limit check",
        description="Rejects orders above the customer's credit limit",
        author="alice",
    )


@pytest.fixture
def sample_version(workflow, sample_rule):
    """The rule's first saved version, at WIP."""
    return workflow.save_version(
        sample_rule.id,
        code="return order_total <= credit_limit",
        input_params=[{"name": "order_total", "type": "number"}, {"name": "credit_limit", "type": "number"}],
        steps=[{"id": "step-1", "type": "return", "sequence": 1}],
        created_by="alice",
        comment="First draft",
    )


@pytest.fixture
def promote(workflow):
    """Walk a version forward through approvals until it reaches the given stage."""
    def _promote(version, target: Stage):
        stage = workflow.get_version(version.id).stage
        while stage != target:
            next_stage = STAGE_ORDER[STAGE_ORDER.index(stage) + 1]
            approval = workflow.request_transition(version.id, version.rule_id, stage, next_stage, ADMIN)
            workflow.decide(approval.id, Decision.APPROVED, ADMIN)
            stage = next_stage
        return workflow.get_version(version.id)
    return _promote
