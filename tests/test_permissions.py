"""Tests for the permission gate: stage-specific or generic permissions."""
from rule_workflow.models.enums import ApprovalStatus, Decision, Permission, Stage
from rule_workflow.services import permissions


def perms(*granted):
    return frozenset(granted)


class TestCanRequest:

    def test_stage_specific_permission_allows_its_edge_only(self):
        granted = perms(Permission.CREATE_TEST_TO_PENDING_REQUEST)

        assert permissions.can_request(granted, Stage.TEST, Stage.PENDING)
        assert not permissions.can_request(granted, Stage.WIP, Stage.TEST)
        assert not permissions.can_request(granted, Stage.PENDING, Stage.PROD)

    def test_generic_permission_allows_every_edge(self):
        granted = perms(Permission.CREATE_APPROVAL_REQUEST)

        assert permissions.can_request(granted, Stage.WIP, Stage.TEST)
        assert permissions.can_request(granted, Stage.TEST, Stage.PENDING)
        assert permissions.can_request(granted, Stage.PENDING, Stage.PROD)

    def test_no_permission_denies(self):
        assert not permissions.can_request(perms(), Stage.WIP, Stage.TEST)

    def test_approve_permission_does_not_grant_request(self):
        granted = perms(Permission.APPROVE_WIP_TO_TEST)
        assert not permissions.can_request(granted, Stage.WIP, Stage.TEST)


class TestCanDecide:

    def test_edge_approver_can_approve_and_reject_that_edge(self):
        granted = perms(Permission.APPROVE_PENDING_TO_PROD)

        assert permissions.can_decide(granted, Stage.PENDING, Stage.PROD, Decision.APPROVED)
        assert permissions.can_decide(granted, Stage.PENDING, Stage.PROD, Decision.REJECTED)
        assert not permissions.can_decide(granted, Stage.WIP, Stage.TEST, Decision.APPROVED)

    def test_generic_reject_permission_rejects_any_edge_but_cannot_approve(self):
        granted = perms(Permission.REJECT_APPROVAL)

        for from_stage, to_stage in [(Stage.WIP, Stage.TEST), (Stage.PENDING, Stage.PROD)]:
            assert permissions.can_decide(granted, from_stage, to_stage, Decision.REJECTED)
            assert not permissions.can_decide(granted, from_stage, to_stage, Decision.APPROVED)

    def test_generic_approve_permission_approves_any_edge(self):
        granted = perms(Permission.APPROVE_APPROVAL_REQUEST)

        assert permissions.can_decide(granted, Stage.WIP, Stage.TEST, Decision.APPROVED)
        assert permissions.can_decide(granted, Stage.PENDING, Stage.PROD, Decision.APPROVED)
        assert not permissions.can_decide(granted, Stage.PENDING, Stage.PROD, Decision.REJECTED)


class TestVisibility:

    def test_broadest_tier_wins(self):
        granted = perms(Permission.VIEW_OWN_REQUESTS, Permission.VIEW_ALL_REQUESTS)
        assert permissions.visibility_tier(granted) is Permission.VIEW_ALL_REQUESTS

    def test_no_tier_without_view_permissions(self):
        assert permissions.visibility_tier(perms(Permission.CREATE_APPROVAL_REQUEST)) is None

    def test_own_tier_sees_only_own_requests(self):
        granted = perms(Permission.VIEW_OWN_REQUESTS)

        assert permissions.can_view(granted, "alice", "alice", ApprovalStatus.APPROVED)
        assert not permissions.can_view(granted, "alice", "bob", ApprovalStatus.PENDING)

    def test_pending_tier_sees_pending_requests_of_others(self):
        granted = perms(Permission.VIEW_PENDING_APPROVALS)

        assert permissions.can_view(granted, "qa1", "bob", ApprovalStatus.PENDING)
        assert not permissions.can_view(granted, "qa1", "bob", ApprovalStatus.REJECTED)

    def test_details_permission_sees_everything(self):
        granted = perms(Permission.VIEW_APPROVAL_REQUEST_DETAILS)
        assert permissions.can_view(granted, "qa1", "bob", ApprovalStatus.WITHDRAWN)
