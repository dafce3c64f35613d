"""
Permission checks for approval requests.

Each action class has a stage-specific permission per edge and a generic
catch-all. Holding either one is enough: a holder of the generic permission
can act on any edge.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from rule_workflow.models.enums import ApprovalStatus, Decision, Permission, Stage
from rule_workflow.services.stage_graph import transition_key

REQUEST_PERMISSIONS = {
    "WIP_TO_TEST": Permission.CREATE_WIP_TO_TEST_REQUEST,
    "TEST_TO_PENDING": Permission.CREATE_TEST_TO_PENDING_REQUEST,
    "PENDING_TO_PROD": Permission.CREATE_PENDING_TO_PROD_REQUEST,
}

APPROVE_PERMISSIONS = {
    "WIP_TO_TEST": Permission.APPROVE_WIP_TO_TEST,
    "TEST_TO_PENDING": Permission.APPROVE_TEST_TO_PENDING,
    "PENDING_TO_PROD": Permission.APPROVE_PENDING_TO_PROD,
}

GENERIC_PERMISSIONS = {
    "request": Permission.CREATE_APPROVAL_REQUEST,
    Decision.APPROVED: Permission.APPROVE_APPROVAL_REQUEST,
    Decision.REJECTED: Permission.REJECT_APPROVAL,
}


@dataclass(frozen=True)
class Actor:
    """An authenticated caller and the permissions the identity provider granted."""
    id: str
    permissions: FrozenSet[Permission] = field(default_factory=frozenset)

    @classmethod
    def of(cls, actor_id: str, permissions: Iterable[Permission] = ()) -> "Actor":
        return cls(id=actor_id, permissions=frozenset(permissions))

    def has(self, permission: Optional[Permission]) -> bool:
        return permission is not None and permission in self.permissions


def can_request(permissions: FrozenSet[Permission], from_stage: Stage, to_stage: Stage) -> bool:
    specific = REQUEST_PERMISSIONS.get(transition_key(from_stage, to_stage))
    return specific in permissions or GENERIC_PERMISSIONS["request"] in permissions


def can_decide(
    permissions: FrozenSet[Permission],
    from_stage: Stage,
    to_stage: Stage,
    decision: Decision,
) -> bool:
    """
    Approvers of an edge may approve or reject it. Otherwise the generic
    permission of the chosen decision is required.
    """
    specific = APPROVE_PERMISSIONS.get(transition_key(from_stage, to_stage))
    return specific in permissions or GENERIC_PERMISSIONS[decision] in permissions


def can_view(
    permissions: FrozenSet[Permission],
    actor_id: str,
    requested_by: str,
    status: ApprovalStatus,
) -> bool:
    """Whether a single approval is visible, following the listing tiers."""
    if Permission.VIEW_APPROVAL_REQUEST_DETAILS in permissions:
        return True
    tier = visibility_tier(permissions)
    if tier is Permission.VIEW_ALL_REQUESTS:
        return True
    if tier is Permission.VIEW_PENDING_APPROVALS and status is ApprovalStatus.PENDING:
        return True
    return tier is not None and requested_by == actor_id


def visibility_tier(permissions: FrozenSet[Permission]) -> Optional[Permission]:
    """Broadest listing permission held, or None if the actor may not list approvals."""
    for permission in (
        Permission.VIEW_ALL_REQUESTS,
        Permission.VIEW_PENDING_APPROVALS,
        Permission.VIEW_OWN_REQUESTS,
    ):
        if permission in permissions:
            return permission
    return None
