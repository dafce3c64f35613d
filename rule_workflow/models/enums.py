"""Enums for the rule workflow - these define the valid values for stages, statuses and permissions."""
from enum import Enum


class Stage(str, Enum):
    """The four promotion stages, in pipeline order. No other stages are allowed."""
    WIP = "WIP"
    TEST = "TEST"
    PENDING = "PENDING"
    PROD = "PROD"


class ApprovalStatus(str, Enum):
    """Status of an approval request. Everything except PENDING is terminal."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class ApprovalAction(str, Enum):
    """Last action recorded against an approval request."""
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class Decision(str, Enum):
    """Outcomes an approver may choose."""
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Permission(str, Enum):
    """Permission identifiers supplied by the identity provider."""
    # Approval request creation
    CREATE_APPROVAL_REQUEST = "CREATE_APPROVAL_REQUEST"
    CREATE_WIP_TO_TEST_REQUEST = "CREATE_WIP_TO_TEST_REQUEST"
    CREATE_TEST_TO_PENDING_REQUEST = "CREATE_TEST_TO_PENDING_REQUEST"
    CREATE_PENDING_TO_PROD_REQUEST = "CREATE_PENDING_TO_PROD_REQUEST"

    # Approval actions
    APPROVE_APPROVAL_REQUEST = "APPROVE_APPROVAL_REQUEST"
    APPROVE_WIP_TO_TEST = "APPROVE_WIP_TO_TEST"
    APPROVE_TEST_TO_PENDING = "APPROVE_TEST_TO_PENDING"
    APPROVE_PENDING_TO_PROD = "APPROVE_PENDING_TO_PROD"
    REJECT_APPROVAL = "REJECT_APPROVAL"

    # Visibility
    VIEW_PENDING_APPROVALS = "VIEW_PENDING_APPROVALS"
    VIEW_OWN_REQUESTS = "VIEW_OWN_REQUESTS"
    VIEW_ALL_REQUESTS = "VIEW_ALL_REQUESTS"
    VIEW_APPROVAL_REQUEST_DETAILS = "VIEW_APPROVAL_REQUEST_DETAILS"
