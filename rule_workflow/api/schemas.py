"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from rule_workflow.models.enums import ApprovalAction, ApprovalStatus, Decision, Stage


# Approval schemas
class ApprovalCreate(BaseModel):
    rule_version_id: int
    rule_id: int
    from_stage: Stage
    to_stage: Stage
    requested_by: str = Field(..., min_length=1)
    request_comment: Optional[str] = Field(None, max_length=1000)


class ApprovalDecide(BaseModel):
    action: Decision
    action_by: str = Field(..., min_length=1)
    action_comment: Optional[str] = Field(None, max_length=1000)


class ApprovalWithdraw(BaseModel):
    withdrawn_by: str = Field(..., min_length=1)
    comment: Optional[str] = Field(None, max_length=1000)


class ApprovalResponse(BaseModel):
    id: int
    rule_version_id: int
    rule_id: int
    rule_name: str
    rule_slug: str
    major_version: int
    minor_version: int
    from_stage: Stage
    to_stage: Stage
    status: ApprovalStatus
    action: ApprovalAction
    moved_to_stage: Optional[Stage]
    requested_by: str
    requested_at: datetime
    request_comment: Optional[str]
    action_by: Optional[str]
    action_at: Optional[datetime]
    action_comment: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


class ApprovalListResponse(BaseModel):
    data: List[ApprovalResponse]
    pagination: Pagination


# Stage history schemas
class StageHistoryResponse(BaseModel):
    id: int
    rule_version_id: int
    approval_id: Optional[int]
    from_stage: Stage
    to_stage: Stage
    changed_by: str
    changed_at: datetime
    reason: Optional[str]

    class Config:
        from_attributes = True


# Rule schemas
class RuleCreate(BaseModel):
    slug: str = Field(..., min_length=1, max_length=200)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    author: Optional[str] = None


class RuleResponse(BaseModel):
    id: int
    slug: str
    name: str
    description: Optional[str]
    status: Stage
    version_major: int
    version_minor: int
    author: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Version schemas
class VersionSave(BaseModel):
    code: str
    input_params: List[Any] = []
    steps: List[Any] = []
    created_by: Optional[str] = None
    comment: Optional[str] = Field(None, max_length=1000)


class VersionResponse(BaseModel):
    id: int
    rule_id: int
    major_version: int
    minor_version: int
    stage: Stage
    rule_function_code: str
    rule_function_input_params: List[Any]
    rule_steps: List[Any]
    created_by: Optional[str]
    comment: Optional[str]
    test_status: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# Error response
class ErrorResponse(BaseModel):
    """Response when an operation is refused or fails."""
    detail: str
