"""API routes for the rule promotion workflow."""
import math
from typing import FrozenSet, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from rule_workflow.api.deps import get_permissions, get_transition_engine
from rule_workflow.api.schemas import (
    ApprovalCreate,
    ApprovalDecide,
    ApprovalListResponse,
    ApprovalResponse,
    ApprovalWithdraw,
    ErrorResponse,
    Pagination,
    RuleCreate,
    RuleResponse,
    StageHistoryResponse,
    VersionResponse,
    VersionSave,
)
from rule_workflow.config import get_settings
from rule_workflow.models.enums import ApprovalStatus, Permission
from rule_workflow.services.approval_store import ApprovalFilter
from rule_workflow.services.permissions import Actor
from rule_workflow.services.transition_engine import TransitionEngine

router = APIRouter()

REFUSALS = {
    400: {"model": ErrorResponse, "description": "Invalid input or approval no longer pending"},
    403: {"model": ErrorResponse, "description": "Missing permission"},
    404: {"model": ErrorResponse, "description": "Rule, version or approval not found"},
}


# Approval endpoints
@router.post(
    "/approvals",
    response_model=ApprovalResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**REFUSALS, 409: {"model": ErrorResponse, "description": "Pending approval already exists"}},
)
def create_approval(
    data: ApprovalCreate,
    granted: FrozenSet[Permission] = Depends(get_permissions),
    engine: TransitionEngine = Depends(get_transition_engine),
):
    """
    Request promotion of a rule version to the next stage.

    WILL REFUSE if:
    - The stages are not an adjacent forward pair
    - The caller lacks the request permission for that pair
    - The version already has a pending approval
    """
    return engine.request_transition(
        rule_version_id=data.rule_version_id,
        rule_id=data.rule_id,
        from_stage=data.from_stage,
        to_stage=data.to_stage,
        actor=Actor(id=data.requested_by, permissions=granted),
        comment=data.request_comment,
    )


@router.get("/approvals", response_model=ApprovalListResponse, responses=REFUSALS)
def list_approvals(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    status_filter: Optional[str] = Query(None, alias="status"),
    rule_id: Optional[int] = None,
    requested_by: Optional[str] = None,
    search: Optional[str] = None,
    x_user_id: str = Header(...),
    granted: FrozenSet[Permission] = Depends(get_permissions),
    engine: TransitionEngine = Depends(get_transition_engine),
):
    """List approvals visible to the caller, newest first."""
    settings = get_settings()
    limit = min(limit or settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)

    approval_status = None
    if status_filter and status_filter != "ALL":
        try:
            approval_status = ApprovalStatus(status_filter)
        except ValueError:
            valid = ", ".join([s.value for s in ApprovalStatus] + ["ALL"])
            raise HTTPException(status_code=400, detail=f"Invalid status. Must be one of: {valid}")

    approvals, total = engine.list_approvals(
        ApprovalFilter(status=approval_status, rule_id=rule_id, requested_by=requested_by, search=search),
        page=page,
        limit=limit,
        actor=Actor(id=x_user_id, permissions=granted),
    )
    return ApprovalListResponse(
        data=[ApprovalResponse.model_validate(a) for a in approvals],
        pagination=Pagination(page=page, limit=limit, total=total, totalPages=math.ceil(total / limit)),
    )


@router.get("/approvals/{approval_id}", response_model=ApprovalResponse, responses=REFUSALS)
def get_approval(
    approval_id: int,
    x_user_id: str = Header(...),
    granted: FrozenSet[Permission] = Depends(get_permissions),
    engine: TransitionEngine = Depends(get_transition_engine),
):
    return engine.get_approval(approval_id, Actor(id=x_user_id, permissions=granted))


@router.put("/approvals/{approval_id}/decision", response_model=ApprovalResponse, responses=REFUSALS)
def decide_approval(
    approval_id: int,
    data: ApprovalDecide,
    granted: FrozenSet[Permission] = Depends(get_permissions),
    engine: TransitionEngine = Depends(get_transition_engine),
):
    """
    Approve or reject a pending approval.
    Side effect: moves the rule version (and the rule's status) to the resulting stage.
    """
    return engine.decide(
        approval_id,
        data.action,
        Actor(id=data.action_by, permissions=granted),
        comment=data.action_comment,
    )


@router.put("/approvals/{approval_id}/withdraw", response_model=ApprovalResponse, responses=REFUSALS)
def withdraw_approval(
    approval_id: int,
    data: ApprovalWithdraw,
    granted: FrozenSet[Permission] = Depends(get_permissions),
    engine: TransitionEngine = Depends(get_transition_engine),
):
    """Withdraw a pending approval. The rule version stays where it is."""
    return engine.withdraw(approval_id, Actor(id=data.withdrawn_by, permissions=granted), comment=data.comment)


# Stage history endpoints
@router.get("/rule-versions/{rule_version_id}/history", response_model=List[StageHistoryResponse], responses=REFUSALS)
def list_stage_history(rule_version_id: int, engine: TransitionEngine = Depends(get_transition_engine)):
    """Audit trail of every stage change of a rule version, oldest first."""
    return engine.list_history(rule_version_id)


# Rule and version endpoints
@router.post("/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED, responses={
    409: {"model": ErrorResponse, "description": "Slug already in use"}
})
def create_rule(data: RuleCreate, engine: TransitionEngine = Depends(get_transition_engine)):
    """Create a new rule at WIP, version 0.1."""
    return engine.create_rule(data.slug, data.name, description=data.description, author=data.author)


@router.get("/rules/{rule_id}", response_model=RuleResponse, responses=REFUSALS)
def get_rule(rule_id: int, engine: TransitionEngine = Depends(get_transition_engine)):
    return engine.get_rule(rule_id)


@router.post("/rules/{rule_id}/versions", response_model=VersionResponse, status_code=status.HTTP_201_CREATED,
             responses={**REFUSALS, 409: {"model": ErrorResponse, "description": "Version already exists"}})
def save_version(rule_id: int, data: VersionSave, engine: TransitionEngine = Depends(get_transition_engine)):
    """Snapshot the rule's code, params and steps at its current version number."""
    return engine.save_version(
        rule_id,
        data.code,
        input_params=data.input_params,
        steps=data.steps,
        created_by=data.created_by,
        comment=data.comment,
    )


@router.get("/rules/{rule_id}/versions", response_model=List[VersionResponse], responses=REFUSALS)
def list_versions(rule_id: int, engine: TransitionEngine = Depends(get_transition_engine)):
    return engine.list_versions(rule_id)
