"""
Legal stage transitions for rule versions.

Stages are totally ordered WIP < TEST < PENDING < PROD and a version may only
be promoted one step forward at a time. Pure functions, no side effects.
"""
from typing import Dict, Tuple

from rule_workflow.models.enums import Stage

STAGE_ORDER = (Stage.WIP, Stage.TEST, Stage.PENDING, Stage.PROD)

# Forward edge -> stage a rejection of that edge falls back to.
# PENDING -> PROD rejections go back to TEST, not PENDING: anything refused
# for production has to be re-tested.
_REJECTION_TARGETS: Dict[Tuple[Stage, Stage], Stage] = {
    (Stage.WIP, Stage.TEST): Stage.WIP,
    (Stage.TEST, Stage.PENDING): Stage.TEST,
    (Stage.PENDING, Stage.PROD): Stage.TEST,
}

LEGAL_TRANSITIONS = tuple(_REJECTION_TARGETS)


def is_legal_transition(from_stage: Stage, to_stage: Stage) -> bool:
    """True only for the three adjacent forward edges."""
    return (from_stage, to_stage) in _REJECTION_TARGETS


def rejection_target(from_stage: Stage, to_stage: Stage) -> Stage:
    """Stage a rejected from_stage -> to_stage request lands on."""
    try:
        return _REJECTION_TARGETS[(from_stage, to_stage)]
    except KeyError:
        raise ValueError(f"{from_stage.value} -> {to_stage.value} is not a legal transition") from None


def transition_key(from_stage: Stage, to_stage: Stage) -> str:
    """Edge name used by the permission catalogue, e.g. WIP_TO_TEST."""
    return f"{from_stage.value}_TO_{to_stage.value}"
