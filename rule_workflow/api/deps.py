"""FastAPI dependencies: the transition engine and the caller's permissions."""
from typing import FrozenSet, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import sessionmaker

from rule_workflow.database import get_session_factory
from rule_workflow.models.enums import Permission
from rule_workflow.services.transition_engine import TransitionEngine


def get_transition_engine(session_factory: sessionmaker = Depends(get_session_factory)) -> TransitionEngine:
    return TransitionEngine(session_factory)


def get_permissions(x_permissions: Optional[str] = Header(None)) -> FrozenSet[Permission]:
    """
    Permission set granted by the identity provider, sent upstream of this
    service as a comma separated X-Permissions header.
    """
    if not x_permissions:
        return frozenset()

    granted = set()
    for name in x_permissions.split(","):
        name = name.strip()
        if not name:
            continue
        try:
            granted.add(Permission(name))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown permission: {name}",
            )
    return frozenset(granted)
