"""
Storage boundary for rules and their version snapshots.

The store works inside whatever transaction its session is in; it never
commits. Committing or rolling back is the transition engine's job.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rule_workflow.models.domain import Rule, RuleVersion
from rule_workflow.models.enums import Stage
from rule_workflow.services.errors import Conflict, NotFound

logger = logging.getLogger(__name__)


@dataclass
class VersionSnapshot:
    """Payload captured for one (major, minor) version of a rule."""
    major_version: int
    minor_version: int
    stage: Stage = Stage.WIP
    rule_function_code: str = ""
    rule_function_input_params: List[Any] = field(default_factory=list)
    rule_steps: List[Any] = field(default_factory=list)
    created_by: Optional[str] = None
    comment: Optional[str] = None
    test_status: Optional[str] = None


class VersionStore:
    """Reads and writes Rule and RuleVersion rows."""

    def __init__(self, db: Session):
        self.db = db

    # Rules

    def get_rule(self, rule_id: int, for_update: bool = False) -> Rule:
        """Fetch a live rule. Soft-deleted rules count as missing."""
        stmt = select(Rule).where(Rule.id == rule_id, Rule.deleted_at.is_(None))
        if for_update:
            stmt = stmt.with_for_update()
        rule = self.db.execute(stmt).scalar_one_or_none()
        if rule is None:
            raise NotFound("Rule", rule_id)
        return rule

    def create_rule(
        self,
        slug: str,
        name: str,
        description: Optional[str] = None,
        author: Optional[str] = None,
    ) -> Rule:
        """Create a rule at WIP, version 0.1."""
        taken = self.db.execute(
            select(Rule.id).where(Rule.slug == slug, Rule.deleted_at.is_(None))
        ).first()
        if taken:
            raise Conflict(f"A rule with slug '{slug}' already exists")

        rule = Rule(
            slug=slug,
            name=name,
            description=description,
            author=author,
            status=Stage.WIP,
            version_major=0,
            version_minor=1,
        )
        self.db.add(rule)
        self.db.flush()
        return rule

    def soft_delete_rule(self, rule_id: int) -> Rule:
        rule = self.get_rule(rule_id)
        rule.deleted_at = datetime.utcnow()
        self.db.flush()
        return rule

    def set_rule_status(self, rule_id: int, stage: Stage) -> Rule:
        """Update the rule's mirror of its current version's stage."""
        rule = self.get_rule(rule_id)
        if rule.status != stage:
            rule.status = stage
            rule.updated_at = datetime.utcnow()
            self.db.flush()
        return rule

    # Versions

    def get_version(self, version_id: int, for_update: bool = False) -> RuleVersion:
        stmt = select(RuleVersion).where(RuleVersion.id == version_id)
        if for_update:
            stmt = stmt.with_for_update()
        version = self.db.execute(stmt).scalar_one_or_none()
        if version is None:
            raise NotFound("Rule version", version_id)
        return version

    def find_version(self, rule_id: int, major: int, minor: int) -> Optional[RuleVersion]:
        return self.db.execute(
            select(RuleVersion).where(
                RuleVersion.rule_id == rule_id,
                RuleVersion.major_version == major,
                RuleVersion.minor_version == minor,
            )
        ).scalar_one_or_none()

    def get_current_version(self, rule_id: int) -> RuleVersion:
        """Version identified by the rule's (version_major, version_minor) pointer."""
        rule = self.get_rule(rule_id)
        version = self.find_version(rule.id, rule.version_major, rule.version_minor)
        if version is None:
            raise NotFound("Rule version", f"{rule.version_major}.{rule.version_minor}")
        return version

    def is_current_version(self, version: RuleVersion) -> bool:
        rule = self.get_rule(version.rule_id)
        return (rule.version_major, rule.version_minor) == (version.major_version, version.minor_version)

    def list_versions(self, rule_id: int) -> List[RuleVersion]:
        self.get_rule(rule_id)
        return list(self.db.execute(
            select(RuleVersion)
            .where(RuleVersion.rule_id == rule_id)
            .order_by(RuleVersion.major_version, RuleVersion.minor_version)
        ).scalars())

    def create_version(self, rule_id: int, snapshot: VersionSnapshot) -> RuleVersion:
        """
        Append a version snapshot to the rule's history.

        Invariant: (rule_id, major, minor) is unique. The unique constraint
        backs up the pre-check when two writers race.
        """
        self.get_rule(rule_id)
        if self.find_version(rule_id, snapshot.major_version, snapshot.minor_version):
            raise Conflict(
                f"Version {snapshot.major_version}.{snapshot.minor_version} "
                f"already exists for rule {rule_id}"
            )

        version = RuleVersion(
            rule_id=rule_id,
            major_version=snapshot.major_version,
            minor_version=snapshot.minor_version,
            stage=snapshot.stage,
            rule_function_code=snapshot.rule_function_code,
            rule_function_input_params=list(snapshot.rule_function_input_params),
            rule_steps=list(snapshot.rule_steps),
            created_by=snapshot.created_by,
            comment=snapshot.comment,
            test_status=snapshot.test_status,
        )
        self.db.add(version)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise Conflict(
                f"Version {snapshot.major_version}.{snapshot.minor_version} "
                f"already exists for rule {rule_id}"
            ) from e

        logger.info(
            "Rule version created",
            extra={"rule_id": rule_id, "rule_version_id": version.id, "version": version.version_label},
        )
        return version

    def save_version(
        self,
        rule_id: int,
        code: str,
        input_params: Optional[List[Any]] = None,
        steps: Optional[List[Any]] = None,
        created_by: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> RuleVersion:
        """Snapshot the rule's body at its current version pointer and status."""
        rule = self.get_rule(rule_id)
        return self.create_version(rule_id, VersionSnapshot(
            major_version=rule.version_major,
            minor_version=rule.version_minor,
            stage=rule.status,
            rule_function_code=code,
            rule_function_input_params=input_params or [],
            rule_steps=steps or [],
            created_by=created_by,
            comment=comment,
        ))

    def set_version_stage(self, version_id: int, stage: Stage) -> RuleVersion:
        """Overwrite the version's stage. Setting the same stage again is a no-op."""
        version = self.get_version(version_id)
        if version.stage != stage:
            version.stage = stage
            self.db.flush()
        return version
