"""Domain models - rules, their version snapshots and the approval requests that move them."""
from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from rule_workflow.database import Base
from rule_workflow.models.enums import ApprovalAction, ApprovalStatus, Stage


class Rule(Base):
    """
    A named, slugged business rule.

    Invariants:
    - slug is unique among rules that are not soft deleted (checked in VersionStore)
    - status mirrors the stage of the version at (version_major, version_minor)
    """
    __tablename__ = "rules"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    slug = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    status = Column(SQLEnum(Stage), nullable=False, default=Stage.WIP)

    # Current version pointer
    version_major = Column(Integer, nullable=False, default=0)
    version_minor = Column(Integer, nullable=False, default=1)

    author = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)  # Soft delete marker

    versions = relationship("RuleVersion", back_populates="rule", order_by="RuleVersion.id")


class RuleVersion(Base):
    """
    Immutable snapshot of one rule's function body and steps.

    Invariants:
    - (rule_id, major_version, minor_version) is unique
    - code, params and steps are never mutated after insert (see audit.py listener)
    - only stage and test_status change as the version moves through the pipeline
    """
    __tablename__ = "rule_versions"
    __table_args__ = (
        UniqueConstraint("rule_id", "major_version", "minor_version", name="uq_rule_versions_number"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("rules.id"), nullable=False, index=True)
    major_version = Column(Integer, nullable=False)
    minor_version = Column(Integer, nullable=False)
    stage = Column(SQLEnum(Stage), nullable=False, default=Stage.WIP)

    # Snapshot payload
    rule_function_code = Column(Text, nullable=False, default="")
    rule_function_input_params = Column(JSON, nullable=False, default=list)
    rule_steps = Column(JSON, nullable=False, default=list)

    created_by = Column(String, nullable=True)
    comment = Column(String, nullable=True)
    test_status = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    rule = relationship("Rule", back_populates="versions")

    @property
    def version_label(self) -> str:
        return f"{self.major_version}.{self.minor_version}"


class RuleApproval(Base):
    """
    A request to move one rule version from from_stage to to_stage.

    Invariants:
    - At most one PENDING approval per rule_version_id (partial unique index)
    - Resolves exactly once; terminal rows are never updated again
    - moved_to_stage is where the version actually landed, which differs
      from to_stage on rejection
    """
    __tablename__ = "rule_approvals"
    __table_args__ = (
        Index(
            "uq_rule_approvals_pending_version",
            "rule_version_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rule_version_id = Column(Integer, ForeignKey("rule_versions.id"), nullable=False, index=True)
    rule_id = Column(Integer, ForeignKey("rules.id"), nullable=False, index=True)
    from_stage = Column(SQLEnum(Stage), nullable=False)
    to_stage = Column(SQLEnum(Stage), nullable=False)
    status = Column(SQLEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING)
    action = Column(SQLEnum(ApprovalAction), nullable=False, default=ApprovalAction.REQUESTED)
    moved_to_stage = Column(SQLEnum(Stage), nullable=True)

    requested_by = Column(String, nullable=False)
    requested_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    request_comment = Column(String, nullable=True)

    # Set once, when the request is resolved
    action_by = Column(String, nullable=True)
    action_at = Column(DateTime, nullable=True)
    action_comment = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    rule = relationship("Rule")
    rule_version = relationship("RuleVersion")

    # Display fields joined in from the rule and version
    @property
    def rule_name(self) -> str:
        return self.rule.name

    @property
    def rule_slug(self) -> str:
        return self.rule.slug

    @property
    def major_version(self) -> int:
        return self.rule_version.major_version

    @property
    def minor_version(self) -> int:
        return self.rule_version.minor_version
