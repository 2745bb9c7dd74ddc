"""
Audit execution models
"""
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Float, Text, Date, DateTime, ForeignKey, JSON,
    UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.sql import func
from backend.database import Base


class AuditStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    PENDING_VERIFICATION = "pending_verification"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    # Derived for display only, never stored
    OVERDUE = "overdue"


class PassFail(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class Audit(Base):
    """One scheduled or executed run of a template against a branch, BCK or supplier"""
    __tablename__ = "audits"

    id = Column(Integer, primary_key=True, index=True)
    audit_code = Column(String, unique=True, nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("audit_templates.id"), nullable=False)

    # Polymorphic link to the audited entity
    entity_type = Column(String, nullable=False, index=True)
    entity_id = Column(Integer, nullable=False, index=True)

    auditor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    scheduled_date = Column(Date, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True, index=True)

    status = Column(SQLEnum(AuditStatus, native_enum=False), nullable=False, default=AuditStatus.SCHEDULED)

    # Frozen at submission
    score = Column(Float, nullable=True)
    pass_fail = Column(SQLEnum(PassFail, native_enum=False), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime, nullable=True)


class AuditResult(Base):
    """Persisted response for one checklist item of one audit"""
    __tablename__ = "audit_results"
    __table_args__ = (UniqueConstraint("audit_id", "item_id", name="uq_audit_result_item"),)

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True)
    section_id = Column(String, nullable=False)
    item_id = Column(String, nullable=False)

    # Tagged response, e.g. {"type": "rating", "value": 4}; null while only notes/evidence exist
    response = Column(JSON, nullable=True)
    evidence_refs = Column(JSON, nullable=False, default=list)
    manual_finding = Column(Text, nullable=True)
    points_earned = Column(Float, nullable=False, default=0)

    updated_at = Column(DateTime, nullable=True)
