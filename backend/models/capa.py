"""
CAPA (Corrective and Preventive Action) models
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Text, Date, DateTime, ForeignKey, JSON, Enum as SQLEnum
from backend.database import Base


class CAPAStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING_VERIFICATION = "pending_verification"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    CLOSED = "closed"


class CAPAPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Activity actions that count as the CAPA being closed out
CLOSING_ACTIONS = ("approved", "auto_approved", "audit_finalized")


class CAPA(Base):
    __tablename__ = "capas"

    id = Column(Integer, primary_key=True, index=True)
    capa_code = Column(String, unique=True, nullable=False, index=True)
    finding_id = Column(Integer, ForeignKey("findings.id", ondelete="CASCADE"), nullable=False, unique=True)
    audit_id = Column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True)

    # Denormalized from the audit so health scores can filter without a join
    entity_type = Column(String, nullable=False, index=True)
    entity_id = Column(Integer, nullable=False, index=True)

    description = Column(Text, nullable=False)
    assigned_to = Column(Integer, ForeignKey("users.id"), nullable=True)
    due_date = Column(Date, nullable=False)
    status = Column(SQLEnum(CAPAStatus, native_enum=False), nullable=False, default=CAPAStatus.PENDING_VERIFICATION)
    priority = Column(SQLEnum(CAPAPriority, native_enum=False), nullable=False)
    evidence_refs = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)


class CAPAActivity(Base):
    """Append-only history of actions taken on a CAPA"""
    __tablename__ = "capa_activities"

    id = Column(Integer, primary_key=True, index=True)
    capa_id = Column(Integer, ForeignKey("capas.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # None = system
    action = Column(String, nullable=False)  # approved, rejected, auto_approved, audit_finalized, ...
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
