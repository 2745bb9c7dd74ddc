"""
Finding model - non-conformances raised during audit execution
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, Enum as SQLEnum
from backend.database import Base


class FindingSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FindingStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Finding(Base):
    __tablename__ = "findings"

    id = Column(Integer, primary_key=True, index=True)
    finding_code = Column(String, unique=True, nullable=False, index=True)
    audit_id = Column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(String, nullable=True)
    section_name = Column(String, nullable=True)
    category = Column(String, nullable=True)
    severity = Column(SQLEnum(FindingSeverity, native_enum=False), nullable=False)
    description = Column(Text, nullable=False)
    evidence_refs = Column(JSON, nullable=False, default=list)
    status = Column(SQLEnum(FindingStatus, native_enum=False), nullable=False, default=FindingStatus.OPEN)

    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)
