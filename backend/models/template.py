"""
Audit checklist template model
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
from backend.database import Base


class TemplateStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class AuditTemplate(Base):
    """Reusable checklist definition; parsed into services.audit_scoring.ChecklistTemplate"""
    __tablename__ = "audit_templates"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    code = Column(String, unique=True, nullable=False, index=True)  # "TPL-BR-DAILY"
    entity_type = Column(String, nullable=False)  # branch | bck | supplier
    version = Column(Integer, nullable=False, default=1)
    status = Column(SQLEnum(TemplateStatus, native_enum=False), default=TemplateStatus.ACTIVE)

    # {"sections": [{"id", "name", "weight", "items": [{"id", "text", "type", "points", ...}]}]}
    checklist = Column(JSON, nullable=False)
    # {"pass_threshold": 70, "critical_fail_rule": true, "weighted": true, "min_completion": 95}
    scoring_config = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
