"""
Branch model (restaurant outlets)
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Float, Date, ForeignKey, Enum as SQLEnum
from backend.database import Base


class BranchStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNDER_RENOVATION = "under_renovation"
    TEMPORARILY_CLOSED = "temporarily_closed"


class Branch(Base):
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, nullable=False, index=True)  # "BR-RUH-001"
    name = Column(String, nullable=False)
    city = Column(String, nullable=True)
    address = Column(String, nullable=True)
    manager_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(SQLEnum(BranchStatus, native_enum=False), default=BranchStatus.ACTIVE)

    # Fast-read copy of the latest HealthScore row
    health_score = Column(Float, nullable=False, default=0)
    last_audit_date = Column(Date, nullable=True)
