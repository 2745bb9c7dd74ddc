"""
BCK model (central kitchens supplying the branches)
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Float, Date, ForeignKey, JSON, Enum as SQLEnum
from backend.database import Base


class BCKStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNDER_MAINTENANCE = "under_maintenance"


class BCK(Base):
    __tablename__ = "bcks"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    city = Column(String, nullable=True)
    address = Column(String, nullable=True)
    manager_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(SQLEnum(BCKStatus, native_enum=False), default=BCKStatus.ACTIVE)
    production_capacity = Column(String, nullable=True)

    # [{"name": "ISO 22000", "expiry_date": "2027-01-31", "document_url": null}]
    certifications = Column(JSON, nullable=False, default=list)

    # Fast-read copy of the latest HealthScore row
    health_score = Column(Float, nullable=False, default=0)
    last_audit_date = Column(Date, nullable=True)
