"""
Supplier model
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Float, Date, Table, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship
from backend.database import Base


class SupplierType(str, Enum):
    FOOD = "food"
    PACKAGING = "packaging"
    EQUIPMENT = "equipment"
    SERVICE = "service"


class SupplierStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNDER_REVIEW = "under_review"
    SUSPENDED = "suspended"
    BLACKLISTED = "blacklisted"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


supplier_bcks = Table(
    "supplier_bcks",
    Base.metadata,
    Column("supplier_id", Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), primary_key=True),
    Column("bck_id", Integer, ForeignKey("bcks.id", ondelete="CASCADE"), primary_key=True),
)

supplier_branches = Table(
    "supplier_branches",
    Base.metadata,
    Column("supplier_id", Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), primary_key=True),
    Column("branch_id", Integer, ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True),
)


class Supplier(Base):
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    supplier_code = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    type = Column(SQLEnum(SupplierType, native_enum=False), nullable=False, default=SupplierType.FOOD)
    category = Column(String, nullable=True)
    contact_name = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    city = Column(String, nullable=True)

    # Contract info
    contract_start = Column(Date, nullable=True)
    contract_end = Column(Date, nullable=True)

    # [{"name": "HACCP", "expiry_date": "2027-03-01", "document_url": null}]
    certifications = Column(JSON, nullable=False, default=list)

    # Status
    status = Column(SQLEnum(SupplierStatus, native_enum=False), default=SupplierStatus.ACTIVE)
    risk_level = Column(SQLEnum(RiskLevel, native_enum=False), default=RiskLevel.MEDIUM)

    # Fast-read copy of the latest HealthScore row
    quality_score = Column(Float, nullable=False, default=0)
    last_audit_date = Column(Date, nullable=True)

    # Relationships
    supplied_bcks = relationship("BCK", secondary=supplier_bcks, lazy="selectin")
    supplied_branches = relationship("Branch", secondary=supplier_branches, lazy="selectin")
