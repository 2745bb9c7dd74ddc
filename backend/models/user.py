"""
User model (identity is resolved upstream; roles drive notifications and CAPA assignment)
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum
from sqlalchemy.sql import func
from backend.database import Base


class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    AUDIT_MANAGER = "audit_manager"
    REGIONAL_MANAGER = "regional_manager"
    AUDITOR = "auditor"
    BRANCH_MANAGER = "branch_manager"
    BCK_MANAGER = "bck_manager"
    STAFF = "staff"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    role = Column(SQLEnum(UserRole, native_enum=False), nullable=False, default=UserRole.STAFF)
    status = Column(SQLEnum(UserStatus, native_enum=False), nullable=False, default=UserStatus.ACTIVE)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
