"""
In-app notification model
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey
from backend.database import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # supplier_suspended, capa_rejected, audit_approved, ...
    title = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    link_to = Column(String, nullable=True)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, nullable=False)
