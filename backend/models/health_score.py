"""
Health score cache - one row per entity, plus the batch sentinel row
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, UniqueConstraint
from backend.database import Base

# Sentinel row holding the epoch timestamp of the last completed batch in `score`
BATCH_META_ENTITY_TYPE = "_batch_meta"
BATCH_META_ENTITY_ID = 0


class HealthScore(Base):
    __tablename__ = "health_scores"
    __table_args__ = (UniqueConstraint("entity_type", "entity_id", name="uq_health_score_entity"),)

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String, nullable=False, index=True)
    entity_id = Column(Integer, nullable=False, index=True)
    score = Column(Float, nullable=False)
    components = Column(JSON, nullable=False, default=dict)
    calculated_at = Column(DateTime, nullable=False)
