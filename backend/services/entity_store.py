"""
Entity Store - read/write access used by the health score engine and batch scheduler.

Writes only stage changes on the session; callers own the transaction.
"""
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.models.audit import Audit, AuditStatus
from backend.models.bck import BCK
from backend.models.branch import Branch
from backend.models.capa import CAPA, CAPAActivity, CAPAStatus
from backend.models.finding import Finding
from backend.models.health_score import HealthScore
from backend.models.incident import Incident, IncidentStatus
from backend.models.notification import Notification
from backend.models.supplier import Supplier, SupplierStatus, supplier_bcks
from backend.utils.helpers import utcnow

ENTITY_MODELS = {
    "branch": Branch,
    "bck": BCK,
    "supplier": Supplier,
}

# Denormalized score column mirrored from the HealthScore record
CACHED_SCORE_FIELDS = {
    "branch": "health_score",
    "bck": "health_score",
    "supplier": "quality_score",
}


class EntityStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── reads ──

    async def get_entity(self, entity_type: str, entity_id: int):
        return await self.db.get(ENTITY_MODELS[entity_type], entity_id)

    async def list_entities(self, entity_type: str) -> list:
        model = ENTITY_MODELS[entity_type]
        result = await self.db.execute(select(model).order_by(model.id))
        return list(result.scalars().all())

    async def get_audits(
        self,
        entity_type: str,
        entity_id: int,
        statuses: Optional[Sequence[AuditStatus]] = None,
    ) -> List[Audit]:
        query = select(Audit).where(Audit.entity_type == entity_type, Audit.entity_id == entity_id)
        if statuses:
            query = query.where(Audit.status.in_(list(statuses)))
        result = await self.db.execute(query.order_by(Audit.id))
        return list(result.scalars().all())

    async def get_capas(
        self,
        entity_type: str,
        entity_id: int,
        statuses: Optional[Sequence[CAPAStatus]] = None,
    ) -> List[CAPA]:
        query = select(CAPA).where(CAPA.entity_type == entity_type, CAPA.entity_id == entity_id)
        if statuses:
            query = query.where(CAPA.status.in_(list(statuses)))
        result = await self.db.execute(query.order_by(CAPA.id))
        return list(result.scalars().all())

    async def get_capa_activities(self, capa_ids: Iterable[int]) -> Dict[int, List[CAPAActivity]]:
        """Activity history per CAPA, oldest first"""
        capa_ids = list(capa_ids)
        activities: Dict[int, List[CAPAActivity]] = defaultdict(list)
        if not capa_ids:
            return activities
        result = await self.db.execute(
            select(CAPAActivity)
            .where(CAPAActivity.capa_id.in_(capa_ids))
            .order_by(CAPAActivity.created_at, CAPAActivity.id)
        )
        for activity in result.scalars().all():
            activities[activity.capa_id].append(activity)
        return activities

    async def get_findings_for_audits(self, audit_ids: Iterable[int]) -> Dict[int, List[Finding]]:
        audit_ids = list(audit_ids)
        findings: Dict[int, List[Finding]] = defaultdict(list)
        if not audit_ids:
            return findings
        result = await self.db.execute(
            select(Finding).where(Finding.audit_id.in_(audit_ids)).order_by(Finding.id)
        )
        for finding in result.scalars().all():
            findings[finding.audit_id].append(finding)
        return findings

    async def get_incidents(
        self,
        entity_type: str,
        entity_id: int,
        since: Optional[datetime] = None,
        exclude_closed: bool = False,
    ) -> List[Incident]:
        query = select(Incident).where(Incident.entity_type == entity_type, Incident.entity_id == entity_id)
        if since is not None:
            query = query.where(Incident.created_at >= since)
        if exclude_closed:
            query = query.where(Incident.status != IncidentStatus.CLOSED)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_suppliers_for_bck(self, bck_id: int) -> List[Supplier]:
        result = await self.db.execute(
            select(Supplier)
            .join(supplier_bcks, supplier_bcks.c.supplier_id == Supplier.id)
            .where(supplier_bcks.c.bck_id == bck_id)
            .order_by(Supplier.id)
        )
        return list(result.scalars().all())

    async def get_health_score(self, entity_type: str, entity_id: int) -> Optional[HealthScore]:
        result = await self.db.execute(
            select(HealthScore).where(
                HealthScore.entity_type == entity_type,
                HealthScore.entity_id == entity_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_health_scores(self, entity_type: str) -> List[HealthScore]:
        result = await self.db.execute(
            select(HealthScore).where(HealthScore.entity_type == entity_type).order_by(HealthScore.entity_id)
        )
        return list(result.scalars().all())

    # ── writes ──

    async def upsert_health_score(
        self,
        entity_type: str,
        entity_id: int,
        score: float,
        components: dict,
        calculated_at: Optional[datetime] = None,
    ) -> HealthScore:
        record = await self.get_health_score(entity_type, entity_id)
        if record is None:
            record = HealthScore(entity_type=entity_type, entity_id=entity_id)
            self.db.add(record)
        record.score = score
        record.components = dict(components)
        record.calculated_at = calculated_at or utcnow()
        return record

    async def set_cached_score(self, entity_type: str, entity_id: int, score: float) -> None:
        entity = await self.get_entity(entity_type, entity_id)
        if entity is not None:
            setattr(entity, CACHED_SCORE_FIELDS[entity_type], score)

    async def set_supplier_status(self, supplier: Supplier, status: SupplierStatus) -> None:
        supplier.status = status

    async def create_notification(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        link_to: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            link_to=link_to,
            read=False,
            created_at=utcnow(),
        )
        self.db.add(notification)
        return notification
