"""
Verification workflow - what happens to submitted audits and their CAPAs.

CAPA:   pending_verification -> approved -> closed
        pending_verification -> rejected -> approved (after rework)
        low/medium with evidence: pending_verification -> closed (auto)
        overdue: -> escalated
Audit:  pending_verification -> approved (all CAPAs approved/closed) | rejected (flagged)

Approving an audit recomputes the audited entity's health score.
"""
import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.database import atomic
from backend.models.audit import Audit, AuditStatus
from backend.models.capa import CAPA, CAPAActivity, CAPAPriority, CAPAStatus
from backend.models.finding import Finding, FindingStatus
from backend.models.user import User
from backend.services.entity_store import EntityStore
from backend.services.exceptions import EntityNotFoundError, VerificationError
from backend.services.health_score_engine import HealthScoreResult, recalculate_and_save
from backend.services.identity import get_active_audit_managers
from backend.utils.helpers import utcnow

logger = logging.getLogger(__name__)

APPROVABLE_CAPA_STATUSES = {CAPAStatus.PENDING_VERIFICATION, CAPAStatus.REJECTED, CAPAStatus.ESCALATED}
REJECTABLE_CAPA_STATUSES = {CAPAStatus.PENDING_VERIFICATION, CAPAStatus.ESCALATED}
ESCALATABLE_CAPA_STATUSES = [
    CAPAStatus.OPEN,
    CAPAStatus.IN_PROGRESS,
    CAPAStatus.PENDING_VERIFICATION,
    CAPAStatus.REJECTED,
]
FINISHED_CAPA_STATUSES = {CAPAStatus.APPROVED, CAPAStatus.CLOSED}


def _log_activity(db: AsyncSession, capa: CAPA, user: Optional[User], action: str, details: str, now: datetime):
    db.add(CAPAActivity(
        capa_id=capa.id,
        user_id=user.id if user else None,
        action=action,
        details=details,
        created_at=now,
    ))


def _verifier_name(user: Optional[User]) -> str:
    return user.full_name if user else "Verifier"


async def _get_capa(db: AsyncSession, capa_id: int) -> CAPA:
    capa = await db.get(CAPA, capa_id)
    if not capa:
        raise EntityNotFoundError("CAPA", capa_id)
    return capa


async def _get_audit(db: AsyncSession, audit_id: int) -> Audit:
    audit = await db.get(Audit, audit_id)
    if not audit:
        raise EntityNotFoundError("Audit", audit_id)
    return audit


async def _resolve_finding(db: AsyncSession, finding_id: int, now: datetime) -> None:
    finding = await db.get(Finding, finding_id)
    if finding:
        finding.status = FindingStatus.RESOLVED
        finding.updated_at = now


# ───────────────────────── CAPA actions ─────────────────────────

async def approve_capa(db: AsyncSession, capa_id: int, verifier: User, now: Optional[datetime] = None) -> CAPA:
    now = now or utcnow()
    capa = await _get_capa(db, capa_id)
    if CAPAStatus(capa.status) not in APPROVABLE_CAPA_STATUSES:
        raise VerificationError(f"CAPA {capa.capa_code} is {CAPAStatus(capa.status).value} and cannot be approved")

    async with atomic(db):
        capa.status = CAPAStatus.APPROVED
        capa.updated_at = now
        _log_activity(db, capa, verifier, "approved", f"{_verifier_name(verifier)}: CAPA approved", now)
        await _resolve_finding(db, capa.finding_id, now)

    logger.info(f"CAPA {capa.capa_code} approved by user {verifier.id}")
    return capa


async def reject_capa(
    db: AsyncSession,
    capa_id: int,
    verifier: User,
    reason: str,
    now: Optional[datetime] = None,
) -> CAPA:
    now = now or utcnow()
    reason = (reason or "").strip()
    if not reason:
        raise VerificationError("A rejection reason is required")
    capa = await _get_capa(db, capa_id)
    if CAPAStatus(capa.status) not in REJECTABLE_CAPA_STATUSES:
        raise VerificationError(f"CAPA {capa.capa_code} is {CAPAStatus(capa.status).value} and cannot be rejected")

    async with atomic(db):
        capa.status = CAPAStatus.REJECTED
        capa.updated_at = now
        _log_activity(db, capa, verifier, "rejected", f"{_verifier_name(verifier)}: Rejected - {reason}", now)
        if capa.assigned_to:
            await EntityStore(db).create_notification(
                user_id=capa.assigned_to,
                type="capa_rejected",
                title="CAPA Rejected",
                message=f"CAPA {capa.capa_code} was rejected. Feedback: {reason}. Please rework and resubmit.",
                link_to=f"/capa/{capa.id}",
            )

    logger.info(f"CAPA {capa.capa_code} rejected by user {verifier.id}")
    return capa


async def close_capa(db: AsyncSession, capa_id: int, user: User, now: Optional[datetime] = None) -> CAPA:
    now = now or utcnow()
    capa = await _get_capa(db, capa_id)
    if CAPAStatus(capa.status) != CAPAStatus.APPROVED:
        raise VerificationError(f"Only approved CAPAs can be closed (CAPA {capa.capa_code} is {CAPAStatus(capa.status).value})")

    async with atomic(db):
        capa.status = CAPAStatus.CLOSED
        capa.updated_at = now
        _log_activity(db, capa, user, "closed", f"{_verifier_name(user)}: CAPA closed", now)
    return capa


async def auto_approve_capas(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Close low/medium CAPAs awaiting verification that already carry evidence"""
    now = now or utcnow()
    result = await db.execute(
        select(CAPA).where(
            CAPA.status == CAPAStatus.PENDING_VERIFICATION,
            CAPA.priority.in_([CAPAPriority.LOW, CAPAPriority.MEDIUM]),
        )
    )
    approved = 0
    async with atomic(db):
        for capa in result.scalars().all():
            if not capa.evidence_refs:
                continue
            capa.status = CAPAStatus.CLOSED
            capa.updated_at = now
            _log_activity(
                db, capa, None, "auto_approved",
                f"Auto-approved ({CAPAPriority(capa.priority).value} severity with evidence)", now,
            )
            approved += 1

    if approved:
        logger.info(f"Auto-approved {approved} CAPA(s)")
    return approved


async def escalate_overdue_capas(db: AsyncSession, today: Optional[date] = None) -> int:
    now = utcnow()
    today = today or now.date()
    result = await db.execute(
        select(CAPA).where(
            CAPA.status.in_(ESCALATABLE_CAPA_STATUSES),
            CAPA.due_date < today,
        )
    )
    escalated = 0
    async with atomic(db):
        for capa in result.scalars().all():
            capa.status = CAPAStatus.ESCALATED
            capa.updated_at = now
            _log_activity(db, capa, None, "escalated", f"Overdue since {capa.due_date.isoformat()}", now)
            escalated += 1

    if escalated:
        logger.warning(f"Escalated {escalated} overdue CAPA(s)")
    return escalated


# ───────────────────────── Audit actions ─────────────────────────

async def approve_audit(
    db: AsyncSession,
    audit_id: int,
    verifier: User,
    now: Optional[datetime] = None,
) -> HealthScoreResult:
    """Finalize an audit whose CAPAs are all approved or closed, then refresh the entity's health score"""
    now = now or utcnow()
    audit = await _get_audit(db, audit_id)
    if AuditStatus(audit.status) != AuditStatus.PENDING_VERIFICATION:
        raise VerificationError(f"Audit {audit.audit_code} is {AuditStatus(audit.status).value}, not awaiting verification")

    capas = (await db.execute(select(CAPA).where(CAPA.audit_id == audit_id))).scalars().all()
    if any(CAPAStatus(c.status) not in FINISHED_CAPA_STATUSES for c in capas):
        raise VerificationError("All CAPA must be approved before finalizing")

    store = EntityStore(db)
    entity = await store.get_entity(audit.entity_type, audit.entity_id)
    entity_name = entity.name if entity else "Unknown"

    if audit.entity_type == "supplier":
        managers = await get_active_audit_managers(db)
        notify_id = managers[0].id if managers else None
    else:
        notify_id = entity.manager_id if entity else None

    async with atomic(db):
        audit.status = AuditStatus.APPROVED
        audit.updated_at = now

        findings = (await db.execute(select(Finding).where(Finding.audit_id == audit_id))).scalars().all()
        for finding in findings:
            finding.status = FindingStatus.RESOLVED
            finding.updated_at = now

        for capa in capas:
            _log_activity(
                db, capa, verifier, "audit_finalized",
                f"{_verifier_name(verifier)}: Audit approved and finalized", now,
            )
            if CAPAStatus(capa.status) == CAPAStatus.APPROVED:
                capa.status = CAPAStatus.CLOSED
                capa.updated_at = now

        if entity is not None and audit.completed_at:
            entity.last_audit_date = audit.completed_at.date()

        if notify_id:
            await store.create_notification(
                user_id=notify_id,
                type="audit_approved",
                title="Audit Approved",
                message=f"Audit {audit.audit_code} for {entity_name} has been approved and finalized.",
                link_to=f"/audits/{audit.id}",
            )

    logger.info(f"Audit {audit.audit_code} approved by user {verifier.id}")
    return await recalculate_and_save(db, audit.entity_type, audit.entity_id, now)


async def flag_audit(
    db: AsyncSession,
    audit_id: int,
    verifier: User,
    reason: str,
    now: Optional[datetime] = None,
) -> Audit:
    now = now or utcnow()
    audit = await _get_audit(db, audit_id)
    if AuditStatus(audit.status) != AuditStatus.PENDING_VERIFICATION:
        raise VerificationError(f"Audit {audit.audit_code} is {AuditStatus(audit.status).value}, not awaiting verification")

    managers = await get_active_audit_managers(db)
    store = EntityStore(db)
    async with atomic(db):
        audit.status = AuditStatus.REJECTED
        audit.updated_at = now
        for manager in managers:
            await store.create_notification(
                user_id=manager.id,
                type="audit_flagged",
                title="Audit Flagged for Review",
                message=f"Audit {audit.audit_code} has been flagged. Reason: {reason}. Review required.",
                link_to=f"/audits/{audit.id}",
            )

    logger.warning(f"Audit {audit.audit_code} flagged by user {verifier.id}: {reason}")
    return audit
