"""
Verification workflow tests - CAPA approve/reject/close, auto-approval, escalation, audit finalization
"""
from datetime import date, timedelta

import pytest
from sqlalchemy import select

from backend.models.audit import AuditStatus
from backend.models.branch import Branch
from backend.models.capa import CAPA, CAPAActivity, CAPAPriority, CAPAStatus
from backend.models.finding import Finding, FindingSeverity, FindingStatus
from backend.models.health_score import HealthScore
from backend.models.notification import Notification
from backend.services.exceptions import EntityNotFoundError, VerificationError
from backend.services.verification import (
    approve_audit,
    approve_capa,
    auto_approve_capas,
    close_capa,
    escalate_overdue_capas,
    flag_audit,
    reject_capa,
)
from backend.utils.helpers import utcnow


@pytest.fixture()
def submitted_audit(db_session, seed_data, make_audit):
    """Factory: a pending_verification audit with one finding + CAPA per given priority"""

    async def _make(priorities=(CAPAPriority.HIGH,), evidence=False, due_date=None, entity_type="branch"):
        audit = await make_audit(
            entity_type=entity_type,
            status=AuditStatus.PENDING_VERIFICATION,
            score=82,
            completed_at=utcnow() - timedelta(hours=2),
        )
        capas = []
        for n, priority in enumerate(priorities):
            finding = Finding(
                finding_code=f"FND-{audit.id}-{n}",
                audit_id=audit.id,
                severity=FindingSeverity(priority.value),
                description=f"Finding {n}",
            )
            db_session.add(finding)
            await db_session.flush()
            capa = CAPA(
                capa_code=f"CPA-{audit.id}-{n}",
                finding_id=finding.id,
                audit_id=audit.id,
                entity_type=audit.entity_type,
                entity_id=audit.entity_id,
                description=f"Fix finding {n}",
                assigned_to=seed_data["branch_manager"].id,
                due_date=due_date or date.today() + timedelta(days=7),
                status=CAPAStatus.PENDING_VERIFICATION,
                priority=priority,
                evidence_refs=[f"{audit.id}/x/photo.jpg"] if evidence else [],
            )
            db_session.add(capa)
            capas.append(capa)
        await db_session.commit()
        return audit, capas

    return _make


async def _activities(db, capa_id):
    result = await db.execute(select(CAPAActivity).where(CAPAActivity.capa_id == capa_id).order_by(CAPAActivity.id))
    return result.scalars().all()


class TestCapaVerification:

    async def test_approve_resolves_finding(self, db_session, seed_data, submitted_audit):
        _, (capa,) = await submitted_audit()
        await approve_capa(db_session, capa.id, seed_data["manager"])

        assert capa.status == CAPAStatus.APPROVED
        finding = await db_session.get(Finding, capa.finding_id)
        assert finding.status == FindingStatus.RESOLVED
        activities = await _activities(db_session, capa.id)
        assert [a.action for a in activities] == ["approved"]
        assert activities[0].user_id == seed_data["manager"].id

    async def test_reject_requires_reason(self, db_session, seed_data, submitted_audit):
        _, (capa,) = await submitted_audit()
        with pytest.raises(VerificationError):
            await reject_capa(db_session, capa.id, seed_data["manager"], "   ")
        assert capa.status == CAPAStatus.PENDING_VERIFICATION

    async def test_reject_logs_reason_and_notifies_assignee(self, db_session, seed_data, submitted_audit):
        _, (capa,) = await submitted_audit()
        await reject_capa(db_session, capa.id, seed_data["manager"], "Photo does not show the repaired seal")

        assert capa.status == CAPAStatus.REJECTED
        (activity,) = await _activities(db_session, capa.id)
        assert activity.details == "QA Lead: Rejected - Photo does not show the repaired seal"
        notification = (await db_session.execute(
            select(Notification).where(Notification.type == "capa_rejected")
        )).scalar_one()
        assert notification.user_id == seed_data["branch_manager"].id

    async def test_rejected_capa_can_be_approved_after_rework(self, db_session, seed_data, submitted_audit):
        _, (capa,) = await submitted_audit()
        await reject_capa(db_session, capa.id, seed_data["manager"], "Incomplete")
        await approve_capa(db_session, capa.id, seed_data["manager"])
        assert capa.status == CAPAStatus.APPROVED

    async def test_close_only_after_approval(self, db_session, seed_data, submitted_audit):
        _, (capa,) = await submitted_audit()
        with pytest.raises(VerificationError):
            await close_capa(db_session, capa.id, seed_data["manager"])
        await approve_capa(db_session, capa.id, seed_data["manager"])
        await close_capa(db_session, capa.id, seed_data["manager"])
        assert capa.status == CAPAStatus.CLOSED

    async def test_closed_capa_cannot_be_approved_again(self, db_session, seed_data, submitted_audit):
        _, (capa,) = await submitted_audit()
        await approve_capa(db_session, capa.id, seed_data["manager"])
        await close_capa(db_session, capa.id, seed_data["manager"])
        with pytest.raises(VerificationError):
            await approve_capa(db_session, capa.id, seed_data["manager"])

    async def test_unknown_capa(self, db_session, seed_data):
        with pytest.raises(EntityNotFoundError):
            await approve_capa(db_session, 999, seed_data["manager"])


class TestAutomaticActions:

    async def test_auto_approve_low_and_medium_with_evidence(self, db_session, submitted_audit):
        _, capas = await submitted_audit(
            priorities=(CAPAPriority.LOW, CAPAPriority.MEDIUM, CAPAPriority.HIGH), evidence=True,
        )
        _, (no_evidence,) = await submitted_audit(priorities=(CAPAPriority.LOW,))

        assert await auto_approve_capas(db_session) == 2
        assert [c.status for c in capas] == [CAPAStatus.CLOSED, CAPAStatus.CLOSED, CAPAStatus.PENDING_VERIFICATION]
        assert no_evidence.status == CAPAStatus.PENDING_VERIFICATION
        (activity,) = await _activities(db_session, capas[0].id)
        assert activity.action == "auto_approved"
        assert activity.user_id is None

    async def test_escalate_overdue(self, db_session, submitted_audit):
        _, (overdue,) = await submitted_audit(due_date=date.today() - timedelta(days=1))
        _, (due_today,) = await submitted_audit(due_date=date.today())

        assert await escalate_overdue_capas(db_session) == 1
        assert overdue.status == CAPAStatus.ESCALATED
        assert due_today.status == CAPAStatus.PENDING_VERIFICATION

    async def test_escalated_capa_can_still_be_verified(self, db_session, seed_data, submitted_audit):
        _, (capa,) = await submitted_audit(due_date=date.today() - timedelta(days=3))
        await escalate_overdue_capas(db_session)
        await approve_capa(db_session, capa.id, seed_data["manager"])
        assert capa.status == CAPAStatus.APPROVED


class TestAuditVerification:

    async def test_approve_requires_all_capas_verified(self, db_session, seed_data, submitted_audit):
        audit, capas = await submitted_audit(priorities=(CAPAPriority.HIGH, CAPAPriority.MEDIUM))
        await approve_capa(db_session, capas[0].id, seed_data["manager"])

        with pytest.raises(VerificationError, match="All CAPA must be approved before finalizing"):
            await approve_audit(db_session, audit.id, seed_data["manager"])
        assert audit.status == AuditStatus.PENDING_VERIFICATION

    async def test_approve_finalizes_and_recalculates_health(self, db_session, seed_data, submitted_audit):
        branch_id = seed_data["branch"].id
        branch_manager_id = seed_data["branch_manager"].id
        audit, (capa,) = await submitted_audit()
        await approve_capa(db_session, capa.id, seed_data["manager"])

        result = await approve_audit(db_session, audit.id, seed_data["manager"])

        assert audit.status == AuditStatus.APPROVED
        assert capa.status == CAPAStatus.CLOSED
        assert [a.action for a in await _activities(db_session, capa.id)] == ["approved", "audit_finalized"]

        # 82*0.4 + 100*0.25 + 100*0.15 + 100*0.1 + 100*0.1
        assert result.score == pytest.approx(92.8)
        record = (await db_session.execute(
            select(HealthScore).where(HealthScore.entity_type == "branch", HealthScore.entity_id == branch_id)
        )).scalar_one()
        assert record.score == pytest.approx(92.8)
        branch = await db_session.get(Branch, branch_id)
        assert branch.last_audit_date == audit.completed_at.date()

        notification = (await db_session.execute(
            select(Notification).where(Notification.type == "audit_approved")
        )).scalar_one()
        assert notification.user_id == branch_manager_id

    async def test_audit_without_capas_can_be_approved(self, db_session, seed_data, submitted_audit):
        audit, _ = await submitted_audit(priorities=())
        await approve_audit(db_session, audit.id, seed_data["manager"])
        assert audit.status == AuditStatus.APPROVED

    async def test_supplier_audit_notifies_first_audit_manager(self, db_session, seed_data, submitted_audit):
        manager_id = seed_data["manager"].id
        audit, _ = await submitted_audit(priorities=(), entity_type="supplier")
        await approve_audit(db_session, audit.id, seed_data["manager"])

        notification = (await db_session.execute(
            select(Notification).where(Notification.type == "audit_approved")
        )).scalar_one()
        assert notification.user_id == manager_id

    async def test_flag_rejects_and_notifies_managers(self, db_session, seed_data, submitted_audit):
        manager_ids = {seed_data["manager"].id, seed_data["manager2"].id}
        audit, _ = await submitted_audit()
        await flag_audit(db_session, audit.id, seed_data["manager"], "Scores inconsistent with photos")

        assert audit.status == AuditStatus.REJECTED
        notifications = (await db_session.execute(
            select(Notification).where(Notification.type == "audit_flagged")
        )).scalars().all()
        assert {n.user_id for n in notifications} == manager_ids

    async def test_cannot_approve_twice(self, db_session, seed_data, submitted_audit):
        audit, _ = await submitted_audit(priorities=())
        await approve_audit(db_session, audit.id, seed_data["manager"])
        with pytest.raises(VerificationError):
            await approve_audit(db_session, audit.id, seed_data["manager"])
