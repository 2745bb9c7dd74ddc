"""
Verification API endpoints - CAPA review and audit finalization
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.audits import CAPAResponse
from backend.api.auth import get_current_user
from backend.api.errors import http_error
from backend.database import get_db
from backend.models.user import User
from backend.services import verification
from backend.services.exceptions import QualityError

router = APIRouter()


class ReasonRequest(BaseModel):
    reason: str


class AuditStatusResponse(BaseModel):
    audit_id: int
    status: str
    health_score: Optional[dict] = None


@router.post("/capas/{capa_id}/approve", response_model=CAPAResponse)
async def approve_capa(
    capa_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        return await verification.approve_capa(db, capa_id, current_user)
    except QualityError as e:
        raise http_error(e)


@router.post("/capas/{capa_id}/reject", response_model=CAPAResponse)
async def reject_capa(
    capa_id: int,
    data: ReasonRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        return await verification.reject_capa(db, capa_id, current_user, data.reason)
    except QualityError as e:
        raise http_error(e)


@router.post("/capas/{capa_id}/close", response_model=CAPAResponse)
async def close_capa(
    capa_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        return await verification.close_capa(db, capa_id, current_user)
    except QualityError as e:
        raise http_error(e)


@router.post("/audits/{audit_id}/approve", response_model=AuditStatusResponse)
async def approve_audit(
    audit_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Finalize an audit and refresh the audited entity's health score"""
    try:
        health = await verification.approve_audit(db, audit_id, current_user)
    except QualityError as e:
        raise http_error(e)
    return AuditStatusResponse(audit_id=audit_id, status="approved", health_score=health.to_dict())


@router.post("/audits/{audit_id}/flag", response_model=AuditStatusResponse)
async def flag_audit(
    audit_id: int,
    data: ReasonRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        audit = await verification.flag_audit(db, audit_id, current_user, data.reason)
    except QualityError as e:
        raise http_error(e)
    return AuditStatusResponse(audit_id=audit.id, status=audit.status.value)


@router.post("/auto-approve")
async def run_auto_approval(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Close low/medium CAPAs that are waiting for verification and have evidence"""
    approved = await verification.auto_approve_capas(db)
    return {"auto_approved": approved}


@router.post("/escalate-overdue")
async def escalate_overdue(
    today: Optional[date] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    escalated = await verification.escalate_overdue_capas(db, today)
    return {"escalated": escalated}
