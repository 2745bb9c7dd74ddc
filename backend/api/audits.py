"""
Audit execution API endpoints
"""
import logging
from datetime import date, datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.auth import get_current_user
from backend.api.errors import http_error
from backend.database import get_db
from backend.models.capa import CAPA
from backend.models.finding import Finding
from backend.models.user import User
from backend.services.audit_execution import AuditExecution
from backend.services.audit_scoring import ItemResponse, dump_response
from backend.services.evidence import LocalEvidenceStore
from backend.services.exceptions import QualityError

logger = logging.getLogger(__name__)

router = APIRouter()

evidence_store = LocalEvidenceStore()


# ───────────────────────── Schemas ─────────────────────────

class ItemStateResponse(BaseModel):
    item_id: str
    response: Optional[dict]
    evidence_refs: List[str]
    evidence_urls: List[str]
    manual_finding: str


class CompletionResponse(BaseModel):
    answered: int
    total: int
    percentage: int


class ScorePreviewResponse(BaseModel):
    total_score: float
    pass_fail: str
    critical_fail: bool
    section_scores: List[dict]
    completion: CompletionResponse


class AuditResponse(BaseModel):
    id: int
    audit_code: str
    template_id: int
    entity_type: str
    entity_id: int
    auditor_id: Optional[int]
    scheduled_date: date
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    status: str
    read_only: bool
    score: Optional[float]
    pass_fail: Optional[str]
    items: List[ItemStateResponse]


class ResponseUpdate(BaseModel):
    response: Optional[ItemResponse] = None
    manual_finding: Optional[str] = None


class DraftUpdate(BaseModel):
    responses: Dict[str, Optional[ItemResponse]] = {}
    manual_findings: Dict[str, str] = {}


class FindingResponse(BaseModel):
    id: int
    finding_code: str
    audit_id: int
    item_id: str
    section_name: str
    category: str
    severity: str
    description: str
    evidence_refs: List[str]
    status: str

    class Config:
        from_attributes = True


class CAPAResponse(BaseModel):
    id: int
    capa_code: str
    finding_id: int
    audit_id: int
    entity_type: str
    entity_id: int
    description: str
    assigned_to: Optional[int]
    due_date: date
    status: str
    priority: str
    evidence_refs: List[str]

    class Config:
        from_attributes = True


class SubmissionResponse(BaseModel):
    audit_id: int
    status: str
    total_score: float
    pass_fail: str
    critical_fail: bool
    findings: List[FindingResponse]
    capas: List[CAPAResponse]


# ───────────────────────── Helpers ─────────────────────────

async def _load(db: AsyncSession, audit_id: int) -> AuditExecution:
    try:
        return await AuditExecution.load(db, audit_id, evidence_store=evidence_store)
    except QualityError as e:
        raise http_error(e)


def _score_preview(execution: AuditExecution) -> ScorePreviewResponse:
    score = execution.score().to_dict()
    completion = execution.completion()
    return ScorePreviewResponse(
        **score,
        completion=CompletionResponse(**completion.__dict__),
    )


def _audit_response(execution: AuditExecution) -> AuditResponse:
    audit = execution.audit
    items = [
        ItemStateResponse(
            item_id=item_id,
            response=dump_response(state.response),
            evidence_refs=state.evidence_refs,
            evidence_urls=[evidence_store.signed_url(p) for p in state.evidence_refs],
            manual_finding=state.manual_finding,
        )
        for item_id, state in execution.states.items()
    ]
    return AuditResponse(
        id=audit.id,
        audit_code=audit.audit_code,
        template_id=audit.template_id,
        entity_type=audit.entity_type,
        entity_id=audit.entity_id,
        auditor_id=audit.auditor_id,
        scheduled_date=audit.scheduled_date,
        started_at=audit.started_at,
        completed_at=audit.completed_at,
        status=execution.status.value,
        read_only=execution.read_only,
        score=audit.score,
        pass_fail=audit.pass_fail.value if audit.pass_fail else None,
        items=items,
    )


async def _apply_draft(execution: AuditExecution, data: DraftUpdate) -> None:
    for item_id, response in data.responses.items():
        await execution.on_response_changed(item_id, response)
    for item_id, note in data.manual_findings.items():
        execution.set_manual_finding(item_id, note)


# ───────────────────────── Endpoints ─────────────────────────

@router.get("/{audit_id}", response_model=AuditResponse)
async def get_audit(
    audit_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get an audit with its saved item states"""
    execution = await _load(db, audit_id)
    return _audit_response(execution)


@router.get("/{audit_id}/score", response_model=ScorePreviewResponse)
async def get_score(
    audit_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Live score and completion for the saved draft"""
    execution = await _load(db, audit_id)
    return _score_preview(execution)


@router.put("/{audit_id}/responses/{item_id}", response_model=ScorePreviewResponse)
async def update_response(
    audit_id: int,
    item_id: str,
    data: ResponseUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Record one item response (and optional note), save, return the updated preview"""
    execution = await _load(db, audit_id)
    try:
        await execution.on_response_changed(item_id, data.response)
        if data.manual_finding is not None:
            execution.set_manual_finding(item_id, data.manual_finding)
        await execution.flush_draft()
    except QualityError as e:
        await execution.close()
        raise http_error(e)
    return _score_preview(execution)


@router.post("/{audit_id}/evidence/{item_id}", response_model=ItemStateResponse)
async def upload_evidence(
    audit_id: int,
    item_id: str,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Attach an evidence photo/file to a checklist item"""
    execution = await _load(db, audit_id)
    content = await file.read()
    try:
        execution.add_evidence_file(item_id, file.filename or "evidence", content)
        await execution.flush_draft()
    except QualityError as e:
        await execution.close()
        raise http_error(e)

    state = execution.states[item_id]
    logger.info(f"Evidence uploaded for audit {audit_id} item {item_id} by user {current_user.id}")
    return ItemStateResponse(
        item_id=item_id,
        response=dump_response(state.response),
        evidence_refs=state.evidence_refs,
        evidence_urls=[evidence_store.signed_url(p) for p in state.evidence_refs],
        manual_finding=state.manual_finding,
    )


@router.post("/{audit_id}/draft", response_model=ScorePreviewResponse)
async def save_draft(
    audit_id: int,
    data: DraftUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Apply a batch of draft changes and save them"""
    execution = await _load(db, audit_id)
    try:
        await _apply_draft(execution, data)
        await execution.flush_draft()
    except QualityError as e:
        await execution.close()
        raise http_error(e)
    return _score_preview(execution)


@router.post("/{audit_id}/submit", response_model=SubmissionResponse)
async def submit_audit(
    audit_id: int,
    data: Optional[DraftUpdate] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Submit for verification; rejected with a structured reason when incomplete"""
    execution = await _load(db, audit_id)
    try:
        if data is not None:
            await _apply_draft(execution, data)
        result = await execution.submit()
    except QualityError as e:
        await execution.close()
        raise http_error(e)

    return SubmissionResponse(
        audit_id=result.audit_id,
        status=execution.audit.status.value,
        total_score=result.score.total_score,
        pass_fail=result.score.pass_fail,
        critical_fail=result.score.critical_fail,
        findings=[FindingResponse.model_validate(f) for f in result.findings],
        capas=[CAPAResponse.model_validate(c) for c in result.capas],
    )


@router.post("/{audit_id}/cancel", response_model=AuditResponse)
async def cancel_audit(
    audit_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Cancel a scheduled audit"""
    execution = await _load(db, audit_id)
    try:
        await execution.cancel()
    except QualityError as e:
        raise http_error(e)
    return _audit_response(execution)


@router.get("/{audit_id}/findings", response_model=List[FindingResponse])
async def list_findings(
    audit_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Findings raised by a submitted audit"""
    result = await db.execute(
        select(Finding).where(Finding.audit_id == audit_id).order_by(Finding.id)
    )
    return result.scalars().all()


@router.get("/{audit_id}/capas", response_model=List[CAPAResponse])
async def list_capas(
    audit_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """CAPAs generated from an audit's findings"""
    result = await db.execute(
        select(CAPA).where(CAPA.audit_id == audit_id).order_by(CAPA.id)
    )
    return result.scalars().all()
