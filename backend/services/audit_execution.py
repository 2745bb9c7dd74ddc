"""
Audit Execution State Machine

Lifecycle of one audit:
    scheduled -> in_progress -> pending_verification -> approved | rejected
    scheduled -> cancelled
`overdue` is derived (scheduled and past its date) and never stored.

Client-driven events come in as explicit commands on AuditExecution:
on_response_changed / add_evidence_file / set_manual_finding mutate the
draft and schedule a debounced autosave; flush_draft and submit supersede
any pending autosave. All writes for one audit go through a single lock,
so an in-flight autosave can never interleave with a submission.

Finding and CAPA derivation are plain functions over the template and item
states; submit() sequences them with the persistence write in one
transaction.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import get_settings
from backend.database import atomic
from backend.models.audit import Audit, AuditResult, AuditStatus, PassFail
from backend.models.capa import CAPA, CAPAPriority, CAPAStatus
from backend.models.finding import Finding, FindingSeverity, FindingStatus
from backend.models.template import AuditTemplate
from backend.services.audit_scoring import (
    ChecklistTemplate,
    CompletionStats,
    ItemState,
    ScoreResult,
    TemplateItem,
    TemplateSection,
    completion_stats,
    compute_score,
    dump_response,
    is_failed_for_finding,
    item_points,
    parse_response,
)
from backend.services.evidence import EvidenceStore, LocalEvidenceStore
from backend.services.exceptions import (
    AuditStateError,
    EntityNotFoundError,
    EvidenceRejectedError,
    SubmissionValidationError,
)
from backend.services.identity import resolve_capa_assignee
from backend.utils.helpers import generate_code, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()

READ_ONLY_STATUSES = {
    AuditStatus.SUBMITTED,
    AuditStatus.PENDING_VERIFICATION,
    AuditStatus.APPROVED,
    AuditStatus.REJECTED,
    AuditStatus.CANCELLED,
}


def effective_status(audit: Audit, today: Optional[date] = None) -> AuditStatus:
    """Stored status, or OVERDUE for a scheduled audit whose date has passed"""
    today = today or utcnow().date()
    status = AuditStatus(audit.status)
    if status == AuditStatus.SCHEDULED and audit.scheduled_date < today:
        return AuditStatus.OVERDUE
    return status


# ───────────────────────── Submission gate ─────────────────────────

def validate_submission(template: ChecklistTemplate, states: Mapping[str, ItemState]) -> None:
    """
    Raise SubmissionValidationError for the first failing check:
    completion, then evidence, then unanswered critical items.
    """
    stats = completion_stats(template, states)
    required_pct = template.scoring.min_completion
    min_required = math.ceil(stats.total * required_pct / 100)
    if stats.answered < min_required:
        first = next(
            item.id for _, item in template.iter_items()
            if not (states.get(item.id) and states[item.id].answered)
        )
        raise SubmissionValidationError(
            SubmissionValidationError.INCOMPLETE,
            f"Audit incomplete. You must answer at least {required_pct:g}% of items "
            f"before submitting. Currently at {stats.percentage}%.",
            item_id=first,
            count=stats.total - stats.answered,
            percentage=stats.percentage,
            required=required_pct,
        )

    missing_evidence = [
        item.id for _, item in template.iter_items()
        if item.evidence_required.min_count > 0
        and (states[item.id].evidence_count if item.id in states else 0) < item.evidence_required.min_count
    ]
    if missing_evidence:
        raise SubmissionValidationError(
            SubmissionValidationError.MISSING_EVIDENCE,
            f"Missing required evidence on {len(missing_evidence)} item(s).",
            item_id=missing_evidence[0],
            count=len(missing_evidence),
        )

    unanswered_critical = [
        item.id for _, item in template.iter_items()
        if item.critical and not (states.get(item.id) and states[item.id].answered)
    ]
    if unanswered_critical:
        raise SubmissionValidationError(
            SubmissionValidationError.CRITICAL_UNANSWERED,
            f"Critical items cannot be skipped. {len(unanswered_critical)} critical item(s) unanswered.",
            item_id=unanswered_critical[0],
            count=len(unanswered_critical),
        )


# ───────────────────────── Findings & CAPA derivation ─────────────────────────

@dataclass
class DerivedFinding:
    finding_code: str
    item_id: str
    section_name: str
    category: str
    severity: FindingSeverity
    description: str
    evidence_refs: List[str] = field(default_factory=list)


@dataclass
class DerivedCAPA:
    capa_code: str
    finding_code: str
    description: str
    priority: CAPAPriority
    due_date: date
    assigned_to: Optional[int]
    evidence_refs: List[str] = field(default_factory=list)


def determine_severity(item: TemplateItem, section: TemplateSection) -> FindingSeverity:
    if item.critical:
        return FindingSeverity.CRITICAL
    if section.weight >= 25:
        return FindingSeverity.HIGH
    return FindingSeverity.MEDIUM


def derive_findings(
    template: ChecklistTemplate,
    states: Mapping[str, ItemState],
    now: Optional[datetime] = None,
) -> List[DerivedFinding]:
    """One finding per failed item or item carrying a manual note, in checklist order"""
    findings = []
    for section, item in template.iter_items():
        state = states.get(item.id)
        note = state.manual_finding.strip() if state else ""
        if not note and not is_failed_for_finding(item, state):
            continue
        findings.append(DerivedFinding(
            finding_code=generate_code("FND", now),
            item_id=item.id,
            section_name=section.name,
            category=section.name,
            severity=determine_severity(item, section),
            description=note or f"Non-conformance: {item.text}",
            evidence_refs=list(state.evidence_refs) if state else [],
        ))
    return findings


def capa_due_date(
    severity: FindingSeverity,
    submitted_on: date,
    due_days: Optional[Mapping[str, int]] = None,
) -> date:
    due_days = due_days or settings.CAPA_DUE_DAYS
    return submitted_on + timedelta(days=due_days[FindingSeverity(severity).value])


def derive_capas(
    findings: List[DerivedFinding],
    assigned_to: Optional[int],
    submitted_at: datetime,
    due_days: Optional[Mapping[str, int]] = None,
) -> List[DerivedCAPA]:
    """Exactly one CAPA per finding; priority mirrors severity"""
    return [
        DerivedCAPA(
            capa_code=generate_code("CPA", submitted_at),
            finding_code=f.finding_code,
            description=f.description,
            priority=CAPAPriority(f.severity.value),
            due_date=capa_due_date(f.severity, submitted_at.date(), due_days),
            assigned_to=assigned_to,
            evidence_refs=list(f.evidence_refs),
        )
        for f in findings
    ]


@dataclass
class SubmissionResult:
    audit_id: int
    score: ScoreResult
    findings: List[Finding]
    capas: List[CAPA]


# ───────────────────────── State machine ─────────────────────────

class AuditExecution:
    """In-process driver for executing one audit against its template"""

    def __init__(
        self,
        db: AsyncSession,
        audit: Audit,
        template: ChecklistTemplate,
        states: Optional[Dict[str, ItemState]] = None,
        evidence_store: Optional[EvidenceStore] = None,
        quiet_seconds: Optional[float] = None,
    ):
        self.db = db
        self.audit = audit
        self.template = template
        self.states: Dict[str, ItemState] = states or {}
        self.evidence_store = evidence_store or LocalEvidenceStore()
        self.quiet_seconds = settings.AUTOSAVE_QUIET_SECONDS if quiet_seconds is None else quiet_seconds

        self._pending_uploads: Dict[str, List[Tuple[str, bytes]]] = {}
        self._lock = asyncio.Lock()
        self._autosave_task: Optional[asyncio.Task] = None
        self._dirty = False
        self._submitting = False

    @classmethod
    async def load(
        cls,
        db: AsyncSession,
        audit_id: int,
        evidence_store: Optional[EvidenceStore] = None,
        quiet_seconds: Optional[float] = None,
    ) -> "AuditExecution":
        audit = await db.get(Audit, audit_id)
        if not audit:
            raise EntityNotFoundError("Audit", audit_id)
        template_row = await db.get(AuditTemplate, audit.template_id)
        if not template_row:
            raise EntityNotFoundError("Template", audit.template_id)

        result = await db.execute(select(AuditResult).where(AuditResult.audit_id == audit_id))
        states = {
            row.item_id: ItemState(
                response=parse_response(row.response),
                evidence_refs=list(row.evidence_refs or []),
                manual_finding=row.manual_finding or "",
            )
            for row in result.scalars().all()
        }
        return cls(
            db, audit, ChecklistTemplate.from_record(template_row), states,
            evidence_store=evidence_store, quiet_seconds=quiet_seconds,
        )

    # ── read side ──

    @property
    def status(self) -> AuditStatus:
        return effective_status(self.audit)

    @property
    def read_only(self) -> bool:
        return AuditStatus(self.audit.status) in READ_ONLY_STATUSES

    @property
    def has_unsaved_changes(self) -> bool:
        return self._dirty

    def score(self) -> ScoreResult:
        """Live preview; after submission the frozen audit score is authoritative"""
        return compute_score(self.template, self.states)

    def completion(self) -> CompletionStats:
        return completion_stats(self.template, self.states)

    def validate(self) -> None:
        validate_submission(self.template, self.states)

    # ── commands ──

    def _ensure_editable(self) -> None:
        if self._submitting:
            raise AuditStateError(f"Audit {self.audit.audit_code} is being submitted and can no longer be edited")
        if self.read_only:
            raise AuditStateError(f"Audit {self.audit.audit_code} is {AuditStatus(self.audit.status).value} and can no longer be edited")

    def _lookup_item(self, item_id: str) -> Tuple[TemplateSection, TemplateItem]:
        found = self.template.find_item(item_id)
        if not found:
            raise EntityNotFoundError("Checklist item", item_id)
        return found

    async def on_response_changed(self, item_id: str, response: Any) -> ScoreResult:
        """
        Record a response (parsed model, raw {"type", "value"} dict, or None to clear).
        The first non-null response moves a scheduled audit to in_progress.
        """
        self._ensure_editable()
        _, item = self._lookup_item(item_id)
        if isinstance(response, Mapping):
            response = parse_response(response)

        candidate = replace(self.states.get(item_id) or ItemState(), response=response)
        item_points(item, candidate)  # rejects a response tagged for another item type
        self.states[item_id] = candidate
        self._dirty = True

        if response is not None:
            async with self._lock:
                await self._mark_in_progress()

        self._schedule_autosave()
        return self.score()

    def add_evidence_file(self, item_id: str, filename: str, content: bytes) -> None:
        self._ensure_editable()
        self._lookup_item(item_id)
        self.evidence_store.check_size(content)
        self._pending_uploads.setdefault(item_id, []).append((filename, content))
        state = self.states.get(item_id) or ItemState()
        self.states[item_id] = replace(state, pending_files=len(self._pending_uploads[item_id]))
        self._dirty = True
        self._schedule_autosave()

    def remove_pending_evidence(self, item_id: str, filename: str) -> None:
        """Drop a file that was added but not uploaded yet"""
        self._ensure_editable()
        files = self._pending_uploads.get(item_id) or []
        index = next((i for i, (name, _) in enumerate(files) if name == filename), None)
        if index is None:
            raise EntityNotFoundError("Pending evidence", filename)
        files.pop(index)
        self.states[item_id] = replace(self.states[item_id], pending_files=len(files))
        self._dirty = True
        self._schedule_autosave()

    def remove_evidence(self, item_id: str, path: str) -> None:
        self._ensure_editable()
        state = self.states.get(item_id)
        if state is None or path not in state.evidence_refs:
            raise EntityNotFoundError("Evidence", path)
        self.states[item_id] = replace(state, evidence_refs=[p for p in state.evidence_refs if p != path])
        self._dirty = True
        self._schedule_autosave()

    def set_manual_finding(self, item_id: str, note: str) -> None:
        self._ensure_editable()
        self._lookup_item(item_id)
        self.states[item_id] = replace(self.states.get(item_id) or ItemState(), manual_finding=note)
        self._dirty = True
        self._schedule_autosave()

    async def flush_draft(self) -> None:
        """Explicit save: supersedes any pending autosave and persists the draft now"""
        self._cancel_pending_autosave()
        await self._save_draft()

    async def cancel(self) -> None:
        self._cancel_pending_autosave()
        async with self._lock:
            if AuditStatus(self.audit.status) != AuditStatus.SCHEDULED:
                raise AuditStateError("Only scheduled audits can be cancelled")
            self.audit.status = AuditStatus.CANCELLED
            self.audit.updated_at = utcnow()
            await self.db.commit()
        logger.info(f"Audit {self.audit.audit_code} cancelled")

    async def submit(self, now: Optional[datetime] = None) -> SubmissionResult:
        """
        Validate, then persist results, the frozen score, findings and CAPAs in
        one transaction. Validation errors leave everything untouched.

        Everything after the status check works on a copy of the item states
        taken under the lock, and edits are refused until submit returns.
        """
        self._cancel_pending_autosave()
        async with self._lock:
            status = AuditStatus(self.audit.status)
            if status != AuditStatus.IN_PROGRESS:
                raise AuditStateError(f"Cannot submit an audit that is {status.value}")

            self._submitting = True
            try:
                return await self._submit_snapshot(self._snapshot_states(), now or utcnow())
            finally:
                self._submitting = False

    async def _submit_snapshot(self, states: Dict[str, ItemState], now: datetime) -> SubmissionResult:
        try:
            validate_submission(self.template, states)
        except SubmissionValidationError as e:
            logger.info(f"Audit {self.audit.audit_code} submission rejected: {e.reason} ({e.message})")
            raise

        try:
            await self._resolve_uploads(states)
        finally:
            # stored refs and rejected files carry over to the draft
            self.states = self._snapshot_states(states)

        score = compute_score(self.template, states)
        derived_findings = derive_findings(self.template, states, now)
        assignee = await resolve_capa_assignee(self.db, self.audit.entity_type, self.audit.entity_id)
        derived_capas = derive_capas(derived_findings, assignee, now)

        try:
            async with atomic(self.db):
                await self._write_results(now, states)

                self.audit.status = AuditStatus.PENDING_VERIFICATION
                self.audit.completed_at = now
                self.audit.score = score.total_score
                self.audit.pass_fail = PassFail(score.pass_fail)
                self.audit.updated_at = now

                findings = [
                    Finding(
                        finding_code=f.finding_code,
                        audit_id=self.audit.id,
                        item_id=f.item_id,
                        section_name=f.section_name,
                        category=f.category,
                        severity=f.severity,
                        description=f.description,
                        evidence_refs=f.evidence_refs,
                        status=FindingStatus.OPEN,
                        created_at=now,
                        updated_at=now,
                    )
                    for f in derived_findings
                ]
                self.db.add_all(findings)
                await self.db.flush()

                finding_ids = {f.finding_code: f.id for f in findings}
                capas = [
                    CAPA(
                        capa_code=c.capa_code,
                        finding_id=finding_ids[c.finding_code],
                        audit_id=self.audit.id,
                        entity_type=self.audit.entity_type,
                        entity_id=self.audit.entity_id,
                        description=c.description,
                        assigned_to=c.assigned_to,
                        due_date=c.due_date,
                        status=CAPAStatus.PENDING_VERIFICATION,
                        priority=c.priority,
                        evidence_refs=c.evidence_refs,
                        created_at=now,
                        updated_at=now,
                    )
                    for c in derived_capas
                ]
                self.db.add_all(capas)
        except Exception:
            # Rolled back: reload the audit so it reflects the stored state again
            await self.db.refresh(self.audit)
            logger.error(f"Audit {self.audit.audit_code} submission failed, nothing persisted")
            raise

        self._dirty = False
        logger.info(
            f"Audit {self.audit.audit_code} submitted: score={score.total_score:.1f} "
            f"{score.pass_fail} findings={len(findings)} capas={len(capas)}"
        )
        return SubmissionResult(audit_id=self.audit.id, score=score, findings=findings, capas=capas)

    async def close(self) -> None:
        """Drop a pending autosave without saving (e.g. client navigated away after an explicit save)"""
        self._cancel_pending_autosave()

    # ── internals ──

    async def _mark_in_progress(self) -> None:
        if AuditStatus(self.audit.status) != AuditStatus.SCHEDULED:
            return
        now = utcnow()
        self.audit.status = AuditStatus.IN_PROGRESS
        self.audit.started_at = self.audit.started_at or now
        self.audit.updated_at = now
        await self.db.commit()
        logger.info(f"Audit {self.audit.audit_code} started")

    def _schedule_autosave(self) -> None:
        self._cancel_pending_autosave()
        self._autosave_task = asyncio.create_task(self._autosave_after_quiet())

    def _cancel_pending_autosave(self) -> None:
        task = self._autosave_task
        self._autosave_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _autosave_after_quiet(self) -> None:
        try:
            await asyncio.sleep(self.quiet_seconds)
        except asyncio.CancelledError:
            return  # superseded by a newer change or an explicit save/submit
        try:
            # Shielded: once started, a draft write finishes under the lock even if superseded
            await asyncio.shield(self._save_draft())
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception(f"Auto-save draft failed for audit {self.audit.audit_code}")

    async def _save_draft(self) -> None:
        async with self._lock:
            if self.read_only or not self._dirty:
                return
            await self._resolve_uploads(self.states)
            try:
                async with atomic(self.db):
                    await self._write_results(utcnow(), self.states)
            except Exception:
                await self.db.refresh(self.audit)
                raise
            self._dirty = False
        logger.debug(f"Draft saved for audit {self.audit.audit_code}")

    def _snapshot_states(self, states: Optional[Mapping[str, ItemState]] = None) -> Dict[str, ItemState]:
        source = self.states if states is None else states
        return {
            item_id: replace(state, evidence_refs=list(state.evidence_refs))
            for item_id, state in source.items()
        }

    async def _resolve_uploads(self, states: Dict[str, ItemState]) -> None:
        """
        Convert pending files into stored references before anything counts them.
        A file the store rejects is dropped so it cannot block later saves.
        """
        for item_id, files in list(self._pending_uploads.items()):
            while files:
                entry = files.pop(0)
                filename, content = entry
                try:
                    ref = await self.evidence_store.store(self.audit.id, item_id, filename, content)
                except EvidenceRejectedError:
                    logger.warning(f"Evidence {filename} on item {item_id} of audit {self.audit.audit_code} rejected: dropped")
                    states[item_id] = replace(states[item_id], pending_files=len(files))
                    self._dirty = True
                    raise
                except Exception:
                    files.insert(0, entry)
                    raise
                state = states[item_id]
                states[item_id] = replace(
                    state,
                    evidence_refs=state.evidence_refs + [ref.path],
                    pending_files=len(files),
                )
            self._pending_uploads.pop(item_id, None)

    async def _write_results(self, now: datetime, states: Mapping[str, ItemState]) -> None:
        result = await self.db.execute(select(AuditResult).where(AuditResult.audit_id == self.audit.id))
        existing = {row.item_id: row for row in result.scalars().all()}

        for section, item in self.template.iter_items():
            state = states.get(item.id)
            keep = state is not None and (state.answered or state.evidence_refs or state.manual_finding.strip())
            row = existing.get(item.id)
            if not keep:
                if row is not None:
                    await self.db.delete(row)
                continue
            if row is None:
                row = AuditResult(audit_id=self.audit.id, section_id=section.id, item_id=item.id)
                self.db.add(row)
            row.response = dump_response(state.response)
            row.evidence_refs = list(state.evidence_refs)
            row.manual_finding = state.manual_finding.strip() or None
            row.points_earned = item_points(item, state)
            row.updated_at = now
