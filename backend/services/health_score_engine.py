"""
Health Score Engine

Composite 0-100 quality indicator per branch, kitchen (BCK) and supplier.

Work is split in three steps so each can be exercised on its own:
    gather_health_inputs()  - read everything the formula needs from the store
    compute_health_score()  - pure formula over those inputs
    sync_health_score()     - write the HealthScore record and the cached entity field

recalculate_and_save() runs the three in one transaction and applies supplier
auto-suspension as part of the same write.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import get_settings
from backend.database import atomic
from backend.models.audit import Audit, AuditStatus
from backend.models.capa import CAPA, CAPAActivity, CAPAStatus, CLOSING_ACTIONS
from backend.models.supplier import Supplier, SupplierStatus
from backend.services.entity_store import EntityStore
from backend.services.exceptions import EntityNotFoundError
from backend.services.identity import get_active_audit_managers
from backend.utils.helpers import days_ago, end_of_day, mean, round_score, utcnow
from backend.utils.validators import validate_entity_type

logger = logging.getLogger(__name__)
settings = get_settings()

AUDIT_WINDOW_DAYS = 90
REPEAT_WINDOW_DAYS = 60
INCIDENT_WINDOW_DAYS = 30
REPEAT_OVERLAP_THRESHOLD = 0.6

COMPONENT_WEIGHTS = {
    "branch": {
        "audit_performance": 0.40,
        "capa_completion": 0.25,
        "repeat_findings": 0.15,
        "incident_rate": 0.10,
        "verification_pass": 0.10,
    },
    "bck": {
        "haccp_compliance": 0.50,
        "production_audit_perf": 0.25,
        "supplier_quality": 0.15,
        "capa_completion": 0.10,
    },
    "supplier": {
        "audit_performance": 0.40,
        "product_quality": 0.30,
        "compliance": 0.20,
        "delivery_perf": 0.10,
    },
}

COMPONENT_LABELS = {
    "audit_performance": "Audit Performance",
    "capa_completion": "CAPA Completion",
    "repeat_findings": "Repeat Findings",
    "incident_rate": "Incident Rate",
    "verification_pass": "Verification Pass Rate",
    "haccp_compliance": "HACCP Compliance",
    "production_audit_perf": "Production Audit Performance",
    "supplier_quality": "Supplier Quality",
    "product_quality": "Product Quality",
    "compliance": "Compliance",
    "delivery_perf": "Delivery Performance",
}

HEALTH_THRESHOLDS = [
    (85, "excellent", "Excellent"),
    (70, "good", "Good"),
    (50, "needs_improvement", "Needs Improvement"),
    (0, "critical", "Critical"),
]

SUPPLIER_THRESHOLDS = [
    (90, "approved", "Approved"),
    (75, "conditional", "Conditional"),
    (60, "under_review", "Under Review"),
    (0, "suspended", "Suspended"),
]

STOPWORDS = frozenset(
    "the a an is are was were in on at to for of and or it this that with has had "
    "have been be not no but by from as if so than then".split()
)


def get_threshold_config(score: float, entity_type: str) -> Dict[str, object]:
    """Dashboard band for a score: {"key", "label", "min"}"""
    bands = SUPPLIER_THRESHOLDS if entity_type == "supplier" else HEALTH_THRESHOLDS
    for minimum, key, label in bands:
        if score >= minimum:
            return {"key": key, "label": label, "min": minimum}
    minimum, key, label = bands[-1]
    return {"key": key, "label": label, "min": minimum}


# ───────────────────────── Repeat findings ─────────────────────────

def tokenize(text: str) -> set:
    cleaned = re.sub(r"[^a-z0-9\s]", "", (text or "").lower())
    return {w for w in cleaned.split() if len(w) > 2 and w not in STOPWORDS}


def word_overlap(a: str, b: str) -> float:
    """Jaccard similarity of the two token sets"""
    tokens_a, tokens_b = tokenize(a), tokenize(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def count_repeat_findings(latest: Sequence[str], previous: Sequence[str]) -> int:
    """Latest-audit findings matching at least one earlier finding; each counts once"""
    return sum(
        1 for description in latest
        if any(word_overlap(description, prior) >= REPEAT_OVERLAP_THRESHOLD for prior in previous)
    )


# ───────────────────────── Pure formula ─────────────────────────

def audit_date(audit: Audit) -> Optional[datetime]:
    return audit.completed_at or audit.updated_at


@dataclass
class HealthInputs:
    """Everything a health score depends on, already filtered to the right windows"""
    approved_audits: List[Audit] = field(default_factory=list)  # trailing 90 days, newest first
    closed_capas: List[CAPA] = field(default_factory=list)
    capa_activities: Dict[int, List[CAPAActivity]] = field(default_factory=dict)
    latest_findings: List[str] = field(default_factory=list)
    previous_findings: List[str] = field(default_factory=list)
    incident_count: int = 0
    supplier_quality_scores: List[float] = field(default_factory=list)
    certifications: list = field(default_factory=list)


@dataclass
class HealthScoreResult:
    entity_type: str
    entity_id: int
    score: float
    components: Dict[str, float]
    calculated_at: datetime

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "score": self.score,
            "components": self.components,
            "calculated_at": self.calculated_at.isoformat(),
            "threshold": get_threshold_config(self.score, self.entity_type),
        }


def capa_closed_on_time(capa: CAPA, activities: Sequence[CAPAActivity]) -> bool:
    """First closing activity on or before the end of the due date; no closing activity counts as on time"""
    closing = next((a for a in activities if a.action in CLOSING_ACTIONS), None)
    if closing is None:
        return True
    return closing.created_at <= end_of_day(capa.due_date)


def capa_completion(inputs: HealthInputs) -> float:
    if not inputs.closed_capas:
        return 100.0
    on_time = [c for c in inputs.closed_capas if capa_closed_on_time(c, inputs.capa_activities.get(c.id, []))]
    return round_score(len(on_time) / len(inputs.closed_capas) * 100)


def verification_pass(inputs: HealthInputs) -> float:
    if not inputs.closed_capas:
        return 100.0
    first_time = [
        c for c in inputs.closed_capas
        if not any(a.action == "rejected" for a in inputs.capa_activities.get(c.id, []))
    ]
    return round_score(len(first_time) / len(inputs.closed_capas) * 100)


def _mean_audit_score(inputs: HealthInputs) -> float:
    return round_score(mean([a.score or 0 for a in inputs.approved_audits]))


def compute_branch_components(inputs: HealthInputs) -> Dict[str, float]:
    repeats = count_repeat_findings(inputs.latest_findings, inputs.previous_findings)
    return {
        "audit_performance": _mean_audit_score(inputs),
        "capa_completion": capa_completion(inputs),
        "repeat_findings": round_score(100 - min(50, repeats * 10)),
        "incident_rate": round_score(max(0, 100 - inputs.incident_count * 20)),
        "verification_pass": verification_pass(inputs),
    }


def compute_bck_components(inputs: HealthInputs) -> Dict[str, float]:
    latest = inputs.approved_audits[0] if inputs.approved_audits else None
    suppliers = inputs.supplier_quality_scores
    return {
        "haccp_compliance": round_score(latest.score or 0) if latest else 0.0,
        "production_audit_perf": _mean_audit_score(inputs),
        "supplier_quality": round_score(mean(suppliers)) if suppliers else 100.0,
        "capa_completion": capa_completion(inputs),
    }


def compute_supplier_components(inputs: HealthInputs) -> Dict[str, float]:
    return {
        "audit_performance": _mean_audit_score(inputs),
        "product_quality": round_score(max(0, 100 - inputs.incident_count * 10)),
        "compliance": 100.0 if inputs.certifications else 50.0,
        "delivery_perf": 100.0,
    }


_COMPONENTS_BY_TYPE = {
    "branch": compute_branch_components,
    "bck": compute_bck_components,
    "supplier": compute_supplier_components,
}


def compute_health_score(
    entity_type: str,
    entity_id: int,
    inputs: HealthInputs,
    now: Optional[datetime] = None,
) -> HealthScoreResult:
    components = _COMPONENTS_BY_TYPE[entity_type](inputs)
    weights = COMPONENT_WEIGHTS[entity_type]
    score = round_score(sum(components[name] * weight for name, weight in weights.items()))
    return HealthScoreResult(
        entity_type=entity_type,
        entity_id=entity_id,
        score=score,
        components=components,
        calculated_at=now or utcnow(),
    )


# ───────────────────────── Store access ─────────────────────────

async def gather_health_inputs(
    store: EntityStore,
    entity_type: str,
    entity_id: int,
    now: Optional[datetime] = None,
) -> HealthInputs:
    now = now or utcnow()
    entity = await store.get_entity(entity_type, entity_id)
    if entity is None:
        raise EntityNotFoundError(entity_type, entity_id)

    audits = await store.get_audits(entity_type, entity_id)
    audit_window = days_ago(AUDIT_WINDOW_DAYS, now)
    approved = sorted(
        (
            a for a in audits
            if AuditStatus(a.status) == AuditStatus.APPROVED
            and audit_date(a) is not None and audit_date(a) >= audit_window
        ),
        key=audit_date,
        reverse=True,
    )

    inputs = HealthInputs(approved_audits=approved)

    if entity_type in ("branch", "bck"):
        inputs.closed_capas = await store.get_capas(
            entity_type, entity_id, statuses=[CAPAStatus.CLOSED, CAPAStatus.APPROVED]
        )
        inputs.capa_activities = await store.get_capa_activities(c.id for c in inputs.closed_capas)

    if entity_type == "branch":
        if approved:
            latest = approved[0]
            repeat_window = days_ago(REPEAT_WINDOW_DAYS, now)
            earlier = [
                a for a in audits
                if a.id != latest.id and audit_date(a) is not None and audit_date(a) >= repeat_window
            ]
            findings = await store.get_findings_for_audits([latest.id] + [a.id for a in earlier])
            inputs.latest_findings = [f.description for f in findings.get(latest.id, [])]
            inputs.previous_findings = [f.description for a in earlier for f in findings.get(a.id, [])]
        incidents = await store.get_incidents(
            entity_type, entity_id, since=days_ago(INCIDENT_WINDOW_DAYS, now), exclude_closed=True
        )
        inputs.incident_count = len(incidents)

    elif entity_type == "bck":
        suppliers = await store.get_suppliers_for_bck(entity_id)
        inputs.supplier_quality_scores = [s.quality_score or 0 for s in suppliers]

    elif entity_type == "supplier":
        inputs.incident_count = len(await store.get_incidents(entity_type, entity_id))
        inputs.certifications = list(entity.certifications or [])

    return inputs


async def calculate_health_score(
    store: EntityStore,
    entity_type: str,
    entity_id: int,
    now: Optional[datetime] = None,
) -> HealthScoreResult:
    """Compute without writing anything"""
    entity_type = validate_entity_type(entity_type)
    now = now or utcnow()
    inputs = await gather_health_inputs(store, entity_type, entity_id, now)
    return compute_health_score(entity_type, entity_id, inputs, now)


async def sync_health_score(store: EntityStore, result: HealthScoreResult) -> None:
    """Stage the HealthScore record and the cached entity score together"""
    await store.upsert_health_score(
        result.entity_type, result.entity_id, result.score, result.components, result.calculated_at
    )
    await store.set_cached_score(result.entity_type, result.entity_id, result.score)


async def apply_supplier_suspension(
    store: EntityStore,
    supplier: Supplier,
    score: float,
    threshold: Optional[float] = None,
) -> bool:
    """
    Suspend a supplier whose score fell under the threshold and notify every
    active audit manager. Already-suspended suppliers are left alone, so
    recomputing while still low never notifies twice. Returns True if suspended.
    """
    threshold = settings.SUPPLIER_SUSPENSION_THRESHOLD if threshold is None else threshold
    if score >= threshold or SupplierStatus(supplier.status) == SupplierStatus.SUSPENDED:
        return False

    await store.set_supplier_status(supplier, SupplierStatus.SUSPENDED)
    managers = await get_active_audit_managers(store.db)
    for manager in managers:
        await store.create_notification(
            user_id=manager.id,
            type="supplier_suspended",
            title="Supplier Auto-Suspended",
            message=(
                f"Supplier {supplier.name} has been auto-suspended. Quality score dropped to "
                f"{score:g}. Orders should be stopped until the score recovers above {threshold:g}."
            ),
            link_to="/suppliers",
        )
    logger.warning(
        f"Supplier {supplier.supplier_code} auto-suspended (score {score:g} < {threshold:g}), "
        f"{len(managers)} audit manager(s) notified"
    )
    return True


async def recalculate_and_save(
    db: AsyncSession,
    entity_type: str,
    entity_id: int,
    now: Optional[datetime] = None,
) -> HealthScoreResult:
    """
    Recompute, persist and cascade in one transaction. On a store failure the
    session is rolled back, the previous record stays as it was and the error
    propagates.
    """
    store = EntityStore(db)
    result = await calculate_health_score(store, entity_type, entity_id, now)
    try:
        async with atomic(db):
            await sync_health_score(store, result)
            if result.entity_type == "supplier":
                supplier = await store.get_entity("supplier", entity_id)
                await apply_supplier_suspension(store, supplier, result.score)
    except SQLAlchemyError as e:
        logger.error(f"Health score save failed for {entity_type} {entity_id}: {e}")
        raise

    logger.debug(f"Health score {entity_type} {entity_id} = {result.score} {result.components}")
    return result
