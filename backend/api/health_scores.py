"""
Health score API endpoints
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.auth import get_current_user
from backend.api.errors import http_error
from backend.database import get_db
from backend.models.user import User
from backend.services.batch_recalculation import (
    batch_in_progress,
    check_and_run_batch_if_needed,
    get_last_batch_time,
    is_batch_stale,
    run_batch,
)
from backend.services.entity_store import CACHED_SCORE_FIELDS, EntityStore
from backend.services.exceptions import QualityError
from backend.services.health_score_engine import (
    COMPONENT_LABELS,
    COMPONENT_WEIGHTS,
    get_threshold_config,
    recalculate_and_save,
)
from backend.utils.validators import validate_entity_type

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthScoreResponse(BaseModel):
    entity_type: str
    entity_id: int
    score: float
    components: Dict[str, float]
    calculated_at: Optional[datetime]
    threshold: dict


class DashboardEntity(BaseModel):
    entity_id: int
    name: str
    score: float
    threshold: dict
    calculated_at: Optional[datetime]


class DashboardResponse(BaseModel):
    branches: List[DashboardEntity]
    bcks: List[DashboardEntity]
    suppliers: List[DashboardEntity]
    weights: Dict[str, Dict[str, float]]
    labels: Dict[str, str]
    last_batch_at: Optional[datetime]
    batch_started: bool


class BatchStatusResponse(BaseModel):
    last_batch_at: Optional[datetime]
    stale: bool
    running: bool


def _entity_type_or_400(entity_type: str) -> str:
    try:
        return validate_entity_type(entity_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Cached scores for every entity; starts a background batch when scores are stale"""
    batch_started = await check_and_run_batch_if_needed(db)

    store = EntityStore(db)
    sections = {}
    for entity_type, key in (("branch", "branches"), ("bck", "bcks"), ("supplier", "suppliers")):
        records = {r.entity_id: r for r in await store.list_health_scores(entity_type)}
        rows = []
        for entity in await store.list_entities(entity_type):
            score = getattr(entity, CACHED_SCORE_FIELDS[entity_type]) or 0
            record = records.get(entity.id)
            rows.append(DashboardEntity(
                entity_id=entity.id,
                name=entity.name,
                score=score,
                threshold=get_threshold_config(score, entity_type),
                calculated_at=record.calculated_at if record else None,
            ))
        sections[key] = rows

    return DashboardResponse(
        **sections,
        weights=COMPONENT_WEIGHTS,
        labels=COMPONENT_LABELS,
        last_batch_at=await get_last_batch_time(db),
        batch_started=batch_started,
    )


@router.get("/batch/status", response_model=BatchStatusResponse)
async def get_batch_status(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return BatchStatusResponse(
        last_batch_at=await get_last_batch_time(db),
        stale=await is_batch_stale(db),
        running=batch_in_progress(),
    )


@router.post("/batch/run")
async def run_batch_now(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Run a full recalculation and wait for it"""
    if batch_in_progress():
        raise HTTPException(status_code=409, detail="A batch recalculation is already running")
    result = await run_batch(db)
    return result.to_dict()


@router.get("/{entity_type}/{entity_id}", response_model=HealthScoreResponse)
async def get_health_score(
    entity_type: str,
    entity_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Last persisted score and component breakdown"""
    entity_type = _entity_type_or_400(entity_type)
    record = await EntityStore(db).get_health_score(entity_type, entity_id)
    if not record:
        raise HTTPException(status_code=404, detail="Health score not calculated yet")
    return HealthScoreResponse(
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        score=record.score,
        components=record.components,
        calculated_at=record.calculated_at,
        threshold=get_threshold_config(record.score, entity_type),
    )


@router.post("/{entity_type}/{entity_id}/recalculate", response_model=HealthScoreResponse)
async def recalculate(
    entity_type: str,
    entity_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    entity_type = _entity_type_or_400(entity_type)
    try:
        result = await recalculate_and_save(db, entity_type, entity_id)
    except QualityError as e:
        raise http_error(e)
    logger.info(f"Health score recalculated for {entity_type} {entity_id} by user {current_user.id}")
    return HealthScoreResponse(**result.to_dict())
