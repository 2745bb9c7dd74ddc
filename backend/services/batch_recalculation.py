"""
Batch health score recalculation.

Recomputes every supplier, then every BCK (kitchen scores read the supplier
quality scores just written), then every branch. The `_batch_meta` sentinel
row keeps the epoch time of the last batch that finished without errors;
when it is older than HEALTH_BATCH_STALE_HOURS the next dashboard load kicks
off a new batch in the background.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import get_settings
from backend.database import AsyncSessionLocal
from backend.models.health_score import BATCH_META_ENTITY_ID, BATCH_META_ENTITY_TYPE
from backend.services.entity_store import EntityStore
from backend.services.health_score_engine import recalculate_and_save
from backend.utils.helpers import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()

# Suppliers before kitchens: BCK supplier_quality reads supplier scores
BATCH_ORDER = ("supplier", "bck", "branch")

_background_batch: Optional[asyncio.Task] = None
# Launched batches stay referenced here until they finish
_batch_tasks: Set[asyncio.Task] = set()


def _to_epoch(moment: datetime) -> float:
    return moment.replace(tzinfo=timezone.utc).timestamp()


def _from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


@dataclass
class BatchResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    recalculated: Dict[str, int] = field(default_factory=lambda: {t: 0 for t in BATCH_ORDER})
    failures: List[dict] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "recalculated": self.recalculated,
            "failures": self.failures,
            "succeeded": self.succeeded,
        }


async def get_last_batch_time(db: AsyncSession) -> Optional[datetime]:
    record = await EntityStore(db).get_health_score(BATCH_META_ENTITY_TYPE, BATCH_META_ENTITY_ID)
    if record is None:
        return None
    return _from_epoch(record.score)


async def is_batch_stale(db: AsyncSession, now: Optional[datetime] = None) -> bool:
    """True when no batch has completed yet or the last one is older than the stale window"""
    last = await get_last_batch_time(db)
    if last is None:
        return True
    now = now or utcnow()
    return now - last > timedelta(hours=settings.HEALTH_BATCH_STALE_HOURS)


async def _mark_batch_complete(db: AsyncSession, finished_at: datetime) -> None:
    await EntityStore(db).upsert_health_score(
        BATCH_META_ENTITY_TYPE,
        BATCH_META_ENTITY_ID,
        score=_to_epoch(finished_at),
        components={},
        calculated_at=finished_at,
    )
    await db.commit()


async def run_batch(db: AsyncSession, now: Optional[datetime] = None) -> BatchResult:
    """
    Recalculate every entity in dependency order. A failing entity is logged
    and skipped; the sentinel only advances when nothing failed.
    """
    now = now or utcnow()
    result = BatchResult(started_at=now)
    store = EntityStore(db)
    logger.info("Health score batch recalculation started")

    for entity_type in BATCH_ORDER:
        entity_ids = [e.id for e in await store.list_entities(entity_type)]
        for entity_id in entity_ids:
            try:
                await recalculate_and_save(db, entity_type, entity_id, now)
                result.recalculated[entity_type] += 1
            except Exception as e:
                await db.rollback()
                logger.error(f"Batch recalculation failed for {entity_type} {entity_id}: {e}")
                result.failures.append({"entity_type": entity_type, "entity_id": entity_id, "error": str(e)})

    result.finished_at = utcnow()
    if result.succeeded:
        await _mark_batch_complete(db, result.finished_at)
        logger.info(f"Health score batch complete: {result.recalculated}")
    else:
        logger.error(
            f"Health score batch finished with {len(result.failures)} failure(s); "
            f"last-run timestamp not advanced"
        )
    return result


async def _run_batch_in_background() -> None:
    try:
        async with AsyncSessionLocal() as db:
            await run_batch(db)
    except Exception as e:
        logger.error(f"Background health score batch error: {e}")


def batch_in_progress() -> bool:
    return _background_batch is not None and not _background_batch.done()


async def check_and_run_batch_if_needed(db: AsyncSession) -> bool:
    """
    Launch a background batch when scores are stale. Never waits for the batch;
    returns True if one was started by this call.
    """
    global _background_batch

    if batch_in_progress():
        return False
    if not await is_batch_stale(db):
        return False
    # another dashboard load may have launched one while the staleness query ran
    if batch_in_progress():
        return False

    logger.info("Health scores are stale, starting background batch recalculation")
    task = asyncio.create_task(_run_batch_in_background())
    _batch_tasks.add(task)
    task.add_done_callback(_batch_tasks.discard)
    _background_batch = task
    return True
