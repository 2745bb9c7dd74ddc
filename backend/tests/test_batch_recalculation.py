"""
Batch recalculation tests - staleness, dependency order, partial failure, background launch
"""
import asyncio
from datetime import timedelta

import pytest

from backend.models.audit import AuditStatus
from backend.services import batch_recalculation
from backend.services.batch_recalculation import (
    BATCH_ORDER,
    check_and_run_batch_if_needed,
    get_last_batch_time,
    is_batch_stale,
    run_batch,
)
from backend.services.entity_store import EntityStore
from backend.utils.helpers import utcnow


@pytest.fixture(autouse=True)
def reset_background_batch():
    batch_recalculation._background_batch = None
    yield
    batch_recalculation._background_batch = None
    batch_recalculation._batch_tasks.clear()


class TestStaleness:

    async def test_never_run_is_stale(self, db_session, seed_data):
        assert await get_last_batch_time(db_session) is None
        assert await is_batch_stale(db_session)

    async def test_fresh_then_stale_after_six_hours(self, db_session, seed_data):
        await run_batch(db_session)
        last = await get_last_batch_time(db_session)
        assert last is not None
        assert not await is_batch_stale(db_session, now=last + timedelta(hours=5, minutes=59))
        assert await is_batch_stale(db_session, now=last + timedelta(hours=6, minutes=1))


class TestRunBatch:

    async def test_recalculates_every_entity(self, db_session, seed_data):
        result = await run_batch(db_session)
        assert result.succeeded
        assert result.recalculated == {"supplier": 1, "bck": 1, "branch": 1}

        store = EntityStore(db_session)
        for entity_type in BATCH_ORDER:
            assert len(await store.list_health_scores(entity_type)) == 1

    async def test_suppliers_before_kitchens(self, db_session, seed_data, make_audit, monkeypatch):
        supplier_id = seed_data["supplier"].id
        await make_audit(entity_type="supplier", status=AuditStatus.APPROVED, score=95, completed_at=utcnow())

        seen = []
        original = batch_recalculation.recalculate_and_save

        async def recording(db, entity_type, entity_id, now=None):
            seen.append(entity_type)
            return await original(db, entity_type, entity_id, now)

        monkeypatch.setattr(batch_recalculation, "recalculate_and_save", recording)
        await run_batch(db_session)

        assert seen == ["supplier", "bck", "branch"]
        # BCK supplier_quality used the freshly written supplier score, not the seeded 80
        bck_record = await EntityStore(db_session).get_health_score("bck", seed_data["bck"].id)
        supplier_record = await EntityStore(db_session).get_health_score("supplier", supplier_id)
        assert bck_record.components["supplier_quality"] == supplier_record.score == pytest.approx(98)

    async def test_failure_skips_entity_and_keeps_timestamp(self, db_session, seed_data, monkeypatch):
        first = await run_batch(db_session)
        assert first.succeeded
        last = await get_last_batch_time(db_session)

        original = batch_recalculation.recalculate_and_save

        async def failing_for_bck(db, entity_type, entity_id, now=None):
            if entity_type == "bck":
                raise RuntimeError("kitchen record locked")
            return await original(db, entity_type, entity_id, now)

        monkeypatch.setattr(batch_recalculation, "recalculate_and_save", failing_for_bck)
        second = await run_batch(db_session, now=utcnow() + timedelta(hours=7))

        assert not second.succeeded
        assert second.recalculated == {"supplier": 1, "bck": 0, "branch": 1}
        assert second.failures[0]["entity_type"] == "bck"
        assert await get_last_batch_time(db_session) == last


class TestBackgroundLaunch:

    async def test_stale_scores_start_a_batch_without_waiting(self, db_session, seed_data, monkeypatch):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_batch():
            started.set()
            await release.wait()

        monkeypatch.setattr(batch_recalculation, "_run_batch_in_background", slow_batch)

        assert await check_and_run_batch_if_needed(db_session) is True
        await asyncio.wait_for(started.wait(), timeout=1)
        assert batch_recalculation.batch_in_progress()

        # A second dashboard load while the batch runs does not start another
        assert await check_and_run_batch_if_needed(db_session) is False

        release.set()
        await batch_recalculation._background_batch
        assert not batch_recalculation.batch_in_progress()

    async def test_fresh_scores_start_nothing(self, db_session, seed_data, monkeypatch):
        await run_batch(db_session)

        async def unexpected():
            raise AssertionError("batch should not run")

        monkeypatch.setattr(batch_recalculation, "_run_batch_in_background", unexpected)
        assert await check_and_run_batch_if_needed(db_session) is False

    async def test_background_batch_uses_its_own_session(self, session_factory, db_session, seed_data, monkeypatch):
        monkeypatch.setattr(batch_recalculation, "AsyncSessionLocal", session_factory)

        assert await check_and_run_batch_if_needed(db_session) is True
        await db_session.commit()
        await batch_recalculation._background_batch

        async with session_factory() as fresh:
            assert await get_last_batch_time(fresh) is not None

    async def test_concurrent_stale_checks_launch_one_batch(self, db_session, monkeypatch):
        launches = []
        release = asyncio.Event()

        async def stale(db, now=None):
            await asyncio.sleep(0)
            return True

        async def slow_batch():
            launches.append(True)
            await release.wait()

        monkeypatch.setattr(batch_recalculation, "is_batch_stale", stale)
        monkeypatch.setattr(batch_recalculation, "_run_batch_in_background", slow_batch)

        started = await asyncio.gather(
            check_and_run_batch_if_needed(db_session),
            check_and_run_batch_if_needed(db_session),
        )
        assert sorted(started) == [False, True]

        task = batch_recalculation._background_batch
        await asyncio.sleep(0)
        assert launches == [True]
        assert batch_recalculation._batch_tasks == {task}

        release.set()
        await task
        await asyncio.sleep(0)
        assert not batch_recalculation._batch_tasks
