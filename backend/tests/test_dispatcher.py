"""
Tests for the Dispatcher — idempotent task enqueueing, first-sync backfill, forced requeue.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from conftest import NOW, TODAY, FakeRegistry, seed_metrics, video_rows
from core.errors import UnknownJobTypeError
from db.models import JobTask
from integrations.base import ChannelTarget
from workers.dispatcher import Dispatcher, clamp_backfill_weeks, dedupe_key, weekly_run_dates

TARGETS = [ChannelTarget("tenant-a", "UC_a"), ChannelTarget("tenant-b", "UC_b")]


async def _tasks(db) -> list[JobTask]:
    async with db.session() as session:
        result = await session.execute(select(JobTask).order_by(JobTask.id))
        return list(result.scalars().all())


async def _with_history(db, targets=TARGETS):
    """Channels that already synced once skip the first-sync backfill."""
    for target in targets:
        await seed_metrics(
            db,
            video_rows(TODAY - timedelta(days=1), 1, {"v1": 1.0}),
            tenant_id=target.tenant_id,
            channel_id=target.channel_id,
        )


class TestDispatcher:
    def test_dedupe_key(self):
        assert dedupe_key("t1", "daily_channel", "UC_x", TODAY) == "t1:daily_channel:UC_x:2026-03-15"

    async def test_dispatch_creates_pending_tasks(self, db):
        await _with_history(db)
        registry = FakeRegistry(TARGETS)
        result = await Dispatcher(db, registry).dispatch("daily_channel", NOW)

        assert result.candidates == 2
        assert result.run_for_dt == TODAY
        assert result.as_dict() == {
            "job_type": "daily_channel",
            "run_for_dt": "2026-03-15",
            "candidates": 2,
            "enqueued": 2,
        }
        assert registry.calls == ["daily_channel"]

        tasks = await _tasks(db)
        assert [t.dedupe_key for t in tasks] == [
            "tenant-a:daily_channel:UC_a:2026-03-15",
            "tenant-b:daily_channel:UC_b:2026-03-15",
        ]
        for task in tasks:
            assert task.status == "pending"
            assert task.attempt == 0
            assert task.max_attempt == 3
            assert task.run_after == NOW
            assert task.run_for_dt == TODAY

    async def test_redispatch_is_idempotent(self, db):
        await _with_history(db)
        dispatcher = Dispatcher(db, FakeRegistry(TARGETS))
        await dispatcher.dispatch("daily_channel", NOW)
        later = NOW + timedelta(minutes=30)
        await dispatcher.dispatch("daily_channel", later)

        tasks = await _tasks(db)
        assert len(tasks) == 2
        assert all(t.updated_at == later for t in tasks)
        assert all(t.run_after == NOW for t in tasks)

    async def test_redispatch_does_not_reopen_finished_tasks(self, db):
        await _with_history(db, TARGETS[:1])
        dispatcher = Dispatcher(db, FakeRegistry(TARGETS[:1]))
        await dispatcher.dispatch("daily_channel", NOW)
        async with db.session() as session:
            await session.execute(update(JobTask).values(status="dead", attempt=3, last_error="boom"))
            await session.commit()

        await dispatcher.dispatch("daily_channel", NOW + timedelta(minutes=5))

        (task,) = await _tasks(db)
        assert (task.status, task.attempt, task.last_error) == ("dead", 3, "boom")

    async def test_next_day_gets_new_task(self, db):
        await _with_history(db, TARGETS[:1])
        dispatcher = Dispatcher(db, FakeRegistry(TARGETS[:1]))
        await dispatcher.dispatch("daily_channel", NOW)
        await dispatcher.dispatch("daily_channel", NOW + timedelta(days=1))

        assert [t.run_for_dt for t in await _tasks(db)] == [TODAY, TODAY + timedelta(days=1)]

    async def test_job_types_do_not_collide(self, db):
        await _with_history(db, TARGETS[:1])
        dispatcher = Dispatcher(db, FakeRegistry(TARGETS[:1]))
        await dispatcher.dispatch("daily_channel", NOW)
        await dispatcher.dispatch("weekly_channel", NOW)

        assert [t.job_type for t in await _tasks(db)] == ["daily_channel", "weekly_channel"]

    async def test_no_channels(self, db):
        result = await Dispatcher(db, FakeRegistry([])).dispatch("weekly_channel", NOW)
        assert (result.candidates, result.enqueued) == (0, 0)
        assert await _tasks(db) == []

    async def test_unknown_job_type(self, db):
        with pytest.raises(UnknownJobTypeError, match="unknown job_type: monthly_channel"):
            await Dispatcher(db, FakeRegistry(TARGETS)).dispatch("monthly_channel", NOW)
        assert await _tasks(db) == []

    async def test_aware_now_uses_utc_business_date(self, db):
        await _with_history(db, TARGETS[:1])
        # 2026-03-15 20:30 in UTC-5 is already 2026-03-16 in UTC.
        evening = datetime(2026, 3, 15, 20, 30, tzinfo=timezone(timedelta(hours=-5)))

        result = await Dispatcher(db, FakeRegistry(TARGETS[:1])).dispatch("daily_channel", evening)

        assert result.run_for_dt == TODAY + timedelta(days=1)
        (task,) = await _tasks(db)
        assert task.run_after == datetime(2026, 3, 16, 1, 30)


class TestBackfill:
    def test_clamp_backfill_weeks(self):
        assert clamp_backfill_weeks(None) == 0
        assert clamp_backfill_weeks(-3) == 0
        assert clamp_backfill_weeks(8) == 8
        assert clamp_backfill_weeks(500) == 52

    def test_weekly_run_dates_newest_first(self):
        assert weekly_run_dates(TODAY, 3) == [TODAY, TODAY - timedelta(days=7), TODAY - timedelta(days=14)]
        assert weekly_run_dates(TODAY, 0) == [TODAY]

    async def test_first_sync_enqueues_four_weeks(self, db):
        await _with_history(db, TARGETS[1:])

        result = await Dispatcher(db, FakeRegistry(TARGETS)).dispatch("daily_channel", NOW)

        assert (result.candidates, result.enqueued) == (2, 5)
        tasks = await _tasks(db)
        new_channel = [t.run_for_dt for t in tasks if t.channel_id == "UC_a"]
        assert new_channel == [TODAY - timedelta(days=7 * i) for i in range(4)]
        assert [t.run_for_dt for t in tasks if t.channel_id == "UC_b"] == [TODAY]

    async def test_explicit_backfill_weeks(self, db):
        await _with_history(db, TARGETS[:1])

        result = await Dispatcher(db, FakeRegistry(TARGETS[:1])).dispatch("daily_channel", NOW, backfill_weeks=6)

        assert result.enqueued == 6
        assert [t.run_for_dt for t in await _tasks(db)] == weekly_run_dates(TODAY, 6)

    async def test_weekly_job_is_never_backfilled(self, db):
        result = await Dispatcher(db, FakeRegistry(TARGETS[:1])).dispatch("weekly_channel", NOW, backfill_weeks=6)

        assert result.enqueued == 1
        assert [t.run_for_dt for t in await _tasks(db)] == [TODAY]

    async def test_backfill_redispatch_is_idempotent(self, db):
        dispatcher = Dispatcher(db, FakeRegistry(TARGETS[:1]))
        await dispatcher.dispatch("daily_channel", NOW)
        await dispatcher.dispatch("daily_channel", NOW + timedelta(minutes=10))

        assert len(await _tasks(db)) == 4


class TestForce:
    async def test_force_requeues_finished_tasks(self, db):
        await _with_history(db)
        dispatcher = Dispatcher(db, FakeRegistry(TARGETS))
        await dispatcher.dispatch("daily_channel", NOW)
        async with db.session() as session:
            await session.execute(
                update(JobTask)
                .where(JobTask.channel_id == "UC_a")
                .values(status="dead", attempt=3, last_error="boom", run_after=NOW + timedelta(hours=1))
            )
            await session.execute(
                update(JobTask).where(JobTask.channel_id == "UC_b").values(status="succeeded", attempt=1)
            )
            await session.commit()

        later = NOW + timedelta(minutes=5)
        result = await dispatcher.dispatch("daily_channel", later, force=True)

        assert result.enqueued == 2
        for task in await _tasks(db):
            assert (task.status, task.attempt, task.last_error) == ("pending", 0, None)
            assert task.run_after == later
            assert task.locked_by is None

    async def test_force_leaves_running_tasks_alone(self, db):
        await _with_history(db, TARGETS[:1])
        dispatcher = Dispatcher(db, FakeRegistry(TARGETS[:1]))
        await dispatcher.dispatch("daily_channel", NOW)
        async with db.session() as session:
            await session.execute(update(JobTask).values(status="running", attempt=1, locked_by="w1", locked_at=NOW))
            await session.commit()

        later = NOW + timedelta(minutes=5)
        await dispatcher.dispatch("daily_channel", later, force=True)

        (task,) = await _tasks(db)
        assert (task.status, task.attempt, task.locked_by, task.locked_at) == ("running", 1, "w1", NOW)
        assert task.updated_at == later
