"""
backend/tests/test_settlement_scheduler.py

Purpose:
    The durable settlement tick: only due, unleased wagers are evaluated.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from betsettle.models.wager import WagerStatus
from betsettle.services import admission_service
from betsettle.utils import utcnow
from betsettle.workers import settlement_scheduler
from conftest import finished, leg, resolves_soon


async def _make_due(fake_db, wager, **schedule):
    fields = {"schedule.next_check_at": utcnow() - timedelta(seconds=1)}
    fields.update({f"schedule.{k}": v for k, v in schedule.items()})
    await fake_db.wagers.update_one({"_id": wager["_id"]}, {"$set": fields})


@pytest.mark.asyncio
async def test_tick_settles_due_wagers_only(fake_db, gateway):
    due = await admission_service.place_wager("owner-1", [leg(1)], 10.0, resolves_soon())
    later = await admission_service.place_wager("owner-1", [leg(2)], 10.0, resolves_soon())
    await _make_due(fake_db, due)
    gateway.set(1, finished(1, 1, 0))
    gateway.set(2, finished(2, 1, 0))

    counts = await settlement_scheduler.run_settlement_tick()

    assert counts == {"settled": 1}
    assert (await fake_db.wagers.find_one({"_id": due["_id"]}))["status"] == WagerStatus.won.value
    assert (await fake_db.wagers.find_one({"_id": later["_id"]}))["status"] == WagerStatus.pending.value


@pytest.mark.asyncio
async def test_tick_skips_leased_wagers(fake_db, gateway):
    wager = await admission_service.place_wager("owner-1", [leg(1)], 10.0, resolves_soon())
    await _make_due(
        fake_db, wager, lease_owner="other-worker", lease_until=utcnow() + timedelta(minutes=1),
    )
    gateway.set(1, finished(1, 1, 0))

    assert await settlement_scheduler.run_settlement_tick() == {}
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_tick_counts_failures_without_raising(fake_db, gateway, monkeypatch):
    wager = await admission_service.place_wager("owner-1", [leg(1)], 10.0, resolves_soon())
    await _make_due(fake_db, wager)

    async def _explode(_wager_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(settlement_scheduler.settlement_service, "evaluate_wager", _explode)

    assert await settlement_scheduler.run_settlement_tick() == {"failed": 1}


def test_arm_is_a_no_op_while_stopped():
    assert settlement_scheduler.scheduler.running is False

    settlement_scheduler.arm("64b7f0c2a1b2c3d4e5f60718", utcnow())

    assert settlement_scheduler.scheduler.get_job("settle:64b7f0c2a1b2c3d4e5f60718") is None
