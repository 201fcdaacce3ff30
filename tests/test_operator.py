"""Automation trigger polling."""

import asyncio

import pytest

from conftest import ENTRANCE_FEE, enter_all, make_ready
from vrf_lottery.lottery.models import LotteryState
from vrf_lottery.lottery.operator import AutomationTrigger


def test_poll_does_nothing_when_not_ready(lottery):
    trigger = AutomationTrigger(lottery)

    assert trigger.poll_once() is None

    status = trigger.get_status()
    assert status["checks"] == 1
    assert status["triggers"] == 0
    assert lottery.state == LotteryState.OPEN


def test_poll_triggers_draw_when_ready(lottery, clock, players):
    trigger = AutomationTrigger(lottery, {"automation": {"check_interval": "2.5"}})
    make_ready(lottery, clock, players[:2])

    request_id = trigger.poll_once()

    assert request_id == lottery.pending_request_id
    assert lottery.state == LotteryState.DRAWING
    assert trigger.check_interval == 2.5
    assert trigger.get_status()["last_request_id"] == request_id
    assert trigger.poll_once() is None


def test_stale_readiness_is_recorded_not_raised(lottery, clock, players, monkeypatch):
    trigger = AutomationTrigger(lottery)
    enter_all(lottery, players[:1])
    real_check = lottery.check_upkeep

    def stale_check(check_data=b""):
        return real_check(check_data)._replace(upkeep_needed=True)

    monkeypatch.setattr(lottery, "check_upkeep", stale_check)

    assert trigger.poll_once() is None
    status = trigger.get_status()
    assert status["consecutive_failures"] == 1
    assert "UpkeepNotNeeded" in status["last_error"]
    assert lottery.state == LotteryState.OPEN


@pytest.mark.asyncio
async def test_background_loop_triggers_draw(lottery, clock, players):
    trigger = AutomationTrigger(lottery, {"automation": {"check_interval": 0.01}})
    make_ready(lottery, clock, players[:3])

    await trigger.start()
    assert trigger.get_status()["status"] == "running"
    for _ in range(200):
        if lottery.state == LotteryState.DRAWING:
            break
        await asyncio.sleep(0.01)
    await trigger.stop()

    assert lottery.state == LotteryState.DRAWING
    assert trigger.get_status()["status"] == "stopped"
    assert trigger.get_status()["triggers"] == 1
    assert lottery.balance == 3 * ENTRANCE_FEE
