"""
Automation trigger for the lottery.

Polls the lottery's readiness predicate on a fixed interval and starts a draw
when it reports ready. The lottery re-validates on every trigger, so a poll
that went stale before the trigger landed is only logged and counted.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from vrf_lottery.lottery.engine import Lottery
from vrf_lottery.lottery.errors import UpkeepNotNeeded
from vrf_lottery.lottery.models import OperatorStatus
from vrf_lottery.utils.config import get_config_value
from vrf_lottery.utils.logger import get_logger

logger = get_logger(__name__)


class AutomationTrigger:
    """Poll/execute loop over `check_upkeep` and `perform_upkeep`."""

    def __init__(self, lottery: Lottery, config: Optional[Dict[str, Any]] = None) -> None:
        self._lottery = lottery
        self._check_interval = float(get_config_value(config or {}, "automation.check_interval", 10.0))
        self._status = OperatorStatus()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def check_interval(self) -> float:
        return self._check_interval

    def poll_once(self) -> Optional[int]:
        """Run one check; trigger the draw when ready. Returns the request id, if any."""
        self._status.record_check()
        check = self._lottery.check_upkeep(b"")
        if not check.upkeep_needed:
            return None

        try:
            request_id = self._lottery.perform_upkeep(check.perform_data)
        except UpkeepNotNeeded as exc:
            # readiness changed between the check and the trigger
            self._status.record_failure(str(exc))
            logger.warning("Upkeep reported ready but trigger was rejected: %s", exc)
            return None

        self._status.record_trigger(request_id)
        logger.info("Automation triggered draw, randomness request %s", request_id)
        return request_id

    async def start(self) -> None:
        """Start the background polling loop."""
        if self._task:
            logger.warning("Automation trigger already running")
            return
        self._stop_event = asyncio.Event()
        self._status.is_running = True
        self._task = asyncio.create_task(self._poll_loop(), name="automation-trigger")
        logger.info("Automation trigger started (every %ss)", self._check_interval)

    async def stop(self) -> None:
        """Stop the loop and wait for it to finish."""
        if not self._task:
            return
        logger.info("Stopping automation trigger")
        assert self._stop_event is not None
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._status.is_running = False
        logger.info("Automation trigger stopped")

    async def _poll_loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as exc:
                self._status.record_failure(str(exc))
                logger.error("Automation poll failed: %s", exc)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._check_interval)
                break
            except asyncio.TimeoutError:
                continue

    def get_status(self) -> Dict[str, Any]:
        status = self._status.to_dict()
        status["check_interval"] = self._check_interval
        return status
