#!/usr/bin/env python3
"""
VRF Lottery Application

Main entry point for the lottery service: builds the ledger, the randomness
coordinator, the lottery and its automation trigger, then serves the HTTP and
WebSocket API until a shutdown signal arrives.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from vrf_lottery.blockchain.ledger import Ledger
from vrf_lottery.blockchain.vrf import VRFCoordinator
from vrf_lottery.lottery.engine import Lottery
from vrf_lottery.lottery.event_manager import EventStore
from vrf_lottery.lottery.models import LotteryConfig
from vrf_lottery.lottery.operator import AutomationTrigger
from vrf_lottery.utils.common import derive_holding_address
from vrf_lottery.utils.config import as_bool, get_config_value, load_config
from vrf_lottery.utils.logger import get_logger
from vrf_lottery.web_server import LotteryWebServer

logger = get_logger(__name__)


def build_components(config: Dict[str, Any], clock=None) -> Dict[str, Any]:
    """Wire ledger, coordinator, event store, lottery and trigger from a config dict."""
    ledger = Ledger()
    coordinator = VRFCoordinator(get_config_value(config, "vrf.private_key"))
    store = EventStore(
        feed_capacity=int(get_config_value(config, "event_manager.live_feed_max_entries", 100)),
        history_capacity=int(get_config_value(config, "event_manager.round_history_max", 20)),
    )
    lottery_config = LotteryConfig.from_config(config, default_key_hash=coordinator.key_hash)
    address = get_config_value(config, "lottery.address") or derive_holding_address(coordinator.address)

    lottery = Lottery(lottery_config, coordinator, ledger, address, store=store, clock=clock)
    trigger = AutomationTrigger(lottery, config)
    return {
        "ledger": ledger,
        "coordinator": coordinator,
        "store": store,
        "lottery": lottery,
        "trigger": trigger,
    }


class LotteryApp:
    """Lottery service application.

    Responsible for initializing and orchestrating the randomness coordinator,
    the automation trigger and the FastAPI web server. Handles graceful
    shutdown and logs a short startup summary for diagnostics.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else load_config()
        self.ledger: Optional[Ledger] = None
        self.coordinator: Optional[VRFCoordinator] = None
        self.lottery: Optional[Lottery] = None
        self.trigger: Optional[AutomationTrigger] = None
        self.web_server: Optional[LotteryWebServer] = None
        self.running = True

        logger.info("VRF Lottery application initialized")

    def _display_config_summary(self):
        """Display key configuration options for diagnostics."""
        logger.info("=" * 60)
        logger.info("CONFIGURATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Entrance fee: {get_config_value(self.config, 'lottery.entrance_fee')} ETH")
        logger.info(f"Interval: {get_config_value(self.config, 'lottery.interval')}s")
        logger.info(f"Subscription: {get_config_value(self.config, 'vrf.subscription_id')}")
        logger.info(f"Confirmations: {get_config_value(self.config, 'vrf.request_confirmations')}")
        logger.info(f"Block time: {get_config_value(self.config, 'vrf.block_time')}s")
        logger.info(f"Automation: {get_config_value(self.config, 'automation.enabled')} "
                    f"(every {get_config_value(self.config, 'automation.check_interval')}s)")
        logger.info(f"Server: {get_config_value(self.config, 'server.host')}:{get_config_value(self.config, 'server.port')}")
        logger.info("=" * 60)

    def initialize(self):
        """Build all components from the loaded configuration."""
        self._display_config_summary()

        components = build_components(self.config)
        self.ledger = components["ledger"]
        self.coordinator = components["coordinator"]
        self.lottery = components["lottery"]
        self.trigger = components["trigger"]
        self.web_server = LotteryWebServer(self.config, self.lottery, self.ledger, self.coordinator, self.trigger)

        logger.info("Application initialization completed")

    async def start(self):
        """Start services and run until a shutdown signal is received."""
        try:
            self.initialize()
            assert self.coordinator and self.trigger and self.web_server

            await self.coordinator.start(float(get_config_value(self.config, "vrf.block_time", 2.0)))
            if as_bool(get_config_value(self.config, "automation.enabled", True)):
                await self.trigger.start()
            else:
                logger.info("Automation disabled; draws must be triggered through the API")

            server_host = get_config_value(self.config, "server.host", "0.0.0.0")
            server_port = int(get_config_value(self.config, "server.port", 6080))

            server_task = asyncio.create_task(self.web_server.start(host=server_host, port=server_port))
            # give the server a moment to bind; a bind failure finishes the task
            await asyncio.sleep(0.2)
            if server_task.done() and server_task.exception():
                exc = server_task.exception()
                logger.error(f"Web server task failed during startup: {exc}")
                raise exc

            self._display_startup_summary(server_host, server_port)

            while self.running and not server_task.done():
                await asyncio.sleep(1)

            logger.info("Shutdown signal received, stopping application...")
        finally:
            await self.stop()

    async def stop(self):
        """Stop all services."""
        logger.info("Stopping VRF Lottery application")
        self.running = False

        if self.trigger:
            try:
                await self.trigger.stop()
            except Exception as e:
                logger.error(f"Error stopping automation trigger: {e}")

        if self.coordinator:
            try:
                await self.coordinator.stop()
            except Exception as e:
                logger.error(f"Error stopping randomness coordinator: {e}")

        if self.web_server:
            try:
                await self.web_server.stop()
            except Exception as e:
                logger.error(f"Error stopping web server: {e}")

        logger.info("VRF Lottery application stopped")

    def _display_startup_summary(self, host: str, port: int):
        assert self.lottery and self.coordinator
        logger.info("=" * 60)
        logger.info("VRF LOTTERY STARTED")
        logger.info("=" * 60)
        logger.info(f"Lottery address: {self.lottery.address}")
        logger.info(f"Randomness provider: {self.coordinator.address}")
        logger.info(f"Key hash: {self.coordinator.key_hash}")
        logger.info(f"API: http://{host}:{port}/api/")
        logger.info(f"WebSocket: ws://{host}:{port}/ws/lottery")
        logger.info("=" * 60)

    def _handle_signal(self, signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.running = False


async def main(config_file: Optional[str] = None):
    """Main entry point for the lottery service"""
    load_dotenv(Path.cwd() / ".env")
    app = LotteryApp(load_config(config_file))

    signal.signal(signal.SIGINT, app._handle_signal)
    signal.signal(signal.SIGTERM, app._handle_signal)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
    except Exception as e:
        logger.exception(f"Application failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
