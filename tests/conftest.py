"""Shared fixtures: a lottery wired to an in-process coordinator on a manual clock."""

from __future__ import annotations

from typing import Callable, List

import pytest
from web3 import Web3

from vrf_lottery.blockchain.ledger import Ledger
from vrf_lottery.blockchain.vrf import VRFCoordinator
from vrf_lottery.lottery.engine import Lottery
from vrf_lottery.lottery.event_manager import EventStore
from vrf_lottery.lottery.models import LotteryConfig
from vrf_lottery.utils.clock import ManualClock

PROVIDER_KEY = "0x" + "4c" * 32
LOTTERY_ADDRESS = "0x00000000000000000000000000000000000000aa"
ENTRANCE_FEE = Web3.to_wei(0.01, "ether")
INTERVAL = 30
CONFIRMATIONS = 3


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ledger() -> Ledger:
    return Ledger()


@pytest.fixture
def coordinator() -> VRFCoordinator:
    return VRFCoordinator(PROVIDER_KEY)


@pytest.fixture
def store() -> EventStore:
    return EventStore()


@pytest.fixture
def players() -> List[str]:
    return [Web3.to_checksum_address("0x" + f"{i:x}" * 40) for i in range(1, 6)]


@pytest.fixture
def make_lottery(clock, ledger, coordinator, store) -> Callable[..., Lottery]:
    def _make(**overrides) -> Lottery:
        params = dict(
            entrance_fee=ENTRANCE_FEE,
            interval=INTERVAL,
            key_hash=coordinator.key_hash,
            subscription_id=1,
            callback_gas_limit=500_000,
            request_confirmations=CONFIRMATIONS,
        )
        params.update(overrides)
        return Lottery(LotteryConfig(**params), coordinator, ledger, LOTTERY_ADDRESS, store=store, clock=clock)

    return _make


@pytest.fixture
def lottery(make_lottery) -> Lottery:
    return make_lottery()


@pytest.fixture
def collected(store):
    """Every event dispatched by the store, in order, as (type, payload)."""
    events = []
    for name in ("Entered", "DrawTriggered", "WinnerPicked"):
        store.add_listener(name, lambda payload, name=name: events.append((name, payload)))
    return events


def enter_all(lottery: Lottery, players: List[str]) -> None:
    for player in players:
        lottery.enter(player, lottery.entrance_fee)


def make_ready(lottery: Lottery, clock: ManualClock, players: List[str]) -> None:
    enter_all(lottery, players)
    clock.advance(lottery.interval + 1)
