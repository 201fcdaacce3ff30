"""Lottery state machine, payout, events and automation."""

from vrf_lottery.lottery.engine import Lottery
from vrf_lottery.lottery.errors import (
    InsufficientFee,
    InvalidRequest,
    LotteryError,
    LotteryNotOpen,
    PayoutFailed,
    UpkeepNotNeeded,
)
from vrf_lottery.lottery.models import LotteryConfig, LotteryState, UpkeepCheck

__all__ = [
    "Lottery",
    "LotteryConfig",
    "LotteryState",
    "UpkeepCheck",
    "LotteryError",
    "InsufficientFee",
    "LotteryNotOpen",
    "UpkeepNotNeeded",
    "InvalidRequest",
    "PayoutFailed",
]
