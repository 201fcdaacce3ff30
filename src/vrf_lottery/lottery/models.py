"""Core data models for the lottery."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import IntEnum
from typing import Any, Dict, NamedTuple, Optional, Tuple

from web3 import Web3

from vrf_lottery.utils.config import get_config_value

NUM_WORDS = 1

_KEY_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class LotteryState(IntEnum):
    """Lottery states. OPEN accepts entries, DRAWING waits on randomness."""

    OPEN = 0
    DRAWING = 1


class UpkeepCheck(NamedTuple):
    """Result of the readiness predicate."""

    upkeep_needed: bool
    perform_data: bytes


@dataclass(frozen=True)
class LotteryConfig:
    """Construction-time configuration; never mutated afterwards."""

    entrance_fee: int
    interval: int
    key_hash: str
    subscription_id: int
    callback_gas_limit: int
    request_confirmations: int = 3

    def __post_init__(self) -> None:
        if not isinstance(self.entrance_fee, int) or self.entrance_fee <= 0:
            raise ValueError(f"entrance_fee must be a positive wei amount, got {self.entrance_fee!r}")
        if not isinstance(self.interval, int) or self.interval < 0:
            raise ValueError(f"interval must be a non-negative number of seconds, got {self.interval!r}")
        if not isinstance(self.key_hash, str) or not _KEY_HASH_RE.match(self.key_hash):
            raise ValueError(f"key_hash must be a 0x-prefixed 32-byte hex string, got {self.key_hash!r}")
        if self.subscription_id < 0:
            raise ValueError("subscription_id must be non-negative")
        if self.callback_gas_limit <= 0:
            raise ValueError("callback_gas_limit must be positive")
        if self.request_confirmations < 0:
            raise ValueError("request_confirmations must be non-negative")

    @classmethod
    def from_config(cls, config: Dict[str, Any], default_key_hash: Optional[str] = None) -> "LotteryConfig":
        """Build from the loaded config dict; values may be strings from the environment."""
        raw_fee = get_config_value(config, "lottery.entrance_fee", "0.01")
        try:
            entrance_fee = int(Web3.to_wei(Decimal(str(raw_fee)), "ether"))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"Invalid lottery.entrance_fee {raw_fee!r}: {exc}") from exc

        key_hash = get_config_value(config, "vrf.key_hash") or default_key_hash
        if key_hash is None:
            raise ValueError("vrf.key_hash is not configured and no provider key hash is available")

        return cls(
            entrance_fee=entrance_fee,
            interval=int(get_config_value(config, "lottery.interval", 30)),
            key_hash=str(key_hash),
            subscription_id=int(get_config_value(config, "vrf.subscription_id", 1)),
            callback_gas_limit=int(get_config_value(config, "vrf.callback_gas_limit", 500000)),
            request_confirmations=int(get_config_value(config, "vrf.request_confirmations", 3)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entranceFeeWei": self.entrance_fee,
            "entranceFeeEth": str(Web3.from_wei(self.entrance_fee, "ether")),
            "interval": self.interval,
            "keyHash": self.key_hash,
            "subscriptionId": self.subscription_id,
            "callbackGasLimit": self.callback_gas_limit,
            "requestConfirmations": self.request_confirmations,
            "numWords": NUM_WORDS,
        }


@dataclass(frozen=True)
class LotterySnapshot:
    """Point-in-time view of the lottery."""

    state: LotteryState
    participants: Tuple[str, ...]
    balance: int
    last_timestamp: int
    pending_request_id: Optional[int]
    recent_winner: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "stateLabel": self.state.name,
            "participants": list(self.participants),
            "participantCount": len(self.participants),
            "balanceWei": self.balance,
            "lastTimestamp": self.last_timestamp,
            "pendingRequestId": self.pending_request_id,
            "recentWinner": self.recent_winner,
        }


@dataclass
class RoundSnapshot:
    """Historical record of a completed draw cycle."""

    round_number: int
    request_id: int
    winner: str
    prize: int
    participant_count: int
    random_word: int
    finished_at: int


@dataclass
class LiveFeedItem:
    """Entry pushed to the activity feed."""

    event_type: str
    message: str
    details: Dict[str, Any]
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class OperatorStatus:
    """Operational counters for the automation trigger."""

    is_running: bool = False
    checks: int = 0
    triggers: int = 0
    consecutive_failures: int = 0
    last_check: Optional[datetime] = None
    last_trigger: Optional[datetime] = None
    last_request_id: Optional[int] = None
    last_error: Optional[str] = None

    def record_check(self) -> None:
        self.checks += 1
        self.last_check = datetime.utcnow()

    def record_trigger(self, request_id: int) -> None:
        self.triggers += 1
        self.last_trigger = datetime.utcnow()
        self.last_request_id = request_id
        self.consecutive_failures = 0
        self.last_error = None

    def record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        self.last_error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "running" if self.is_running else "stopped",
            "checks": self.checks,
            "triggers": self.triggers,
            "consecutive_failures": self.consecutive_failures,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_trigger": self.last_trigger.isoformat() if self.last_trigger else None,
            "last_request_id": self.last_request_id,
            "last_error": self.last_error,
        }
