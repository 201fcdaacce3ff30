"""
Lottery errors.

A small typed hierarchy raised by the lottery state machine. Callers can catch
the base `LotteryError` to handle every rejection, or the concrete subclasses
for finer control. Each error carries a stable `code` and a `to_dict()`
payload so the HTTP layer can report the diagnostic values unchanged.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from vrf_lottery.lottery.models import LotteryState


class LotteryError(Exception):
    """Base class for all lottery errors."""

    code = "lottery_error"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": str(self)}
        if hasattr(self, "__dataclass_fields__"):
            for key, value in asdict(self).items():
                payload[key] = value.name if isinstance(value, LotteryState) else value
        return payload


@dataclass(eq=False)
class InsufficientFee(LotteryError):
    """
    Raised when an entry pays less than the entrance fee.

    Attributes:
        amount_paid: Wei sent with the entry.
        entrance_fee: Wei required.
    """
    amount_paid: int
    entrance_fee: int

    code = "insufficient_fee"

    def __str__(self) -> str:
        return f"InsufficientFee: paid {self.amount_paid} wei, entrance fee is {self.entrance_fee} wei"


@dataclass(eq=False)
class LotteryNotOpen(LotteryError):
    """Raised when an entry arrives while a draw is in progress."""
    state: LotteryState

    code = "lottery_not_open"

    def __str__(self) -> str:
        return f"LotteryNotOpen: lottery is {LotteryState(self.state).name}"


@dataclass(eq=False)
class UpkeepNotNeeded(LotteryError):
    """
    Raised when a draw is triggered while the readiness predicate is false.

    Attributes:
        balance: Current pool balance in wei.
        num_players: Current participant count.
        state: Current lottery state.
    """
    balance: int
    num_players: int
    state: LotteryState

    code = "upkeep_not_needed"

    def __str__(self) -> str:
        return (
            f"UpkeepNotNeeded: balance={self.balance} num_players={self.num_players} "
            f"state={LotteryState(self.state).name}"
        )


@dataclass(eq=False)
class InvalidRequest(LotteryError):
    """
    Raised when randomness arrives for an identifier that is not the pending one.

    Attributes:
        request_id: Identifier supplied by the caller.
        expected: Pending identifier, or None when no draw is in progress.
        reason: Short explanation ('unknown-request', 'not-drawing', 'no-words').
    """
    request_id: int
    expected: Optional[int]
    reason: str = "unknown-request"

    code = "invalid_request"

    def __str__(self) -> str:
        return f"InvalidRequest: request_id={self.request_id} expected={self.expected} reason={self.reason}"


@dataclass(eq=False)
class PayoutFailed(LotteryError):
    """
    Raised when the transfer of the pool to the winner fails. The draw is
    rolled back and the lottery stays DRAWING.

    Attributes:
        winner: Selected winner.
        amount: Wei that could not be transferred.
        reason: Underlying transfer failure.
    """
    winner: str
    amount: int
    reason: Optional[str] = None

    code = "payout_failed"

    def __str__(self) -> str:
        base = f"PayoutFailed: could not transfer {self.amount} wei to {self.winner}"
        return f"{base} ({self.reason})" if self.reason else base


__all__ = [
    "LotteryError",
    "InsufficientFee",
    "LotteryNotOpen",
    "UpkeepNotNeeded",
    "InvalidRequest",
    "PayoutFailed",
]
