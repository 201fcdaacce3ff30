"""
Lottery Engine - the entry, readiness, draw and payout state machine.

One instance owns the participant list, the pool (through its treasury), the
timing and the OPEN/DRAWING state. Every public operation runs to completion
under a single re-entrant lock; the state field itself is the draw mutex.

Winner selection is `random_words[0] % len(participants)`. For participant
counts that are not a power of two this is slightly biased toward low
indices; that is the accepted fairness rule and is kept so the same random
word always selects the same winner.

Settlement is finalize-then-pay: every bookkeeping change is committed before
the pool leaves the treasury, so a recipient that calls back in during the
transfer sees an OPEN, empty lottery. It may enter, but no new draw can start
until the transfer completes. If the transfer fails, the checkpoint taken
before finalizing is restored and nothing from the callback survives.
"""

from __future__ import annotations

from dataclasses import dataclass
from threading import RLock
from typing import Dict, List, Optional, Sequence, Tuple

from vrf_lottery.blockchain.ledger import Ledger, TransferError
from vrf_lottery.blockchain.vrf import VRFCoordinator
from vrf_lottery.lottery.errors import (
    InsufficientFee,
    InvalidRequest,
    LotteryNotOpen,
    PayoutFailed,
    UpkeepNotNeeded,
)
from vrf_lottery.lottery.event_manager import (
    EVENT_DRAW_TRIGGERED,
    EVENT_ENTERED,
    EVENT_WINNER_PICKED,
    EventStore,
)
from vrf_lottery.lottery.models import (
    NUM_WORDS,
    LotteryConfig,
    LotterySnapshot,
    LotteryState,
    UpkeepCheck,
)
from vrf_lottery.lottery.treasury import Treasury
from vrf_lottery.utils.clock import SystemClock
from vrf_lottery.utils.common import normalize_address
from vrf_lottery.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Checkpoint:
    state: LotteryState
    participants: Tuple[str, ...]
    last_timestamp: int
    pending_request_id: Optional[int]
    recent_winner: Optional[str]
    balances: Dict[str, int]


class Lottery:
    """Single-winner, time-gated lottery driven by external randomness."""

    def __init__(
        self,
        config: LotteryConfig,
        coordinator: VRFCoordinator,
        ledger: Ledger,
        address: str,
        *,
        store: Optional[EventStore] = None,
        clock=None,
    ) -> None:
        self.config = config
        self.address = normalize_address(address)
        self._coordinator = coordinator
        self._ledger = ledger
        self._treasury = Treasury(ledger, self.address)
        self._store = store or EventStore()
        self._clock = clock or SystemClock()
        self._lock = RLock()

        self._state = LotteryState.OPEN
        self._participants: List[str] = []
        self._last_timestamp = self._clock.now()
        self._pending_request_id: Optional[int] = None
        self._recent_winner: Optional[str] = None
        # set while the pool is in flight to the winner
        self._settling = False

        logger.info(
            "Lottery %s initialized: entrance fee %s wei, interval %ss",
            self.address, config.entrance_fee, config.interval,
        )

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def entrance_fee(self) -> int:
        return self.config.entrance_fee

    @property
    def interval(self) -> int:
        return self.config.interval

    @property
    def state(self) -> LotteryState:
        return self._state

    @property
    def participants(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._participants)

    @property
    def num_players(self) -> int:
        return len(self._participants)

    def get_player(self, index: int) -> str:
        with self._lock:
            return self._participants[index]

    @property
    def last_timestamp(self) -> int:
        return self._last_timestamp

    @property
    def pending_request_id(self) -> Optional[int]:
        return self._pending_request_id

    @property
    def recent_winner(self) -> Optional[str]:
        return self._recent_winner

    @property
    def balance(self) -> int:
        return self._treasury.balance

    @property
    def store(self) -> EventStore:
        return self._store

    def snapshot(self) -> LotterySnapshot:
        with self._lock:
            return LotterySnapshot(
                state=self._state,
                participants=tuple(self._participants),
                balance=self._treasury.balance,
                last_timestamp=self._last_timestamp,
                pending_request_id=self._pending_request_id,
                recent_winner=self._recent_winner,
            )

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------
    def enter(self, entrant: str, amount_paid: int) -> None:
        entrant = normalize_address(entrant)
        with self._lock, self._store.batch():
            if amount_paid < self.config.entrance_fee:
                logger.warning("Entry from %s rejected: paid %s wei", entrant, amount_paid)
                raise InsufficientFee(amount_paid, self.config.entrance_fee)
            if self._state != LotteryState.OPEN:
                logger.warning("Entry from %s rejected: lottery is %s", entrant, self._state.name)
                raise LotteryNotOpen(self._state)

            self._treasury.receive(entrant, amount_paid)
            self._participants.append(entrant)
            self._store.emit(EVENT_ENTERED, {"entrant": entrant, "amount": amount_paid})
            logger.info("%s entered (%d participants)", entrant, len(self._participants))

    # ------------------------------------------------------------------
    # Readiness and draw trigger
    # ------------------------------------------------------------------
    def _upkeep_needed(self) -> bool:
        # a request issued during the payout could not be withdrawn if the payout is rolled back
        if self._settling:
            return False
        is_open = self._state == LotteryState.OPEN
        time_passed = self._clock.now() - self._last_timestamp >= self.config.interval
        has_players = len(self._participants) > 0
        has_balance = self._treasury.balance > 0
        return is_open and time_passed and has_players and has_balance

    def check_upkeep(self, check_data: bytes = b"") -> UpkeepCheck:
        """Read-only readiness predicate; `check_data` is echoed back as perform data."""
        with self._lock:
            return UpkeepCheck(self._upkeep_needed(), check_data)

    def perform_upkeep(self, perform_data: bytes = b"") -> int:
        """Start a draw. Readiness is re-checked here regardless of what the caller saw."""
        with self._lock, self._store.batch():
            if not self._upkeep_needed():
                raise UpkeepNotNeeded(self._treasury.balance, len(self._participants), self._state)

            self._state = LotteryState.DRAWING
            try:
                request_id = self._coordinator.request_random_words(
                    consumer=self,
                    key_hash=self.config.key_hash,
                    subscription_id=self.config.subscription_id,
                    request_confirmations=self.config.request_confirmations,
                    callback_gas_limit=self.config.callback_gas_limit,
                    num_words=NUM_WORDS,
                )
            except Exception:
                self._state = LotteryState.OPEN
                logger.exception("Randomness request failed; lottery reopened")
                raise

            self._pending_request_id = request_id
            self._store.emit(EVENT_DRAW_TRIGGERED, {"requestId": request_id})
            logger.info("Draw triggered with %d participants, request %s", len(self._participants), request_id)
            return request_id

    # ------------------------------------------------------------------
    # Randomness callback
    # ------------------------------------------------------------------
    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> str:
        with self._lock, self._store.batch():
            if self._state != LotteryState.DRAWING or self._pending_request_id is None:
                logger.warning("Randomness for request %s rejected: no draw in progress", request_id)
                raise InvalidRequest(request_id, None, "not-drawing")
            if request_id != self._pending_request_id:
                logger.warning(
                    "Randomness for request %s rejected: pending request is %s",
                    request_id, self._pending_request_id,
                )
                raise InvalidRequest(request_id, self._pending_request_id)
            if not random_words:
                raise InvalidRequest(request_id, self._pending_request_id, "no-words")

            random_word = int(random_words[0])
            participants = tuple(self._participants)
            winner = participants[random_word % len(participants)]
            amount = self._treasury.balance
            checkpoint = self._checkpoint()

            self._finalize(winner)
            # queued ahead of anything the winner does during the transfer; dropped with the batch on failure
            self._store.emit(EVENT_WINNER_PICKED, {
                "winner": winner,
                "amount": amount,
                "requestId": request_id,
                "randomWord": str(random_word),
                "participantCount": len(participants),
                "timestamp": self._last_timestamp,
            })
            self._settling = True
            try:
                self._treasury.pay(winner, amount)
            except TransferError as exc:
                self._restore(checkpoint)
                logger.error("Payout of %s wei to %s failed, draw %s rolled back: %s",
                             amount, winner, request_id, exc.reason)
                raise PayoutFailed(winner, amount, exc.reason) from exc
            finally:
                self._settling = False

            logger.info("Winner picked for request %s: %s won %s wei", request_id, winner, amount)
            return winner

    def _finalize(self, winner: str) -> None:
        self._recent_winner = winner
        self._participants = []
        self._last_timestamp = self._clock.now()
        self._state = LotteryState.OPEN
        self._pending_request_id = None

    def _checkpoint(self) -> _Checkpoint:
        return _Checkpoint(
            state=self._state,
            participants=tuple(self._participants),
            last_timestamp=self._last_timestamp,
            pending_request_id=self._pending_request_id,
            recent_winner=self._recent_winner,
            balances=self._ledger.snapshot(),
        )

    def _restore(self, checkpoint: _Checkpoint) -> None:
        self._state = checkpoint.state
        self._participants = list(checkpoint.participants)
        self._last_timestamp = checkpoint.last_timestamp
        self._pending_request_id = checkpoint.pending_request_id
        self._recent_winner = checkpoint.recent_winner
        self._ledger.restore(checkpoint.balances)
