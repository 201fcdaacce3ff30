"""In-memory event store for the lottery backend.

Events emitted by the lottery are fanned out to listeners (web socket
broadcaster, logging) and folded into a live activity feed and a round
history. Emits made inside `batch()` are held back until the outermost batch
exits cleanly and dropped if it raises, so an operation that is rolled back
leaves no notifications behind.
"""

from __future__ import annotations

from collections import defaultdict, deque
from contextlib import contextmanager
from threading import RLock
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

from vrf_lottery.lottery.models import LiveFeedItem, RoundSnapshot
from vrf_lottery.utils.common import shorten_eth_address, wei_to_eth
from vrf_lottery.utils.logger import get_logger

logger = get_logger(__name__)

EVENT_ENTERED = "Entered"
EVENT_DRAW_TRIGGERED = "DrawTriggered"
EVENT_WINNER_PICKED = "WinnerPicked"

LIVE_FEED_EVENTS = (EVENT_ENTERED, EVENT_DRAW_TRIGGERED, EVENT_WINNER_PICKED)

Listener = Callable[[Dict[str, Any]], None]


class EventStore:
    """Volatile storage for lottery notifications, feed and history."""

    def __init__(self, *, feed_capacity: int = 100, history_capacity: int = 20) -> None:
        self._lock = RLock()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._live_feed: Deque[LiveFeedItem] = deque(maxlen=feed_capacity)
        self._history: Deque[RoundSnapshot] = deque(maxlen=history_capacity)
        self._rounds_completed = 0
        self._total_prizes = 0
        self._batch_depth = 0
        self._queued: List[Tuple[str, Dict[str, Any]]] = []

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------
    def add_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(callback)
        logger.debug("Added listener for %s: %s", event_type, callback)

    def remove_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            if callback in self._listeners.get(event_type, []):
                self._listeners[event_type].remove(callback)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------
    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            if self._batch_depth:
                self._queued.append((event_type, dict(payload)))
                return
        self._dispatch(event_type, dict(payload))

    @contextmanager
    def batch(self) -> Iterator[None]:
        with self._lock:
            self._batch_depth += 1
            mark = len(self._queued)
        try:
            yield
        except BaseException:
            with self._lock:
                self._batch_depth -= 1
                discarded = len(self._queued) - mark
                del self._queued[mark:]
            if discarded:
                logger.debug("Discarded %d events from failed operation", discarded)
            raise

        with self._lock:
            self._batch_depth -= 1
            if self._batch_depth:
                return
            pending, self._queued = self._queued, []
        for event_type, payload in pending:
            self._dispatch(event_type, payload)

    def _dispatch(self, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info("Event %s %s", event_type, payload)
        if event_type == EVENT_WINNER_PICKED:
            payload["roundNumber"] = self._record_round(payload)
        if event_type in LIVE_FEED_EVENTS:
            self._append_feed(LiveFeedItem(
                event_type=event_type,
                message=self._generate_event_message(event_type, payload),
                details=payload,
            ))

        with self._lock:
            listeners = list(self._listeners.get(event_type, []))
        for callback in listeners:
            try:
                callback(payload)
            except Exception as exc:
                logger.error("Listener for %s failed: %s", event_type, exc)

    # ------------------------------------------------------------------
    # Feed and history
    # ------------------------------------------------------------------
    def _record_round(self, payload: Dict[str, Any]) -> int:
        with self._lock:
            self._rounds_completed += 1
            self._total_prizes += int(payload["amount"])
            snapshot = RoundSnapshot(
                round_number=self._rounds_completed,
                request_id=int(payload["requestId"]),
                winner=payload["winner"],
                prize=int(payload["amount"]),
                participant_count=int(payload["participantCount"]),
                random_word=int(payload["randomWord"]),
                finished_at=int(payload["timestamp"]),
            )
            self._history.append(snapshot)
            return snapshot.round_number

    def _append_feed(self, item: LiveFeedItem) -> None:
        with self._lock:
            self._live_feed.append(item)

    def get_live_feed(self, limit: Optional[int] = None) -> List[LiveFeedItem]:
        with self._lock:
            items = list(self._live_feed)
        if limit is not None:
            return items[-limit:]
        return items

    def get_round_history(self, limit: Optional[int] = None) -> List[RoundSnapshot]:
        with self._lock:
            items = list(self._history)
        if limit is not None:
            return items[-limit:]
        return items

    @property
    def rounds_completed(self) -> int:
        with self._lock:
            return self._rounds_completed

    @property
    def total_prizes(self) -> int:
        """Wei paid out over every recorded round, including rounds aged out of history."""
        with self._lock:
            return self._total_prizes

    def _generate_event_message(self, event_type: str, args: Dict[str, Any]) -> str:
        """Short human-readable summary for the activity feed."""
        if event_type == EVENT_ENTERED:
            who = shorten_eth_address(args.get("entrant", "")) or "a player"
            amount = args.get("amount")
            return f"{who} entered for {wei_to_eth(amount)} ETH" if amount is not None else f"{who} entered"

        if event_type == EVENT_DRAW_TRIGGERED:
            return f"Draw triggered, waiting on randomness request {args.get('requestId')}"

        if event_type == EVENT_WINNER_PICKED:
            winner = shorten_eth_address(args.get("winner", "")) or "unknown"
            prize = args.get("amount")
            prize_str = f" and won {wei_to_eth(prize)} ETH" if prize is not None else ""
            return f"Round {args.get('roundNumber')} winner: {winner}{prize_str}"

        return event_type

