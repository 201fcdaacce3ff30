"""FastAPI web server for the lottery backend.

REST routes expose entry, readiness, the manual draw trigger, randomness
proofs and account balances. `/ws/lottery` pushes a snapshot on connect and
then every lottery event as it is dispatched by the event store.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, NoReturn, Optional, Set, Tuple

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from vrf_lottery import __version__
from vrf_lottery.blockchain.ledger import Ledger
from vrf_lottery.blockchain.vrf import CoordinatorError, VRFCoordinator, verify_proof
from vrf_lottery.lottery.engine import Lottery
from vrf_lottery.lottery.errors import (
    InsufficientFee,
    InvalidRequest,
    LotteryError,
    PayoutFailed,
)
from vrf_lottery.lottery.event_manager import LIVE_FEED_EVENTS, EventStore
from vrf_lottery.lottery.models import LiveFeedItem, RoundSnapshot
from vrf_lottery.lottery.operator import AutomationTrigger
from vrf_lottery.utils.logger import get_logger

logger = get_logger(__name__)

MAX_PAGE = 200


class EnterRequest(BaseModel):
    entrant: str
    amount_wei: int = Field(..., ge=0)


class UpkeepRequest(BaseModel):
    perform_data: str = "0x"


def _raise_http(exc: LotteryError) -> NoReturn:
    if isinstance(exc, (InsufficientFee, InvalidRequest)):
        status_code = 400
    elif isinstance(exc, PayoutFailed):
        status_code = 502
    else:
        status_code = 409
    raise HTTPException(status_code=status_code, detail=exc.to_dict()) from exc


def _decode_hex(value: str) -> bytes:
    text = value[2:] if value.startswith("0x") else value
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise HTTPException(status_code=400, detail={"error": "invalid_hex", "message": f"Not hex: {value!r}"})


def _page(limit: int) -> int:
    return max(1, min(limit, MAX_PAGE))


def serialize_round(snapshot: RoundSnapshot) -> Dict[str, Any]:
    return {
        "round_number": snapshot.round_number,
        "request_id": snapshot.request_id,
        "winner": snapshot.winner,
        "prize_wei": snapshot.prize,
        "participant_count": snapshot.participant_count,
        "random_word": str(snapshot.random_word),
        "finished_at": snapshot.finished_at,
    }


def serialize_activity(item: LiveFeedItem, index: int) -> Dict[str, Any]:
    actor = item.details.get("entrant") or item.details.get("winner") or "system"
    return {
        "activity_id": f"{item.created_at.isoformat()}-{index}",
        "user_address": str(actor),
        "activity_type": item.event_type,
        "details": item.details,
        "message": item.message,
        "timestamp": item.created_at.isoformat(),
    }


class ClientHub:
    """Connected WebSocket clients and the queue that feeds them.

    Store listeners may fire on any thread, so events are handed to the
    server loop with `call_soon_threadsafe` and sent from a single task.
    """

    def __init__(self) -> None:
        self.clients: Set[WebSocket] = set()
        self._lock: Optional[asyncio.Lock] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[Tuple[str, Dict[str, Any]]]] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def add(self, websocket: WebSocket) -> None:
        async with self.lock:
            self.clients.add(websocket)
        logger.info("WebSocket client connected (%s total)", len(self.clients))

    async def discard(self, websocket: WebSocket) -> None:
        async with self.lock:
            self.clients.discard(websocket)
        logger.info("WebSocket client disconnected (%s remaining)", len(self.clients))

    def start(self, build_message) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        if self._task is None:
            self._task = asyncio.create_task(self._drain(build_message), name="lottery-ws-broadcast")

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._queue is None or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (event_type, payload))
        except RuntimeError:  # pragma: no cover - loop already closing
            logger.debug("Dropped %s broadcast, event loop closed", event_type)

    async def _drain(self, build_message) -> None:
        assert self._queue is not None
        while True:
            event_type, payload = await self._queue.get()
            try:
                await self.send_all(build_message(event_type, payload))
            except Exception as exc:  # pragma: no cover
                logger.exception("Broadcast of %s failed: %s", event_type, exc)

    async def send_all(self, message: Dict[str, Any]) -> None:
        async with self.lock:
            dead: List[WebSocket] = []
            for websocket in self.clients:
                try:
                    await websocket.send_json(message)
                except (RuntimeError, WebSocketDisconnect) as exc:
                    logger.debug("WebSocket send failed: %s", exc)
                    dead.append(websocket)
            self.clients.difference_update(dead)

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        async with self.lock:
            for websocket in list(self.clients):
                try:
                    await websocket.close(code=1001, reason="Server shutdown")
                except RuntimeError as exc:
                    logger.debug("Error closing websocket: %s", exc)
            self.clients.clear()


class LotteryWebServer:
    """HTTP and WebSocket gateway for the lottery."""

    def __init__(
        self,
        config: Dict[str, Any],
        lottery: Lottery,
        ledger: Ledger,
        coordinator: VRFCoordinator,
        trigger: Optional[AutomationTrigger] = None,
    ) -> None:
        self.config = config
        self.lottery = lottery
        self.ledger = ledger
        self.coordinator = coordinator
        self.trigger = trigger
        self._store: EventStore = lottery.store
        self._hub = ClientHub()
        self._subscriptions: List[Tuple[str, Any]] = []
        self._server = None

        self.app = FastAPI(
            title="VRF Lottery API",
            description="Entry, draw and verification API for the VRF lottery",
            version=__version__,
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self._setup_routes()

    def _setup_routes(self) -> None:  # noqa: C901
        app = self.app

        # ------------------------------------------------------------------
        # Health & status
        # ------------------------------------------------------------------
        @app.get("/api/health")
        async def health() -> Dict[str, Any]:
            return {
                "status": "ok",
                "timestamp": datetime.utcnow().isoformat(),
                "components": {
                    "lottery": self.lottery.state.name,
                    "automation": self.trigger.get_status()["status"] if self.trigger else "disabled",
                    "randomness": "running" if self.coordinator.get_status()["running"] else "idle",
                },
            }

        @app.get("/api/status")
        async def status() -> Dict[str, Any]:
            return {
                "timestamp": datetime.utcnow().isoformat(),
                "lottery": self.lottery.snapshot().to_dict(),
                "upkeepNeeded": self.lottery.check_upkeep().upkeep_needed,
                "automation": self.trigger.get_status() if self.trigger else None,
                "randomness": self.coordinator.get_status(),
                "websocket_connections": len(self._hub.clients),
            }

        # ------------------------------------------------------------------
        # Lottery
        # ------------------------------------------------------------------
        @app.get("/api/lottery/config")
        async def lottery_config() -> Dict[str, Any]:
            return {
                "address": self.lottery.address,
                "config": self.lottery.config.to_dict(),
                "coordinator": self.coordinator.address,
            }

        @app.get("/api/lottery/participants")
        async def participants() -> Dict[str, Any]:
            snapshot = self.lottery.snapshot()
            return {
                "participants": list(snapshot.participants),
                "total_participants": len(snapshot.participants),
                "balance_wei": snapshot.balance,
                "state": snapshot.state.name,
            }

        @app.post("/api/enter")
        async def enter(request: EnterRequest) -> Dict[str, Any]:
            try:
                self.lottery.enter(request.entrant, request.amount_wei)
            except LotteryError as exc:
                _raise_http(exc)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail={"error": "invalid_entrant", "message": str(exc)})
            return {
                "status": "entered",
                "participant_count": self.lottery.num_players,
                "balance_wei": self.lottery.balance,
            }

        @app.get("/api/upkeep")
        async def check_upkeep(check_data: str = "0x") -> Dict[str, Any]:
            check = self.lottery.check_upkeep(_decode_hex(check_data))
            return {"upkeepNeeded": check.upkeep_needed, "performData": "0x" + check.perform_data.hex()}

        @app.post("/api/upkeep")
        async def perform_upkeep(request: UpkeepRequest) -> Dict[str, Any]:
            try:
                request_id = self.lottery.perform_upkeep(_decode_hex(request.perform_data))
            except LotteryError as exc:
                _raise_http(exc)
            except CoordinatorError as exc:
                raise HTTPException(status_code=502, detail={"error": "randomness_request_failed", "message": str(exc)})
            return {"status": "drawing", "requestId": request_id}

        @app.get("/api/history")
        async def history(limit: int = 50) -> Dict[str, Any]:
            limit = _page(limit)
            rounds = [serialize_round(r) for r in reversed(self._store.get_round_history(limit=limit))]
            return {
                "rounds": rounds,
                "summary": {
                    "total_rounds": self._store.rounds_completed,
                    "total_volume_wei": self._store.total_prizes,
                    "page_volume_wei": sum(r["prize_wei"] for r in rounds),
                },
                "pagination": {"limit": limit, "returned": len(rounds)},
                "timestamp": datetime.utcnow().isoformat(),
            }

        @app.get("/api/activities")
        async def activities(limit: int = 50) -> Dict[str, Any]:
            feed = self._store.get_live_feed(limit=_page(limit))
            return {"activities": [serialize_activity(item, i) for i, item in enumerate(reversed(feed))]}

        # ------------------------------------------------------------------
        # Randomness & accounts
        # ------------------------------------------------------------------
        @app.get("/api/randomness/{request_id}")
        async def randomness(request_id: int) -> Dict[str, Any]:
            request = self.coordinator.get_request(request_id)
            if request is None:
                raise HTTPException(
                    status_code=404,
                    detail={"error": "unknown_request", "message": f"Unknown request {request_id}"},
                )
            payload = request.to_dict()
            payload["verified"] = verify_proof(request.proof, self.coordinator.address) if request.proof else None
            return payload

        @app.post("/api/randomness/{request_id}/redeliver")
        async def redeliver(request_id: int) -> Dict[str, Any]:
            try:
                proof = self.coordinator.redeliver(request_id)
            except CoordinatorError as exc:
                status_code = 404 if self.coordinator.get_request(request_id) is None else 409
                raise HTTPException(status_code=status_code, detail={"error": "coordinator_error", "message": str(exc)})
            except LotteryError as exc:
                _raise_http(exc)
            return {"status": "delivered", "proof": proof.to_dict(), "winner": self.lottery.recent_winner}

        @app.get("/api/accounts/{address}")
        async def account(address: str) -> Dict[str, Any]:
            try:
                balance = self.ledger.balance_of(address)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail={"error": "invalid_address", "message": str(exc)})
            return {"address": address, "balance_wei": balance}

        # ------------------------------------------------------------------
        # WebSocket
        # ------------------------------------------------------------------
        @app.websocket("/ws/lottery")
        async def lottery_feed(websocket: WebSocket) -> None:
            await websocket.accept()
            await self._hub.add(websocket)
            try:
                await websocket.send_json({"type": "snapshot", "payload": self._initial_snapshot()})
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                await self._hub.discard(websocket)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, host: str = "0.0.0.0", port: int = 6080) -> None:
        import uvicorn

        logger.info("Starting lottery web server on %s:%s", host, port)
        self._hub.start(self._event_message)
        self.subscribe()

        config = uvicorn.Config(self.app, host=host, port=port, log_level="info", access_log=True)
        self._server = uvicorn.Server(config)
        try:
            await self._server.serve()
        finally:
            logger.info("Lottery web server stopped")

    async def stop(self) -> None:
        logger.info("Stopping lottery web server")
        if self._server is not None:
            self._server.should_exit = True
        self.unsubscribe()
        await self._hub.close()

    def subscribe(self) -> None:
        """Forward store events to connected WebSocket clients."""
        if self._subscriptions:
            return
        for event in LIVE_FEED_EVENTS:
            callback = lambda payload, evt=event: self._hub.publish(evt, payload)  # noqa: E731
            self._store.add_listener(event, callback)
            self._subscriptions.append((event, callback))

    def unsubscribe(self) -> None:
        for event, callback in self._subscriptions:
            self._store.remove_listener(event, callback)
        self._subscriptions = []

    def _event_message(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": event_type,
            "payload": payload,
            "lottery": self.lottery.snapshot().to_dict(),
            "timestamp": datetime.utcnow().isoformat(),
        }

    def _initial_snapshot(self) -> Dict[str, Any]:
        history = self._store.get_round_history(limit=10)
        feed = self._store.get_live_feed(limit=20)
        return {
            "lottery": self.lottery.snapshot().to_dict(),
            "config": self.lottery.config.to_dict(),
            "history": [serialize_round(r) for r in reversed(history)],
            "live_feed": [serialize_activity(item, i) for i, item in enumerate(reversed(feed))],
            "automation": self.trigger.get_status() if self.trigger else None,
        }
