"""Verifiable randomness coordinator.

Consumers submit a request and receive the random words later through their
`fulfill_random_words(request_id, random_words)` callback, once the request
has waited its number of block confirmations.

Each request gets a seed derived from the routing key hash, the consumer,
the subscription id and a per-consumer nonce. The coordinator signs the seed
with its key (EIP-191, deterministic RFC 6979 nonces) and the random words are
hashes of that signature, so anyone holding the proof can check both that the
coordinator produced it and that the words were not chosen after the fact.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from web3 import Web3

from vrf_lottery.utils.common import normalize_address
from vrf_lottery.utils.key_manager import load_signing_account
from vrf_lottery.utils.logger import get_logger

logger = get_logger(__name__)

STATUS_PENDING = "pending"
STATUS_DELIVERING = "delivering"
STATUS_FULFILLED = "fulfilled"
STATUS_FAILED = "failed"


class CoordinatorError(Exception):
    """Raised for requests the coordinator refuses or cannot act on."""


class RandomnessConsumer(Protocol):
    address: str

    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> Any:
        ...


@dataclass(frozen=True)
class RandomnessProof:
    """Everything needed to re-derive and check a delivered set of words."""

    request_id: int
    key_hash: str
    consumer: str
    subscription_id: int
    nonce: int
    seed: str
    signature: str
    random_words: Tuple[int, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "keyHash": self.key_hash,
            "consumer": self.consumer,
            "subscriptionId": self.subscription_id,
            "nonce": self.nonce,
            "seed": self.seed,
            "signature": self.signature,
            # words exceed JSON-safe integer range
            "randomWords": [str(word) for word in self.random_words],
        }


@dataclass
class RandomnessRequest:
    request_id: int
    consumer: RandomnessConsumer = field(repr=False)
    consumer_address: str
    key_hash: str
    subscription_id: int
    request_confirmations: int
    callback_gas_limit: int
    num_words: int
    nonce: int
    seed: str
    block_requested: int
    status: str = STATUS_PENDING
    proof: Optional[RandomnessProof] = None
    delivery_attempts: int = 0
    last_error: Optional[str] = None

    def ready_at(self) -> int:
        return self.block_requested + self.request_confirmations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "consumer": self.consumer_address,
            "keyHash": self.key_hash,
            "subscriptionId": self.subscription_id,
            "requestConfirmations": self.request_confirmations,
            "callbackGasLimit": self.callback_gas_limit,
            "numWords": self.num_words,
            "seed": self.seed,
            "blockRequested": self.block_requested,
            "readyAt": self.ready_at(),
            "status": self.status,
            "deliveryAttempts": self.delivery_attempts,
            "lastError": self.last_error,
            "proof": self.proof.to_dict() if self.proof else None,
        }


def compute_key_hash(public_key_bytes: bytes) -> str:
    return Web3.to_hex(Web3.keccak(public_key_bytes))


def compute_seed(key_hash: str, consumer: str, subscription_id: int, nonce: int) -> bytes:
    return bytes(
        Web3.solidity_keccak(
            ["bytes32", "address", "uint64", "uint256"],
            [bytes.fromhex(key_hash[2:]), consumer, subscription_id, nonce],
        )
    )


def derive_words(signature: bytes, num_words: int) -> Tuple[int, ...]:
    return tuple(
        int.from_bytes(Web3.solidity_keccak(["bytes", "uint256"], [signature, index]), "big")
        for index in range(num_words)
    )


def verify_proof(proof: RandomnessProof, address: str) -> bool:
    """Check that `address` signed the proof's seed and that the words follow from it."""
    try:
        seed = compute_seed(proof.key_hash, proof.consumer, proof.subscription_id, proof.nonce)
        if Web3.to_hex(seed) != proof.seed:
            return False
        signature = bytes.fromhex(proof.signature[2:])
        recovered = Account.recover_message(encode_defunct(primitive=seed), signature=signature)
    except (ValueError, TypeError, BadSignature, ValidationError) as exc:
        logger.debug("Proof %s failed to parse: %s", proof.request_id, exc)
        return False

    if recovered != normalize_address(address):
        return False
    return derive_words(signature, len(proof.random_words)) == proof.random_words


class VRFCoordinator:
    """Accepts randomness requests and delivers signed random words to consumers."""

    def __init__(
        self,
        private_key: Optional[str] = None,
        *,
        max_callback_gas_limit: int = 2_500_000,
        max_num_words: int = 500,
        max_request_confirmations: int = 200,
    ) -> None:
        self._account = load_signing_account(private_key)
        public_key = keys.PrivateKey(bytes(self._account.key)).public_key
        self.key_hash: str = compute_key_hash(public_key.to_bytes())

        self.max_callback_gas_limit = max_callback_gas_limit
        self.max_num_words = max_num_words
        self.max_request_confirmations = max_request_confirmations

        self._lock = RLock()
        self._requests: Dict[int, RandomnessRequest] = {}
        self._nonces: Dict[str, int] = {}
        self._next_request_id = 1
        self._block_number = 0

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        logger.info("VRF coordinator ready: signer=%s key_hash=%s", self.address, self.key_hash)

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def block_number(self) -> int:
        with self._lock:
            return self._block_number

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def request_random_words(
        self,
        consumer: RandomnessConsumer,
        key_hash: str,
        subscription_id: int,
        request_confirmations: int,
        callback_gas_limit: int,
        num_words: int,
    ) -> int:
        if key_hash.lower() != self.key_hash.lower():
            raise CoordinatorError(f"Unknown key hash {key_hash}")
        if not 1 <= num_words <= self.max_num_words:
            raise CoordinatorError(f"num_words must be between 1 and {self.max_num_words}, got {num_words}")
        if not 0 < callback_gas_limit <= self.max_callback_gas_limit:
            raise CoordinatorError(
                f"callback_gas_limit must be between 1 and {self.max_callback_gas_limit}, got {callback_gas_limit}"
            )
        if not 0 <= request_confirmations <= self.max_request_confirmations:
            raise CoordinatorError(
                f"request_confirmations must be at most {self.max_request_confirmations}, got {request_confirmations}"
            )

        consumer_address = normalize_address(consumer.address)
        with self._lock:
            nonce = self._nonces.get(consumer_address, 0) + 1
            self._nonces[consumer_address] = nonce
            request_id = self._next_request_id
            self._next_request_id += 1

            seed = compute_seed(self.key_hash, consumer_address, subscription_id, nonce)
            self._requests[request_id] = RandomnessRequest(
                request_id=request_id,
                consumer=consumer,
                consumer_address=consumer_address,
                key_hash=self.key_hash,
                subscription_id=subscription_id,
                request_confirmations=request_confirmations,
                callback_gas_limit=callback_gas_limit,
                num_words=num_words,
                nonce=nonce,
                seed=Web3.to_hex(seed),
                block_requested=self._block_number,
            )

        logger.info(
            "Randomness requested: id=%s consumer=%s sub=%s confirmations=%s words=%s",
            request_id, consumer_address, subscription_id, request_confirmations, num_words,
        )
        return request_id

    def get_request(self, request_id: int) -> Optional[RandomnessRequest]:
        with self._lock:
            return self._requests.get(request_id)

    def pending_requests(self) -> List[RandomnessRequest]:
        with self._lock:
            return [r for r in self._requests.values() if r.status == STATUS_PENDING]

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def advance_blocks(self, count: int = 1) -> List[RandomnessProof]:
        """Mine `count` blocks and deliver every request that became ready.

        Delivery failures are logged and recorded on the request; they do not
        stop the remaining deliveries.
        """
        if count < 1:
            raise ValueError("count must be at least 1")
        with self._lock:
            self._block_number += count
            ready = [
                r.request_id
                for r in self._requests.values()
                if r.status == STATUS_PENDING and r.ready_at() <= self._block_number
            ]

        delivered: List[RandomnessProof] = []
        for request_id in ready:
            try:
                delivered.append(self.fulfill(request_id))
            except CoordinatorError as exc:
                logger.warning("Skipping request %s: %s", request_id, exc)
            except Exception as exc:
                logger.error("Delivery of request %s failed: %s", request_id, exc)
        return delivered

    def fulfill(self, request_id: int) -> RandomnessProof:
        """Deliver a ready request; whatever the consumer raises propagates."""
        with self._lock:
            request = self._require_request(request_id)
            if request.status != STATUS_PENDING:
                raise CoordinatorError(f"Request {request_id} is {request.status}, not pending")
            if request.ready_at() > self._block_number:
                raise CoordinatorError(
                    f"Request {request_id} needs block {request.ready_at()}, current block is {self._block_number}"
                )
            if request.proof is None:
                request.proof = self._prove(request)
            self._claim(request)
        return self._deliver(request)

    def redeliver(self, request_id: int) -> RandomnessProof:
        """Deliver the stored words again for a request whose last delivery failed."""
        with self._lock:
            request = self._require_request(request_id)
            if request.status != STATUS_FAILED or request.proof is None:
                raise CoordinatorError(f"Request {request_id} is {request.status}; only failed deliveries can be retried")
            self._claim(request)
        logger.info("Redelivering randomness for request %s (attempt %s)", request_id, request.delivery_attempts)
        return self._deliver(request)

    def _require_request(self, request_id: int) -> RandomnessRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise CoordinatorError(f"Unknown request {request_id}")
        return request

    def _prove(self, request: RandomnessRequest) -> RandomnessProof:
        seed = bytes.fromhex(request.seed[2:])
        signed = self._account.sign_message(encode_defunct(primitive=seed))
        signature = bytes(signed.signature)
        return RandomnessProof(
            request_id=request.request_id,
            key_hash=request.key_hash,
            consumer=request.consumer_address,
            subscription_id=request.subscription_id,
            nonce=request.nonce,
            seed=request.seed,
            signature=Web3.to_hex(signature),
            random_words=derive_words(signature, request.num_words),
        )

    @staticmethod
    def _claim(request: RandomnessRequest) -> None:
        # caller holds the lock; a request in DELIVERING is refused by fulfill and redeliver
        request.status = STATUS_DELIVERING
        request.delivery_attempts += 1

    def _deliver(self, request: RandomnessRequest) -> RandomnessProof:
        # the consumer may call back into the coordinator, so the lock is not held here
        proof = request.proof
        assert proof is not None

        try:
            request.consumer.fulfill_random_words(request.request_id, list(proof.random_words))
        except Exception as exc:
            with self._lock:
                request.status = STATUS_FAILED
                request.last_error = str(exc)
            logger.error("Consumer %s rejected randomness for request %s: %s",
                         request.consumer_address, request.request_id, exc)
            raise

        with self._lock:
            request.status = STATUS_FULFILLED
            request.last_error = None
        logger.info("Randomness delivered for request %s", request.request_id)
        return proof

    # ------------------------------------------------------------------
    # Background block production
    # ------------------------------------------------------------------
    async def start(self, block_time: float = 2.0) -> None:
        if self._task:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._block_loop(float(block_time)), name="vrf-block-loop")
        logger.info("VRF coordinator producing a block every %ss", block_time)

    async def stop(self) -> None:
        if not self._task:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("VRF coordinator stopped")

    async def _block_loop(self, block_time: float) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=block_time)
                break
            except asyncio.TimeoutError:
                pass
            try:
                self.advance_blocks()
            except Exception as exc:
                logger.error("VRF block loop error: %s", exc)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            counts: Dict[str, int] = {}
            for request in self._requests.values():
                counts[request.status] = counts.get(request.status, 0) + 1
            return {
                "address": self.address,
                "keyHash": self.key_hash,
                "blockNumber": self._block_number,
                "requests": counts,
                "running": self._task is not None,
            }
