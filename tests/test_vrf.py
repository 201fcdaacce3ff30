"""Randomness coordinator: confirmations, proofs and delivery bookkeeping."""

import asyncio
from dataclasses import replace
from typing import List, Sequence

import pytest

from conftest import PROVIDER_KEY
from vrf_lottery.blockchain.vrf import (
    STATUS_DELIVERING,
    STATUS_FAILED,
    STATUS_FULFILLED,
    STATUS_PENDING,
    CoordinatorError,
    VRFCoordinator,
    compute_seed,
    verify_proof,
)

CONSUMER = "0x000000000000000000000000000000000000beef"


class RecordingConsumer:
    def __init__(self, address: str = CONSUMER, fail: bool = False) -> None:
        self.address = address
        self.fail = fail
        self.deliveries: List[tuple] = []

    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> None:
        if self.fail:
            raise RuntimeError("consumer exploded")
        self.deliveries.append((request_id, list(random_words)))


def _request(coordinator, consumer, confirmations=3, num_words=1):
    return coordinator.request_random_words(
        consumer=consumer,
        key_hash=coordinator.key_hash,
        subscription_id=7,
        request_confirmations=confirmations,
        callback_gas_limit=100_000,
        num_words=num_words,
    )


def test_key_hash_is_stable_for_a_key():
    assert VRFCoordinator(PROVIDER_KEY).key_hash == VRFCoordinator(PROVIDER_KEY).key_hash
    assert VRFCoordinator().key_hash != VRFCoordinator(PROVIDER_KEY).key_hash


def test_malformed_key_is_rejected():
    with pytest.raises(ValueError):
        VRFCoordinator("0x1234")


def test_request_ids_are_sequential_and_nonzero(coordinator):
    consumer = RecordingConsumer()
    first = _request(coordinator, consumer)
    second = _request(coordinator, consumer)
    assert (first, second) == (1, 2)
    assert coordinator.get_request(second).nonce == 2
    assert [r.request_id for r in coordinator.pending_requests()] == [1, 2]


def test_wrong_key_hash_is_refused(coordinator):
    with pytest.raises(CoordinatorError):
        coordinator.request_random_words(RecordingConsumer(), "0x" + "ab" * 32, 1, 3, 100_000, 1)


@pytest.mark.parametrize("kwargs", [
    {"num_words": 0},
    {"num_words": 501},
    {"callback_gas_limit": 0},
    {"callback_gas_limit": 2_500_001},
    {"request_confirmations": 201},
])
def test_out_of_range_parameters_are_refused(coordinator, kwargs):
    params = dict(
        consumer=RecordingConsumer(),
        key_hash=coordinator.key_hash,
        subscription_id=1,
        request_confirmations=3,
        callback_gas_limit=100_000,
        num_words=1,
    )
    params.update(kwargs)
    with pytest.raises(CoordinatorError):
        coordinator.request_random_words(**params)


def test_delivery_waits_for_confirmations(coordinator):
    consumer = RecordingConsumer()
    request_id = _request(coordinator, consumer, confirmations=3)

    assert coordinator.advance_blocks(2) == []
    with pytest.raises(CoordinatorError):
        coordinator.fulfill(request_id)
    assert consumer.deliveries == []

    proofs = coordinator.advance_blocks(1)

    assert [p.request_id for p in proofs] == [request_id]
    assert consumer.deliveries == [(request_id, list(proofs[0].random_words))]
    assert coordinator.get_request(request_id).status == STATUS_FULFILLED
    assert coordinator.block_number == 3


def test_fulfilled_request_is_not_delivered_twice(coordinator):
    consumer = RecordingConsumer()
    request_id = _request(coordinator, consumer, confirmations=0)
    coordinator.advance_blocks()
    with pytest.raises(CoordinatorError):
        coordinator.fulfill(request_id)
    with pytest.raises(CoordinatorError):
        coordinator.redeliver(request_id)
    assert len(consumer.deliveries) == 1


def test_proof_verifies_against_provider_address(coordinator):
    request_id = _request(coordinator, RecordingConsumer(), confirmations=0, num_words=3)
    proof = coordinator.advance_blocks()[0]

    assert proof.request_id == request_id
    assert len(proof.random_words) == 3
    assert len(set(proof.random_words)) == 3
    assert verify_proof(proof, coordinator.address)
    assert not verify_proof(proof, VRFCoordinator().address)


@pytest.mark.parametrize("field, value", [
    ("random_words", (1,)),
    ("nonce", 99),
    ("subscription_id", 8),
    ("signature", "0x" + "00" * 65),
    ("seed", "0x" + "11" * 32),
])
def test_tampered_proof_fails_verification(coordinator, field, value):
    _request(coordinator, RecordingConsumer(), confirmations=0)
    proof = coordinator.advance_blocks()[0]
    assert not verify_proof(replace(proof, **{field: value}), coordinator.address)


def test_same_key_and_request_give_same_words():
    words = []
    for _ in range(2):
        coordinator = VRFCoordinator(PROVIDER_KEY)
        _request(coordinator, RecordingConsumer(), confirmations=0)
        words.append(coordinator.advance_blocks()[0].random_words)
    assert words[0] == words[1]


def test_seed_depends_on_consumer_nonce(coordinator):
    consumer = RecordingConsumer()
    first = coordinator.get_request(_request(coordinator, consumer))
    second = coordinator.get_request(_request(coordinator, consumer))
    assert first.seed != second.seed
    assert bytes.fromhex(first.seed[2:]) == compute_seed(coordinator.key_hash, first.consumer_address, 7, 1)


def test_consumer_failure_marks_request_failed(coordinator):
    consumer = RecordingConsumer(fail=True)
    request_id = _request(coordinator, consumer, confirmations=0)

    assert coordinator.advance_blocks() == []

    request = coordinator.get_request(request_id)
    assert request.status == STATUS_FAILED
    assert request.last_error == "consumer exploded"
    assert request.proof is not None

    consumer.fail = False
    proof = coordinator.redeliver(request_id)

    assert proof == request.proof
    assert consumer.deliveries == [(request_id, list(proof.random_words))]
    assert coordinator.get_request(request_id).status == STATUS_FULFILLED
    assert coordinator.get_request(request_id).last_error is None


def test_request_in_delivery_cannot_be_claimed_again(coordinator):
    consumer = RecordingConsumer()
    seen = []

    def fulfill_random_words(request_id, random_words):
        seen.append(coordinator.get_request(request_id).status)
        for attempt in (coordinator.fulfill, coordinator.redeliver):
            with pytest.raises(CoordinatorError):
                attempt(request_id)
        consumer.deliveries.append((request_id, list(random_words)))

    consumer.fulfill_random_words = fulfill_random_words
    request_id = _request(coordinator, consumer, confirmations=0)

    coordinator.advance_blocks()

    assert seen == [STATUS_DELIVERING]
    assert len(consumer.deliveries) == 1
    assert coordinator.get_request(request_id).delivery_attempts == 1
    assert coordinator.get_request(request_id).status == STATUS_FULFILLED


def test_redeliver_unknown_request(coordinator):
    with pytest.raises(CoordinatorError):
        coordinator.redeliver(42)


def test_status_counts_requests(coordinator):
    _request(coordinator, RecordingConsumer(), confirmations=0)
    _request(coordinator, RecordingConsumer(), confirmations=5)
    coordinator.advance_blocks()

    status = coordinator.get_status()

    assert status["requests"] == {STATUS_FULFILLED: 1, STATUS_PENDING: 1}
    assert status["blockNumber"] == 1
    assert status["running"] is False


@pytest.mark.asyncio
async def test_block_loop_delivers_in_background(coordinator):
    consumer = RecordingConsumer()
    request_id = _request(coordinator, consumer, confirmations=1)

    await coordinator.start(block_time=0.01)
    for _ in range(200):
        if consumer.deliveries:
            break
        await asyncio.sleep(0.01)
    await coordinator.stop()

    assert consumer.deliveries[0][0] == request_id
    assert coordinator.get_status()["running"] is False
