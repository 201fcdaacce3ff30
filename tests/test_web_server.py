"""HTTP and WebSocket gateway."""

import pytest
from fastapi.testclient import TestClient
from web3 import Web3

from conftest import PROVIDER_KEY
from vrf_lottery.main import build_components
from vrf_lottery.utils.clock import ManualClock
from vrf_lottery.utils.config import DEFAULT_CONFIG
from vrf_lottery.web_server import LotteryWebServer

FEE = Web3.to_wei(0.01, "ether")
PLAYERS = ["0x" + c * 40 for c in "123"]


@pytest.fixture
def env():
    config = {section: dict(values) for section, values in DEFAULT_CONFIG.items()}
    config["vrf"]["private_key"] = PROVIDER_KEY
    clock = ManualClock()
    components = build_components(config, clock=clock)
    server = LotteryWebServer(
        config,
        components["lottery"],
        components["ledger"],
        components["coordinator"],
        components["trigger"],
    )
    components.update(client=TestClient(server.app), clock=clock, server=server)
    return components


def _enter_players(client, players=PLAYERS):
    for player in players:
        response = client.post("/api/enter", json={"entrant": player, "amount_wei": FEE})
        assert response.status_code == 200


def _start_draw(env):
    _enter_players(env["client"])
    env["clock"].advance(31)
    response = env["client"].post("/api/upkeep", json={"perform_data": "0x"})
    assert response.status_code == 200
    return response.json()["requestId"]


def test_health_and_status(env):
    client = env["client"]
    assert client.get("/api/health").json()["status"] == "ok"

    status = client.get("/api/status").json()
    assert status["lottery"]["stateLabel"] == "OPEN"
    assert status["upkeepNeeded"] is False
    assert status["randomness"]["address"] == env["coordinator"].address


def test_lottery_config(env):
    body = env["client"].get("/api/lottery/config").json()
    assert body["address"] == env["lottery"].address
    assert body["config"]["entranceFeeWei"] == FEE
    assert body["config"]["keyHash"] == env["coordinator"].key_hash


def test_enter_and_list_participants(env):
    client = env["client"]
    _enter_players(client)

    body = client.get("/api/lottery/participants").json()
    assert body["total_participants"] == 3
    assert body["balance_wei"] == 3 * FEE
    assert body["participants"][0] == Web3.to_checksum_address(PLAYERS[0])


def test_enter_with_low_fee_is_bad_request(env):
    response = env["client"].post("/api/enter", json={"entrant": PLAYERS[0], "amount_wei": FEE - 1})
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error"] == "insufficient_fee"
    assert detail["entrance_fee"] == FEE


def test_enter_with_bad_address_is_bad_request(env):
    response = env["client"].post("/api/enter", json={"entrant": "nobody", "amount_wei": FEE})
    assert response.status_code == 400


def test_enter_while_drawing_is_conflict(env):
    _start_draw(env)
    response = env["client"].post("/api/enter", json={"entrant": PLAYERS[0], "amount_wei": FEE})
    assert response.status_code == 409
    assert response.json()["detail"]["state"] == "DRAWING"


def test_upkeep_check_echoes_data(env):
    body = env["client"].get("/api/upkeep", params={"check_data": "0xbeef"}).json()
    assert body == {"upkeepNeeded": False, "performData": "0xbeef"}


def test_perform_upkeep_when_not_ready_is_conflict(env):
    _enter_players(env["client"], PLAYERS[:1])
    response = env["client"].post("/api/upkeep", json={})
    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "upkeep_not_needed"
    assert detail["num_players"] == 1
    assert detail["balance"] == FEE


def test_full_round_over_http(env):
    client = env["client"]
    request_id = _start_draw(env)
    assert client.get(f"/api/randomness/{request_id}").json()["status"] == "pending"

    env["coordinator"].advance_blocks(3)

    randomness = client.get(f"/api/randomness/{request_id}").json()
    assert randomness["status"] == "fulfilled"
    assert randomness["verified"] is True
    word = int(randomness["proof"]["randomWords"][0])
    winner = Web3.to_checksum_address(PLAYERS[word % 3])

    assert client.get(f"/api/accounts/{winner}").json()["balance_wei"] == 3 * FEE
    history = client.get("/api/history").json()
    assert history["summary"]["total_rounds"] == 1
    assert history["rounds"][0]["winner"] == winner
    activities = client.get("/api/activities").json()["activities"]
    assert [a["activity_type"] for a in activities[:2]] == ["WinnerPicked", "DrawTriggered"]


def test_failed_payout_can_be_redelivered_over_http(env):
    client = env["client"]
    ledger = env["ledger"]
    request_id = _start_draw(env)

    def reject(src, amount):
        raise RuntimeError("nope")

    for player in PLAYERS:
        ledger.register_receiver(player, reject)
    env["coordinator"].advance_blocks(3)
    assert client.get(f"/api/randomness/{request_id}").json()["status"] == "failed"

    response = client.post(f"/api/randomness/{request_id}/redeliver")
    assert response.status_code == 502
    assert response.json()["detail"]["error"] == "payout_failed"

    for player in PLAYERS:
        ledger.unregister_receiver(player)
    response = client.post(f"/api/randomness/{request_id}/redeliver")
    assert response.status_code == 200
    assert response.json()["winner"] == env["lottery"].recent_winner

    response = client.post(f"/api/randomness/{request_id}/redeliver")
    assert response.status_code == 409


def test_unknown_randomness_request(env):
    response = env["client"].get("/api/randomness/99")
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "unknown_request"
    assert env["client"].post("/api/randomness/99/redeliver").status_code == 404


def test_account_with_bad_address(env):
    assert env["client"].get("/api/accounts/xyz").status_code == 400


def test_websocket_sends_snapshot(env):
    _enter_players(env["client"], PLAYERS[:2])
    with env["client"].websocket_connect("/ws/lottery") as websocket:
        message = websocket.receive_json()
    assert message["type"] == "snapshot"
    assert message["payload"]["lottery"]["participantCount"] == 2
    assert len(message["payload"]["live_feed"]) == 2


def test_history_total_volume_covers_every_round(env):
    client = env["client"]
    for _ in range(2):
        _start_draw(env)
        env["coordinator"].advance_blocks(3)

    history = client.get("/api/history", params={"limit": 1}).json()

    assert history["pagination"]["returned"] == 1
    assert history["summary"]["total_rounds"] == 2
    assert history["summary"]["total_volume_wei"] == 6 * FEE
    assert history["summary"]["page_volume_wei"] == 3 * FEE


@pytest.mark.asyncio
async def test_stop_detaches_event_forwarding(env):
    server = env["server"]
    published = []
    server._hub.publish = lambda event_type, payload: published.append(event_type)

    server.subscribe()
    server.subscribe()
    env["lottery"].enter(PLAYERS[0], FEE)
    await server.stop()
    env["lottery"].enter(PLAYERS[1], FEE)

    assert published == ["Entered"]
