#!/usr/bin/env python3
"""
VRF Lottery command line tool

  vrf-lottery serve [--config FILE]
  vrf-lottery simulate [--players N] [--rounds R] [--seed S]

`simulate` runs complete entry/draw/payout cycles against an in-process
coordinator on a manual clock and prints each winner with its proof check.
"""

from __future__ import annotations

import argparse
import asyncio
import copy
import sys
from typing import Any, Dict, List, Optional

from web3 import Web3

from vrf_lottery.blockchain.vrf import verify_proof
from vrf_lottery.utils.clock import ManualClock
from vrf_lottery.utils.common import shorten_eth_address, wei_to_eth
from vrf_lottery.utils.config import load_config


def simulated_players(count: int, seed: str) -> List[str]:
    return [
        Web3.to_checksum_address(Web3.keccak(text=f"player:{seed}:{i}")[-20:])
        for i in range(count)
    ]


def simulation_key(seed: str) -> str:
    return Web3.to_hex(Web3.keccak(text=f"vrf-lottery-simulation:{seed}"))


def run_simulation(config: Dict[str, Any], players: int, rounds: int, seed: str) -> List[Dict[str, Any]]:
    """Play `rounds` full cycles with `players` entrants each; returns one result per round."""
    from vrf_lottery.main import build_components

    config = copy.deepcopy(config)
    config.setdefault("vrf", {})["private_key"] = simulation_key(seed)
    clock = ManualClock()
    components = build_components(config, clock=clock)
    lottery = components["lottery"]
    coordinator = components["coordinator"]
    trigger = components["trigger"]
    ledger = components["ledger"]

    entrants = simulated_players(players, seed)
    results: List[Dict[str, Any]] = []
    for round_number in range(1, rounds + 1):
        for entrant in entrants:
            lottery.enter(entrant, lottery.entrance_fee)
        pool = lottery.balance

        clock.advance(lottery.interval + 1)
        request_id = trigger.poll_once()
        if request_id is None:
            raise RuntimeError(f"Round {round_number}: lottery did not become ready")

        proofs = coordinator.advance_blocks(max(1, lottery.config.request_confirmations))
        proof = next((p for p in proofs if p.request_id == request_id), None)
        if proof is None:
            request = coordinator.get_request(request_id)
            raise RuntimeError(f"Round {round_number}: randomness not delivered ({request.last_error if request else 'unknown'})")

        winner = lottery.recent_winner
        results.append({
            "round": round_number,
            "request_id": request_id,
            "winner": winner,
            "winner_index": entrants.index(winner),
            "prize": pool,
            "winner_balance": ledger.balance_of(winner),
            "random_word": proof.random_words[0],
            "verified": verify_proof(proof, coordinator.address),
        })
    return results


def cmd_serve(args: argparse.Namespace) -> int:
    from vrf_lottery.main import main as serve_main

    asyncio.run(serve_main(args.config))
    return 0


def cmd_simulate(args: argparse.Namespace) -> int:
    if args.players < 1 or args.rounds < 1:
        print("--players and --rounds must be at least 1", file=sys.stderr)
        return 2

    results = run_simulation(load_config(args.config), args.players, args.rounds, args.seed)
    print(f"{'Round':>5}  {'Request':>7}  {'Winner':<16} {'Index':>5}  {'Prize (ETH)':>12}  Proof")
    for r in results:
        print(
            f"{r['round']:>5}  {r['request_id']:>7}  {shorten_eth_address(r['winner']):<16} "
            f"{r['winner_index']:>5}  {wei_to_eth(r['prize']):>12}  {'valid' if r['verified'] else 'INVALID'}"
        )
    return 0 if all(r["verified"] for r in results) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vrf-lottery",
        description="Provably fair, time-gated lottery service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to a JSON config file (default: config/lottery.conf)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP/WebSocket service")
    serve.set_defaults(func=cmd_serve)

    simulate = sub.add_parser("simulate", help="Play lottery rounds on a manual clock")
    simulate.add_argument("--players", "-p", type=int, default=3, help="Entrants per round (default: 3)")
    simulate.add_argument("--rounds", "-r", type=int, default=1, help="Number of rounds (default: 1)")
    simulate.add_argument("--seed", default="0", help="Seed for the provider key and player addresses")
    simulate.set_defaults(func=cmd_simulate)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
