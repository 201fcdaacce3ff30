"""In-process account ledger.

Holds wei balances per address and moves value between them. A recipient may
register a receive hook that runs on every incoming transfer; if the hook
raises, the transfer is reversed and reported as a `TransferError`. Hooks run
after the balances moved, so they observe the post-transfer state and may call
back into whatever initiated the transfer.
"""

from __future__ import annotations

from threading import RLock
from typing import Callable, Dict, Optional

from vrf_lottery.utils.common import normalize_address
from vrf_lottery.utils.logger import get_logger

logger = get_logger(__name__)

ReceiveHook = Callable[[str, int], None]


class TransferError(Exception):
    """Raised when value cannot be moved between two accounts."""

    def __init__(self, src: str, dst: str, amount: int, reason: str) -> None:
        super().__init__(f"transfer of {amount} wei from {src} to {dst} failed: {reason}")
        self.src = src
        self.dst = dst
        self.amount = amount
        self.reason = reason


class Ledger:
    """Wei balances keyed by checksummed address."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._balances: Dict[str, int] = {}
        self._receivers: Dict[str, ReceiveHook] = {}

    def balance_of(self, address: str) -> int:
        address = normalize_address(address)
        with self._lock:
            return self._balances.get(address, 0)

    def deposit(self, address: str, amount: int) -> int:
        """Credit value arriving from outside the ledger; returns the new balance."""
        if amount < 0:
            raise ValueError("Deposit amount must be non-negative")
        address = normalize_address(address)
        with self._lock:
            self._balances[address] = self._balances.get(address, 0) + amount
            return self._balances[address]

    def transfer(self, src: str, dst: str, amount: int) -> None:
        src = normalize_address(src)
        dst = normalize_address(dst)
        if amount < 0:
            raise ValueError("Transfer amount must be non-negative")

        with self._lock:
            available = self._balances.get(src, 0)
            if available < amount:
                raise TransferError(src, dst, amount, f"insufficient balance ({available} wei)")
            self._balances[src] = available - amount
            self._balances[dst] = self._balances.get(dst, 0) + amount
            hook = self._receivers.get(dst)

            if hook is None:
                logger.debug("Transferred %s wei from %s to %s", amount, src, dst)
                return

            try:
                hook(src, amount)
            except Exception as exc:
                # reverse the movement; anything the hook changed is the caller's to undo
                self._balances[dst] = self._balances.get(dst, 0) - amount
                self._balances[src] = self._balances.get(src, 0) + amount
                logger.warning("Receiver %s rejected %s wei: %s", dst, amount, exc)
                raise TransferError(src, dst, amount, f"receiver rejected transfer: {exc}") from exc

        logger.debug("Transferred %s wei from %s to %s (receiver hook ran)", amount, src, dst)

    def register_receiver(self, address: str, hook: ReceiveHook) -> None:
        address = normalize_address(address)
        with self._lock:
            self._receivers[address] = hook

    def unregister_receiver(self, address: str) -> Optional[ReceiveHook]:
        address = normalize_address(address)
        with self._lock:
            return self._receivers.pop(address, None)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._balances)

    def restore(self, snapshot: Dict[str, int]) -> None:
        with self._lock:
            self._balances = dict(snapshot)
