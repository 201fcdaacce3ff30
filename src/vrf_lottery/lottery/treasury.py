"""Pool custody for the lottery.

The pool is not a counter: it is the ledger balance of the lottery's holding
address, so it always equals the value that can actually be paid out.
"""

from __future__ import annotations

from vrf_lottery.blockchain.ledger import Ledger
from vrf_lottery.utils.common import normalize_address
from vrf_lottery.utils.logger import get_logger

logger = get_logger(__name__)


class Treasury:
    def __init__(self, ledger: Ledger, holder: str) -> None:
        self.ledger = ledger
        self.holder = normalize_address(holder)

    @property
    def balance(self) -> int:
        return self.ledger.balance_of(self.holder)

    def receive(self, payer: str, amount: int) -> None:
        """Record value sent along with a call from `payer`."""
        self.ledger.deposit(self.holder, amount)
        logger.debug("Pool received %s wei from %s", amount, payer)

    def pay(self, recipient: str, amount: int) -> None:
        """Send `amount` from the pool; raises TransferError on failure."""
        self.ledger.transfer(self.holder, recipient, amount)
        logger.info("Paid %s wei from pool to %s", amount, recipient)
