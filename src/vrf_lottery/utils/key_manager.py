"""Signing key validation and loading for the randomness provider.

The provider proves each random value by signing the request seed, so its key
has to be well-formed and stable across restarts for proofs to stay verifiable.
"""

import re
from typing import Optional, Tuple

from eth_account import Account
from eth_account.signers.local import LocalAccount

from vrf_lottery.utils.logger import get_logger

logger = get_logger(__name__)


def validate_eth_private_key_format(private_key: str) -> Tuple[bool, str]:
    """Validate Ethereum private key format.

    Expected format: 0x followed by 64 hexadecimal characters

    Returns:
        tuple: (is_valid, error_message)
    """
    if not isinstance(private_key, str):
        return False, "Private key must be a string"

    if not private_key.startswith("0x"):
        return False, "Private key must start with '0x' prefix"

    if len(private_key) != 66:  # 0x + 64 hex chars
        return False, f"Private key must be 66 characters long (0x + 64 hex), got {len(private_key)}"

    if not re.match(r'^[0-9a-fA-F]{64}$', private_key[2:]):
        return False, "Private key must contain only hexadecimal characters after '0x'"

    return True, ""


def load_signing_account(private_key: Optional[str]) -> LocalAccount:
    """Return the account for `private_key`, or a fresh one when none is configured.

    Raises:
        ValueError: If the key is present but malformed.
    """
    if not private_key:
        account = Account.create()
        logger.warning(
            "No randomness provider key configured; generated ephemeral key for %s. "
            "Proofs from this run cannot be verified after restart against a new key.",
            account.address,
        )
        return account

    valid, error = validate_eth_private_key_format(private_key)
    if not valid:
        raise ValueError(f"Invalid randomness provider key: {error}")

    account = Account.from_key(private_key)
    logger.info("Randomness provider key loaded for %s", account.address)
    return account
