"""Common utility functions for the lottery backend."""

from web3 import Web3


def shorten_eth_address(address: str) -> str:
    """Shorten an Ethereum address for display: '0x123456...abcd'.
    Returns the first 6 and last 4 characters, separated by '...'.
    Handles addresses with or without '0x' prefix.
    """
    if not address:
        return ""
    addr = address.lower()
    if addr.startswith("0x"):
        addr = addr[2:]
    if len(addr) < 10:
        return f"0x{addr}"
    return f"0x{addr[:6]}...{addr[-4:]}"


def normalize_address(address: str) -> str:
    """Validate an address and return its checksum form."""
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return Web3.to_checksum_address(address)


def wei_to_eth(amount: int) -> str:
    return str(Web3.from_wei(amount, "ether"))


def derive_holding_address(owner: str, label: str = "lottery") -> str:
    """Stable address for funds held on behalf of `owner` (no key exists for it)."""
    digest = Web3.solidity_keccak(["address", "string"], [normalize_address(owner), label])
    return Web3.to_checksum_address(digest[-20:])
