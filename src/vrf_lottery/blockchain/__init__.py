"""Ledger and randomness provider."""
