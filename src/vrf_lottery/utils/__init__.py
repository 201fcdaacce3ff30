"""Utility helpers: configuration, logging, clocks and address formatting."""
