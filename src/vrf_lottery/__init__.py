"""VRF-driven, time-gated single-winner lottery."""

__version__ = "1.0.0"
