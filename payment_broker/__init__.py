"""Multi-account payment broker with exactly-once webhook reconciliation."""

__version__ = "1.0.0"
