"""Multi-broker order plane: routing, translation, reconciliation and recovery."""

__version__ = "0.1.0"
