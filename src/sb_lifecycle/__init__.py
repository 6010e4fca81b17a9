"""Service Bus resource lifecycle orchestrator."""

__version__ = "0.1.0"
