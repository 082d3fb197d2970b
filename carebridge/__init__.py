"""Resilience and tamper-evident audit core for the CareBridge backend."""

__version__ = "0.1.0"
