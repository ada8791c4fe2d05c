"""Streaming chat relay: authenticated gateway to upstream text-generation providers."""

__version__ = "0.1.0"
