"""Pydantic models for the relay service and its client."""
