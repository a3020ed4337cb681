"""Capability implementations consumed by the core."""
