"""Capabilities shipped with the engine."""
