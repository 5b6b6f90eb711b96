"""devflow: declarative plan execution with approval gating and rollback."""

__version__ = "0.1.0"
