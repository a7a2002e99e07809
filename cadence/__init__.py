"""Cadence: scheduled Discord deliveries with an auditable send/activity log."""

__version__ = "0.3.0"
