"""Timesheet lifecycle and billing computation engine."""

__version__ = "0.1.0"
