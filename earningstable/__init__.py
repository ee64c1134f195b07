"""Earnings table pipeline: earnings calendar + quotes reconciled per symbol."""

__version__ = "1.0.0"
