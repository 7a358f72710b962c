"""Subscription billing and usage-metering core."""

__version__ = "0.4.0"
