"""Billing API service: usage ledger, subscriptions, webhooks and batch triggers."""

__version__ = "0.4.0"
