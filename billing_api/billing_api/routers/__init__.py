"""API router modules for the billing service."""

from __future__ import annotations

from billing_api.routers import cron, features, health, subscriptions, usage, webhooks

__all__ = [
    "cron",
    "features",
    "health",
    "subscriptions",
    "usage",
    "webhooks",
]
