"""Billing services: ledger, lifecycle, webhooks, batch jobs, notifications."""
