"""Middleware components for the billing API."""

from __future__ import annotations

from billing_api.middleware.json_formatter import JSONFormatter
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.middleware.rbac import Role, get_user_role, require_role
from billing_api.middleware.tenant_context import TenantContextMiddleware

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
    "Role",
    "TenantContextMiddleware",
    "get_user_role",
    "require_role",
]
