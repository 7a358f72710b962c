"""Plan catalog and entitlement tables."""

from billing_engine.plans.catalog import FreeTierDefaults, PlanCatalog, PlanDefinition, default_catalog

__all__ = [
    "FreeTierDefaults",
    "PlanCatalog",
    "PlanDefinition",
    "default_catalog",
]
