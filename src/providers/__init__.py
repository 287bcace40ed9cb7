"""
Providers for the reconciliation engine.

A provider realizes resource types against a backend API. The registry
binds every resource type to exactly one provider.
"""

from providers.base import CreateResult, OperationContext, Provider, ResourceType
from providers.registry import ProviderRegistry, get_registry

__all__ = [
    "CreateResult",
    "OperationContext",
    "Provider",
    "ResourceType",
    "ProviderRegistry",
    "get_registry",
]
