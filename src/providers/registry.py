"""
Provider Registry - registration and lookup of providers.

Built-in providers are registered explicitly at startup. Third-party
providers are discovered through the ``converge.providers`` entry-point
group. Every resource type maps to exactly one provider.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from providers.base import Provider, ResourceType

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "converge.providers"


class ProviderRegistry:
    """
    Central registry for providers.

    Holds provider classes, the resource types they claim, their
    environment-loaded configuration and initialized instances.
    """

    def __init__(self):
        # Registered provider classes (not instantiated)
        self._providers: Dict[str, Type[Provider]] = {}

        # Cached metadata (name, version, resource types)
        self._provider_info: Dict[str, Dict[str, Any]] = {}

        # Configuration loaded from environment at registration time
        self._provider_configs: Dict[str, Dict[str, Any]] = {}

        # Initialized instances
        self._instances: Dict[str, Provider] = {}

        # Resource type name -> (provider name, type definition)
        self._resource_types: Dict[str, ResourceType] = {}
        self._type_to_provider: Dict[str, str] = {}

    def register_provider(self, provider_class: Type[Provider]) -> None:
        """
        Register a provider class.

        Args:
            provider_class: The Provider subclass to register

        Raises:
            ValueError: If one of its resource types is already claimed by
                another provider
        """
        temp_instance = provider_class()
        name = temp_instance.name
        version = temp_instance.version
        resource_types = temp_instance.resource_types

        for resource_type in resource_types:
            existing = self._type_to_provider.get(resource_type.name)
            if existing and existing != name:
                raise ValueError(
                    f"Resource type '{resource_type.name}' is already claimed by "
                    f"provider '{existing}'. Cannot register '{name}'."
                )

        if name in self._providers:
            logger.warning(f"Overwriting existing provider: {name}")

        self._providers[name] = provider_class
        self._provider_info[name] = {
            "name": name,
            "version": version,
            "resource_types": [rt.name for rt in resource_types],
        }
        self._provider_configs[name] = provider_class.load_config_from_env()
        for resource_type in resource_types:
            self._resource_types[resource_type.name] = resource_type
            self._type_to_provider[resource_type.name] = name

        logger.info(
            f"Registered provider: {name} v{version} "
            f"(resource types: {', '.join(rt.name for rt in resource_types)})"
        )

    async def get_provider(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> Provider:
        """
        Get an initialized provider instance.

        The instance is created and initialized on first use with the
        environment config overlaid by ``config``.

        Raises:
            ValueError: If the provider is not registered
        """
        if name not in self._providers:
            available = ", ".join(self._providers.keys()) or "none"
            raise ValueError(f"Unknown provider: {name}. Available providers: {available}")

        if name not in self._instances:
            merged = dict(self._provider_configs.get(name, {}))
            if config:
                merged.update(config)
            provider = self._providers[name]()
            await provider.initialize(merged)
            self._instances[name] = provider
            logger.info(f"Initialized provider: {name}")

        return self._instances[name]

    async def close(self) -> None:
        """Close all initialized providers."""
        for name, provider in list(self._instances.items()):
            try:
                await provider.close()
            except Exception as e:
                logger.error(f"Error closing provider '{name}': {e}")
        self._instances.clear()

    # Lookup methods

    def list_providers(self) -> List[str]:
        return list(self._providers.keys())

    def has_provider(self, name: str) -> bool:
        return name in self._providers

    def has_resource_type(self, resource_type: str) -> bool:
        return resource_type in self._type_to_provider

    def list_resource_types(self) -> List[str]:
        return sorted(self._type_to_provider)

    def provider_name_for(self, resource_type: str) -> str:
        """
        Name of the provider that owns a resource type.

        Raises:
            KeyError: If no provider handles the type
        """
        if resource_type not in self._type_to_provider:
            raise KeyError(f"No provider handles resource type '{resource_type}'")
        return self._type_to_provider[resource_type]

    def get_resource_type(self, resource_type: str) -> ResourceType:
        """
        Definition of a resource type.

        Raises:
            KeyError: If no provider handles the type
        """
        if resource_type not in self._resource_types:
            raise KeyError(f"No provider handles resource type '{resource_type}'")
        return self._resource_types[resource_type]

    def get_provider_info(self, name: str) -> Optional[Dict[str, Any]]:
        return self._provider_info.get(name)

    def get_provider_config(self, name: str) -> Dict[str, Any]:
        return self._provider_configs.get(name, {})


# Global registry instance
_registry: Optional[ProviderRegistry] = None


def get_registry() -> ProviderRegistry:
    """Get the global provider registry singleton."""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_providers(
    registry: Optional[ProviderRegistry] = None,
    enabled: Optional[List[str]] = None,
) -> ProviderRegistry:
    """
    Register the built-in providers and discover installed ones.

    Args:
        registry: Registry to populate (defaults to the global one)
        enabled: Provider names to keep; empty or None keeps all

    Returns:
        The populated registry
    """
    registry = registry or get_registry()

    from providers.http import HttpProvider
    from providers.local import LocalProvider

    candidates: List[Type[Provider]] = [LocalProvider, HttpProvider]

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            candidates.append(ep.load())
        except Exception as e:
            logger.warning(f"Could not load provider {ep.name}: {e}")

    for provider_class in candidates:
        name = provider_class().name
        if enabled and name not in enabled:
            logger.debug(f"Provider '{name}' not enabled, skipping")
            continue
        registry.register_provider(provider_class)

    return registry
