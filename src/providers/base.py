"""
Provider Base - capability interface for realizing resource types.

A provider owns one or more resource types and implements create, read,
update and delete against its backend. Providers are registered with the
ProviderRegistry at startup; each resource type binds to exactly one
provider.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from document import ResourceId
from validation import validate_attributes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceType:
    """
    Definition of a resource type offered by a provider.

    Attributes:
        name: Type name used in documents (e.g. ``local_file``)
        schema: Draft 7 JSON Schema for the attributes
        replace_fields: Attributes whose change forces destroy + create
        create_before_destroy: Create the replacement before destroying
            the old object (a resource's lifecycle block may override this)
    """

    name: str
    schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object"}, compare=False, hash=False
    )
    replace_fields: FrozenSet[str] = frozenset()
    create_before_destroy: bool = False
    description: str = ""


@dataclass
class OperationContext:
    """Context passed to provider operations."""

    resource_id: ResourceId
    attributes: Dict[str, Any] = field(default_factory=dict)
    object_id: Optional[str] = None
    prior_attributes: Dict[str, Any] = field(default_factory=dict)
    prior_outputs: Dict[str, Any] = field(default_factory=dict)
    changed_fields: List[str] = field(default_factory=list)

    @property
    def resource_type(self) -> str:
        return self.resource_id.resource_type

    @property
    def name(self) -> str:
        return self.resource_id.name

    @property
    def address(self) -> str:
        return self.resource_id.address


@dataclass
class CreateResult:
    """Result of a provider create call."""

    object_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """
    Abstract base class for providers.

    Errors are reported by raising ``errors.ProviderError``; set
    ``retryable=False`` for failures that retrying cannot fix.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this provider (e.g., 'local')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Provider version string."""
        pass

    @property
    @abstractmethod
    def resource_types(self) -> List[ResourceType]:
        """Resource types this provider realizes."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the provider with configuration.

        Called once before the first operation.

        Args:
            config: Provider-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def create(self, ctx: OperationContext) -> CreateResult:
        """
        Create a new object from ``ctx.attributes``.

        Returns:
            CreateResult with the provider-assigned id and computed outputs
        """
        pass

    @abstractmethod
    async def read(self, ctx: OperationContext) -> Optional[Dict[str, Any]]:
        """
        Read the current attributes of ``ctx.object_id``.

        Returns:
            Current attributes, or None if the object no longer exists
        """
        pass

    @abstractmethod
    async def update(self, ctx: OperationContext) -> Dict[str, Any]:
        """
        Update ``ctx.object_id`` in place to ``ctx.attributes``.

        ``ctx.changed_fields`` lists the attributes that differ from the
        last applied state.

        Returns:
            Computed outputs after the update
        """
        pass

    @abstractmethod
    async def delete(self, ctx: OperationContext) -> None:
        """Delete ``ctx.object_id``. Deleting a missing object succeeds."""
        pass

    async def close(self) -> None:
        """Release connections or other resources held by the provider."""
        return None

    def get_resource_type(self, name: str) -> ResourceType:
        for resource_type in self.resource_types:
            if resource_type.name == name:
                return resource_type
        raise KeyError(f"Provider '{self.name}' has no resource type '{name}'")

    def validate_attributes(
        self, resource_type: str, attributes: Dict[str, Any]
    ) -> Tuple[bool, Optional[str]]:
        """
        Validate attributes for one of this provider's resource types.

        The default implementation checks the type's JSON Schema. Providers
        with constraints a schema cannot express should override this.
        """
        return validate_attributes(
            attributes, self.get_resource_type(resource_type).schema
        )

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load provider-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this provider.
        """
        return {}
