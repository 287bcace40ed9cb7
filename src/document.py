"""
Desired-state document loading.

A document is a YAML or JSON file of the form::

    variables:
      prefix: demo
    providers:
      http:
        base_url: https://api.example.com
    resources:
      - type: null_resource
        name: network
        attributes:
          triggers:
            cidr: 10.0.0.0/16
      - type: local_file
        name: config
        attributes:
          filename: out/${var.prefix}.conf
          content: "network=${null_resource.network.id}"
        lifecycle:
          create_before_destroy: true
    outputs:
      network_id: ${null_resource.network.id}

The raw structure is validated with pydantic, variables are substituted and
attribute values are parsed into expression values.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from errors import UnresolvedReferenceError, ValidationError
from expressions import Reference, iter_references, parse_value, substitute_variables

logger = logging.getLogger(__name__)

TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_NAME_LENGTH = 128


def validate_type_format(value: str) -> str:
    """Validate a resource type name (e.g. ``local_file``)."""
    if not TYPE_PATTERN.match(value):
        raise ValueError(
            "type must start with a lowercase letter and contain only "
            "lowercase alphanumeric characters or '_'"
        )
    return value


def validate_name_format(value: str) -> str:
    """Validate a resource logical name."""
    if not value:
        raise ValueError("name cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"name cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            "name must consist of alphanumeric characters, '-' or '_'"
        )
    return value


@dataclass(frozen=True, order=True)
class ResourceId:
    """Resource identity: (type, logical name)."""

    resource_type: str
    name: str

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    @classmethod
    def parse(cls, address: str) -> "ResourceId":
        """Parse a ``type.name`` address."""
        resource_type, _, name = address.partition(".")
        if not resource_type or not name:
            raise ValidationError(
                f"Invalid resource address '{address}': expected 'type.name'"
            )
        return cls(resource_type=resource_type, name=name)

    def __str__(self) -> str:
        return self.address


@dataclass(frozen=True)
class Lifecycle:
    """Per-resource lifecycle overrides."""

    create_before_destroy: Optional[bool] = None
    prevent_destroy: bool = False


@dataclass(frozen=True)
class Resource:
    """A declared unit of desired state."""

    id: ResourceId
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False)
    depends_on: Tuple[ResourceId, ...] = ()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def address(self) -> str:
        return self.id.address

    @property
    def resource_type(self) -> str:
        return self.id.resource_type

    def references(self) -> List[Reference]:
        """All references found in this resource's attributes."""
        return list(iter_references(self.attributes))


@dataclass
class Document:
    """A parsed desired-state document."""

    resources: Dict[ResourceId, Resource] = field(default_factory=dict)
    providers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)

    def get(self, resource_id: ResourceId) -> Optional[Resource]:
        return self.resources.get(resource_id)

    def resource_types(self) -> List[str]:
        return sorted({rid.resource_type for rid in self.resources})


# Raw document models


class LifecycleModel(BaseModel):
    """Lifecycle block of a resource declaration."""

    model_config = ConfigDict(extra="forbid")

    create_before_destroy: Optional[bool] = None
    prevent_destroy: bool = False


class ResourceModel(BaseModel):
    """A single resource declaration."""

    model_config = ConfigDict(extra="forbid")

    type: str = Field(..., description="Resource type", examples=["local_file"])
    name: str = Field(..., description="Logical name", examples=["config"])
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    lifecycle: LifecycleModel = Field(default_factory=LifecycleModel)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        return validate_type_format(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> List[str]:
        for address in v:
            resource_type, _, name = address.partition(".")
            validate_type_format(resource_type)
            validate_name_format(name)
        return v


class DocumentModel(BaseModel):
    """Top-level document structure."""

    model_config = ConfigDict(extra="forbid")

    variables: Dict[str, Any] = Field(default_factory=dict)
    providers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    resources: List[ResourceModel] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)


def _format_pydantic_errors(error: PydanticValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        path = ".".join(str(p) for p in item["loc"]) or "(root)"
        messages.append(f"{path}: {item['msg']}")
    return messages


def parse_document(
    data: Any, variables: Optional[Dict[str, Any]] = None
) -> Document:
    """
    Parse a raw document structure.

    Args:
        data: Raw document (as loaded from YAML/JSON)
        variables: Variable values overriding the document defaults

    Returns:
        The parsed Document

    Raises:
        ValidationError: If the document is malformed, declares a resource
            twice, or uses an undeclared variable
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Document must be a mapping")

    try:
        model = DocumentModel.model_validate(data)
    except PydanticValidationError as e:
        errors = _format_pydantic_errors(e)
        raise ValidationError(f"Invalid document: {'; '.join(errors)}", errors)

    merged_variables = dict(model.variables)
    if variables:
        merged_variables.update(variables)

    document = Document(
        providers=model.providers,
        variables=merged_variables,
    )

    for declared in model.resources:
        resource_id = ResourceId(declared.type, declared.name)
        if resource_id in document.resources:
            raise ValidationError(f"Resource '{resource_id}' is declared twice")

        attributes = parse_value(
            substitute_variables(declared.attributes, merged_variables)
        )
        document.resources[resource_id] = Resource(
            id=resource_id,
            attributes=attributes,
            depends_on=tuple(ResourceId.parse(a) for a in declared.depends_on),
            lifecycle=Lifecycle(
                create_before_destroy=declared.lifecycle.create_before_destroy,
                prevent_destroy=declared.lifecycle.prevent_destroy,
            ),
        )

    for name, expression in model.outputs.items():
        value = parse_value(substitute_variables(expression, merged_variables))
        for reference in iter_references(value):
            target = ResourceId(reference.resource_type, reference.name)
            if target not in document.resources:
                raise UnresolvedReferenceError(f"output.{name}", target.address)
        document.outputs[name] = value

    logger.debug(
        f"Parsed document with {len(document.resources)} resources, "
        f"{len(document.outputs)} outputs"
    )
    return document


def load_document(
    path: str, variables: Optional[Dict[str, Any]] = None
) -> Document:
    """
    Load and parse a desired-state document from a YAML or JSON file.

    Raises:
        ValidationError: If the file cannot be parsed or is invalid
    """
    file_path = Path(path)
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            if file_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValidationError(f"Could not parse {path}: {e}")

    logger.info(f"Loaded desired-state document {path}")
    return parse_document(data, variables=variables)
