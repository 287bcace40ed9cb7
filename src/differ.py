"""
Differ - compares desired resources with stored state.

Each declared resource is classified as create, update or no-op; records
left in state for resources no longer declared become destroys. Before
comparing, references are resolved in dependency order:

- to the target's declared attribute when the document sets it,
- otherwise to the target's stored attributes/outputs when the target is
  unchanged; a target updated in place keeps its id, but its other
  computed values may change, so they resolve to UNKNOWN,
- otherwise to UNKNOWN (the target is created or replaced, so the value is
  only known after apply). An UNKNOWN field always counts as changed.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from document import Document, Resource, ResourceId
from errors import ValidationError
from expressions import UNKNOWN, Reference, contains_unknown, resolve_value, select_path
from graph import DependencyGraph
from providers.base import ResourceType
from state import StateRecord, StateSnapshot

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Action decided for a resource."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "no-op"


@dataclass(frozen=True)
class Diff:
    """Outcome of comparing one resource with its state record."""

    resource_id: ResourceId
    action: Action
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    changed_fields: Tuple[str, ...] = ()
    replace_fields: Tuple[str, ...] = ()
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    dependencies: Tuple[ResourceId, ...] = field(default=(), compare=False)
    prior_dependencies: Tuple[ResourceId, ...] = field(default=(), compare=False)

    @property
    def address(self) -> str:
        return self.resource_id.address

    @property
    def requires_replace(self) -> bool:
        return bool(self.replace_fields)


def changed_fields(before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
    """Names of fields whose value differs or is not yet known."""
    changed = []
    for name in sorted(set(before) | set(after)):
        if name in after and contains_unknown(after[name]):
            changed.append(name)
        elif before.get(name) != after.get(name) or (name in before) != (name in after):
            changed.append(name)
    return changed


class _Resolver:
    """Resolves references against already-diffed targets."""

    def __init__(self, snapshot: StateSnapshot):
        self.snapshot = snapshot
        self.resolved: Dict[ResourceId, Dict[str, Any]] = {}
        self.diffs: Dict[ResourceId, Diff] = {}

    def lookup(self, reference: Reference) -> Any:
        target = ResourceId(reference.resource_type, reference.name)
        declared = self.resolved.get(target, {})

        if reference.attribute in declared:
            if contains_unknown(declared[reference.attribute]) and reference.path:
                return UNKNOWN
            return self._select(declared, reference)

        diff = self.diffs.get(target)
        if diff is None or diff.action == Action.CREATE or diff.requires_replace:
            return UNKNOWN

        record = self.snapshot.get(target)
        value = self._select(record.values(), reference)
        if diff.action == Action.UPDATE and reference.attribute != "id":
            return UNKNOWN
        return value

    @staticmethod
    def _select(data: Dict[str, Any], reference: Reference) -> Any:
        try:
            return select_path(data, reference)
        except KeyError:
            raise ValidationError(
                f"Reference {reference} does not match any attribute of "
                f"'{reference.address}'"
            )


def _diff_declared(
    resource: Resource,
    after: Dict[str, Any],
    record: Optional[StateRecord],
    resource_type: ResourceType,
    dependencies: List[ResourceId],
) -> Diff:
    create_before_destroy = resource.lifecycle.create_before_destroy
    if create_before_destroy is None:
        create_before_destroy = resource_type.create_before_destroy

    common = dict(
        resource_id=resource.id,
        after=after,
        create_before_destroy=create_before_destroy,
        prevent_destroy=resource.lifecycle.prevent_destroy,
        dependencies=tuple(dependencies),
        prior_dependencies=tuple(sorted(record.dependencies)) if record else (),
    )

    if record is None:
        return Diff(action=Action.CREATE, changed_fields=tuple(sorted(after)), **common)

    changed = changed_fields(record.attributes, after)
    if not changed:
        return Diff(action=Action.NOOP, before=record.attributes, **common)

    replace = [name for name in changed if name in resource_type.replace_fields]
    return Diff(
        action=Action.UPDATE,
        before=record.attributes,
        changed_fields=tuple(changed),
        replace_fields=tuple(replace),
        **common,
    )


def compute_diffs(
    document: Document,
    graph: DependencyGraph,
    snapshot: StateSnapshot,
    resource_types: Optional[Mapping[str, ResourceType]] = None,
) -> List[Diff]:
    """
    Diff a document against a state snapshot.

    Args:
        document: Desired-state document
        graph: Dependency graph built from the document
        snapshot: Stored state to compare with
        resource_types: Resource type definitions by name; types not listed
            have no replace fields

    Returns:
        One Diff per declared resource and per orphaned state record,
        sorted by resource identity

    Raises:
        CycleError: If the graph has a cycle
        ValidationError: If a reference names an attribute the target does
            not have
    """
    resource_types = resource_types or {}
    resolver = _Resolver(snapshot)

    for resource_id in graph.topological_order():
        resource = document.resources[resource_id]
        after = resolve_value(resource.attributes, resolver.lookup)
        resolver.resolved[resource_id] = after
        resolver.diffs[resource_id] = _diff_declared(
            resource,
            after,
            snapshot.get(resource_id),
            resource_types.get(resource_id.resource_type)
            or ResourceType(name=resource_id.resource_type),
            graph.dependencies_of(resource_id),
        )

    for resource_id, record in snapshot.records.items():
        if resource_id in document.resources:
            continue
        resolver.diffs[resource_id] = Diff(
            resource_id=resource_id,
            action=Action.DESTROY,
            before=record.attributes,
            prior_dependencies=tuple(sorted(record.dependencies)),
        )

    diffs = [resolver.diffs[rid] for rid in sorted(resolver.diffs)]
    counts: Dict[str, int] = {}
    for diff in diffs:
        counts[diff.action.value] = counts.get(diff.action.value, 0) + 1
    logger.debug(f"Computed {len(diffs)} diffs: {counts}")
    return diffs


def diff_destroy(
    snapshot: StateSnapshot, document: Optional[Document] = None
) -> List[Diff]:
    """
    Diffs destroying every resource recorded in state.

    When the document is given, its lifecycle blocks still protect
    resources marked ``prevent_destroy``.
    """
    diffs = []
    for resource_id, record in sorted(snapshot.records.items()):
        declared = document.get(resource_id) if document else None
        diffs.append(
            Diff(
                resource_id=resource_id,
                action=Action.DESTROY,
                before=record.attributes,
                prevent_destroy=bool(declared and declared.lifecycle.prevent_destroy),
                prior_dependencies=tuple(sorted(record.dependencies)),
            )
        )
    return diffs
