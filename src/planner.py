"""
Planner - orders diffs into an executable plan.

Every non-no-op diff becomes one plan entry, except replacements, which
become a destroy entry and a create entry for the same resource. Each entry
lists the entries it has to wait for:

- create/update entries wait for the forward entries of their dependencies,
- destroy entries wait for the destroys of their dependents, so resources
  are torn down in reverse dependency order,
- a replaced resource's create waits for its destroy, unless it is
  create-before-destroy, in which case the destroy waits for the create and
  for the forward entries of the resource's dependents.

The entries are then sorted topologically; among ready entries the order is
(type, name), destroy before create, so identical inputs always produce the
same plan.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from differ import Action, Diff, compute_diffs, diff_destroy
from document import Document, ResourceId
from errors import CycleError, ValidationError
from expressions import to_raw
from graph import DependencyGraph, find_cycles
from providers.base import ResourceType
from state import StateSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanEntry:
    """
    One action for one resource.

    A resource has at most one entry, except a replacement, which has a
    ``destroy`` and a ``create`` entry (``replace=True``) keyed
    ``address:destroy`` and ``address:create``. One of the two always waits
    for the other, so both are never in flight at the same time.
    """

    resource_id: ResourceId
    action: Action
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    changed_fields: Tuple[str, ...] = ()
    replace_fields: Tuple[str, ...] = ()
    replace: bool = False
    create_before_destroy: bool = False
    wait_for: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return entry_key(self.resource_id, self.action)

    @property
    def address(self) -> str:
        return self.resource_id.address

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "address": self.address,
            "action": self.action.value,
            "replace": self.replace,
            "create_before_destroy": self.create_before_destroy,
            "changed_fields": list(self.changed_fields),
            "replace_fields": list(self.replace_fields),
            "before": to_raw(self.before),
            "after": to_raw(self.after),
            "wait_for": list(self.wait_for),
        }


@dataclass
class Plan:
    """Ordered plan entries and the state serial they were computed against."""

    entries: List[PlanEntry] = field(default_factory=list)
    serial: int = 0
    diffs: List[Diff] = field(default_factory=list)
    destroy: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def get(self, key: str) -> Optional[PlanEntry]:
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    def summary(self) -> Dict[str, int]:
        """Counts per action; a replacement counts once, as ``replace``."""
        counts = {"create": 0, "update": 0, "replace": 0, "destroy": 0}
        for entry in self.entries:
            if entry.replace:
                if entry.action == Action.CREATE:
                    counts["replace"] += 1
            else:
                counts[entry.action.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serial": self.serial,
            "destroy": self.destroy,
            "summary": self.summary(),
            "entries": [entry.to_dict() for entry in self.entries],
            "no_op": [d.address for d in self.diffs if d.action == Action.NOOP],
        }


def entry_key(resource_id: ResourceId, action: Action) -> str:
    return f"{resource_id.address}:{action.value}"


def check_cycles(graph: DependencyGraph) -> None:
    """
    Raises:
        CycleError: Naming every resource that participates in a cycle
    """
    cycles = graph.find_cycles()
    if cycles:
        raise CycleError(rid.address for cycle in cycles for rid in cycle)


def _check_prevent_destroy(diffs: Iterable[Diff]) -> None:
    protected = []
    for diff in diffs:
        destroys = diff.action == Action.DESTROY or diff.requires_replace
        if destroys and diff.prevent_destroy:
            protected.append(diff.address)
    if protected:
        raise ValidationError(
            f"Plan would destroy resources marked prevent_destroy: "
            f"{', '.join(protected)}",
            protected,
        )


def _effective_create_before_destroy(diffs: Dict[ResourceId, Diff]) -> Set[ResourceId]:
    """
    Replaced resources that are created before being destroyed.

    Create-before-destroy propagates to the replaced dependencies of such a
    resource; mixing the two orders along a dependency chain cannot be
    scheduled.
    """
    result: Set[ResourceId] = set()
    pending = [rid for rid, d in diffs.items() if d.requires_replace and d.create_before_destroy]
    while pending:
        rid = pending.pop()
        if rid in result:
            continue
        result.add(rid)
        for dependency in diffs[rid].dependencies:
            target = diffs.get(dependency)
            if target is not None and target.requires_replace:
                pending.append(dependency)
    return result


def _expand(diffs: List[Diff]) -> Tuple[Dict[str, PlanEntry], Dict[str, Set[str]]]:
    """Turn diffs into entries (without wait lists) plus their ordering edges."""
    by_id = {diff.resource_id: diff for diff in diffs}
    cbd = _effective_create_before_destroy(by_id)

    entries: Dict[str, PlanEntry] = {}
    forward: Dict[ResourceId, str] = {}
    destroy: Dict[ResourceId, str] = {}

    for diff in diffs:
        if diff.action == Action.NOOP:
            continue
        common = dict(
            resource_id=diff.resource_id,
            before=diff.before,
            after=diff.after,
            changed_fields=diff.changed_fields,
            replace_fields=diff.replace_fields,
        )
        if diff.requires_replace:
            is_cbd = diff.resource_id in cbd
            for action in (Action.DESTROY, Action.CREATE):
                entry = PlanEntry(
                    action=action, replace=True, create_before_destroy=is_cbd, **common
                )
                entries[entry.key] = entry
            destroy[diff.resource_id] = entry_key(diff.resource_id, Action.DESTROY)
            forward[diff.resource_id] = entry_key(diff.resource_id, Action.CREATE)
        else:
            entry = PlanEntry(action=diff.action, **common)
            entries[entry.key] = entry
            if diff.action == Action.DESTROY:
                destroy[diff.resource_id] = entry.key
            else:
                forward[diff.resource_id] = entry.key

    edges: Dict[str, Set[str]] = {key: set() for key in entries}

    # Forward entries follow their dependencies' forward entries
    for rid, key in forward.items():
        for dependency in by_id[rid].dependencies:
            if dependency in forward:
                edges[key].add(forward[dependency])

    # Destroys run dependents first
    for rid, key in destroy.items():
        diff = by_id[rid]
        for dependency in set(diff.prior_dependencies) | set(diff.dependencies):
            if dependency in destroy:
                edges[destroy[dependency]].add(key)

    # Orphans outlive the forward entries of resources that used them
    for rid, key in forward.items():
        for dependency in by_id[rid].prior_dependencies:
            if dependency in destroy and dependency not in forward:
                edges[destroy[dependency]].add(key)

    # Replacement halves
    for rid in destroy.keys() & forward.keys():
        if rid in cbd:
            edges[destroy[rid]].add(forward[rid])
            for dependent, diff in by_id.items():
                if rid in diff.dependencies and dependent in forward:
                    edges[destroy[rid]].add(forward[dependent])
        else:
            edges[forward[rid]].add(destroy[rid])

    return entries, edges


def _sort_key(entry: PlanEntry) -> Tuple[str, str, int]:
    return (
        entry.resource_id.resource_type,
        entry.resource_id.name,
        0 if entry.action == Action.DESTROY else 1,
    )


def order_entries(diffs: List[Diff]) -> List[PlanEntry]:
    """
    Expand and topologically sort diffs into plan entries.

    Raises:
        CycleError: If the entries cannot be ordered
    """
    entries, edges = _expand(diffs)

    remaining = {key: len(waits) for key, waits in edges.items()}
    dependents: Dict[str, List[str]] = {key: [] for key in entries}
    for key, waits in edges.items():
        for wait in waits:
            dependents[wait].append(key)

    ready = [(_sort_key(entries[k]), k) for k, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    ordered: List[PlanEntry] = []
    while ready:
        _, key = heapq.heappop(ready)
        entry = entries[key]
        ordered.append(
            PlanEntry(
                resource_id=entry.resource_id,
                action=entry.action,
                before=entry.before,
                after=entry.after,
                changed_fields=entry.changed_fields,
                replace_fields=entry.replace_fields,
                replace=entry.replace,
                create_before_destroy=entry.create_before_destroy,
                wait_for=tuple(sorted(edges[key])),
            )
        )
        for dependent in dependents[key]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (_sort_key(entries[dependent]), dependent))

    if len(ordered) != len(entries):
        cycles = find_cycles(sorted(entries), lambda k: sorted(edges[k]))
        raise CycleError(
            entries[key].address for cycle in cycles for key in cycle
        )
    return ordered


def create_plan(
    document: Document,
    graph: DependencyGraph,
    snapshot: StateSnapshot,
    resource_types: Optional[Mapping[str, ResourceType]] = None,
) -> Plan:
    """
    Plan the changes that converge ``snapshot`` towards ``document``.

    Raises:
        CycleError: If the resource graph has a cycle
        ValidationError: If a resource marked prevent_destroy would be
            destroyed or replaced
    """
    check_cycles(graph)
    diffs = compute_diffs(document, graph, snapshot, resource_types)
    _check_prevent_destroy(diffs)
    plan = Plan(entries=order_entries(diffs), serial=snapshot.serial, diffs=diffs)
    logger.info(f"Plan at serial {plan.serial}: {plan.summary()}")
    return plan


def plan_destroy(
    snapshot: StateSnapshot, document: Optional[Document] = None
) -> Plan:
    """
    Plan destroying everything recorded in state.

    Raises:
        ValidationError: If the document marks a recorded resource
            prevent_destroy
    """
    diffs = diff_destroy(snapshot, document)
    _check_prevent_destroy(diffs)
    plan = Plan(
        entries=order_entries(diffs), serial=snapshot.serial, diffs=diffs, destroy=True
    )
    logger.info(f"Destroy plan at serial {plan.serial}: {plan.summary()}")
    return plan
