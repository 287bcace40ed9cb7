"""
Graph Builder - dependency graph between declared resources.

Edges point from a resource to the resources it depends on, inferred from
attribute references and explicit ``depends_on`` lists.
"""

import heapq
import logging
from typing import Callable, Dict, Hashable, Iterable, Iterator, List, Set, Tuple, TypeVar

from document import Document, Resource, ResourceId
from errors import CycleError, UnresolvedReferenceError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)


def strongly_connected_components(
    nodes: Iterable[T], successors: Callable[[T], Iterable[T]]
) -> List[List[T]]:
    """
    Tarjan's algorithm, iterative so deep graphs don't hit the recursion limit.

    Args:
        nodes: All graph nodes
        successors: Callable returning the successors of a node

    Returns:
        List of components, each a list of nodes
    """
    index = 0
    indices: Dict[T, int] = {}
    lowlink: Dict[T, int] = {}
    on_stack: Set[T] = set()
    stack: List[T] = []
    components: List[List[T]] = []

    for root in nodes:
        if root in indices:
            continue

        indices[root] = lowlink[root] = index
        index += 1
        stack.append(root)
        on_stack.add(root)
        work: List[Tuple[T, Iterator[T]]] = [(root, iter(successors(root)))]

        while work:
            node, children = work[-1]
            descended = False
            for child in children:
                if child not in indices:
                    indices[child] = lowlink[child] = index
                    index += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(successors(child))))
                    descended = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], indices[child])
            if descended:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

            if lowlink[node] == indices[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)

    return components


def find_cycles(
    nodes: Iterable[T], successors: Callable[[T], Iterable[T]]
) -> List[List[T]]:
    """Return the strongly connected components that form cycles."""
    cycles = []
    for component in strongly_connected_components(nodes, successors):
        if len(component) > 1:
            cycles.append(component)
        elif component[0] in set(successors(component[0])):
            cycles.append(component)
    return cycles


class DependencyGraph:
    """Directed graph of resources; an edge A -> B means A depends on B."""

    def __init__(self):
        self._resources: Dict[ResourceId, Resource] = {}
        self._dependencies: Dict[ResourceId, Set[ResourceId]] = {}
        self._dependents: Dict[ResourceId, Set[ResourceId]] = {}

    def add_resource(self, resource: Resource) -> None:
        self._resources[resource.id] = resource
        self._dependencies.setdefault(resource.id, set())
        self._dependents.setdefault(resource.id, set())

    def add_edge(self, source: ResourceId, target: ResourceId) -> None:
        """Record that ``source`` depends on ``target``."""
        self._dependencies.setdefault(source, set()).add(target)
        self._dependents.setdefault(target, set()).add(source)

    @property
    def nodes(self) -> List[ResourceId]:
        return sorted(self._resources)

    def __contains__(self, resource_id: ResourceId) -> bool:
        return resource_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def resource(self, resource_id: ResourceId) -> Resource:
        return self._resources[resource_id]

    def dependencies_of(self, resource_id: ResourceId) -> List[ResourceId]:
        return sorted(self._dependencies.get(resource_id, ()))

    def dependents_of(self, resource_id: ResourceId) -> List[ResourceId]:
        return sorted(self._dependents.get(resource_id, ()))

    def edges(self) -> Iterator[Tuple[ResourceId, ResourceId]]:
        for source in sorted(self._dependencies):
            for target in sorted(self._dependencies[source]):
                yield source, target

    def find_cycles(self) -> List[List[ResourceId]]:
        """Return each group of resources participating in a cycle."""
        return [
            sorted(cycle)
            for cycle in find_cycles(self.nodes, self.dependencies_of)
        ]

    def topological_order(self) -> List[ResourceId]:
        """
        Resources ordered so that every resource follows its dependencies.

        Ties are broken by (type, name).

        Raises:
            CycleError: If the graph has a cycle
        """
        remaining = {rid: len(self._dependencies[rid]) for rid in self._resources}
        ready = [rid for rid, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            rid = heapq.heappop(ready)
            order.append(rid)
            for dependent in self._dependents[rid]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(self._resources):
            cycles = self.find_cycles()
            raise CycleError(rid.address for cycle in cycles for rid in cycle)
        return order


def build_graph(document: Document) -> DependencyGraph:
    """
    Build the dependency graph for a document.

    Args:
        document: Parsed desired-state document

    Returns:
        DependencyGraph with one node per declared resource

    Raises:
        UnresolvedReferenceError: If a reference or depends_on entry names a
            resource that is not declared
    """
    graph = DependencyGraph()
    for resource in document.resources.values():
        graph.add_resource(resource)

    for resource in document.resources.values():
        for reference in resource.references():
            target = ResourceId(reference.resource_type, reference.name)
            if target not in document.resources:
                raise UnresolvedReferenceError(resource.address, target.address)
            graph.add_edge(resource.id, target)

        for target in resource.depends_on:
            if target not in document.resources:
                raise UnresolvedReferenceError(resource.address, target.address)
            graph.add_edge(resource.id, target)

    logger.debug(
        f"Built dependency graph: {len(graph)} resources, "
        f"{sum(1 for _ in graph.edges())} edges"
    )
    return graph
