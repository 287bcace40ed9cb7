"""
Engine - validate, plan, apply and destroy desired-state documents.

Composes the graph builder, differ, planner and executor with a state store
and the provider registry. ``plan`` optionally refreshes state from the
providers first (drift detection); the refreshed view is only used for
planning and is never written back.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from config import Config, get_config
from document import Document, ResourceId
from errors import ConflictError, ValidationError
from events import EventBus
from executor import ApplyReport, Executor
from expressions import UNKNOWN, Reference, resolve_value, select_path
from graph import DependencyGraph, build_graph
from planner import Plan, check_cycles, create_plan, plan_destroy
from providers.base import OperationContext, ResourceType
from providers.registry import ProviderRegistry, get_registry
from state import LocalStateStore, MemoryStateStore, StateRecord, StateSnapshot, StateStore
from validation import schema_errors

logger = logging.getLogger(__name__)


async def open_state_store(config: Config) -> StateStore:
    """Create the configured state store, connecting if needed."""
    backend = config.state.backend
    if backend == "memory":
        return MemoryStateStore()
    if backend == "postgres":
        from db import PostgresStateStore

        db = config.database
        if not db.password:
            raise ValueError("DB_PASSWORD must be set for the postgres state backend")
        store = PostgresStateStore(
            host=db.host,
            port=db.port,
            database=db.database,
            user=db.user,
            password=db.password,
            min_pool_size=db.min_pool_size,
            max_pool_size=db.max_pool_size,
        )
        await store.connect()
        await store.initialize_schema()
        return store
    return LocalStateStore(config.state.path)


class Engine:
    """Reconciliation engine bound to one state store."""

    def __init__(
        self,
        store: StateStore,
        registry: Optional[ProviderRegistry] = None,
        config: Optional[Config] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.registry = registry or get_registry()
        self.config = config or get_config()
        self.event_bus = event_bus

    def resource_types(self) -> Dict[str, ResourceType]:
        return {
            name: self.registry.get_resource_type(name)
            for name in self.registry.list_resource_types()
        }

    def provider_configs(
        self, document: Optional[Document] = None
    ) -> Dict[str, Dict[str, Any]]:
        """Provider configs: PROVIDER_CONFIGS overlaid by the document."""
        configs: Dict[str, Dict[str, Any]] = {}
        for name in self.registry.list_providers():
            merged = dict(self.config.providers.get_provider_config(name))
            if document is not None:
                merged.update(document.providers.get(name, {}))
            configs[name] = merged
        return configs

    # Validation

    def validate(self, document: Document) -> DependencyGraph:
        """
        Validate a document and build its dependency graph.

        Raises:
            ValidationError: Unknown resource types, undeclared references,
                unknown providers or attribute schema violations
            CycleError: If the dependency graph has a cycle
        """
        graph = build_graph(document)
        check_cycles(graph)

        errors: List[str] = []
        for name in sorted(document.providers):
            if not self.registry.has_provider(name):
                errors.append(f"providers.{name}: unknown provider")

        for resource_id in sorted(document.resources):
            resource = document.resources[resource_id]
            if not self.registry.has_resource_type(resource_id.resource_type):
                errors.append(
                    f"{resource.address}: no provider handles resource type "
                    f"'{resource_id.resource_type}'"
                )
                continue
            schema = self.registry.get_resource_type(resource_id.resource_type).schema
            for message in schema_errors(resource.attributes, schema):
                errors.append(f"{resource.address}.{message}")

        if errors:
            raise ValidationError(
                f"Document is invalid: {len(errors)} error(s)", errors
            )
        logger.info(f"Document valid: {len(document.resources)} resources")
        return graph

    # Planning

    async def refresh(
        self, snapshot: StateSnapshot, document: Optional[Document] = None
    ) -> StateSnapshot:
        """
        Read every recorded object back from its provider.

        Objects that no longer exist are dropped so they plan as creates,
        unless the document no longer declares them: those keep their record
        and plan as destroys, which providers treat as already done.
        Only attributes already recorded are compared; anything else a
        provider returns is ignored.
        """
        configs = self.provider_configs(document)
        refreshed: Dict[ResourceId, StateRecord] = {}

        async def read(record: StateRecord) -> None:
            resource_type = record.resource_id.resource_type
            if not self.registry.has_resource_type(resource_type):
                raise ValidationError(
                    f"{record.address}: no provider handles resource type "
                    f"'{resource_type}'"
                )
            name = self.registry.provider_name_for(resource_type)
            provider = await self.registry.get_provider(name, configs.get(name))
            current = await provider.read(
                OperationContext(
                    resource_id=record.resource_id,
                    object_id=record.object_id,
                    prior_attributes=record.attributes,
                    prior_outputs=record.outputs,
                )
            )
            if current is None:
                logger.warning(f"{record.address} no longer exists ({record.object_id})")
                if document is None or record.resource_id not in document.resources:
                    # Still planned as a destroy so the record is cleared
                    refreshed[record.resource_id] = record
                return

            attributes = {
                key: current.get(key, value) for key, value in record.attributes.items()
            }
            if attributes != record.attributes:
                logger.warning(f"Drift detected on {record.address}")
            refreshed[record.resource_id] = StateRecord(
                resource_id=record.resource_id,
                provider=record.provider,
                object_id=record.object_id,
                attributes=attributes,
                outputs=record.outputs,
                dependencies=record.dependencies,
                updated_at=record.updated_at,
            )

        await asyncio.gather(*(read(r) for r in snapshot.records.values()))
        return StateSnapshot(serial=snapshot.serial, records=refreshed)

    async def plan(
        self, document: Document, refresh: bool = True, destroy: bool = False
    ) -> Plan:
        """
        Compute the plan for a document against current state.

        Raises:
            ValidationError: If the document is invalid
            CycleError: If the document has a dependency cycle
        """
        graph = self.validate(document)
        snapshot = await self.store.snapshot()
        if destroy:
            return plan_destroy(snapshot, document)
        if refresh and len(snapshot):
            snapshot = await self.refresh(snapshot, document)
        return create_plan(document, graph, snapshot, self.resource_types())

    # Execution

    async def apply(
        self,
        document: Document,
        plan: Optional[Plan] = None,
        refresh: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
        run_id: Optional[str] = None,
    ) -> ApplyReport:
        """
        Apply a document (planning first unless a plan is given).

        The run holds the state lock throughout. Outcomes are appended to the
        apply history.

        Raises:
            ValidationError, CycleError: Before anything is executed
            StateLockedError: If another run holds the lock
            ConflictError: If ``plan`` is stale
        """
        run_id = run_id or str(uuid.uuid4())
        async with self.store.locked(run_id) as lock_id:
            if plan is None:
                plan = await self.plan(document, refresh=refresh)
            else:
                self.validate(document)
                serial = await self.store.serial()
                if serial != plan.serial:
                    raise ConflictError(
                        f"Saved plan is stale: computed at serial {plan.serial}, "
                        f"state is at serial {serial}",
                        expected_serial=plan.serial,
                        actual_serial=serial,
                    )
            return await self._execute(plan, document, run_id, lock_id, cancel_event)

    async def destroy(
        self,
        document: Optional[Document] = None,
        cancel_event: Optional[asyncio.Event] = None,
        run_id: Optional[str] = None,
    ) -> ApplyReport:
        """Destroy every resource recorded in state."""
        run_id = run_id or str(uuid.uuid4())
        async with self.store.locked(run_id) as lock_id:
            plan = plan_destroy(await self.store.snapshot(), document)
            return await self._execute(plan, document, run_id, lock_id, cancel_event)

    async def _execute(
        self,
        plan: Plan,
        document: Optional[Document],
        run_id: str,
        lock_id: str,
        cancel_event: Optional[asyncio.Event],
    ) -> ApplyReport:
        executor = Executor(
            self.store,
            registry=self.registry,
            config=self.config.executor,
            event_bus=self.event_bus,
            provider_configs=self.provider_configs(document),
        )
        report = await executor.execute(
            plan,
            document=document,
            run_id=run_id,
            lock_id=lock_id,
            cancel_event=cancel_event,
        )
        if report.results:
            await self.store.record_history(report.history_entries())
        return report

    # Outputs and state inspection

    async def outputs(self, document: Document) -> Dict[str, Any]:
        """Resolve the document's outputs against current state."""
        snapshot = await self.store.snapshot()

        def lookup(reference: Reference) -> Any:
            record = snapshot.get(ResourceId(reference.resource_type, reference.name))
            if record is None:
                return UNKNOWN
            try:
                return select_path(record.values(), reference)
            except KeyError:
                raise ValidationError(
                    f"Output reference {reference} does not match any attribute "
                    f"of '{reference.address}'"
                )

        return {
            name: resolve_value(value, lookup)
            for name, value in sorted(document.outputs.items())
        }

    async def list_state(self) -> List[StateRecord]:
        snapshot = await self.store.snapshot()
        return [snapshot.records[rid] for rid in sorted(snapshot.records)]

    async def show_state(self, address: str) -> Optional[StateRecord]:
        return await self.store.get(ResourceId.parse(address))

    async def remove_state(self, address: str) -> bool:
        """
        Forget a resource without destroying it.

        Returns:
            False if the address has no record
        """
        resource_id = ResourceId.parse(address)
        async with self.store.locked() as lock_id:
            snapshot = await self.store.snapshot()
            if resource_id not in snapshot:
                return False
            await self.store.delete(resource_id, snapshot.serial, lock_id=lock_id)
        logger.info(f"Removed {address} from state")
        return True

    async def history(
        self, address: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        return await self.store.get_history(address=address, limit=limit)

    async def close(self) -> None:
        await self.registry.close()
        await self.store.close()
