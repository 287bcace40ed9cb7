"""
Executor - applies a plan against providers.

Each entry moves through Pending -> InProgress -> Applied | Failed, or is
Skipped when a dependency did not apply or the run was cancelled. Entries
run concurrently up to the parallelism limit; an entry starts only once
every entry it waits for is Applied. Nothing is rolled back: a partial
apply stays visible in state and in the report.

State is written before an entry is reported Applied. Writes are serialized
by a lock and guarded by the store's compare-and-swap serial; a conflict
fails the entry and cancels the rest of the run.
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from config import ExecutorConfig
from differ import Action, changed_fields
from document import Document, Resource, ResourceId
from errors import ConflictError, ProviderError, ValidationError
from events import EntryEvent, EventBus, EventType
from expressions import Reference, contains_unknown, resolve_value, select_path
from planner import Plan, PlanEntry
from providers.base import OperationContext, Provider
from providers.registry import ProviderRegistry, get_registry
from state import StateRecord, StateStore

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


class EntryStatus(str, Enum):
    """Execution status of a plan entry."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    APPLIED = "Applied"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def terminal(self) -> bool:
        return self in (EntryStatus.APPLIED, EntryStatus.FAILED, EntryStatus.SKIPPED)


_EVENT_TYPES = {
    EntryStatus.PENDING: EventType.PENDING,
    EntryStatus.IN_PROGRESS: EventType.IN_PROGRESS,
    EntryStatus.APPLIED: EventType.APPLIED,
    EntryStatus.FAILED: EventType.FAILED,
    EntryStatus.SKIPPED: EventType.SKIPPED,
}


@dataclass
class EntryResult:
    """Outcome of a single plan entry."""

    key: str
    address: str
    action: Action
    status: EntryStatus = EntryStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "address": self.address,
            "action": self.action.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class ApplyReport:
    """Per-entry outcome of an apply run."""

    run_id: str
    results: Dict[str, EntryResult] = field(default_factory=dict)
    serial: int = 0
    cancelled: bool = False
    conflict: Optional[str] = None

    @property
    def success(self) -> bool:
        return all(r.status == EntryStatus.APPLIED for r in self.results.values())

    def status_of(self, key_or_address: str) -> Optional[EntryStatus]:
        """Status by entry key, or by address when it has a single entry."""
        if key_or_address in self.results:
            return self.results[key_or_address].status
        matches = [r for r in self.results.values() if r.address == key_or_address]
        if len(matches) == 1:
            return matches[0].status
        return None

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in EntryStatus if status.terminal}
        for result in self.results.values():
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        return counts

    def history_entries(self) -> List[Dict[str, Any]]:
        """Rows for the state store's apply history."""
        return [
            {
                "run_id": self.run_id,
                "address": r.address,
                "action": r.action.value,
                "status": r.status.value,
                "attempts": r.attempts,
                "error_message": r.error,
                "duration_seconds": round(r.duration_seconds, 3),
            }
            for r in self.results.values()
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "serial": self.serial,
            "success": self.success,
            "cancelled": self.cancelled,
            "conflict": self.conflict,
            "counts": self.counts(),
            "entries": [r.to_dict() for r in self.results.values()],
        }


def calculate_backoff(
    attempt: int, base_delay: float, max_delay: float, jitter_factor: float
) -> float:
    """Exponential backoff with ±jitter for the given (1-based) attempt."""
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    return max(0.0, delay * (1 + jitter_factor * (random.random() * 2 - 1)))


def record_dependencies(resource: Resource) -> List[ResourceId]:
    """Resources a declared resource depends on, as recorded in state."""
    targets = {ResourceId(r.resource_type, r.name) for r in resource.references()}
    targets.update(resource.depends_on)
    return sorted(targets)


class _EntryFailed(Exception):
    """Internal: the entry failed with a message for the report."""


class Executor:
    """
    Applies plans with bounded parallelism.

    The executor is the only writer of the state store during a run; the
    caller is expected to hold the store's run lock and pass its id.
    """

    def __init__(
        self,
        store: StateStore,
        registry: Optional[ProviderRegistry] = None,
        config: Optional[ExecutorConfig] = None,
        event_bus: Optional[EventBus] = None,
        provider_configs: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.store = store
        self.registry = registry or get_registry()
        self.config = config or ExecutorConfig()
        self.semaphore = asyncio.Semaphore(self.config.parallelism)
        self._event_bus = event_bus
        self._provider_configs = provider_configs or {}

        # Cache of initialized providers
        self._providers: Dict[str, Provider] = {}

        # Per-run state
        self._write_lock = asyncio.Lock()
        self._serial = 0
        self._lock_id: Optional[str] = None
        self._prior: Dict[ResourceId, StateRecord] = {}

    async def _get_provider(self, resource_type: str) -> Provider:
        """Get the initialized provider that owns a resource type."""
        name = self.registry.provider_name_for(resource_type)
        if name not in self._providers:
            self._providers[name] = await self.registry.get_provider(
                name, self._provider_configs.get(name)
            )
        return self._providers[name]

    async def execute(
        self,
        plan: Plan,
        document: Optional[Document] = None,
        run_id: Optional[str] = None,
        lock_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ApplyReport:
        """
        Apply every entry of a plan.

        Args:
            plan: The plan to apply
            document: Desired-state document (needed for create/update
                entries, whose references are resolved against fresh state)
            run_id: Identifier of this run (generated if omitted)
            lock_id: Run lock holder id passed to state writes
            cancel_event: Setting it stops dispatch of entries not yet started

        Returns:
            ApplyReport with one result per entry

        Raises:
            ConflictError: If state moved past the plan's serial before the
                run started
        """
        run_id = run_id or str(uuid.uuid4())
        cancel = cancel_event or asyncio.Event()
        report = ApplyReport(run_id=run_id)

        snapshot = await self.store.snapshot()
        if snapshot.serial != plan.serial:
            raise ConflictError(
                f"Plan was computed at serial {plan.serial} but state is at "
                f"serial {snapshot.serial}; run plan again",
                expected_serial=plan.serial,
                actual_serial=snapshot.serial,
            )
        self._serial = snapshot.serial
        self._prior = snapshot.records
        self._lock_id = lock_id

        done: Dict[str, asyncio.Event] = {}
        for entry in plan.entries:
            report.results[entry.key] = EntryResult(
                key=entry.key, address=entry.address, action=entry.action
            )
            done[entry.key] = asyncio.Event()
            await self._publish(report, entry, EntryStatus.PENDING)

        logger.info(
            f"Run {run_id}: applying {len(plan.entries)} entries "
            f"(parallelism {self.config.parallelism})"
        )

        tasks = [
            asyncio.create_task(
                self._run_entry(entry, document, report, done, cancel)
            )
            for entry in plan.entries
        ]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.config.run_timeout)
            if pending:
                logger.warning(
                    f"Run {run_id} exceeded {self.config.run_timeout}s; "
                    f"cancelling {len(pending)} unfinished entries"
                )
                cancel.set()
                await asyncio.gather(*pending)

        report.cancelled = cancel.is_set()
        report.serial = self._serial
        logger.info(f"Run {run_id} finished: {report.counts()}")
        return report

    async def _run_entry(
        self,
        entry: PlanEntry,
        document: Optional[Document],
        report: ApplyReport,
        done: Dict[str, asyncio.Event],
        cancel: asyncio.Event,
    ) -> None:
        result = report.results[entry.key]
        try:
            for key in entry.wait_for:
                await done[key].wait()

            blocked = [
                key
                for key in entry.wait_for
                if report.results[key].status != EntryStatus.APPLIED
            ]
            if blocked:
                await self._skip(
                    report, entry, f"dependency not applied: {', '.join(blocked)}"
                )
                return
            if cancel.is_set():
                await self._skip(report, entry, CANCELLED)
                return

            async with self.semaphore:
                if cancel.is_set():
                    await self._skip(report, entry, CANCELLED)
                    return
                await self._apply_entry(entry, document, report, cancel)
        except Exception as e:
            logger.error(f"Unexpected error applying {entry.key}: {e}", exc_info=True)
            result.error = str(e)
            await self._set_status(report, entry, EntryStatus.FAILED)
        finally:
            done[entry.key].set()

    async def _apply_entry(
        self,
        entry: PlanEntry,
        document: Optional[Document],
        report: ApplyReport,
        cancel: asyncio.Event,
    ) -> None:
        result = report.results[entry.key]
        started = time.monotonic()
        await self._set_status(report, entry, EntryStatus.IN_PROGRESS)

        try:
            await self._apply_with_retries(entry, document, report)
        except _EntryFailed as e:
            result.error = str(e)
            result.duration_seconds = time.monotonic() - started
            logger.error(f"{entry.key} failed: {e}")
            await self._set_status(report, entry, EntryStatus.FAILED)
            return
        except ConflictError as e:
            result.error = str(e)
            result.duration_seconds = time.monotonic() - started
            report.conflict = str(e)
            logger.error(f"State conflict while applying {entry.key}: {e}")
            cancel.set()
            await self._set_status(report, entry, EntryStatus.FAILED)
            return

        result.duration_seconds = time.monotonic() - started
        logger.info(
            f"{entry.key} applied in {result.duration_seconds:.2f}s "
            f"({result.attempts} attempt(s))"
        )
        await self._set_status(report, entry, EntryStatus.APPLIED)

    async def _apply_with_retries(
        self, entry: PlanEntry, document: Optional[Document], report: ApplyReport
    ) -> None:
        result = report.results[entry.key]
        max_attempts = self.config.max_attempts

        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            try:
                record = await asyncio.wait_for(
                    self._call_provider(entry, document),
                    timeout=self.config.entry_timeout,
                )
                break
            except asyncio.TimeoutError:
                raise _EntryFailed(
                    f"timed out after {self.config.entry_timeout}s"
                )
            except ValidationError as e:
                raise _EntryFailed(str(e))
            except ProviderError as e:
                if not e.retryable:
                    raise _EntryFailed(str(e))
                if attempt == max_attempts:
                    raise _EntryFailed(f"{e} (gave up after {attempt} attempts)")

                delay = calculate_backoff(
                    attempt,
                    self.config.backoff_base_delay,
                    self.config.backoff_max_delay,
                    self.config.backoff_jitter_factor,
                )
                logger.warning(
                    f"{entry.key} attempt {attempt} failed: {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await self._publish(
                    report, entry, EntryStatus.IN_PROGRESS, EventType.RETRYING, str(e)
                )
                await asyncio.sleep(delay)

        await self._persist(entry, record)

    async def _call_provider(
        self, entry: PlanEntry, document: Optional[Document]
    ) -> Optional[StateRecord]:
        """
        Perform the provider operation for an entry.

        Returns:
            The record to store, or None when the entry removes its record
        """
        rid = entry.resource_id
        provider = await self._get_provider(rid.resource_type)
        prior = self._prior.get(rid)

        if entry.action == Action.DESTROY:
            if prior is None:
                logger.info(f"{entry.key}: no recorded object, nothing to delete")
                return None
            await provider.delete(
                OperationContext(
                    resource_id=rid,
                    object_id=prior.object_id,
                    prior_attributes=prior.attributes,
                    prior_outputs=prior.outputs,
                )
            )
            return None

        resource = document.get(rid) if document else None
        if resource is None:
            raise ValidationError(f"{entry.key}: resource is not declared")
        attributes = await self._resolve_attributes(resource)

        if entry.action == Action.CREATE:
            created = await provider.create(
                OperationContext(
                    resource_id=rid,
                    attributes=attributes,
                    prior_attributes=prior.attributes if prior else {},
                    prior_outputs=prior.outputs if prior else {},
                    changed_fields=list(entry.changed_fields),
                )
            )
            return StateRecord(
                resource_id=rid,
                provider=provider.name,
                object_id=created.object_id,
                attributes=attributes,
                outputs=created.outputs,
                dependencies=record_dependencies(resource),
            )

        current = await self.store.get(rid) or prior
        outputs = await provider.update(
            OperationContext(
                resource_id=rid,
                attributes=attributes,
                object_id=current.object_id,
                prior_attributes=current.attributes,
                prior_outputs=current.outputs,
                changed_fields=changed_fields(current.attributes, attributes),
            )
        )
        return StateRecord(
            resource_id=rid,
            provider=provider.name,
            object_id=current.object_id,
            attributes=attributes,
            outputs=outputs,
            dependencies=record_dependencies(resource),
        )

    async def _resolve_attributes(self, resource: Resource) -> Dict[str, Any]:
        """Resolve a resource's references against freshly written state."""
        records: Dict[ResourceId, StateRecord] = {}
        for reference in resource.references():
            target = ResourceId(reference.resource_type, reference.name)
            if target not in records:
                record = await self.store.get(target)
                if record is None:
                    raise ValidationError(
                        f"{resource.address}: referenced resource "
                        f"'{target}' has no state"
                    )
                records[target] = record

        def lookup(reference: Reference) -> Any:
            target = ResourceId(reference.resource_type, reference.name)
            try:
                return select_path(records[target].values(), reference)
            except KeyError:
                raise ValidationError(
                    f"{resource.address}: reference {reference} does not match "
                    f"any attribute of '{target}'"
                )

        attributes = resolve_value(resource.attributes, lookup)
        if contains_unknown(attributes):
            raise ValidationError(f"{resource.address}: unresolved values remain")
        return attributes

    async def _persist(self, entry: PlanEntry, record: Optional[StateRecord]) -> None:
        """Write an entry's outcome to state (compare-and-swap, serialized)."""
        rid = entry.resource_id
        async with self._write_lock:
            if record is not None:
                self._serial = await self.store.put(
                    rid, record, self._serial, lock_id=self._lock_id
                )
            elif entry.replace and entry.create_before_destroy:
                # The replacement's record was written by the create half
                return
            else:
                self._serial = await self.store.delete(
                    rid, self._serial, lock_id=self._lock_id
                )
            logger.debug(f"State serial {self._serial} after {entry.key}")

    async def _skip(self, report: ApplyReport, entry: PlanEntry, reason: str) -> None:
        report.results[entry.key].error = reason
        logger.info(f"Skipping {entry.key}: {reason}")
        await self._set_status(report, entry, EntryStatus.SKIPPED)

    async def _set_status(
        self, report: ApplyReport, entry: PlanEntry, status: EntryStatus
    ) -> None:
        report.results[entry.key].status = status
        await self._publish(report, entry, status)

    async def _publish(
        self,
        report: ApplyReport,
        entry: PlanEntry,
        status: EntryStatus,
        event_type: Optional[EventType] = None,
        message: Optional[str] = None,
    ) -> None:
        if self._event_bus is None:
            return
        result = report.results[entry.key]
        await self._event_bus.publish(
            EntryEvent(
                event_type=event_type or _EVENT_TYPES[status],
                run_id=report.run_id,
                key=entry.key,
                address=entry.address,
                action=entry.action.value,
                attempt=result.attempts,
                message=message or result.error,
            )
        )
