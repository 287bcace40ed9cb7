"""Pytest configuration and fixtures."""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import Config, ExecutorConfig
from document import parse_document
from errors import ProviderError
from providers.base import CreateResult, OperationContext, Provider, ResourceType
from providers.registry import ProviderRegistry
from state import MemoryStateStore

FAKE_SCHEMA = {
    "type": "object",
    "properties": {
        "zone": {"type": "string"},
        "size": {"type": "integer", "minimum": 1},
    },
}


class FakeProvider(Provider):
    """In-memory provider that records calls and can inject delays and failures."""

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.config: Dict[str, Any] = {}
        self._failures: Dict[Tuple[str, str], List[Optional[Exception]]] = {}
        self._counter = 0
        self._revision = 0

    @property
    def name(self) -> str:
        return "fake"

    @property
    def version(self) -> str:
        return "0.0.1"

    @property
    def resource_types(self) -> List[ResourceType]:
        return [
            ResourceType(
                name="fake_thing", schema=FAKE_SCHEMA, replace_fields=frozenset({"zone"})
            ),
            ResourceType(
                name="fake_cbd",
                schema=FAKE_SCHEMA,
                replace_fields=frozenset({"zone"}),
                create_before_destroy=True,
            ),
        ]

    def fail(self, address: str, action: str, error: Exception, times: int = 1000):
        """Make the next ``times`` calls of ``action`` on ``address`` raise."""
        self._failures[(address, action)] = [error] * times

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.config = config

    async def _call(self, action: str, ctx: OperationContext) -> None:
        self.calls.append((action, ctx.address))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            pending = self._failures.get((ctx.address, action))
            if pending:
                raise pending.pop(0)
        finally:
            self.in_flight -= 1

    async def create(self, ctx: OperationContext) -> CreateResult:
        await self._call("create", ctx)
        self._counter += 1
        object_id = f"{ctx.name}-{self._counter}"
        self.objects[object_id] = dict(ctx.attributes)
        return CreateResult(object_id=object_id, outputs={"arn": f"arn:fake:{object_id}"})

    async def read(self, ctx: OperationContext) -> Optional[Dict[str, Any]]:
        self.calls.append(("read", ctx.address))
        current = self.objects.get(ctx.object_id)
        return dict(current) if current is not None else None

    async def update(self, ctx: OperationContext) -> Dict[str, Any]:
        await self._call("update", ctx)
        if ctx.object_id not in self.objects:
            raise ProviderError(f"{ctx.object_id} not found", retryable=False)
        self.objects[ctx.object_id] = dict(ctx.attributes)
        self._revision += 1
        return {"arn": f"arn:fake:{ctx.object_id}:r{self._revision}"}

    async def delete(self, ctx: OperationContext) -> None:
        await self._call("delete", ctx)
        self.objects.pop(ctx.object_id, None)


@pytest.fixture
def fake_provider():
    """Provider instance shared by the registry fixture."""
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    """Registry that knows the fake types and always hands out fake_provider."""
    registry = ProviderRegistry()
    registry.register_provider(FakeProvider)
    registry.get_provider = AsyncMock(return_value=fake_provider)
    return registry


@pytest.fixture
def store():
    """Fresh in-memory state store."""
    return MemoryStateStore()


@pytest.fixture
def executor_config():
    """Executor settings with no backoff delay."""
    return ExecutorConfig(
        parallelism=10,
        max_attempts=3,
        entry_timeout=5.0,
        backoff_base_delay=0.0,
        backoff_max_delay=0.0,
        backoff_jitter_factor=0.0,
    )


@pytest.fixture
def engine_config(executor_config):
    config = Config.default()
    config.executor = executor_config
    return config


@pytest.fixture
def make_document():
    """Build a Document from ``(type, name, attributes)`` tuples or dicts."""

    def _make(*resources, outputs=None, variables=None):
        declared = []
        for resource in resources:
            if isinstance(resource, tuple):
                resource_type, name, attributes = resource
                resource = {"type": resource_type, "name": name, "attributes": attributes}
            declared.append(resource)
        data = {"resources": declared}
        if outputs:
            data["outputs"] = outputs
        if variables:
            data["variables"] = variables
        return parse_document(data)

    return _make


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn
