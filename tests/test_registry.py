"""Unit tests for the provider base class and registry."""

import os
import pytest
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock, patch

import providers.registry as registry_module
from providers.base import OperationContext, Provider, ResourceType
from providers.registry import (
    ProviderRegistry,
    get_registry,
    register_builtin_providers,
    reset_registry,
)
from document import ResourceId

from conftest import FakeProvider


class ClashingProvider(Provider):
    """Claims a type that FakeProvider already owns."""

    @property
    def name(self) -> str:
        return "clash"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def resource_types(self) -> List[ResourceType]:
        return [ResourceType(name="fake_thing")]

    async def initialize(self, config: Dict[str, Any]) -> None:
        pass

    async def create(self, ctx):
        pass

    async def read(self, ctx):
        pass

    async def update(self, ctx):
        pass

    async def delete(self, ctx):
        pass


class TestResourceType:
    def test_defaults(self):
        resource_type = ResourceType(name="thing")
        assert resource_type.schema == {"type": "object"}
        assert resource_type.replace_fields == frozenset()
        assert resource_type.create_before_destroy is False


class TestOperationContext:
    def test_address_properties(self):
        ctx = OperationContext(resource_id=ResourceId("fake_thing", "a"))
        assert ctx.address == "fake_thing.a"
        assert ctx.resource_type == "fake_thing"
        assert ctx.name == "a"
        assert ctx.object_id is None


class TestProviderBase:
    """Tests for Provider default behaviour."""

    def test_get_resource_type(self):
        provider = FakeProvider()
        assert provider.get_resource_type("fake_cbd").create_before_destroy is True

    def test_get_unknown_resource_type(self):
        with pytest.raises(KeyError):
            FakeProvider().get_resource_type("nope")

    def test_validate_attributes_uses_schema(self):
        provider = FakeProvider()

        assert provider.validate_attributes("fake_thing", {"size": 2}) == (True, None)
        is_valid, error = provider.validate_attributes("fake_thing", {"size": 0})
        assert is_valid is False
        assert "size" in error

    def test_load_config_from_env_default(self):
        assert FakeProvider.load_config_from_env() == {}


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_register_provider(self):
        registry = ProviderRegistry()

        registry.register_provider(FakeProvider)

        assert registry.list_providers() == ["fake"]
        assert registry.has_provider("fake")
        assert registry.has_resource_type("fake_cbd")
        assert registry.list_resource_types() == ["fake_cbd", "fake_thing"]
        assert registry.provider_name_for("fake_thing") == "fake"
        assert registry.get_resource_type("fake_thing").replace_fields == {"zone"}
        assert registry.get_provider_info("fake")["version"] == "0.0.1"

    def test_type_claimed_by_other_provider(self):
        registry = ProviderRegistry()
        registry.register_provider(FakeProvider)

        with pytest.raises(ValueError, match="already claimed"):
            registry.register_provider(ClashingProvider)

    def test_reregistering_same_provider_warns(self, caplog):
        registry = ProviderRegistry()
        registry.register_provider(FakeProvider)

        with caplog.at_level("WARNING"):
            registry.register_provider(FakeProvider)

        assert "Overwriting existing provider" in caplog.text

    def test_unknown_type_lookups(self):
        registry = ProviderRegistry()
        with pytest.raises(KeyError):
            registry.provider_name_for("nope")
        with pytest.raises(KeyError):
            registry.get_resource_type("nope")
        assert registry.get_provider_info("nope") is None
        assert registry.get_provider_config("nope") == {}


@pytest.mark.asyncio
class TestProviderInstances:
    """Tests for lazily initialized provider instances."""

    async def test_get_provider_initializes_once(self):
        registry = ProviderRegistry()
        registry.register_provider(FakeProvider)

        first = await registry.get_provider("fake", {"region": "eu"})
        second = await registry.get_provider("fake")

        assert first is second
        assert first.config == {"region": "eu"}

    async def test_get_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider: nope"):
            await ProviderRegistry().get_provider("nope")

    async def test_close_logs_errors(self, caplog):
        registry = ProviderRegistry()
        registry.register_provider(FakeProvider)
        provider = await registry.get_provider("fake")
        provider.close = AsyncMock(side_effect=RuntimeError("boom"))

        with caplog.at_level("ERROR"):
            await registry.close()

        assert "Error closing provider 'fake'" in caplog.text


class TestRegisterBuiltinProviders:
    """Tests for register_builtin_providers and the global registry."""

    def setup_method(self):
        reset_registry()

    def teardown_method(self):
        reset_registry()

    def test_global_registry_singleton(self):
        assert get_registry() is get_registry()

    def test_registers_builtins(self):
        with patch.object(registry_module, "entry_points", return_value=[]):
            registry = register_builtin_providers(ProviderRegistry())

        assert sorted(registry.list_providers()) == ["http", "local"]
        assert registry.list_resource_types() == ["http_object", "local_file", "null_resource"]

    def test_enabled_filter(self):
        with patch.object(registry_module, "entry_points", return_value=[]):
            registry = register_builtin_providers(ProviderRegistry(), enabled=["local"])

        assert registry.list_providers() == ["local"]

    def test_entry_point_providers(self):
        good = MagicMock()
        good.load.return_value = FakeProvider
        broken = MagicMock()
        broken.name = "broken"
        broken.load.side_effect = ImportError("missing module")

        with patch.object(registry_module, "entry_points", return_value=[good, broken]):
            registry = register_builtin_providers()

        assert registry is get_registry()
        assert "fake" in registry.list_providers()
        assert "broken" not in registry.list_providers()

    def test_env_config_captured_at_registration(self):
        with patch.dict(os.environ, {"CONVERGE_LOCAL_BASE_DIR": "/srv/out"}):
            with patch.object(registry_module, "entry_points", return_value=[]):
                registry = register_builtin_providers(ProviderRegistry())

        assert registry.get_provider_config("local") == {"base_dir": "/srv/out"}
