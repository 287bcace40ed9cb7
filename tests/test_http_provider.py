"""Unit tests for the HTTP provider (http_object)."""

import asyncio

import aiohttp
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from document import ResourceId
from errors import ProviderError
from providers.base import OperationContext
from providers.http import HttpProvider

ATTRIBUTES = {"path": "/v1/buckets/", "data": {"name": "logs", "size": 10}}


def ctx(**kwargs):
    return OperationContext(resource_id=ResourceId("http_object", "bucket"), **kwargs)


@pytest_asyncio.fixture
async def provider():
    provider = HttpProvider()
    await provider.initialize(
        {"base_url": "https://api.example.com/", "token": "t0ken", "timeout": 5}
    )
    return provider


def mock_session_cls(mock_session_cls, status, body=None, content_type="application/json"):
    """Wire a patched aiohttp.ClientSession to return one response."""
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.content_type = content_type
    mock_resp.json = AsyncMock(return_value=body)
    mock_resp.text = AsyncMock(return_value=body)

    mock_session = AsyncMock()
    mock_session.request = MagicMock(
        return_value=AsyncMock(
            __aenter__=AsyncMock(return_value=mock_resp),
            __aexit__=AsyncMock(return_value=False),
        )
    )
    mock_session_cls.return_value = AsyncMock(
        __aenter__=AsyncMock(return_value=mock_session),
        __aexit__=AsyncMock(return_value=False),
    )
    return mock_session


class TestHttpProviderConfig:
    """Tests for configuration loading."""

    def test_load_config_from_env(self, monkeypatch):
        monkeypatch.setenv("CONVERGE_HTTP_BASE_URL", "https://x")
        monkeypatch.setenv("CONVERGE_HTTP_TOKEN", "abc")
        monkeypatch.setenv("CONVERGE_HTTP_TIMEOUT", "12")

        assert HttpProvider.load_config_from_env() == {
            "base_url": "https://x",
            "token": "abc",
            "timeout": 12,
        }

    def test_schema(self):
        provider = HttpProvider()
        assert provider.validate_attributes("http_object", ATTRIBUTES) == (True, None)
        is_valid, _ = provider.validate_attributes("http_object", {"path": "x"})
        assert is_valid is False


@pytest.mark.asyncio
class TestHttpProviderInitialize:
    async def test_initialize(self, provider):
        assert provider.base_url == "https://api.example.com"
        assert provider.timeout == 5
        assert provider._get_headers()["Authorization"] == "Bearer t0ken"

    async def test_missing_base_url_warns(self, caplog):
        with caplog.at_level("WARNING"):
            await HttpProvider().initialize({})
        assert "base_url not configured" in caplog.text


@pytest.mark.asyncio
class TestHttpProviderOperations:
    """Tests for CRUD calls."""

    async def test_create(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            session = mock_session_cls(session_cls, 201, {"id": 42, "name": "logs"})

            result = await provider.create(ctx(attributes=ATTRIBUTES))

        assert result.object_id == "42"
        assert result.outputs == {"id": 42, "name": "logs"}
        method, url = session.request.call_args[0]
        assert (method, url) == ("POST", "https://api.example.com/v1/buckets")
        assert session.request.call_args.kwargs["json"] == ATTRIBUTES["data"]

    async def test_create_custom_id_attribute(self, provider):
        attributes = dict(ATTRIBUTES, id_attribute="uuid")
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            mock_session_cls(session_cls, 200, {"uuid": "b-1"})

            result = await provider.create(ctx(attributes=attributes))

        assert result.object_id == "b-1"

    async def test_create_without_id(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            mock_session_cls(session_cls, 201, {"name": "logs"})

            with pytest.raises(ProviderError) as exc_info:
                await provider.create(ctx(attributes=ATTRIBUTES))

        assert exc_info.value.retryable is False

    async def test_read_filters_to_declared_keys(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            session = mock_session_cls(
                session_cls, 200, {"id": 42, "name": "logs", "size": 20, "created": "now"}
            )

            current = await provider.read(ctx(object_id="42", prior_attributes=ATTRIBUTES))

        assert current == {"path": "/v1/buckets/", "data": {"name": "logs", "size": 20}}
        assert session.request.call_args[0] == (
            "GET",
            "https://api.example.com/v1/buckets/42",
        )

    async def test_read_missing(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            mock_session_cls(session_cls, 404, {"error": "not found"})

            assert await provider.read(ctx(object_id="42", prior_attributes=ATTRIBUTES)) is None

    async def test_update(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            session = mock_session_cls(session_cls, 200, {"id": 42, "size": 11})

            outputs = await provider.update(
                ctx(object_id="42", attributes=ATTRIBUTES, changed_fields=["data"])
            )

        assert outputs == {"id": 42, "size": 11}
        assert session.request.call_args[0][0] == "PUT"

    async def test_update_without_body_keeps_outputs(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            mock_session_cls(session_cls, 204, None, content_type="text/plain")

            outputs = await provider.update(
                ctx(object_id="42", attributes=ATTRIBUTES, prior_outputs={"id": 42})
            )

        assert outputs == {"id": 42}

    async def test_delete(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            session = mock_session_cls(session_cls, 204, None, content_type="text/plain")

            await provider.delete(ctx(object_id="42", prior_attributes=ATTRIBUTES))

        assert session.request.call_args[0] == (
            "DELETE",
            "https://api.example.com/v1/buckets/42",
        )

    async def test_delete_already_gone(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            mock_session_cls(session_cls, 404, None, content_type="text/plain")

            await provider.delete(ctx(object_id="42", prior_attributes=ATTRIBUTES))


@pytest.mark.asyncio
class TestHttpProviderErrors:
    """Tests for error classification."""

    @pytest.mark.parametrize(
        "status,retryable", [(500, True), (503, True), (429, True), (408, True), (400, False), (403, False)]
    )
    async def test_status_classification(self, provider, status, retryable):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            mock_session_cls(session_cls, status, "failure", content_type="text/plain")

            with pytest.raises(ProviderError) as exc_info:
                await provider.update(ctx(object_id="42", attributes=ATTRIBUTES))

        assert exc_info.value.retryable is retryable
        assert f"HTTP {status}" in str(exc_info.value)

    async def test_timeout_is_retryable(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            session_cls.return_value = AsyncMock(
                __aenter__=AsyncMock(side_effect=asyncio.TimeoutError()),
                __aexit__=AsyncMock(return_value=False),
            )

            with pytest.raises(ProviderError, match="timed out") as exc_info:
                await provider.read(ctx(object_id="42", prior_attributes=ATTRIBUTES))

        assert exc_info.value.retryable is True

    async def test_connection_error_is_retryable(self, provider):
        with patch("providers.http.provider.aiohttp.ClientSession") as session_cls:
            session_cls.return_value = AsyncMock(
                __aenter__=AsyncMock(side_effect=aiohttp.ClientConnectionError("refused")),
                __aexit__=AsyncMock(return_value=False),
            )

            with pytest.raises(ProviderError, match="refused") as exc_info:
                await provider.delete(ctx(object_id="42", prior_attributes=ATTRIBUTES))

        assert exc_info.value.retryable is True
