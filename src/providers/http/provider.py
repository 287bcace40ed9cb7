"""
HTTP Provider - objects managed through a JSON REST API.

An ``http_object`` is created with ``POST {base_url}/{path}`` and then
addressed as ``{base_url}/{path}/{id}`` for GET, PUT and DELETE, where
``id`` is read from the creation response (``id_attribute``, default
``id``).
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import aiohttp

from errors import ProviderError
from providers.base import CreateResult, OperationContext, Provider, ResourceType

logger = logging.getLogger(__name__)

HTTP_OBJECT = ResourceType(
    name="http_object",
    schema={
        "type": "object",
        "required": ["path", "data"],
        "properties": {
            "path": {"type": "string", "minLength": 1},
            "data": {"type": "object"},
            "id_attribute": {"type": "string", "minLength": 1},
        },
        "additionalProperties": False,
    },
    replace_fields=frozenset({"path", "id_attribute"}),
    description="An object exposed by a JSON REST API",
)

RETRYABLE_STATUSES = {408, 429}


class HttpProvider(Provider):
    """Provider for REST API objects."""

    def __init__(self):
        self.base_url: str = ""
        self.token: Optional[str] = None
        self.timeout: int = 30
        self.headers: Dict[str, str] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def resource_types(self) -> List[ResourceType]:
        return [HTTP_OBJECT]

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP provider configuration from environment variables."""
        return {
            "base_url": os.getenv("CONVERGE_HTTP_BASE_URL", ""),
            "token": os.getenv("CONVERGE_HTTP_TOKEN", ""),
            "timeout": int(os.getenv("CONVERGE_HTTP_TIMEOUT", "30")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.base_url = config.get("base_url", "").rstrip("/")
        self.token = config.get("token") or None
        self.timeout = int(config.get("timeout", self.timeout))
        self.headers = dict(config.get("headers", {}))

        if not self.base_url:
            logger.warning(
                "HTTP provider base_url not configured. "
                "Set CONVERGE_HTTP_BASE_URL or providers.http.base_url."
            )

        logger.debug(
            f"HTTP provider initialized: base_url={self.base_url}, "
            f"timeout={self.timeout}s"
        )

    async def create(self, ctx: OperationContext) -> CreateResult:
        id_attribute = ctx.attributes.get("id_attribute", "id")
        status, body = await self._request(
            "POST", self._collection_url(ctx.attributes), ctx.attributes["data"]
        )
        self._raise_for_status(ctx, "create", status, body)

        if not isinstance(body, dict) or id_attribute not in body:
            raise ProviderError(
                f"Create response for {ctx.address} has no '{id_attribute}' field",
                retryable=False,
            )

        logger.info(f"Created {ctx.address}: {body[id_attribute]}")
        return CreateResult(object_id=str(body[id_attribute]), outputs=body)

    async def read(self, ctx: OperationContext) -> Optional[Dict[str, Any]]:
        status, body = await self._request(
            "GET", self._object_url(ctx.prior_attributes, ctx.object_id)
        )
        if status == 404:
            return None
        self._raise_for_status(ctx, "read", status, body)

        prior_data = ctx.prior_attributes.get("data", {})
        current = dict(ctx.prior_attributes)
        if isinstance(body, dict):
            current["data"] = {k: body[k] for k in prior_data if k in body}
        return current

    async def update(self, ctx: OperationContext) -> Dict[str, Any]:
        status, body = await self._request(
            "PUT",
            self._object_url(ctx.attributes, ctx.object_id),
            ctx.attributes["data"],
        )
        self._raise_for_status(ctx, "update", status, body)
        logger.info(f"Updated {ctx.address}: {', '.join(ctx.changed_fields)}")
        return body if isinstance(body, dict) else dict(ctx.prior_outputs)

    async def delete(self, ctx: OperationContext) -> None:
        status, body = await self._request(
            "DELETE", self._object_url(ctx.prior_attributes, ctx.object_id)
        )
        if status == 404:
            logger.info(f"{ctx.address} already deleted")
            return
        self._raise_for_status(ctx, "delete", status, body)
        logger.info(f"Deleted {ctx.address}")

    # Private helper methods

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", **self.headers}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _collection_url(self, attributes: Dict[str, Any]) -> str:
        return f"{self.base_url}/{attributes['path'].strip('/')}"

    def _object_url(self, attributes: Dict[str, Any], object_id: Optional[str]) -> str:
        return f"{self._collection_url(attributes)}/{object_id}"

    async def _request(
        self, method: str, url: str, payload: Optional[Dict[str, Any]] = None
    ) -> "tuple[int, Any]":
        """Send a request and return (status, decoded JSON body or None)."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, headers=self._get_headers(), json=payload
                ) as response:
                    body = None
                    if response.content_type == "application/json":
                        body = await response.json()
                    elif response.status >= 400:
                        body = await response.text()
                    return response.status, body
        except asyncio.TimeoutError:
            raise ProviderError(f"{method} {url} timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise ProviderError(f"{method} {url} failed: {e}")

    @staticmethod
    def _raise_for_status(
        ctx: OperationContext, operation: str, status: int, body: Any
    ) -> None:
        if status < 400:
            return
        retryable = status >= 500 or status in RETRYABLE_STATUSES
        raise ProviderError(
            f"Failed to {operation} {ctx.address}: HTTP {status} - {body}",
            retryable=retryable,
        )
