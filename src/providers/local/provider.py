"""
Local Provider - resources that live on the machine running the engine.

Resource types:
- ``local_file``: a file with the given content. Changing ``filename``
  replaces the file; content and permission changes are applied in place.
- ``null_resource``: no backing object. Changing ``triggers`` replaces it,
  which makes it useful for forcing replacement of dependents.
"""

import asyncio
import hashlib
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import ProviderError
from providers.base import CreateResult, OperationContext, Provider, ResourceType

logger = logging.getLogger(__name__)

DEFAULT_FILE_PERMISSION = "0644"

LOCAL_FILE = ResourceType(
    name="local_file",
    schema={
        "type": "object",
        "required": ["filename", "content"],
        "properties": {
            "filename": {"type": "string", "minLength": 1},
            "content": {"type": "string"},
            "file_permission": {"type": "string", "pattern": "^0?[0-7]{3}$"},
        },
        "additionalProperties": False,
    },
    replace_fields=frozenset({"filename"}),
    description="A file on the local filesystem",
)

NULL_RESOURCE = ResourceType(
    name="null_resource",
    schema={
        "type": "object",
        "properties": {
            "triggers": {
                "type": "object",
                "additionalProperties": {"type": ["string", "number", "boolean"]},
            },
        },
        "additionalProperties": False,
    },
    replace_fields=frozenset({"triggers"}),
    description="A resource with no backing object",
)


class LocalProvider(Provider):
    """Provider for local files and null resources."""

    def __init__(self):
        self.base_dir: Path = Path(".")

    @property
    def name(self) -> str:
        return "local"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def resource_types(self) -> List[ResourceType]:
        return [LOCAL_FILE, NULL_RESOURCE]

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load local provider configuration from environment variables."""
        return {"base_dir": os.getenv("CONVERGE_LOCAL_BASE_DIR", ".")}

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.base_dir = Path(config.get("base_dir", "."))
        logger.debug(f"Local provider initialized: base_dir={self.base_dir}")

    async def create(self, ctx: OperationContext) -> CreateResult:
        if ctx.resource_type == NULL_RESOURCE.name:
            return CreateResult(object_id=str(uuid.uuid4().int)[:19])

        path = self._resolve(ctx.attributes["filename"])
        outputs = await self._write_file(path, ctx.attributes)
        logger.info(f"Created {ctx.address}: {path}")
        return CreateResult(object_id=str(path), outputs=outputs)

    async def read(self, ctx: OperationContext) -> Optional[Dict[str, Any]]:
        if ctx.resource_type == NULL_RESOURCE.name:
            return dict(ctx.prior_attributes)

        path = Path(ctx.object_id)
        try:
            return await asyncio.to_thread(self._read_file, path, ctx.prior_attributes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ProviderError(f"Could not read {path}: {e}", retryable=False)

    async def update(self, ctx: OperationContext) -> Dict[str, Any]:
        if ctx.resource_type == NULL_RESOURCE.name:
            return {}

        path = Path(ctx.object_id)
        outputs = await self._write_file(path, ctx.attributes)
        logger.info(f"Updated {ctx.address}: {', '.join(ctx.changed_fields)}")
        return outputs

    async def delete(self, ctx: OperationContext) -> None:
        if ctx.resource_type == NULL_RESOURCE.name:
            return

        path = Path(ctx.object_id)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise ProviderError(f"Could not delete {path}: {e}", retryable=False)
        logger.info(f"Deleted {ctx.address}: {path}")

    # Private helpers

    def _resolve(self, filename: str) -> Path:
        path = Path(filename)
        if not path.is_absolute():
            path = self.base_dir / path
        return path.resolve()

    async def _write_file(self, path: Path, attributes: Dict[str, Any]) -> Dict[str, Any]:
        content = attributes["content"]
        permission = attributes.get("file_permission", DEFAULT_FILE_PERMISSION)
        try:
            await asyncio.to_thread(self._write, path, content, int(permission, 8))
        except OSError as e:
            raise ProviderError(f"Could not write {path}: {e}", retryable=False)

        encoded = content.encode("utf-8")
        return {
            "content_sha256": hashlib.sha256(encoded).hexdigest(),
            "size": len(encoded),
        }

    @staticmethod
    def _write(path: Path, content: str, mode: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)

    @staticmethod
    def _read_file(path: Path, prior: Dict[str, Any]) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
        current: Dict[str, Any] = {
            "filename": prior.get("filename", str(path)),
            "content": content,
        }
        if "file_permission" in prior:
            width = len(prior["file_permission"])
            current["file_permission"] = format(
                path.stat().st_mode & 0o777, f"0{width}o"
            )
        return current
