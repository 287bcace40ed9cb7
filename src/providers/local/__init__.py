"""
Local provider.

Manages files on the local filesystem and null resources.
"""

from providers.local.provider import LocalProvider

__all__ = ["LocalProvider"]
