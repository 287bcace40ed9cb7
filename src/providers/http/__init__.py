"""
HTTP provider.

Manages objects exposed by a JSON REST API.
"""

from providers.http.provider import HttpProvider

__all__ = ["HttpProvider"]
