"""
Error taxonomy for the reconciliation engine.

Validation and cycle errors abort a run before anything is executed.
Provider errors are retried by the executor and end up reported per entry.
Conflict errors mean somebody else modified the state store and are fatal
for the run.
"""

from typing import Iterable, List, Optional


class ConvergeError(Exception):
    """Base class for all engine errors."""


class ValidationError(ConvergeError):
    """The desired-state document is malformed or inconsistent."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class UnresolvedReferenceError(ValidationError):
    """A reference points to a resource that is not declared."""

    def __init__(self, source: str, target: str):
        super().__init__(
            f"Resource '{source}' references undeclared resource '{target}'"
        )
        self.source = source
        self.target = target


class CycleError(ConvergeError):
    """The dependency graph contains at least one cycle."""

    def __init__(self, nodes: Iterable[str]):
        self.nodes = sorted(set(nodes))
        super().__init__(
            f"Dependency cycle between resources: {', '.join(self.nodes)}"
        )


class ProviderError(ConvergeError):
    """
    A provider call failed.

    Retryable errors (network failures, throttling, 5xx responses) are
    retried by the executor with exponential backoff.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class ConflictError(ConvergeError):
    """The state store was modified concurrently (serial mismatch)."""

    def __init__(
        self,
        message: str,
        expected_serial: Optional[int] = None,
        actual_serial: Optional[int] = None,
    ):
        super().__init__(message)
        self.expected_serial = expected_serial
        self.actual_serial = actual_serial


class StateLockedError(ConflictError):
    """Another run holds the state lock."""

    def __init__(self, holder: Optional[str]):
        super().__init__(f"State is locked by run {holder or 'unknown'}")
        self.holder = holder
