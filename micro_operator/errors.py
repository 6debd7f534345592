from __future__ import annotations


class MicroOperatorError(Exception):
    """Base class for every error raised by the operator."""


class NotFoundError(MicroOperatorError):
    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class ClusterAPIError(MicroOperatorError):
    """A read or write against the cluster failed (network, conflict, throttling...)."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message if status is None else f"{message} (HTTP {status})")

    @property
    def conflict(self) -> bool:
        return self.status == 409


class OwnershipError(MicroOperatorError):
    pass


class InvariantError(MicroOperatorError):
    pass


class ReconcileCancelled(MicroOperatorError):
    """The caller's cancel token fired or its deadline passed mid-reconcile."""
