from __future__ import annotations

import copy
from dataclasses import dataclass
from threading import Condition, Lock

from kubernetes.client import V1Deployment

from .models import Micro


@dataclass(frozen=True)
class WorkloadIdentity:
    namespace: str
    name: str
    kind: str

    @classmethod
    def of(cls, micro: Micro) -> WorkloadIdentity:
        return cls(namespace=micro.namespace, name=micro.name, kind=micro.spec.kind)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}[{self.kind}]"


class ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class _Reading:
    def __init__(self, lock: ReadWriteLock):
        self.lock = lock

    def __enter__(self) -> None:
        self.lock.acquire_read()

    def __exit__(self, *exc) -> None:
        self.lock.release_read()


class _Writing(_Reading):
    def __enter__(self) -> None:
        self.lock.acquire_write()

    def __exit__(self, *exc) -> None:
        self.lock.release_write()


class DeploymentTracker:
    """Remembers the last observed Deployment per workload so it can be recreated.

    Held in memory only. Reconciles for distinct identities run concurrently,
    so every access goes through the read/write lock. Stored and returned
    Deployments are copies; callers may mutate what they get back.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._deployments: dict[WorkloadIdentity, V1Deployment] = {}

    def get(self, identity: WorkloadIdentity) -> tuple[V1Deployment | None, bool]:
        with _Reading(self._lock):
            dep = self._deployments.get(identity)
            if dep is None:
                return None, False
            return copy.deepcopy(dep), True

    def put(self, identity: WorkloadIdentity, deployment: V1Deployment) -> None:
        stored = copy.deepcopy(deployment)
        with _Writing(self._lock):
            self._deployments[identity] = stored

    def delete(self, identity: WorkloadIdentity) -> None:
        with _Writing(self._lock):
            self._deployments.pop(identity, None)

    def forget(self, namespace: str, name: str) -> int:
        """Drop every entry for namespace/name whatever its kind. Returns how many."""
        with _Writing(self._lock):
            stale = [i for i in self._deployments if i.namespace == namespace and i.name == name]
            for i in stale:
                del self._deployments[i]
            return len(stale)

    def snapshot(self) -> list[tuple[WorkloadIdentity, V1Deployment]]:
        with _Reading(self._lock):
            return [(i, copy.deepcopy(d)) for i, d in self._deployments.items()]

    def __contains__(self, identity: object) -> bool:
        with _Reading(self._lock):
            return identity in self._deployments

    def __len__(self) -> int:
        with _Reading(self._lock):
            return len(self._deployments)
