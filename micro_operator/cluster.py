from __future__ import annotations

import time
from threading import Event
from typing import Any, Callable, Protocol

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException, V1Deployment, V1Pod
from kubernetes.config import ConfigException

from .errors import ClusterAPIError, NotFoundError, ReconcileCancelled
from .events import log_event
from .models import Micro
from .settings import settings


class CancelToken:
    """Cancellation flag plus optional deadline, handed down to every API call.

    Calls already on the wire are bounded by the remaining time (passed as the
    request timeout); cancel() is observed before the next call.
    """

    def __init__(self, timeout_s: float | None = None):
        self._event = Event()
        self.deadline = time.monotonic() + timeout_s if timeout_s is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise ReconcileCancelled(f"{what} cancelled")
        if self.cancelled:
            raise ReconcileCancelled(f"{what} aborted: deadline exceeded")


class ClusterClient(Protocol):
    """The part of the cluster API the reconciler relies on."""

    def get_micro(self, namespace: str, name: str, cancel: CancelToken | None = None) -> Micro: ...

    def get_deployment(self, namespace: str, name: str, cancel: CancelToken | None = None) -> V1Deployment: ...

    def create_deployment(self, deployment: V1Deployment, cancel: CancelToken | None = None) -> None: ...

    def update_deployment(self, deployment: V1Deployment, cancel: CancelToken | None = None) -> None: ...

    def update_micro_status(self, micro: Micro, cancel: CancelToken | None = None) -> None: ...

    def list_pods(self, namespace: str, labels: dict[str, str], cancel: CancelToken | None = None) -> list[V1Pod]: ...


def label_selector(labels: dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def load_kube_config(in_cluster: bool | None = None) -> None:
    """Configure the kubernetes client from the service account or ~/.kube/config."""
    if in_cluster is None:
        try:
            config.load_incluster_config()
            log_event("INFO", "Using in-cluster Kubernetes configuration")
            return
        except ConfigException:
            in_cluster = False
    if in_cluster:
        config.load_incluster_config()
        log_event("INFO", "Using in-cluster Kubernetes configuration")
    else:
        config.load_kube_config()
        log_event("INFO", "Using kubeconfig Kubernetes configuration")


class KubernetesClusterClient:
    """ClusterClient backed by the official kubernetes client."""

    def __init__(
        self,
        api_client: client.ApiClient | None = None,
        group: str = settings.group,
        version: str = settings.version,
        plural: str = settings.plural,
    ):
        self.custom = client.CustomObjectsApi(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.core = client.CoreV1Api(api_client)
        self.group = group
        self.version = version
        self.plural = plural

    def _call(
        self,
        what: str,
        fn: Callable[..., Any],
        *args: Any,
        cancel: CancelToken | None = None,
        not_found: tuple[str, str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        if cancel is not None:
            cancel.check(what)
            remaining = cancel.remaining()
            if remaining is not None:
                kwargs["_request_timeout"] = remaining
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            if e.status == 404 and not_found is not None:
                raise NotFoundError(*not_found) from e
            raise ClusterAPIError(f"{what} failed: {e.reason}", status=e.status) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            if cancel is not None and cancel.cancelled:
                raise ReconcileCancelled(f"{what} aborted: {type(e).__name__}") from e
            raise ClusterAPIError(f"{what} failed: {type(e).__name__}: {e}") from e

    def get_micro(self, namespace: str, name: str, cancel: CancelToken | None = None) -> Micro:
        obj = self._call(
            "get Micro",
            self.custom.get_namespaced_custom_object,
            self.group,
            self.version,
            namespace,
            self.plural,
            name,
            cancel=cancel,
            not_found=("Micro", namespace, name),
        )
        return Micro.from_object(obj)

    def get_deployment(self, namespace: str, name: str, cancel: CancelToken | None = None) -> V1Deployment:
        return self._call(
            "get Deployment",
            self.apps.read_namespaced_deployment,
            name,
            namespace,
            cancel=cancel,
            not_found=("Deployment", namespace, name),
        )

    def create_deployment(self, deployment: V1Deployment, cancel: CancelToken | None = None) -> None:
        self._call(
            "create Deployment",
            self.apps.create_namespaced_deployment,
            deployment.metadata.namespace,
            deployment,
            cancel=cancel,
        )

    def update_deployment(self, deployment: V1Deployment, cancel: CancelToken | None = None) -> None:
        meta = deployment.metadata
        self._call(
            "update Deployment",
            self.apps.replace_namespaced_deployment,
            meta.name,
            meta.namespace,
            deployment,
            cancel=cancel,
            not_found=("Deployment", meta.namespace, meta.name),
        )

    def update_micro_status(self, micro: Micro, cancel: CancelToken | None = None) -> None:
        self._call(
            "update Micro status",
            self.custom.replace_namespaced_custom_object_status,
            self.group,
            self.version,
            micro.namespace,
            self.plural,
            micro.name,
            micro.to_object(),
            cancel=cancel,
            not_found=("Micro", micro.namespace, micro.name),
        )

    def list_pods(self, namespace: str, labels: dict[str, str], cancel: CancelToken | None = None) -> list[V1Pod]:
        pods = self._call(
            "list pods",
            self.core.list_namespaced_pod,
            namespace,
            label_selector=label_selector(labels),
            cancel=cancel,
        )
        return list(pods.items or [])
