from __future__ import annotations

import copy

from kubernetes.client import V1Deployment

from .cluster import CancelToken, ClusterClient
from .errors import InvariantError, MicroOperatorError, NotFoundError
from .events import log_event
from .models import Micro, ReconcileRequest, ReconcileResult
from .ownership import controller_of, set_controller_reference
from .settings import settings
from .tracker import DeploymentTracker, WorkloadIdentity


def pod_labels(micro: Micro) -> dict[str, str]:
    """Labels carried by the pods of a Micro's Deployment."""
    return {"name": micro.name}


def nodes_changed(observed: list[str], recorded: list[str], mode: str = "ordered") -> bool:
    """Whether status.nodes needs rewriting.

    "ordered" compares element-wise, so a re-ordered pod list counts as a
    change; existing deployments rely on that. "set" only looks at membership.
    """
    if mode == "set":
        return set(observed) != set(recorded)
    return observed != recorded


def _for_create(deployment: V1Deployment) -> V1Deployment:
    """Copy of a previously observed Deployment that the API server will accept on create."""
    dep = copy.deepcopy(deployment)
    meta = dep.metadata
    meta.resource_version = None
    meta.uid = None
    meta.creation_timestamp = None
    meta.deletion_timestamp = None
    meta.generation = None
    meta.managed_fields = None
    dep.status = None
    return dep


class MicroReconciler:
    """Drives the Deployment of a Micro resource towards spec.size.

    One call handles one request end to end. The dispatch loop guarantees a
    given namespace/name is never reconciled twice at the same time; distinct
    names may be, so the tracker is the only state shared between calls.
    Returning requeue=True or raising asks the dispatch loop to come back later.
    """

    def __init__(self, client: ClusterClient, tracker: DeploymentTracker, status_compare: str | None = None):
        self.client = client
        self.tracker = tracker
        self.status_compare = status_compare or settings.status_compare

    def reconcile(self, request: ReconcileRequest, cancel: CancelToken | None = None) -> ReconcileResult:
        ns, name = request.namespace, request.name
        log_event("DEBUG", "Reconciling Micro", namespace=ns, name=name)

        try:
            micro = self.client.get_micro(ns, name, cancel=cancel)
        except NotFoundError:
            # Deleted after the request was queued. The Deployment goes with it
            # through its owner reference; only the tracker needs cleaning.
            dropped = self.tracker.forget(ns, name)
            log_event(
                "INFO",
                f"Micro not found, assuming deleted (dropped {dropped} tracked deployment(s))",
                namespace=ns,
                name=name,
            )
            return ReconcileResult(requeue=False)
        except MicroOperatorError as e:
            log_event("ERROR", f"Failed to get Micro: {e}", namespace=ns, name=name)
            raise

        identity = WorkloadIdentity.of(micro)

        try:
            deployment = self.client.get_deployment(micro.namespace, micro.name, cancel=cancel)
        except NotFoundError:
            return self._deployment_missing(micro, identity, cancel)
        except MicroOperatorError as e:
            log_event("ERROR", f"Failed to get Deployment: {e}", namespace=ns, name=name)
            raise

        if identity not in self.tracker:
            try:
                set_controller_reference(micro, deployment)
            except MicroOperatorError as e:
                log_event("ERROR", f"Failed to set owner reference: {e}", namespace=ns, name=name)
                raise
            self.tracker.put(identity, deployment)
            log_event("INFO", f"Tracking Deployment for {identity}", namespace=ns, name=name)

        if deployment.spec is None or deployment.spec.replicas is None:
            log_event("ERROR", "Deployment has no replica count", namespace=ns, name=name)
            raise InvariantError(f"Deployment {ns}/{name} has no spec.replicas")

        size = micro.spec.size
        if deployment.spec.replicas != size:
            previous = deployment.spec.replicas
            deployment.spec.replicas = size
            if controller_of(deployment) is None:
                # Tracked on an earlier pass that wrote nothing; the reference rides on this update.
                try:
                    set_controller_reference(micro, deployment)
                except MicroOperatorError as e:
                    log_event("ERROR", f"Failed to set owner reference: {e}", namespace=ns, name=name)
                    raise
            try:
                self.client.update_deployment(deployment, cancel=cancel)
            except MicroOperatorError as e:
                log_event("ERROR", f"Failed to scale Deployment: {e}", namespace=ns, name=name)
                raise
            self.tracker.put(identity, deployment)
            log_event("INFO", f"Scaled Deployment from {previous} to {size} replicas", namespace=ns, name=name)
            # Pods are mid-scale; publish them on the next pass.
            return ReconcileResult(requeue=True)

        return self._sync_status(micro, cancel)

    def _deployment_missing(
        self, micro: Micro, identity: WorkloadIdentity, cancel: CancelToken | None
    ) -> ReconcileResult:
        ns, name = micro.namespace, micro.name
        tracked, found = self.tracker.get(identity)
        if not found:
            # TODO: initial Deployment creation from a bare Micro needs a pod template source.
            log_event("INFO", "No Deployment observed yet, waiting", namespace=ns, name=name)
            return ReconcileResult(requeue=True)

        try:
            self.client.create_deployment(_for_create(tracked), cancel=cancel)
        except MicroOperatorError as e:
            log_event("ERROR", f"Failed to recreate Deployment: {e}", namespace=ns, name=name)
            raise
        log_event("WARN", f"Deployment was deleted, recreated it for {identity}", namespace=ns, name=name)
        return ReconcileResult(requeue=True)

    def _sync_status(self, micro: Micro, cancel: CancelToken | None) -> ReconcileResult:
        ns, name = micro.namespace, micro.name
        try:
            pods = self.client.list_pods(ns, pod_labels(micro), cancel=cancel)
        except MicroOperatorError as e:
            log_event("ERROR", f"Failed to list pods: {e}", namespace=ns, name=name)
            raise

        pod_names = [p.metadata.name for p in pods]
        if nodes_changed(pod_names, micro.status.nodes, self.status_compare):
            micro.status.nodes = pod_names
            try:
                self.client.update_micro_status(micro, cancel=cancel)
            except MicroOperatorError as e:
                log_event("ERROR", f"Failed to update Micro status: {e}", namespace=ns, name=name)
                raise
            log_event("INFO", f"Updated status.nodes to {pod_names}", namespace=ns, name=name)

        log_event("DEBUG", "Micro is in sync", namespace=ns, name=name)
        return ReconcileResult(requeue=False)
