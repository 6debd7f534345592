import copy
import dataclasses

import pytest
from kubernetes.client import (
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1Pod,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Container,
)

from micro_operator import events
from micro_operator.errors import NotFoundError
from micro_operator.models import Micro


@pytest.fixture(autouse=True)
def event_db(tmp_path, monkeypatch):
    """Keep the event log of every test in its own sqlite file."""
    patched = dataclasses.replace(events.settings, db_path=str(tmp_path / "events.db"))
    monkeypatch.setattr(events, "settings", patched)
    return patched.db_path


def make_micro(namespace="default", name="api", kind="api", size=3, nodes=None, uid="uid-api"):
    return Micro.from_object(
        {
            "apiVersion": "micro.mu/v1alpha1",
            "kind": "Micro",
            "metadata": {"name": name, "namespace": namespace, "uid": uid, "resourceVersion": "10"},
            "spec": {"kind": kind, "size": size},
            "status": {"nodes": list(nodes or [])},
        }
    )


def make_deployment(namespace="default", name="api", replicas=1):
    labels = {"name": name}
    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=f"dep-{name}",
            resource_version="42",
            labels=labels,
        ),
        spec=V1DeploymentSpec(
            replicas=replicas,
            selector=V1LabelSelector(match_labels=labels),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=labels),
                spec=V1PodSpec(containers=[V1Container(name="micro", image=f"micro/micro:{name}")]),
            ),
        ),
    )


def make_pod(name, namespace="default", labels=None):
    return V1Pod(metadata=V1ObjectMeta(name=name, namespace=namespace, labels=dict(labels or {})))


class FakeCluster:
    """In-memory ClusterClient. Reads return copies, like a real API round trip."""

    def __init__(self):
        self.micros = {}
        self.deployments = {}
        self.pods = []
        self.calls = []
        self.fail = {}

    def add_micro(self, micro):
        self.micros[(micro.namespace, micro.name)] = micro
        return micro

    def add_deployment(self, dep):
        self.deployments[(dep.metadata.namespace, dep.metadata.name)] = dep
        return dep

    def _enter(self, op, cancel):
        if cancel is not None:
            cancel.check(op)
        if op in self.fail:
            raise self.fail[op]

    def get_micro(self, namespace, name, cancel=None):
        self._enter("get_micro", cancel)
        self.calls.append(("get_micro", namespace, name))
        try:
            return self.micros[(namespace, name)].model_copy(deep=True)
        except KeyError:
            raise NotFoundError("Micro", namespace, name) from None

    def get_deployment(self, namespace, name, cancel=None):
        self._enter("get_deployment", cancel)
        self.calls.append(("get_deployment", namespace, name))
        try:
            return copy.deepcopy(self.deployments[(namespace, name)])
        except KeyError:
            raise NotFoundError("Deployment", namespace, name) from None

    def create_deployment(self, deployment, cancel=None):
        self._enter("create_deployment", cancel)
        self.calls.append(("create_deployment", deployment))
        self.add_deployment(copy.deepcopy(deployment))

    def update_deployment(self, deployment, cancel=None):
        self._enter("update_deployment", cancel)
        self.calls.append(("update_deployment", deployment))
        self.add_deployment(copy.deepcopy(deployment))

    def update_micro_status(self, micro, cancel=None):
        self._enter("update_micro_status", cancel)
        self.calls.append(("update_micro_status", micro))
        self.add_micro(micro.model_copy(deep=True))

    def list_pods(self, namespace, labels, cancel=None):
        self._enter("list_pods", cancel)
        self.calls.append(("list_pods", namespace, dict(labels)))
        out = []
        for p in self.pods:
            pod_labels = p.metadata.labels or {}
            if p.metadata.namespace == namespace and all(pod_labels.get(k) == v for k, v in labels.items()):
                out.append(copy.deepcopy(p))
        return out

    @property
    def writes(self):
        return [c for c in self.calls if c[0] in {"create_deployment", "update_deployment", "update_micro_status"}]


@pytest.fixture
def cluster():
    return FakeCluster()
