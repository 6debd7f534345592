import threading
import time
from types import SimpleNamespace

import pytest
from kubernetes.client import V1OwnerReference

from conftest import make_deployment, make_micro
from micro_operator import controller as controller_mod
from micro_operator.controller import Backoff, Controller, MicroWatcher, WorkQueue
from micro_operator.errors import ClusterAPIError, ReconcileCancelled
from micro_operator.models import ReconcileRequest, ReconcileResult
from micro_operator.reconciler import MicroReconciler
from micro_operator.tracker import DeploymentTracker

API = ReconcileRequest("default", "api")


class StubReconciler:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.seen = []

    def reconcile(self, request, cancel=None):
        self.seen.append((request, cancel))
        outcome = self.outcomes.pop(0) if self.outcomes else ReconcileResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_queue_deduplicates():
    q = WorkQueue()
    q.add(API)
    q.add(API)
    assert len(q) == 1
    assert q.get(timeout=0) == API
    assert q.get(timeout=0) is None


def test_key_readded_while_processing_waits_for_done():
    q = WorkQueue()
    q.add(API)
    key = q.get(timeout=0)

    q.add(API)
    assert len(q) == 0

    q.done(key)
    assert q.get(timeout=0) == API


def test_add_after_delays_the_key():
    q = WorkQueue()
    q.add_after(API, 0.05)
    assert q.get(timeout=0) is None
    assert q.get(timeout=2) == API


def test_shutdown_releases_waiters():
    q = WorkQueue()
    got = []
    t = threading.Thread(target=lambda: got.append(q.get()))
    t.start()
    time.sleep(0.05)
    q.shut_down()
    t.join(2)
    assert got == [None]
    q.add(API)
    assert len(q) == 0


def test_backoff_grows_and_resets():
    b = Backoff(base_s=0.5, max_s=3)
    assert [b.when(API) for _ in range(5)] == [0.5, 1, 2, 3, 3]
    assert b.retries(API) == 5
    b.forget(API)
    assert b.when(API) == 0.5


def _controller(reconciler, **kw):
    kw.setdefault("backoff", Backoff(base_s=0, max_s=0))
    return Controller(reconciler, workers=1, request_timeout_s=5, **kw)


def test_converged_result_is_not_requeued():
    ctl = _controller(StubReconciler(ReconcileResult(requeue=False)))
    ctl.enqueue(API)

    assert ctl.process_next(timeout=0) is True
    assert ctl.queue.get(timeout=0) is None


def test_requeue_result_comes_back_after_base_delay_without_escalating():
    backoff = Backoff(base_s=0.05, max_s=10)
    ctl = _controller(StubReconciler(*[ReconcileResult(requeue=True)] * 6), backoff=backoff)
    ctl.enqueue(API)
    ctl.process_next(timeout=0)

    for _ in range(5):
        assert ctl.queue.get(timeout=0) is None
        started = time.monotonic()
        assert ctl.process_next(timeout=2) is True
        # Escalating would reach 0.8s by the fifth pass.
        assert time.monotonic() - started < 0.3
        assert backoff.retries(API) == 0


def test_errors_are_requeued_with_backoff():
    backoff = Backoff(base_s=0, max_s=0)
    ctl = _controller(StubReconciler(ClusterAPIError("boom", status=500)), backoff=backoff)
    ctl.enqueue(API)
    ctl.process_next(timeout=0)

    assert backoff.retries(API) == 1
    assert ctl.queue.get(timeout=1) == API


def test_reconcile_gets_a_deadline():
    stub = StubReconciler()
    ctl = _controller(stub)
    ctl.enqueue(API)
    ctl.process_next(timeout=0)

    (_, token), = stub.seen
    assert 0 < token.remaining() <= 5


def test_nothing_queued_returns_false():
    ctl = _controller(StubReconciler())
    assert ctl.process_next(timeout=0) is False


def _record_alerts(monkeypatch):
    sent = []

    def fake_send_alert(request, failing, failures, detail):
        sent.append((failing, failures))
        return True

    monkeypatch.setattr(controller_mod, "send_alert", fake_send_alert)
    return sent


def test_alerts_after_threshold_and_on_recovery(monkeypatch):
    sent = _record_alerts(monkeypatch)

    err = ClusterAPIError("boom", status=500)
    ctl = _controller(StubReconciler(err, err, err, ReconcileResult()), fail_threshold=2)
    for _ in range(4):
        ctl.enqueue(API)
        ctl.process_next(timeout=1)

    assert sent == [(True, 2), (False, 3)]


def test_cancellation_is_not_counted_as_failure(monkeypatch):
    sent = _record_alerts(monkeypatch)

    ctl = _controller(StubReconciler(ReconcileCancelled("deadline")), fail_threshold=1)
    ctl.enqueue(API)
    ctl.process_next(timeout=0)

    assert sent == []
    assert ctl.queue.get(timeout=1) == API


def test_workers_drive_reconciler_to_convergence(cluster):
    from conftest import make_pod

    cluster.add_micro(make_micro(size=3, nodes=[]))
    cluster.add_deployment(make_deployment(replicas=1))
    cluster.pods = [make_pod(f"api-{i}", labels={"name": "api"}) for i in (1, 2, 3)]

    ctl = Controller(MicroReconciler(cluster, DeploymentTracker()), workers=2, backoff=Backoff(base_s=0.01, max_s=0.05))
    ctl.start()
    try:
        ctl.enqueue(API)
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and cluster.micros[("default", "api")].status.nodes != ["api-1", "api-2", "api-3"]:
            time.sleep(0.02)
    finally:
        ctl.stop()

    assert cluster.deployments[("default", "api")].spec.replicas == 3
    assert cluster.micros[("default", "api")].status.nodes == ["api-1", "api-2", "api-3"]
    assert ctl.started is False


@pytest.fixture
def watcher():
    ctl = _controller(StubReconciler())
    return MicroWatcher(SimpleNamespace(group="micro.mu"), ctl, namespace="")


def test_micro_events_enqueue_the_resource(watcher):
    watcher.on_micro({"metadata": {"name": "api", "namespace": "prod"}})
    watcher.on_micro({"metadata": {}})
    assert watcher.controller.queue.get(timeout=0) == ReconcileRequest("prod", "api")
    assert watcher.controller.queue.get(timeout=0) is None


def test_deployment_events_enqueue_the_owning_micro(watcher):
    owned = make_deployment(name="api-deploy")
    owned.metadata.owner_references = [
        V1OwnerReference(api_version="micro.mu/v1alpha1", kind="Micro", name="api", uid="u", controller=True)
    ]
    foreign = make_deployment(name="other")
    foreign.metadata.owner_references = [
        V1OwnerReference(api_version="example.com/v1", kind="Micro", name="other", uid="x", controller=True)
    ]

    for dep in (owned, foreign, make_deployment(name="orphan")):
        watcher.on_deployment(dep)

    assert watcher.controller.queue.get(timeout=0) == API
    assert watcher.controller.queue.get(timeout=0) is None


def test_watch_loop_lists_then_streams(monkeypatch):
    ctl = _controller(StubReconciler())
    w = MicroWatcher(SimpleNamespace(group="micro.mu"), ctl, namespace="prod")
    streamed = []

    class FakeWatch:
        def stream(self, fn, *args, **kwargs):
            streamed.append((fn, args, kwargs))
            yield {"type": "ADDED", "object": {"metadata": {"name": "web", "namespace": "prod", "resourceVersion": "6"}}}
            w._stop.set()

        def stop(self):
            pass

    monkeypatch.setattr(controller_mod.watch, "Watch", FakeWatch)

    def list_micros(group, version, namespace, plural, **kwargs):
        return {"metadata": {"resourceVersion": "5"}, "items": [{"metadata": {"name": "api", "namespace": "prod"}}]}

    def items(listing):
        return listing["items"], listing["metadata"]["resourceVersion"]

    w._watch_loop("Micro", list_micros, ("micro.mu", "v1alpha1", "prod", "micros"), items, w.on_micro)

    assert streamed == [
        (list_micros, ("micro.mu", "v1alpha1", "prod", "micros"), {"resource_version": "5", "timeout_seconds": 300})
    ]
    assert ctl.queue.get(timeout=0) == ReconcileRequest("prod", "api")
    assert ctl.queue.get(timeout=0) == ReconcileRequest("prod", "web")
