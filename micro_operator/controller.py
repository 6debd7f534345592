from __future__ import annotations

import heapq
import time
from collections import deque
from threading import Condition, Event, Lock, Thread
from typing import Any, Callable, Hashable

from kubernetes import watch
from kubernetes.client import ApiException

from .alerts import send_alert
from .cluster import CancelToken, KubernetesClusterClient
from .errors import ReconcileCancelled
from .events import log_event
from .models import ReconcileRequest
from .ownership import controller_of
from .reconciler import MicroReconciler
from .settings import settings


class WorkQueue:
    """De-duplicating FIFO of reconcile keys.

    A key handed out by get() is "processing" until done() is called. Adding
    it again meanwhile only marks it dirty; done() puts it back, so one key is
    never worked on by two workers at once.
    """

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._seq = 0
        self._shutdown = False

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: Hashable) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: Hashable, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            self._seq += 1
            heapq.heappush(self._delayed, (time.monotonic() + delay_s, self._seq, key))
            self._cond.notify()

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys onto the queue; return seconds until the next one."""
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)
        if self._delayed:
            return self._delayed[0][0] - now
        return None

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Next key, or None on shutdown or when timeout elapses first."""
        end = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutdown:
                    return None
                wait = next_due
                if end is not None:
                    left = end - time.monotonic()
                    if left <= 0:
                        return None
                    wait = left if wait is None else min(wait, left)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutdown = True
            self._delayed.clear()
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutdown

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class Backoff:
    """Per-key exponential backoff: base, 2*base, 4*base ... capped at max_s."""

    def __init__(self, base_s: float = settings.backoff_base_s, max_s: float = settings.backoff_max_s):
        self.base_s = base_s
        self.max_s = max_s
        self._lock = Lock()
        self._failures: dict[Hashable, int] = {}

    def when(self, key: Hashable) -> float:
        with self._lock:
            n = self._failures.get(key, 0)
            self._failures[key] = n + 1
        return min(self.max_s, self.base_s * (2 ** min(n, 32)))

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def retries(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class Controller:
    """Worker pool that feeds queued requests to the reconciler.

    Owns every retry decision: the reconciler only says "requeue" or raises.
    """

    def __init__(
        self,
        reconciler: MicroReconciler,
        workers: int = settings.workers,
        queue: WorkQueue | None = None,
        backoff: Backoff | None = None,
        request_timeout_s: float | None = settings.request_timeout_s,
        fail_threshold: int = settings.fail_threshold,
    ):
        self.reconciler = reconciler
        self.workers = max(1, int(workers))
        self.queue = queue or WorkQueue()
        self.backoff = backoff or Backoff()
        self.request_timeout_s = request_timeout_s
        self.fail_threshold = max(1, int(fail_threshold))
        self.started = False
        self._threads: list[Thread] = []
        self._lock = Lock()
        self._fail_counts: dict[ReconcileRequest, int] = {}
        self._inflight: dict[ReconcileRequest, CancelToken] = {}

    def start(self) -> None:
        if self.started:
            return
        for i in range(self.workers):
            thr = Thread(target=self._worker, name=f"micro-worker-{i}", daemon=True)
            thr.start()
            self._threads.append(thr)
        self.started = True
        log_event("INFO", f"Controller started with {self.workers} worker(s)")

    def stop(self, timeout_s: float = 5.0) -> None:
        self.queue.shut_down()
        with self._lock:
            for token in self._inflight.values():
                token.cancel()
        for thr in self._threads:
            thr.join(timeout=timeout_s)
        self._threads.clear()
        self.started = False
        log_event("INFO", "Controller stopped")

    def enqueue(self, request: ReconcileRequest) -> None:
        self.queue.add(request)

    def _worker(self) -> None:
        while self.process_next():
            pass

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued request. False when nothing was processed."""
        request = self.queue.get(timeout=timeout)
        if request is None:
            return False
        try:
            self._handle(request)
        finally:
            self.queue.done(request)
        return True

    def _handle(self, request: ReconcileRequest) -> None:
        cancel = CancelToken(self.request_timeout_s)
        with self._lock:
            self._inflight[request] = cancel
        try:
            result = self.reconciler.reconcile(request, cancel=cancel)
        except ReconcileCancelled as e:
            log_event("WARN", f"Reconcile cancelled: {e}", namespace=request.namespace, name=request.name)
            self.queue.add_after(request, self.backoff.when(request))
            return
        except Exception as e:
            self._record_failure(request, e)
            self.queue.add_after(request, self.backoff.when(request))
            return
        finally:
            with self._lock:
                self._inflight.pop(request, None)

        self._record_success(request)
        self.backoff.forget(request)
        if result.requeue:
            # Progress, not failure: come back after the base delay, never escalating.
            self.queue.add_after(request, self.backoff.base_s)

    def _record_failure(self, request: ReconcileRequest, err: Exception) -> None:
        with self._lock:
            count = self._fail_counts.get(request, 0) + 1
            self._fail_counts[request] = count
        log_event(
            "ERROR",
            f"Reconcile failed ({count} in a row): {type(err).__name__}: {err}",
            namespace=request.namespace,
            name=request.name,
        )
        if count == self.fail_threshold:
            send_alert(request, failing=True, failures=count, detail=f"{type(err).__name__}: {err}")

    def _record_success(self, request: ReconcileRequest) -> None:
        with self._lock:
            count = self._fail_counts.pop(request, 0)
        if count >= self.fail_threshold:
            log_event("INFO", f"Reconcile recovered after {count} failures", namespace=request.namespace, name=request.name)
            send_alert(request, failing=False, failures=count, detail="Reconciled successfully")


def _resource_version(obj: Any) -> str | None:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("resourceVersion")
    meta = getattr(obj, "metadata", None)
    return getattr(meta, "resource_version", None)


class MicroWatcher:
    """Turns Micro and Deployment change notifications into queued requests."""

    def __init__(self, cluster: KubernetesClusterClient, controller: Controller, namespace: str = settings.namespace):
        self.cluster = cluster
        self.controller = controller
        self.namespace = namespace
        self._stop = Event()
        self._threads: list[Thread] = []
        self._watchers: list[watch.Watch] = []
        self._lock = Lock()

    def start(self) -> None:
        for target, name in ((self._watch_micros, "micro-watch"), (self._watch_deployments, "deployment-watch")):
            thr = Thread(target=target, name=name, daemon=True)
            thr.start()
            self._threads.append(thr)

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            for w in self._watchers:
                w.stop()

    def on_micro(self, obj: dict[str, Any]) -> None:
        meta = obj.get("metadata") or {}
        if meta.get("name"):
            self.controller.enqueue(ReconcileRequest(meta.get("namespace") or "default", meta["name"]))

    def on_deployment(self, dep: Any) -> None:
        owner = controller_of(dep)
        if owner is None or owner.kind != "Micro":
            return
        if owner.api_version.split("/")[0] != self.cluster.group:
            return
        self.controller.enqueue(ReconcileRequest(dep.metadata.namespace, owner.name))

    def _micro_lister(self) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        # Watch.stream reads the API method's docstring to deserialize events,
        # so hand it the generated method itself rather than a wrapper.
        c = self.cluster
        if self.namespace:
            return c.custom.list_namespaced_custom_object, (c.group, c.version, self.namespace, c.plural)
        return c.custom.list_cluster_custom_object, (c.group, c.version, c.plural)

    def _deployment_lister(self) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        if self.namespace:
            return self.cluster.apps.list_namespaced_deployment, (self.namespace,)
        return self.cluster.apps.list_deployment_for_all_namespaces, ()

    def _watch_micros(self) -> None:
        def items(listing: dict[str, Any]) -> tuple[list[Any], str | None]:
            return listing.get("items") or [], (listing.get("metadata") or {}).get("resourceVersion")

        self._watch_loop("Micro", *self._micro_lister(), items, self.on_micro)

    def _watch_deployments(self) -> None:
        def items(listing: Any) -> tuple[list[Any], str | None]:
            return listing.items or [], getattr(listing.metadata, "resource_version", None)

        self._watch_loop("Deployment", *self._deployment_lister(), items, self.on_deployment)

    def _watch_loop(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        args: tuple[Any, ...],
        items: Callable[[Any], tuple[list[Any], str | None]],
        handle: Callable[[Any], None],
    ) -> None:
        resource_version: str | None = None
        backoff = 1.0
        while not self._stop.is_set():
            try:
                if resource_version is None:
                    objs, resource_version = items(list_fn(*args))
                    for obj in objs:
                        handle(obj)
                    log_event("INFO", f"Listed {len(objs)} {kind} object(s), watching from {resource_version}")

                w = watch.Watch()
                with self._lock:
                    self._watchers.append(w)
                try:
                    for event in w.stream(list_fn, *args, resource_version=resource_version, timeout_seconds=300):
                        if self._stop.is_set():
                            break
                        obj = event.get("object")
                        if obj is None:
                            continue
                        resource_version = _resource_version(obj) or resource_version
                        handle(obj)
                finally:
                    with self._lock:
                        self._watchers.remove(w)
                backoff = 1.0
            except ApiException as e:
                if e.status == 410:
                    log_event("WARN", f"{kind} watch expired, re-listing")
                    resource_version = None
                    continue
                log_event("ERROR", f"{kind} watch failed: HTTP {e.status} {e.reason}")
                self._stop.wait(backoff)
                backoff = min(backoff * 2, 30.0)
            except Exception as e:
                log_event("ERROR", f"{kind} watch failed: {type(e).__name__}: {e}")
                self._stop.wait(backoff)
                backoff = min(backoff * 2, 30.0)
