from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from kubernetes.client import CoreV1Api, CustomObjectsApi

from customapp.src.backoff import ExponentialBackoff
from customapp.src.cache import Informer, ResourceCache
from customapp.src.config import ControllerConfig
from customapp.src.errors import (
    ConflictError,
    FatalError,
    ReconcileCancelled,
    ReconcileError,
    TerminalError,
    TransientError,
)
from customapp.src.events import WARNING, EventRecorder
from customapp.src.executor import ActionExecutor
from customapp.src.finalizer import FinalizerManager
from customapp.src.kube import CustomResourceApi, PodApi
from customapp.src.metrics import METRICS
from customapp.src.model import (
    CHILD_KIND,
    KIND,
    OWNER_LABEL,
    ObservedObject,
    PatchStatus,
    ResourceRef,
)
from customapp.src.reconciler import Reconciler
from customapp.src.status import StatusWriter
from customapp.src.tracing import reconcile_span
from customapp.src.workqueue import WorkQueue

LOGGER = logging.getLogger(__name__)


class KeyState(enum.Enum):
    PENDING = "pending"
    RECONCILING = "reconciling"
    CONVERGED = "converged"
    RETRY_PENDING = "retry_pending"
    FINALIZING = "finalizing"
    REMOVED = "removed"


_TRANSITIONS: dict[KeyState, frozenset[KeyState]] = {
    KeyState.PENDING: frozenset({KeyState.RECONCILING}),
    KeyState.RECONCILING: frozenset(
        {
            KeyState.CONVERGED,
            KeyState.RETRY_PENDING,
            KeyState.FINALIZING,
            KeyState.REMOVED,
            KeyState.PENDING,
        }
    ),
    KeyState.CONVERGED: frozenset({KeyState.PENDING}),
    KeyState.RETRY_PENDING: frozenset({KeyState.PENDING}),
    KeyState.FINALIZING: frozenset({KeyState.REMOVED, KeyState.RETRY_PENDING, KeyState.PENDING}),
    KeyState.REMOVED: frozenset(),
}


class KeyStateTracker:
    """Per-resource reconcile state machine.

    ``PENDING -> RECONCILING -> {CONVERGED, RETRY_PENDING, FINALIZING, REMOVED}``;
    converged and retrying keys go back to ``PENDING`` on their next trigger,
    ``FINALIZING`` ends in ``REMOVED`` (the entry is dropped) or
    ``RETRY_PENDING``.  A cancelled attempt, reconciling or finalizing, goes
    back to ``PENDING``.  Anything else is an invariant violation and raises
    :class:`FatalError`, including a second attempt starting while one is
    still in flight for the same key.
    """

    def __init__(self) -> None:
        self._states: dict[ResourceRef, KeyState] = {}
        self._lock = threading.Lock()

    def get(self, ref: ResourceRef) -> KeyState | None:
        with self._lock:
            return self._states.get(ref)

    def begin(self, ref: ResourceRef) -> None:
        with self._lock:
            current = self._states.get(ref)
            if current in (None, KeyState.CONVERGED, KeyState.RETRY_PENDING):
                current = KeyState.PENDING
            self._transition_locked(ref, current, KeyState.RECONCILING)

    def reset(self, ref: ResourceRef) -> None:
        """Forget the state of *ref* so its next attempt starts from ``PENDING``."""
        with self._lock:
            self._states.pop(ref, None)

    def transition(self, ref: ResourceRef, new_state: KeyState) -> None:
        with self._lock:
            current = self._states.get(ref, KeyState.PENDING)
            self._transition_locked(ref, current, new_state)

    def _transition_locked(self, ref: ResourceRef, current: KeyState, new_state: KeyState) -> None:
        if new_state not in _TRANSITIONS[current]:
            raise FatalError(
                f"invalid reconcile state transition {current.value} -> {new_state.value}",
                ref,
            )
        if new_state is KeyState.REMOVED:
            self._states.pop(ref, None)
        else:
            self._states[ref] = new_state


@dataclass(frozen=True)
class AttemptOutcome:
    outcome: str
    requeue: bool = False
    requeue_after: float | None = None


class CustomAppController:
    """Drives ``CustomApp`` resources and their child Pods toward their spec.

    Informers keep :class:`ResourceCache` current and announce changes; a
    change to a ``CustomApp`` or to a Pod it controls enqueues the owning
    resource's key.  A fixed pool of worker threads pulls keys from the
    :class:`WorkQueue`, which guarantees a key is never processed by two
    workers at once, and runs one reconcile attempt per key:

    * absent from the cache: the key is forgotten;
    * marked for deletion with our finalizer: cleanup through
      :class:`FinalizerManager`, finalizer removed last;
    * otherwise: finalizer ensured, actions computed by the pure
      :class:`Reconciler` and applied by :class:`ActionExecutor`.

    Failures are requeued according to their class: conflicts immediately,
    transient errors with per-key backoff, terminal errors with backoff for
    ``max_terminal_retries`` attempts and then surfaced as a ``Ready=False``
    condition plus a Warning event and retried every
    ``terminal_retry_seconds``.  Unexpected exceptions are logged with full
    context and stay in backoff rotation.  Nothing is dropped silently.
    """

    def __init__(
        self,
        custom_api: CustomResourceApi,
        pod_api: PodApi,
        recorder: EventRecorder | None = None,
        cache: ResourceCache | None = None,
        reconciler: Reconciler | None = None,
        workers: int = 2,
        max_terminal_retries: int = 5,
        terminal_retry_seconds: float = 600,
        shutdown_grace_seconds: float = 30,
        resync_period_seconds: int = 600,
        watch_timeout_seconds: int = 30,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 300.0,
        leadership_check: Callable[[], bool] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.custom_api = custom_api
        self.pod_api = pod_api
        self.recorder = recorder
        self.cache = cache if cache is not None else ResourceCache()
        self.reconciler = reconciler or Reconciler()
        self.workers = workers
        self.max_terminal_retries = max_terminal_retries
        self.terminal_retry_seconds = terminal_retry_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.leadership_check = leadership_check
        self.logger = logger or LOGGER

        self.status_writer = StatusWriter(custom_api, self.cache)
        self.executor = ActionExecutor(pod_api, self.status_writer, self.cache)
        self.finalizers = FinalizerManager(
            custom_api, self.executor, self.reconciler, self.cache, recorder=recorder
        )
        self.informers = [
            Informer(custom_api, self.cache, resync_period_seconds, watch_timeout_seconds),
            Informer(pod_api, self.cache, resync_period_seconds, watch_timeout_seconds),
        ]
        self.states = KeyStateTracker()
        self.queue = self._new_queue()
        self.ready = threading.Event()
        self._terminal_failures: dict[ResourceRef, int] = {}
        self._terminal_lock = threading.Lock()
        self._cancel = threading.Event()
        self.cache.subscribe(self._on_change)

    def _new_queue(self) -> WorkQueue:
        return WorkQueue(
            ExponentialBackoff(base=self.backoff_base_seconds, cap=self.backoff_max_seconds)
        )

    # -- event routing -------------------------------------------------------

    @staticmethod
    def owner_key(ref: ResourceRef, obj: ObservedObject) -> ResourceRef | None:
        """Map a changed object to the ``CustomApp`` key that must be reconciled."""
        if ref.kind == KIND:
            return ref
        if ref.kind != CHILD_KIND:
            return None
        owner = obj.controller_owner()
        if owner is not None:
            if owner.get("kind") != KIND or not owner.get("name"):
                return None
            return ResourceRef(KIND, ref.namespace, owner["name"])
        owner_name = obj.labels.get(OWNER_LABEL)
        if owner_name:
            return ResourceRef(KIND, ref.namespace, owner_name)
        return None

    def _on_change(self, ref: ResourceRef, obj: ObservedObject) -> None:
        key = self.owner_key(ref, obj)
        if key is not None:
            self.queue.add(key)

    def children_of(self, obj: ObservedObject) -> list[ObservedObject]:
        def owned(child: ObservedObject) -> bool:
            return self.owner_key(child.ref, child) == obj.ref and (
                obj.uid is None
                or (child.controller_owner() or {}).get("uid") in (None, obj.uid)
            )

        return self.cache.list(CHILD_KIND, obj.ref.namespace, owned)

    # -- cancellation --------------------------------------------------------

    def request_stop(self) -> None:
        """Cooperatively cancel in-flight reconciles and stop the run loop.

        Used on leadership loss: attempts abort at their next checkpoint
        (between two API writes) rather than being killed mid-write.
        """
        self._cancel.set()
        for informer in self.informers:
            informer.request_stop()

    def checkpoint(self) -> None:
        if self._cancel.is_set():
            raise ReconcileCancelled("controller is stopping")
        if self.leadership_check is not None and not self.leadership_check():
            raise ReconcileCancelled("leader lease is no longer held")

    # -- reconcile -----------------------------------------------------------

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Process one key; return False on shutdown or when *timeout* passes without one."""
        queue = self.queue
        key = queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self.process(key)
        except Exception:
            self.logger.exception(
                "Unhandled error processing %s (state=%s); state reset, requeued with backoff",
                key,
                self.states.get(key),
            )
            self.states.reset(key)
            METRICS.reconcile_failures_total.labels(kind=key.kind, reason="Fatal").inc()
            queue.add_rate_limited(key)
        finally:
            queue.done(key)
        return True

    def process(self, key: ResourceRef) -> str:
        """Run one reconcile attempt for *key* and schedule what comes next."""
        with reconcile_span(key) as span:
            began = False
            try:
                self.states.begin(key)
                began = True
                attempt = self._reconcile_key(key)
            except ReconcileCancelled as exc:
                span.outcome = "cancelled"
                if began:
                    self._settle_failed(key, KeyState.PENDING)
                self.logger.info("Reconcile of %s cancelled: %s", key, exc)
            except ConflictError as exc:
                span.outcome = "conflict"
                self._settle_failed(key, KeyState.RETRY_PENDING)
                self._record_failure(key, exc)
                self.queue.add(key)
                self.logger.info("Conflict reconciling %s, requeued immediately: %s", key, exc)
            except TerminalError as exc:
                span.outcome = self._handle_terminal(key, exc)
                self._settle_failed(key, KeyState.RETRY_PENDING)
            except TransientError as exc:
                span.outcome = "retry"
                self._settle_failed(key, KeyState.RETRY_PENDING)
                self._record_failure(key, exc)
                delay = self.queue.add_rate_limited(key)
                self.logger.warning(
                    "Transient failure reconciling %s; retry %d in %.1fs: %s",
                    key,
                    self.queue.num_requeues(key),
                    delay,
                    exc,
                )
            except Exception as exc:
                span.outcome = "fatal"
                if began:
                    self._settle_failed(key, KeyState.RETRY_PENDING)
                self._record_failure(key, exc)
                delay = self.queue.add_rate_limited(key)
                self.logger.exception(
                    "Fatal error reconciling %s (state=%s); attempt aborted, retry in %.1fs",
                    key,
                    self.states.get(key),
                    delay,
                )
            else:
                span.outcome = attempt.outcome
                self._record_success(key)
                if attempt.requeue:
                    self.queue.add(key)
                elif attempt.requeue_after:
                    self.queue.add_after(key, attempt.requeue_after)
            return span.outcome

    def _reconcile_key(self, key: ResourceRef) -> AttemptOutcome:
        obj = self.cache.get(key)
        if obj is None:
            self.states.transition(key, KeyState.REMOVED)
            return AttemptOutcome("removed")

        children = self.children_of(obj)
        if obj.is_deleting:
            if not self.finalizers.has_finalizer(obj):
                self.states.transition(key, KeyState.CONVERGED)
                return AttemptOutcome("awaiting-deletion")
            self.states.transition(key, KeyState.FINALIZING)
            self.finalizers.finalize(obj, children, self.checkpoint)
            self.states.transition(key, KeyState.REMOVED)
            return AttemptOutcome("finalized")

        self.checkpoint()
        obj = self.finalizers.ensure(obj)
        actions, result = self.reconciler.reconcile(obj, children)
        if result.terminal_error is not None:
            raise TerminalError(result.terminal_error, key)
        self.executor.execute(actions, self.checkpoint)
        self._publish_hidden_event(obj, actions)

        self.states.transition(key, KeyState.CONVERGED)
        return AttemptOutcome(
            "applied" if actions else "converged",
            requeue=result.requeue,
            requeue_after=result.requeue_after,
        )

    def _publish_hidden_event(self, obj: ObservedObject, actions: list) -> None:
        if self.recorder is None or obj.status.get("hidden"):
            return
        for action in actions:
            if isinstance(action, PatchStatus) and action.status.get("hidden"):
                self.recorder.publish(obj, "HiddenCustomApp", f"Hiding `{obj.ref.name}`")
                return

    def _settle_failed(self, key: ResourceRef, new_state: KeyState) -> None:
        if self.states.get(key) in (KeyState.RECONCILING, KeyState.FINALIZING):
            self.states.transition(key, new_state)

    def _record_success(self, key: ResourceRef) -> None:
        self.queue.forget(key)
        with self._terminal_lock:
            self._terminal_failures.pop(key, None)
        METRICS.reconcile_successes_total.labels(kind=key.kind).inc()

    @staticmethod
    def _record_failure(key: ResourceRef, exc: Exception) -> None:
        reason = exc.reason if isinstance(exc, ReconcileError) else "Fatal"
        METRICS.reconcile_failures_total.labels(kind=key.kind, reason=reason).inc()

    def terminal_failures(self, key: ResourceRef) -> int:
        with self._terminal_lock:
            return self._terminal_failures.get(key, 0)

    def _handle_terminal(self, key: ResourceRef, exc: TerminalError) -> str:
        self._record_failure(key, exc)
        with self._terminal_lock:
            count = self._terminal_failures.get(key, 0) + 1
            self._terminal_failures[key] = count

        if count <= self.max_terminal_retries:
            delay = self.queue.add_rate_limited(key)
            self.logger.warning(
                "Terminal failure reconciling %s (%d/%d); retry in %.1fs: %s",
                key,
                count,
                self.max_terminal_retries,
                delay,
                exc,
            )
            return "retry"

        self.logger.error(
            "Terminal failure reconciling %s persisted after %d retries; "
            "surfacing condition and retrying every %ss: %s",
            key,
            self.max_terminal_retries,
            self.terminal_retry_seconds,
            exc,
        )
        self._surface_terminal(key, str(exc))
        self.queue.forget(key)
        self.queue.add_after(key, self.terminal_retry_seconds)
        return "terminal"

    def _surface_terminal(self, key: ResourceRef, message: str) -> None:
        METRICS.terminal_surfaced_total.labels(kind=key.kind).inc()
        obj = self.cache.get(key)
        if obj is None:
            return
        if self.recorder is not None:
            self.recorder.publish(obj, "ReconcileFailed", message, event_type=WARNING)
        try:
            # Not announced: the write must not re-trigger the key before the
            # retry interval.
            self.status_writer.set_condition(
                obj, "Ready", "False", "ReconcileFailed", message, notify=False
            )
        except ReconcileError:
            self.logger.warning(
                "Could not record ReconcileFailed condition on %s", key, exc_info=True
            )

    # -- run loop ------------------------------------------------------------

    def _worker(self) -> None:
        while self.process_next_item():
            pass

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._cancel.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run informers and workers until shutdown or :meth:`request_stop`.

        1. Starts one informer thread per watched type and waits for their
           initial lists.
        2. Enqueues every known ``CustomApp`` and starts ``workers`` threads.
        3. On shutdown, stops handing out keys and waits up to
           ``shutdown_grace_seconds`` for in-flight attempts; stragglers are
           cancelled at their next checkpoint.
        4. If an informer exits on its own (RBAC/auth failure) the loop ends
           so the process can fail loudly.
        """
        stop = shutdown_event or threading.Event()
        self._cancel.clear()
        if self.queue.shutting_down:
            self.queue = self._new_queue()

        informer_stop = threading.Event()
        informer_threads = [
            threading.Thread(
                target=informer.run_forever,
                args=(informer_stop,),
                name=f"informer-{informer.kind.lower()}",
                daemon=True,
            )
            for informer in self.informers
        ]
        for thread in informer_threads:
            thread.start()

        worker_threads: list[threading.Thread] = []
        synced = False
        while not self._should_stop(stop):
            if all(informer.has_synced.is_set() for informer in self.informers):
                synced = True
                break
            if not all(thread.is_alive() for thread in informer_threads):
                self.logger.error("Informer exited before the initial sync; stopping controller")
                break
            stop.wait(timeout=0.2)

        if synced:
            keys = self.cache.keys(KIND)
            for key in keys:
                self.queue.add(key)
            self.logger.info(
                "Informers synced; starting %d worker(s) for %d %s key(s)",
                self.workers,
                len(keys),
                KIND,
            )
            worker_threads = [
                threading.Thread(target=self._worker, name=f"reconcile-worker-{i}", daemon=True)
                for i in range(self.workers)
            ]
            for thread in worker_threads:
                thread.start()
            self.ready.set()

            while not self._should_stop(stop):
                if not all(thread.is_alive() for thread in informer_threads):
                    self.logger.error("Informer exited unexpectedly; stopping controller")
                    break
                stop.wait(timeout=1.0)

        self.ready.clear()
        drained = self.queue.shut_down_with_drain(timeout=self.shutdown_grace_seconds)
        if not drained:
            self.logger.warning(
                "In-flight reconciles did not finish within %ss; cancelling at next checkpoint",
                self.shutdown_grace_seconds,
            )
        self._cancel.set()
        for thread in worker_threads:
            thread.join(timeout=self.shutdown_grace_seconds)
        informer_stop.set()
        for informer in self.informers:
            informer.request_stop()
        for thread in informer_threads:
            thread.join(timeout=self.shutdown_grace_seconds)
        self.logger.info("Controller stopped")


def build_controller(
    config: ControllerConfig,
    custom_objects_api: CustomObjectsApi,
    core_api: CoreV1Api,
    leadership_check: Callable[[], bool] | None = None,
) -> CustomAppController:
    """Construct a :class:`CustomAppController` from loaded configuration."""
    return CustomAppController(
        custom_api=CustomResourceApi(custom_objects_api, namespace=config.namespace),
        pod_api=PodApi(core_api, namespace=config.namespace),
        recorder=EventRecorder(core_api, reporting_instance=config.identity),
        reconciler=Reconciler(requeue_after_seconds=config.reconcile_requeue_seconds or None),
        workers=config.workers,
        max_terminal_retries=config.max_terminal_retries,
        terminal_retry_seconds=config.resync_period_seconds,
        shutdown_grace_seconds=config.shutdown_grace_seconds,
        resync_period_seconds=config.resync_period_seconds,
        watch_timeout_seconds=config.watch_timeout_seconds,
        backoff_base_seconds=config.backoff_base_seconds,
        backoff_max_seconds=config.backoff_max_seconds,
        leadership_check=leadership_check,
    )
