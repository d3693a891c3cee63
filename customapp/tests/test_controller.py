from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Sequence
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from customapp.src.cache import ResourceCache
from customapp.src.config import ControllerConfig
from customapp.src.controller import (
    CustomAppController,
    KeyState,
    KeyStateTracker,
    build_controller,
)
from customapp.src.errors import FatalError
from customapp.src.model import (
    CHILD_KIND,
    FINALIZER,
    KIND,
    OWNER_LABEL,
    ObservedObject,
    ReconcileResult,
    ResourceRef,
)
from customapp.src.reconciler import Reconciler
from customapp.tests.fakes import FakeCluster, FakeCustomResourceApi, FakePodApi

NOW = "2026-01-01T00:00:00Z"
REF = ResourceRef(KIND, "ns", "demo")


def _make_controller(
    cluster: FakeCluster,
    reconciler: Reconciler | None = None,
    **kwargs: Any,
) -> CustomAppController:
    options: dict[str, Any] = {
        "backoff_base_seconds": 0.01,
        "backoff_max_seconds": 0.05,
        "terminal_retry_seconds": 3600,
    }
    options.update(kwargs)
    return CustomAppController(
        FakeCustomResourceApi(cluster),
        FakePodApi(cluster),
        recorder=MagicMock(),
        cache=ResourceCache(),
        reconciler=reconciler or Reconciler(now_fn=lambda: NOW),
        **options,
    )


def _observe(controller: CustomAppController, cluster: FakeCluster) -> None:
    """Deliver the cluster's current objects to the cache, like a watch would."""
    for name in list(cluster.apps):
        controller.cache.upsert(cluster.observe_app(name))
    for pod in cluster.observe_pods():
        controller.cache.upsert(pod)


def _drain(controller: CustomAppController, limit: int = 100) -> int:
    processed = 0
    while processed < limit and controller.process_next_item(timeout=0.3):
        processed += 1
    return processed


def _bump(cluster: FakeCluster, name: str, **spec: Any) -> None:
    cluster.apps[name]["spec"].update(spec)
    cluster.apps[name]["metadata"]["resourceVersion"] = cluster.next_version()


def _converge(cluster: FakeCluster, replicas: int = 3) -> CustomAppController:
    cluster.add_app("demo", spec={"replicas": replicas, "image": "nginx:1"})
    controller = _make_controller(cluster)
    _observe(controller, cluster)
    _drain(controller)
    return controller


# ---------------------------------------------------------------------------
# Reconcile flow
# ---------------------------------------------------------------------------


def test_new_resource_converges_with_finalizer_children_and_status() -> None:
    cluster = FakeCluster()

    controller = _converge(cluster, replicas=3)

    app = cluster.apps["demo"]
    assert sorted(cluster.pods) == ["demo-0", "demo-1", "demo-2"]
    assert app["metadata"]["finalizers"] == [FINALIZER]
    assert app["status"]["readyChildren"] == 3
    assert app["status"]["conditions"][0]["status"] == "True"
    assert controller.states.get(REF) is KeyState.CONVERGED
    for pod in cluster.pods.values():
        assert pod["metadata"]["labels"][OWNER_LABEL] == "demo"
        assert pod["metadata"]["ownerReferences"][0]["uid"] == "uid-demo"


def test_converged_resource_is_left_alone() -> None:
    cluster = FakeCluster()
    controller = _converge(cluster, replicas=2)
    calls_before = len(cluster.calls)

    controller.queue.add(REF)
    assert _drain(controller) == 1

    assert len(cluster.calls) == calls_before


def test_scale_down_deletes_oldest_children() -> None:
    cluster = FakeCluster()
    controller = _converge(cluster, replicas=3)

    _bump(cluster, "demo", replicas=1)
    _observe(controller, cluster)
    _drain(controller)

    assert sorted(cluster.pods) == ["demo-2"]
    assert cluster.apps["demo"]["status"]["readyChildren"] == 1


def test_child_change_requeues_owner_and_is_repaired() -> None:
    cluster = FakeCluster()
    controller = _converge(cluster, replicas=1)

    cluster.pods["demo-0"]["spec"]["containers"][0]["image"] = "tampered"
    cluster.pods["demo-0"]["metadata"]["resourceVersion"] = cluster.next_version()
    _observe(controller, cluster)
    _drain(controller)

    assert cluster.pods["demo-0"]["spec"]["containers"][0]["image"] == "nginx:1"


def test_deleted_child_is_recreated() -> None:
    cluster = FakeCluster()
    controller = _converge(cluster, replicas=2)

    del cluster.pods["demo-0"]
    controller.cache.delete(ResourceRef(CHILD_KIND, "ns", "demo-0"))
    _drain(controller)

    assert sorted(cluster.pods) == ["demo-0", "demo-1"]


def test_hiding_publishes_event() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", spec={"replicas": 0, "hide": True})
    controller = _make_controller(cluster)
    _observe(controller, cluster)

    _drain(controller)

    assert cluster.apps["demo"]["status"]["hidden"] is True
    reasons = [c.args[1] for c in controller.recorder.publish.call_args_list]
    assert reasons == ["HiddenCustomApp"]


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


def test_transient_failures_are_retried_with_backoff_until_converged() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", spec={"replicas": 2, "image": "nginx:1"})
    cluster.fail(
        "create_pod",
        ApiException(status=500, reason="boom"),
        ApiException(status=503, reason="unavailable"),
    )
    controller = _make_controller(cluster)
    _observe(controller, cluster)

    with patch.object(
        controller.queue, "add_rate_limited", wraps=controller.queue.add_rate_limited
    ) as rate_limited:
        _drain(controller)

    assert rate_limited.call_count == 2
    assert sorted(cluster.pods) == ["demo-0", "demo-1"]
    assert cluster.apps["demo"]["status"]["readyChildren"] == 2
    assert controller.queue.num_requeues(REF) == 0
    assert controller.states.get(REF) is KeyState.CONVERGED


def test_conflict_is_requeued_without_backoff() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", spec={"replicas": 1, "image": "nginx:1"})
    cluster.fail("patch_status", ApiException(status=409, reason="conflict"))
    controller = _make_controller(cluster)
    _observe(controller, cluster)

    with patch.object(
        controller.queue, "add_rate_limited", wraps=controller.queue.add_rate_limited
    ) as rate_limited:
        _drain(controller)

    rate_limited.assert_not_called()
    assert [op for op, _ in cluster.calls].count("patch_status") == 2
    assert cluster.apps["demo"]["status"]["readyChildren"] == 1


def test_terminal_failure_is_bounded_then_surfaced() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", spec={"replicas": -1})
    controller = _make_controller(cluster, max_terminal_retries=2)
    _observe(controller, cluster)

    _drain(controller)

    assert controller.terminal_failures(REF) == 3
    assert cluster.pods == {}
    ready = cluster.apps["demo"]["status"]["conditions"][0]
    assert ready["type"] == "Ready"
    assert ready["status"] == "False"
    assert ready["reason"] == "ReconcileFailed"
    assert "spec.replicas" in ready["message"]
    publish = controller.recorder.publish.call_args
    assert publish.args[1] == "ReconcileFailed"
    assert publish.kwargs["event_type"] == "Warning"
    assert controller.states.get(REF) is KeyState.RETRY_PENDING


def test_fixed_spec_recovers_after_surfaced_terminal_failure() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", spec={"replicas": -1})
    controller = _make_controller(cluster, max_terminal_retries=0)
    _observe(controller, cluster)
    _drain(controller)

    _bump(cluster, "demo", replicas=1)
    _observe(controller, cluster)
    _drain(controller)

    assert sorted(cluster.pods) == ["demo-0"]
    assert controller.terminal_failures(REF) == 0
    assert cluster.apps["demo"]["status"]["conditions"][0]["status"] == "True"


def test_unexpected_exception_is_logged_and_retried() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", finalizers=[FINALIZER])
    reconciler = Reconciler(now_fn=lambda: NOW)
    controller = _make_controller(cluster, reconciler=reconciler)
    _observe(controller, cluster)

    outcomes = [RuntimeError("bug"), ([], ReconcileResult())]
    with patch.object(reconciler, "reconcile", side_effect=outcomes):
        assert controller.process(REF) == "fatal"
        assert controller.states.get(REF) is KeyState.RETRY_PENDING
        assert controller.queue.num_requeues(REF) == 1
        assert controller.process(REF) == "converged"

    assert controller.queue.num_requeues(REF) == 0


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


def _mark_deleting(cluster: FakeCluster, name: str) -> None:
    cluster.apps[name]["metadata"]["deletionTimestamp"] = "2026-01-01T01:00:00Z"
    cluster.apps[name]["metadata"]["resourceVersion"] = cluster.next_version()


def test_deletion_cleans_up_children_before_removing_finalizer() -> None:
    cluster = FakeCluster()
    controller = _converge(cluster, replicas=2)
    calls_before = len(cluster.calls)

    _mark_deleting(cluster, "demo")
    _observe(controller, cluster)
    _drain(controller)

    assert cluster.pods == {}
    assert "demo" not in cluster.apps
    deletion_calls = [op for op, _ in cluster.calls[calls_before:]]
    assert deletion_calls == ["delete_pod", "delete_pod", "patch_app"]
    reasons = [c.args[1] for c in controller.recorder.publish.call_args_list]
    assert reasons == ["DeleteCustomApp"]

    controller.cache.delete(REF)
    _drain(controller)
    assert controller.states.get(REF) is None


def test_failed_cleanup_is_retried_before_finalizer_removal() -> None:
    cluster = FakeCluster()
    controller = _converge(cluster, replicas=2)
    cluster.fail("delete_pod", ApiException(status=503, reason="unavailable"))

    _mark_deleting(cluster, "demo")
    _observe(controller, cluster)
    with patch.object(
        controller.queue, "add_rate_limited", wraps=controller.queue.add_rate_limited
    ) as rate_limited:
        _drain(controller)

    rate_limited.assert_called_once_with(REF)
    operations = [op for op, _ in cluster.calls]
    assert operations.count("delete_pod") == 3
    assert operations[-1] == "patch_app"
    assert cluster.pods == {}
    assert "demo" not in cluster.apps


def test_deleting_resource_without_finalizer_is_not_touched() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", deleting=True)
    controller = _make_controller(cluster)
    _observe(controller, cluster)

    _drain(controller)

    assert cluster.calls == []
    assert controller.states.get(REF) is KeyState.CONVERGED


def test_absent_resource_is_forgotten() -> None:
    controller = _make_controller(FakeCluster())

    assert controller.process(REF) == "removed"
    assert controller.states.get(REF) is None


# ---------------------------------------------------------------------------
# Cancellation and serialization
# ---------------------------------------------------------------------------


def test_lost_leadership_cancels_before_any_write() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo")
    controller = _make_controller(cluster, leadership_check=lambda: False)
    _observe(controller, cluster)

    assert controller.process(REF) == "cancelled"
    assert cluster.calls == []
    assert controller.states.get(REF) is KeyState.PENDING


def test_leadership_lost_mid_reconcile_stops_between_actions() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", spec={"replicas": 3, "image": "nginx:1"}, finalizers=[FINALIZER])
    checks = iter([True, True, True])
    controller = _make_controller(cluster, leadership_check=lambda: next(checks, False))
    _observe(controller, cluster)

    assert controller.process(REF) == "cancelled"
    assert sorted(cluster.pods) == ["demo-0", "demo-1"]


def test_leadership_lost_during_cleanup_keeps_finalizer_until_next_leader() -> None:
    cluster = FakeCluster()
    controller = _converge(cluster, replicas=2)
    _mark_deleting(cluster, "demo")
    _observe(controller, cluster)
    checks = iter([True])
    controller.leadership_check = lambda: next(checks, False)

    assert controller.process(REF) == "cancelled"

    assert controller.states.get(REF) is KeyState.PENDING
    assert len(cluster.pods) == 1
    assert cluster.apps["demo"]["metadata"]["finalizers"] == [FINALIZER]

    controller.leadership_check = None
    assert controller.process(REF) == "finalized"

    assert cluster.pods == {}
    assert "demo" not in cluster.apps
    assert controller.states.get(REF) is None


def test_worker_survives_error_escaping_process() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", spec={"replicas": 1, "image": "nginx:1"})
    controller = _make_controller(cluster)
    _observe(controller, cluster)
    controller.states.begin(REF)

    with patch.object(controller, "process", side_effect=FatalError("handler bug", REF)):
        assert controller.process_next_item(timeout=0.3) is True

    assert controller.states.get(REF) is None
    assert controller.queue.num_requeues(REF) == 1

    _drain(controller)

    assert sorted(cluster.pods) == ["demo-0"]
    assert controller.states.get(REF) is KeyState.CONVERGED


def test_worker_thread_keeps_running_after_unhandled_error() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", spec={"replicas": 1, "image": "nginx:1"})
    controller = _make_controller(cluster)
    _observe(controller, cluster)
    real_process = controller.process
    calls: list[ResourceRef] = []

    def flaky_process(key: ResourceRef) -> str:
        calls.append(key)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return real_process(key)

    with patch.object(controller, "process", side_effect=flaky_process):
        worker = threading.Thread(target=controller._worker, daemon=True)
        worker.start()
        deadline = time.monotonic() + 2.0
        while controller.states.get(REF) is not KeyState.CONVERGED and time.monotonic() < deadline:
            time.sleep(0.01)
        alive = worker.is_alive()
        controller.queue.shut_down()
        worker.join(timeout=2.0)

    assert alive
    assert len(calls) >= 2
    assert sorted(cluster.pods) == ["demo-0"]
    assert not worker.is_alive()


def test_request_stop_cancels_attempts() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo")
    controller = _make_controller(cluster)
    _observe(controller, cluster)

    controller.request_stop()

    assert controller.process(REF) == "cancelled"
    assert cluster.calls == []


class SlowRecordingReconciler(Reconciler):
    def __init__(self) -> None:
        super().__init__(now_fn=lambda: NOW)
        self._lock = threading.Lock()
        self.active: Counter[ResourceRef] = Counter()
        self.max_active: Counter[ResourceRef] = Counter()

    def reconcile(
        self, observed: ObservedObject, children: Sequence[ObservedObject]
    ) -> tuple[list, Any]:
        with self._lock:
            self.active[observed.ref] += 1
            self.max_active[observed.ref] = max(
                self.max_active[observed.ref], self.active[observed.ref]
            )
        time.sleep(0.01)
        try:
            return super().reconcile(observed, children)
        finally:
            with self._lock:
                self.active[observed.ref] -= 1


def test_same_key_is_never_reconciled_concurrently() -> None:
    cluster = FakeCluster()
    for name in ("a", "b", "c"):
        cluster.add_app(name, spec={"replicas": 1, "image": "nginx:1"})
    reconciler = SlowRecordingReconciler()
    controller = _make_controller(cluster, reconciler=reconciler, workers=4)
    _observe(controller, cluster)

    workers = [threading.Thread(target=controller._worker) for _ in range(4)]
    for worker in workers:
        worker.start()
    for _ in range(20):
        for name in ("a", "b", "c"):
            controller.queue.add(ResourceRef(KIND, "ns", name))
        time.sleep(0.002)
    time.sleep(0.2)
    assert controller.queue.shut_down_with_drain(timeout=5.0)
    for worker in workers:
        worker.join(timeout=5.0)

    assert set(reconciler.max_active) == {
        ResourceRef(KIND, "ns", "a"),
        ResourceRef(KIND, "ns", "b"),
        ResourceRef(KIND, "ns", "c"),
    }
    assert max(reconciler.max_active.values()) == 1
    assert sorted(cluster.pods) == ["a-0", "b-0", "c-0"]


# ---------------------------------------------------------------------------
# Event routing and state machine
# ---------------------------------------------------------------------------


def _pod(metadata: dict[str, Any]) -> ObservedObject:
    return ObservedObject.from_dict(CHILD_KIND, {"metadata": {"namespace": "ns", **metadata}})


def test_owner_key_maps_children_to_their_controller() -> None:
    owned = _pod(
        {
            "name": "demo-0",
            "ownerReferences": [{"kind": KIND, "name": "demo", "controller": True}],
        }
    )
    labelled = _pod({"name": "demo-1", "labels": {OWNER_LABEL: "demo"}})
    foreign = _pod(
        {
            "name": "x",
            "labels": {OWNER_LABEL: "demo"},
            "ownerReferences": [{"kind": "ReplicaSet", "name": "rs", "controller": True}],
        }
    )
    orphan = _pod({"name": "y"})

    assert CustomAppController.owner_key(owned.ref, owned) == REF
    assert CustomAppController.owner_key(labelled.ref, labelled) == REF
    assert CustomAppController.owner_key(foreign.ref, foreign) is None
    assert CustomAppController.owner_key(orphan.ref, orphan) is None
    assert CustomAppController.owner_key(REF, MagicMock()) == REF


def test_children_of_ignores_pods_of_other_owners() -> None:
    cluster = FakeCluster()
    controller = _converge(cluster, replicas=1)
    impostor = _pod(
        {
            "name": "demo-9",
            "resourceVersion": "1",
            "ownerReferences": [
                {"kind": KIND, "name": "demo", "uid": "uid-old", "controller": True}
            ],
        }
    )
    controller.cache.upsert(impostor, notify=False)

    children = controller.children_of(controller.cache.get(REF))

    assert [child.ref.name for child in children] == ["demo-0"]


def test_key_state_machine_follows_lifecycle() -> None:
    tracker = KeyStateTracker()

    tracker.begin(REF)
    assert tracker.get(REF) is KeyState.RECONCILING
    tracker.transition(REF, KeyState.FINALIZING)
    tracker.transition(REF, KeyState.RETRY_PENDING)
    tracker.begin(REF)
    tracker.transition(REF, KeyState.FINALIZING)
    tracker.transition(REF, KeyState.PENDING)
    tracker.begin(REF)
    tracker.transition(REF, KeyState.CONVERGED)
    tracker.begin(REF)
    tracker.transition(REF, KeyState.REMOVED)

    assert tracker.get(REF) is None


def test_key_state_machine_rejects_concurrent_attempts() -> None:
    tracker = KeyStateTracker()
    tracker.begin(REF)

    with pytest.raises(FatalError, match="reconciling -> reconciling"):
        tracker.begin(REF)


@pytest.mark.parametrize(
    ("setup", "target"),
    [
        ([KeyState.CONVERGED], KeyState.FINALIZING),
        ([KeyState.FINALIZING], KeyState.CONVERGED),
        ([], KeyState.CONVERGED),
    ],
)
def test_key_state_machine_rejects_invalid_transitions(
    setup: list[KeyState], target: KeyState
) -> None:
    tracker = KeyStateTracker()
    if setup:
        tracker.begin(REF)
        for state in setup:
            tracker.transition(REF, state)

    with pytest.raises(FatalError, match="invalid reconcile state transition"):
        tracker.transition(REF, target)


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------


def _idle_watcher() -> MagicMock:
    watcher = MagicMock()

    def idle_stream(*args: Any, **kwargs: Any) -> Any:
        time.sleep(0.05)
        return iter([])

    watcher.stream.side_effect = idle_stream
    return watcher


def test_run_forever_syncs_reconciles_and_shuts_down() -> None:
    cluster = FakeCluster()
    cluster.add_app("demo", spec={"replicas": 2, "image": "nginx:1"})
    controller = _make_controller(cluster, shutdown_grace_seconds=5)
    shutdown_event = threading.Event()

    with patch("customapp.src.cache.watch.Watch", return_value=_idle_watcher()):
        runner = threading.Thread(target=controller.run_forever, args=(shutdown_event,))
        runner.start()
        assert controller.ready.wait(timeout=5.0)
        deadline = time.monotonic() + 5.0
        while len(cluster.pods) < 2 and time.monotonic() < deadline:
            time.sleep(0.02)
        shutdown_event.set()
        runner.join(timeout=10.0)

    assert not runner.is_alive()
    assert sorted(cluster.pods) == ["demo-0", "demo-1"]
    assert not controller.ready.is_set()
    assert controller.queue.shutting_down


def test_run_forever_returns_when_informer_is_denied() -> None:
    cluster = FakeCluster()
    controller = _make_controller(cluster, shutdown_grace_seconds=1)
    controller.informers[0].api.list = MagicMock(
        side_effect=ApiException(status=403, reason="forbidden")
    )
    shutdown_event = threading.Event()

    with patch("customapp.src.cache.watch.Watch", return_value=_idle_watcher()):
        controller.run_forever(shutdown_event)

    assert not shutdown_event.is_set()
    assert not controller.ready.is_set()


def test_build_controller_wires_configuration() -> None:
    config = ControllerConfig(
        namespace="apps",
        workers=3,
        resync_period_seconds=120,
        max_terminal_retries=7,
        identity="pod-a",
    )
    core_api = MagicMock()

    controller = build_controller(config, MagicMock(), core_api, leadership_check=lambda: True)

    assert controller.workers == 3
    assert controller.max_terminal_retries == 7
    assert controller.terminal_retry_seconds == 120
    assert controller.custom_api.namespace == "apps"
    assert controller.pod_api.namespace == "apps"
    assert controller.recorder.reporting_instance == "pod-a"
    assert [informer.resync_period_seconds for informer in controller.informers] == [120, 120]
    assert controller.leadership_check() is True


def test_rejects_zero_workers() -> None:
    with pytest.raises(ValueError, match="workers must be >= 1"):
        _make_controller(FakeCluster(), workers=0)
