from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from customapp.src.kube import to_dict
from customapp.src.metrics import METRICS
from customapp.src.model import ObservedObject, ResourceRef

LOGGER = logging.getLogger(__name__)

ChangeHandler = Callable[[ResourceRef, ObservedObject], None]


def is_newer(incoming: str, current: str) -> bool:
    """Return True if resourceVersion *incoming* supersedes *current*.

    Versions are opaque to clients, but the API server hands out etcd
    revisions, so numeric versions are compared as integers.  Non-numeric
    versions can only be compared for equality; a different one wins.
    """
    if not current:
        return True
    if incoming == current:
        return False
    if incoming.isdigit() and current.isdigit():
        return int(incoming) > int(current)
    return bool(incoming)


class ResourceCache:
    """In-memory, eventually-consistent mirror of watched objects.

    All writers (informer watch streams, relists, and the action executor
    recording API responses) go through a per-key compare-and-swap on
    ``resourceVersion``: an observation that is not newer than the cached
    one is discarded, so out-of-order or duplicate events never roll the
    cache back.  Deletions leave a tombstone holding the last version so a
    late event from before the deletion cannot resurrect the object.

    Subscribers are called outside the lock with the affected ref and the
    latest snapshot (the evicted one for deletions).
    """

    def __init__(self) -> None:
        self._objects: dict[ResourceRef, ObservedObject] = {}
        self._tombstones: dict[ResourceRef, str] = {}
        self._handlers: list[ChangeHandler] = []
        self._lock = threading.RLock()

    def subscribe(self, handler: ChangeHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def _notify(self, changes: Iterable[ObservedObject]) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for obj in changes:
            for handler in handlers:
                try:
                    handler(obj.ref, obj)
                except Exception:
                    LOGGER.exception("Cache change handler failed for %s", obj.ref)

    def get(self, ref: ResourceRef) -> ObservedObject | None:
        with self._lock:
            return self._objects.get(ref)

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def keys(self, kind: str) -> list[ResourceRef]:
        with self._lock:
            return sorted(ref for ref in self._objects if ref.kind == kind)

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        predicate: Callable[[ObservedObject], bool] | None = None,
    ) -> list[ObservedObject]:
        with self._lock:
            candidates = [
                obj
                for ref, obj in self._objects.items()
                if ref.kind == kind and (namespace is None or ref.namespace == namespace)
            ]
        if predicate is not None:
            candidates = [obj for obj in candidates if predicate(obj)]
        return sorted(candidates, key=lambda obj: obj.ref)

    def upsert(self, obj: ObservedObject, *, notify: bool = True) -> bool:
        """Store *obj* if it is newer than what is cached; return whether it was stored."""
        with self._lock:
            tombstone = self._tombstones.get(obj.ref)
            if tombstone is not None and not is_newer(obj.resource_version, tombstone):
                METRICS.cache_discarded_events_total.labels(kind=obj.ref.kind).inc()
                return False
            current = self._objects.get(obj.ref)
            if current is not None and not is_newer(
                obj.resource_version, current.resource_version
            ):
                METRICS.cache_discarded_events_total.labels(kind=obj.ref.kind).inc()
                return False
            self._objects[obj.ref] = obj
            self._tombstones.pop(obj.ref, None)
        if notify:
            self._notify([obj])
        return True

    def delete(
        self, ref: ResourceRef, resource_version: str | None = None, *, notify: bool = True
    ) -> ObservedObject | None:
        """Evict *ref*; a deletion older than the cached version is ignored."""
        with self._lock:
            current = self._objects.get(ref)
            if current is None:
                if resource_version:
                    tombstone = self._tombstones.get(ref)
                    if tombstone is None or is_newer(resource_version, tombstone):
                        self._tombstones[ref] = resource_version
                return None
            if resource_version and is_newer(current.resource_version, resource_version):
                METRICS.cache_discarded_events_total.labels(kind=ref.kind).inc()
                return None
            del self._objects[ref]
            self._tombstones[ref] = resource_version or current.resource_version
        if notify:
            self._notify([current])
        return current

    def prune_tombstones(self, kind: str, namespace: str, resource_version: str) -> int:
        """Drop tombstones of *kind* in *namespace* older than a version the watch has reached.

        A watch stream delivers events in order, so once it is past a
        tombstone no late event it could still block will arrive.
        """
        with self._lock:
            expired = [
                ref
                for ref, tombstone in self._tombstones.items()
                if ref.kind == kind
                and ref.namespace == namespace
                and is_newer(resource_version, tombstone)
            ]
            for ref in expired:
                del self._tombstones[ref]
        return len(expired)

    def tombstone(self, ref: ResourceRef) -> str | None:
        with self._lock:
            return self._tombstones.get(ref)

    def replace(self, kind: str, namespace: str, objects: Iterable[ObservedObject]) -> None:
        """Apply a full relist of *kind* in *namespace*.

        Keys missing from the list are evicted; listed objects replace cached
        ones unless the cache already holds a newer version.  Only keys that
        actually changed are announced.
        """
        fresh = {obj.ref: obj for obj in objects}
        changed: list[ObservedObject] = []
        with self._lock:
            for ref in [
                ref
                for ref in self._objects
                if ref.kind == kind and ref.namespace == namespace and ref not in fresh
            ]:
                changed.append(self._objects.pop(ref))
            for ref in [
                ref for ref in self._tombstones if ref.kind == kind and ref.namespace == namespace
            ]:
                del self._tombstones[ref]
            for ref, obj in fresh.items():
                current = self._objects.get(ref)
                if current is None or is_newer(obj.resource_version, current.resource_version):
                    self._objects[ref] = obj
                    changed.append(obj)
        self._notify(changed)

    def resync(self, kind: str) -> int:
        """Announce every cached object of *kind* again; return how many."""
        snapshot = self.list(kind)
        self._notify(snapshot)
        return len(snapshot)


class ResourceApi(Protocol):
    kind: str
    namespace: str

    def list(self) -> tuple[list[dict[str, Any]], str | None]: ...

    def watch_target(self) -> tuple[Callable[..., Any], dict[str, Any]]: ...


class Informer:
    """Keeps :class:`ResourceCache` current for one resource type via list + watch.

    1. Lists the type (retrying with exponential backoff and jitter) and
       replaces the cache's set for it; ``has_synced`` is set afterwards.
    2. Watches from the list's ``resourceVersion``.  A stream that ends on
       its server-side timeout resumes from the last seen version.
    3. Any abnormal end of the stream (``410 Gone``, network failure, server
       restart) forces a full relist so no event is lost.
    4. Transient errors back off from 1 s doubling up to 30 s, jittered.
    5. ``401``/``403`` are configuration errors (RBAC/auth) and stop the
       informer with a clear log line rather than retrying forever.
    6. Every ``resync_period_seconds`` all cached keys of the type are
       re-announced regardless of watch activity, to catch divergence from
       events that were never delivered.
    """

    def __init__(
        self,
        api: ResourceApi,
        cache: ResourceCache,
        resync_period_seconds: int = 600,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        if resync_period_seconds < 1:
            raise ValueError("resync_period_seconds must be >= 1")
        if watch_timeout_seconds < 1:
            raise ValueError("watch_timeout_seconds must be >= 1")
        self.api = api
        self.kind = api.kind
        self.cache = cache
        self.resync_period_seconds = resync_period_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or LOGGER
        self.has_synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _observe(self, body: dict[str, Any]) -> ObservedObject | None:
        try:
            return ObservedObject.from_dict(self.kind, body)
        except ValueError:
            self.logger.warning("Skipping malformed %s object from the API server", self.kind)
            return None

    def relist(self) -> str | None:
        """List the type, replace the cache's view of it, and return the list version."""
        items, resource_version = self.api.list()
        observed = [obj for obj in (self._observe(item) for item in items) if obj is not None]
        self.cache.replace(self.kind, self.api.namespace, observed)
        self.logger.info(
            "Listed %d %s object(s) at resourceVersion %s",
            len(observed),
            self.kind,
            resource_version,
        )
        return resource_version

    def handle_event(self, event: dict[str, Any]) -> str | None:
        """Apply one watch event to the cache; return its resourceVersion if any."""
        event_type = str(event.get("type", ""))
        raw = event.get("raw_object")
        body = raw if isinstance(raw, dict) else event.get("object")
        if body is None:
            return None
        body = to_dict(body)
        resource_version = (body.get("metadata") or {}).get("resourceVersion")

        obj = None if event_type == "BOOKMARK" else self._observe(body)
        if obj is not None:
            if event_type in {"ADDED", "MODIFIED"}:
                self.cache.upsert(obj)
            elif event_type == "DELETED":
                self.cache.delete(obj.ref, obj.resource_version)
        if resource_version:
            self.cache.prune_tombstones(self.kind, self.api.namespace, resource_version)
        return resource_version

    def _next_watch_timeout_seconds(self, next_resync_at: float, now_monotonic: float) -> int:
        """Shorten the watch so the loop wakes up in time for the next resync."""
        remaining = max(1.0, next_resync_at - now_monotonic)
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.has_synced.clear()

        resource_version: str | None = None
        needs_relist = True
        list_count = 0
        # Reset to 1 after every successful list or clean watch; doubled on
        # error up to a 30 s cap.  Jitter is applied at sleep time.
        backoff_seconds = 1
        next_resync_at = time.monotonic() + self.resync_period_seconds

        while not self._should_stop(stop):
            if needs_relist:
                try:
                    if list_count > 0:
                        METRICS.watch_relists_total.labels(kind=self.kind).inc()
                    list_count += 1
                    resource_version = self.relist()
                    needs_relist = False
                    backoff_seconds = 1
                    self.has_synced.set()
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API access denied listing %s (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            self.kind,
                            exc.status,
                        )
                        self.has_synced.clear()
                        return
                    self.logger.exception("Listing %s failed", self.kind)
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    backoff_seconds = self._backoff_wait(stop, backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error listing %s", self.kind)
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    backoff_seconds = self._backoff_wait(stop, backoff_seconds)
                    continue

            now_monotonic = time.monotonic()
            if now_monotonic >= next_resync_at:
                count = self.cache.resync(self.kind)
                self.logger.debug("Periodic resync re-announced %d %s key(s)", count, self.kind)
                next_resync_at = now_monotonic + self.resync_period_seconds

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                func, kwargs = self.api.watch_target()
                stream = watcher.stream(
                    func,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(
                        next_resync_at, time.monotonic()
                    ),
                    **kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    event_version = self.handle_event(event)
                    if event_version:
                        resource_version = event_version
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch on %s expired, re-listing", self.kind)
                    needs_relist = True
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self.has_synced.clear()
                    return
                self.logger.exception("Kubernetes API watch error on %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                needs_relist = True
                backoff_seconds = self._backoff_wait(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                needs_relist = True
                backoff_seconds = self._backoff_wait(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.has_synced.clear()

    @staticmethod
    def _backoff_wait(stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)
