from __future__ import annotations

import logging
from collections.abc import Sequence

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from customapp.src.cache import ResourceCache
from customapp.src.errors import TransientError, translate_api_exception
from customapp.src.events import EventRecorder
from customapp.src.executor import ActionExecutor, Checkpoint
from customapp.src.kube import CustomResourceApi
from customapp.src.model import FINALIZER, ObservedObject
from customapp.src.reconciler import Reconciler

LOGGER = logging.getLogger(__name__)


class FinalizerManager:
    """Gates deletion of custom resources on the completion of their cleanup.

    Live resources get the controller's finalizer token before anything
    else is created for them.  Once the API server marks a resource for
    deletion, :meth:`finalize` tears down its children through the normal
    executor path and only then removes the token, as the very last write,
    with a resourceVersion precondition.  A cleanup failure propagates like
    any reconcile failure and leaves the token in place, so the API server
    keeps the object until cleanup is confirmed.
    """

    def __init__(
        self,
        custom_api: CustomResourceApi,
        executor: ActionExecutor,
        reconciler: Reconciler,
        cache: ResourceCache,
        recorder: EventRecorder | None = None,
        token: str = FINALIZER,
    ) -> None:
        self.custom_api = custom_api
        self.executor = executor
        self.reconciler = reconciler
        self.cache = cache
        self.recorder = recorder
        self.token = token

    def has_finalizer(self, obj: ObservedObject) -> bool:
        return self.token in obj.finalizers

    def ensure(self, obj: ObservedObject) -> ObservedObject:
        """Add the token to a live resource that lacks it; return the fresh snapshot."""
        if self.has_finalizer(obj):
            return obj
        updated = self._patch_finalizers(obj, sorted(obj.finalizers | {self.token}), "add")
        LOGGER.info("Added finalizer %s to %s", self.token, obj.ref)
        return updated or obj

    def finalize(
        self,
        obj: ObservedObject,
        children: Sequence[ObservedObject],
        checkpoint: Checkpoint | None = None,
    ) -> None:
        """Run cleanup for a resource marked for deletion, then release it."""
        if not self.has_finalizer(obj):
            return
        actions = self.reconciler.cleanup(obj, children)
        if actions:
            LOGGER.info("Cleaning up %d child object(s) of %s", len(actions), obj.ref)
        self.executor.execute(actions, checkpoint)

        if checkpoint is not None:
            checkpoint()
        if self.recorder is not None:
            self.recorder.publish(obj, "DeleteCustomApp", f"Delete `{obj.ref.name}`")
        self._patch_finalizers(obj, sorted(obj.finalizers - {self.token}), "remove")
        LOGGER.info("Removed finalizer %s from %s", self.token, obj.ref)

    def _patch_finalizers(
        self, obj: ObservedObject, finalizers: list[str], operation: str
    ) -> ObservedObject | None:
        try:
            body = self.custom_api.patch(
                obj.ref.name,
                {"metadata": {"finalizers": finalizers}},
                resource_version=obj.resource_version,
            )
        except ApiException as exc:
            if exc.status == 404 and operation == "remove":
                return None
            raise translate_api_exception(exc, obj.ref, f"finalizer {operation} on") from exc
        except (Urllib3HTTPError, OSError) as exc:
            raise TransientError(
                f"finalizer {operation} on {obj.ref} failed: {exc}", obj.ref
            ) from exc

        updated = ObservedObject.from_dict(obj.ref.kind, body)
        self.cache.upsert(updated)
        return updated
