from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from customapp.src.cache import ResourceCache
from customapp.src.errors import (
    ConflictError,
    FatalError,
    TransientError,
    translate_api_exception,
)
from customapp.src.kube import PodApi
from customapp.src.model import (
    CHILD_KIND,
    Action,
    CreateChild,
    DeleteChild,
    ObservedObject,
    PatchStatus,
    UpdateChild,
)
from customapp.src.status import StatusWriter

LOGGER = logging.getLogger(__name__)

Checkpoint = Callable[[], None]


class ActionExecutor:
    """Applies reconciler actions to the API server.

    Each action type has exactly one handler; anything else is a
    programming error.  Updates and deletes carry the resourceVersion seen
    at reconcile time as a precondition, so a concurrent change turns into
    a :class:`ConflictError` instead of a lost update.  Successful writes are
    recorded in the cache before :meth:`execute` returns, which is what lets
    the next attempt for the same key see at least what this one wrote.

    Execution stops at the first failing action; the remaining ones are
    recomputed on the retry against fresh state.
    """

    def __init__(
        self,
        pod_api: PodApi,
        status_writer: StatusWriter,
        cache: ResourceCache,
        logger: logging.Logger | None = None,
    ) -> None:
        self.pod_api = pod_api
        self.status_writer = status_writer
        self.cache = cache
        self.logger = logger or LOGGER
        self._handlers: dict[type, Callable[..., None]] = {
            CreateChild: self._create_child,
            UpdateChild: self._update_child,
            DeleteChild: self._delete_child,
            PatchStatus: self._patch_status,
        }

    def execute(self, actions: Sequence[Action], checkpoint: Checkpoint | None = None) -> int:
        """Apply *actions* in order and return how many were applied.

        *checkpoint* runs before every action; it raises
        :class:`~customapp.src.errors.ReconcileCancelled` once this replica
        must stop writing.
        """
        applied = 0
        for action in actions:
            if checkpoint is not None:
                checkpoint()
            handler = self._handlers.get(type(action))
            if handler is None:
                raise FatalError(f"no handler for action {type(action).__name__}")
            try:
                handler(action)
            except (Urllib3HTTPError, OSError) as exc:
                raise TransientError(
                    f"{type(action).__name__} on {action.target} failed: {exc}", action.target
                ) from exc
            applied += 1
        return applied

    def _create_child(self, action: CreateChild) -> None:
        target = action.target
        try:
            body = self.pod_api.create(dict(action.body))
        except ApiException as exc:
            if exc.status == 409:
                # Name taken by an object the cache has not seen, possibly not ours.
                raise TransientError(f"{target} already exists", target) from exc
            raise translate_api_exception(exc, target, "create of") from exc
        self.cache.upsert(ObservedObject.from_dict(CHILD_KIND, body))
        self.logger.info("Created %s for %s", target, action.owner)

    def _update_child(self, action: UpdateChild) -> None:
        try:
            body = self.pod_api.patch(
                action.target.name,
                dict(action.patch),
                resource_version=action.expected_resource_version,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise ConflictError(
                    f"{action.target} disappeared before update", action.target
                ) from exc
            raise translate_api_exception(exc, action.target, "update of") from exc
        self.cache.upsert(ObservedObject.from_dict(CHILD_KIND, body))
        self.logger.info("Updated %s for %s", action.target, action.owner)

    def _delete_child(self, action: DeleteChild) -> None:
        try:
            self.pod_api.delete(
                action.target.name, resource_version=action.expected_resource_version
            )
        except ApiException as exc:
            if exc.status != 404:
                raise translate_api_exception(exc, action.target, "delete of") from exc
            self.logger.info("%s was already gone", action.target)
        self.cache.delete(action.target, action.expected_resource_version)
        self.logger.info("Deleted %s for %s", action.target, action.owner)

    def _patch_status(self, action: PatchStatus) -> None:
        self.status_writer.set_status(
            action.owner, action.status, action.expected_resource_version
        )
