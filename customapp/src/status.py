from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from customapp.src.cache import ResourceCache
from customapp.src.errors import ConflictError, TransientError, translate_api_exception
from customapp.src.kube import CustomResourceApi
from customapp.src.model import ObservedObject, ResourceRef
from customapp.src.reconciler import utc_now_rfc3339

LOGGER = logging.getLogger(__name__)


class StatusWriter:
    """Writes the ``status`` subresource of custom resources.

    Every write is conditional on the resourceVersion the caller observed
    and goes through the status subresource, so it can never clobber a
    concurrent spec edit.  A stale version surfaces as
    :class:`ConflictError`, which the controller requeues without backoff.
    """

    def __init__(
        self,
        custom_api: CustomResourceApi,
        cache: ResourceCache,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.custom_api = custom_api
        self.cache = cache
        self.now_fn = now_fn

    def set_status(
        self,
        ref: ResourceRef,
        status: Mapping[str, Any],
        expected_resource_version: str,
        *,
        notify: bool = True,
    ) -> ObservedObject:
        try:
            body = self.custom_api.patch_status(
                ref.name, dict(status), resource_version=expected_resource_version
            )
        except ApiException as exc:
            if exc.status == 404:
                raise ConflictError(
                    f"{ref} disappeared before its status was written", ref
                ) from exc
            raise translate_api_exception(exc, ref, "status update of") from exc
        except (Urllib3HTTPError, OSError) as exc:
            raise TransientError(f"status update of {ref} failed: {exc}", ref) from exc

        updated = ObservedObject.from_dict(ref.kind, body)
        self.cache.upsert(updated, notify=notify)
        LOGGER.debug("Updated status of %s at resourceVersion %s", ref, updated.resource_version)
        return updated

    def set_condition(
        self,
        obj: ObservedObject,
        condition_type: str,
        status: str,
        reason: str,
        message: str,
        *,
        notify: bool = True,
    ) -> ObservedObject:
        """Merge one condition into the object's status, keeping the others.

        ``lastTransitionTime`` only moves when the condition's status flips.
        """
        conditions = [dict(c) for c in obj.status.get("conditions") or ()]
        existing = next((c for c in conditions if c.get("type") == condition_type), None)
        if existing is None:
            existing = {"type": condition_type}
            conditions.append(existing)
        if existing.get("status") != status or "lastTransitionTime" not in existing:
            existing["lastTransitionTime"] = self.now_fn()
        existing.update({"status": status, "reason": reason, "message": message})
        return self.set_status(
            obj.ref,
            {**obj.status, "conditions": conditions},
            expected_resource_version=obj.resource_version,
            notify=notify,
        )
