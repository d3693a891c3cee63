from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException, CoreV1Api
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from customapp.src.model import API_VERSION, MANAGED_BY, ObservedObject
from customapp.src.reconciler import utc_now_rfc3339

LOGGER = logging.getLogger(__name__)

NORMAL = "Normal"
WARNING = "Warning"


class EventRecorder:
    """Publishes core/v1 Events about the resources this controller reconciles.

    Events are informational: a failure to publish one is logged and never
    fails the reconcile that produced it.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        reporting_instance: str = "unknown",
        reporting_component: str = MANAGED_BY,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.core_api = core_api
        self.reporting_instance = reporting_instance
        self.reporting_component = reporting_component
        self.now_fn = now_fn

    def build_event(
        self,
        obj: ObservedObject,
        reason: str,
        note: str,
        event_type: str = NORMAL,
        action: str = "Reconciling",
    ) -> dict[str, Any]:
        now = self.now_fn()
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{obj.ref.name}.",
                "namespace": obj.ref.namespace,
            },
            "involvedObject": {
                "apiVersion": API_VERSION,
                "kind": obj.ref.kind,
                "name": obj.ref.name,
                "namespace": obj.ref.namespace,
                "uid": obj.uid,
                "resourceVersion": obj.resource_version,
            },
            "reason": reason,
            "message": note,
            "type": event_type,
            "action": action,
            "reportingComponent": self.reporting_component,
            "reportingInstance": self.reporting_instance,
            "source": {"component": self.reporting_component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

    def publish(
        self,
        obj: ObservedObject,
        reason: str,
        note: str,
        event_type: str = NORMAL,
        action: str = "Reconciling",
    ) -> bool:
        body = self.build_event(obj, reason, note, event_type=event_type, action=action)
        try:
            self.core_api.create_namespaced_event(namespace=obj.ref.namespace, body=body)
        except (ApiException, Urllib3HTTPError, OSError):
            LOGGER.warning("Failed to publish %s event for %s", reason, obj.ref, exc_info=True)
            return False
        LOGGER.debug("Published %s event %s for %s", event_type, reason, obj.ref)
        return True
