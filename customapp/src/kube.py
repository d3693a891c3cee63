from __future__ import annotations

import logging
from collections.abc import Callable
from functools import lru_cache
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoordinationV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from customapp.src.model import (
    CHILD_KIND,
    GROUP,
    KIND,
    MANAGED_BY,
    MANAGED_BY_LABEL,
    PLURAL,
    VERSION,
)

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CustomObjectsApi, CoreV1Api, CoordinationV1Api]:
    """Return the API clients the controller needs, using the active kube configuration."""
    return client.CustomObjectsApi(), client.CoreV1Api(), client.CoordinationV1Api()


@lru_cache(maxsize=1)
def _serializer() -> client.ApiClient:
    return client.ApiClient()


def to_dict(obj: Any) -> dict[str, Any]:
    """Return the camelCase API representation of a client model or dict."""
    if isinstance(obj, dict):
        return obj
    return _serializer().sanitize_for_serialization(obj)


def list_resource_version(response: Any) -> str | None:
    if isinstance(response, dict):
        return (response.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(response, "metadata", None), "resource_version", None)


def list_items(response: Any) -> list[dict[str, Any]]:
    if isinstance(response, dict):
        items = response.get("items") or []
    else:
        items = getattr(response, "items", None) or []
    return [to_dict(item) for item in items]


class CustomResourceApi:
    """``CustomApp`` access through ``CustomObjectsApi``.

    Optimistic concurrency is requested by embedding
    ``metadata.resourceVersion`` in every patch body; the API server rejects
    the patch with ``409 Conflict`` when the object has moved on.
    """

    kind = KIND

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        namespace: str,
        group: str = GROUP,
        version: str = VERSION,
        plural: str = PLURAL,
    ) -> None:
        self.custom_api = custom_api
        self.namespace = namespace
        self.group = group
        self.version = version
        self.plural = plural

    def _params(self) -> dict[str, Any]:
        return {
            "group": self.group,
            "version": self.version,
            "namespace": self.namespace,
            "plural": self.plural,
        }

    def list(self) -> tuple[list[dict[str, Any]], str | None]:
        response = self.custom_api.list_namespaced_custom_object(**self._params())
        return list_items(response), list_resource_version(response)

    def watch_target(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        return self.custom_api.list_namespaced_custom_object, self._params()

    def patch(
        self, name: str, body: dict[str, Any], resource_version: str | None = None
    ) -> dict[str, Any]:
        return to_dict(
            self.custom_api.patch_namespaced_custom_object(
                name=name,
                body=_with_precondition(body, resource_version),
                **self._params(),
            )
        )

    def patch_status(
        self, name: str, status: dict[str, Any], resource_version: str | None = None
    ) -> dict[str, Any]:
        return to_dict(
            self.custom_api.patch_namespaced_custom_object_status(
                name=name,
                body=_with_precondition({"status": status}, resource_version),
                **self._params(),
            )
        )


class PodApi:
    """Child Pod access through ``CoreV1Api``, scoped to controller-managed pods."""

    kind = CHILD_KIND
    label_selector = f"{MANAGED_BY_LABEL}={MANAGED_BY}"

    def __init__(self, core_api: CoreV1Api, namespace: str) -> None:
        self.core_api = core_api
        self.namespace = namespace

    def list(self) -> tuple[list[dict[str, Any]], str | None]:
        response = self.core_api.list_namespaced_pod(
            namespace=self.namespace,
            label_selector=self.label_selector,
        )
        return list_items(response), list_resource_version(response)

    def watch_target(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        return self.core_api.list_namespaced_pod, {
            "namespace": self.namespace,
            "label_selector": self.label_selector,
        }

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        return to_dict(self.core_api.create_namespaced_pod(namespace=self.namespace, body=body))

    def patch(
        self, name: str, body: dict[str, Any], resource_version: str | None = None
    ) -> dict[str, Any]:
        return to_dict(
            self.core_api.patch_namespaced_pod(
                name=name,
                namespace=self.namespace,
                body=_with_precondition(body, resource_version),
            )
        )

    def delete(self, name: str, resource_version: str | None = None) -> None:
        preconditions = (
            client.V1Preconditions(resource_version=resource_version)
            if resource_version
            else None
        )
        self.core_api.delete_namespaced_pod(
            name=name,
            namespace=self.namespace,
            body=client.V1DeleteOptions(preconditions=preconditions),
        )


def _with_precondition(body: dict[str, Any], resource_version: str | None) -> dict[str, Any]:
    if not resource_version:
        return body
    metadata = {**(body.get("metadata") or {}), "resourceVersion": resource_version}
    return {**body, "metadata": metadata}
