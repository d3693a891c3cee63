from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

GROUP = "per.naess"
VERSION = "v1"
PLURAL = "customapps"
KIND = "CustomApp"
API_VERSION = f"{GROUP}/{VERSION}"
CHILD_KIND = "Pod"

FINALIZER = "customapps.per.naess"
OWNER_LABEL = "customapp.per.naess/owner"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "customapp-controller"
TITLE_ANNOTATION = "customapp.per.naess/title"
CONTENT_ANNOTATION = "customapp.per.naess/content"
CHILD_CONTAINER = "app"


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Stable identity of a cluster object; doubles as the work queue key."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ObservedObject:
    """Immutable snapshot of an object as last observed from the API server.

    ``raw`` keeps the full API body so adapters can echo fields the engine
    does not model (e.g. pod spec details) without another read.
    """

    ref: ResourceRef
    resource_version: str
    uid: str | None = None
    generation: int | None = None
    spec: Mapping[str, Any] = field(default_factory=dict)
    status: Mapping[str, Any] = field(default_factory=dict)
    deletion_timestamp: str | None = None
    finalizers: frozenset[str] = frozenset()
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)
    owner_references: tuple[Mapping[str, Any], ...] = ()
    creation_timestamp: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def controller_owner(self) -> Mapping[str, Any] | None:
        """Return the ownerReference flagged ``controller: true``, if any."""
        for owner in self.owner_references:
            if owner.get("controller"):
                return owner
        return None

    @classmethod
    def from_dict(cls, kind: str, body: Mapping[str, Any]) -> ObservedObject:
        """Build a snapshot from a camelCase API dict (watch/list/get payload)."""
        metadata = body.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            raise ValueError(f"{kind} object without metadata.name")
        return cls(
            ref=ResourceRef(kind=kind, namespace=metadata.get("namespace") or "", name=name),
            resource_version=str(metadata.get("resourceVersion") or ""),
            uid=metadata.get("uid"),
            generation=metadata.get("generation"),
            spec=body.get("spec") or {},
            status=body.get("status") or {},
            deletion_timestamp=_timestamp(metadata.get("deletionTimestamp")),
            finalizers=frozenset(metadata.get("finalizers") or ()),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            owner_references=tuple(metadata.get("ownerReferences") or ()),
            creation_timestamp=_timestamp(metadata.get("creationTimestamp")),
            raw=body,
        )


def _timestamp(value: Any) -> str | None:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat().replace("+00:00", "Z")
    return str(value)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconcile computation.

    ``terminal_error`` set means the attempt cannot succeed by retrying
    quickly; ``requeue``/``requeue_after`` ask for another pass on success.
    """

    requeue: bool = False
    requeue_after: float | None = None
    terminal_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.terminal_error is None


@dataclass(frozen=True)
class CreateChild:
    owner: ResourceRef
    body: Mapping[str, Any]
    expected_resource_version: str | None = None

    @property
    def target(self) -> ResourceRef:
        metadata = self.body["metadata"]
        return ResourceRef(CHILD_KIND, metadata["namespace"], metadata["name"])


@dataclass(frozen=True)
class UpdateChild:
    owner: ResourceRef
    target: ResourceRef
    patch: Mapping[str, Any]
    expected_resource_version: str


@dataclass(frozen=True)
class DeleteChild:
    owner: ResourceRef
    target: ResourceRef
    expected_resource_version: str


@dataclass(frozen=True)
class PatchStatus:
    owner: ResourceRef
    status: Mapping[str, Any]
    expected_resource_version: str

    @property
    def target(self) -> ResourceRef:
        return self.owner


Action = CreateChild | UpdateChild | DeleteChild | PatchStatus
