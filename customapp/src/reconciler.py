from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from customapp.src.model import (
    API_VERSION,
    CHILD_CONTAINER,
    CHILD_KIND,
    CONTENT_ANNOTATION,
    KIND,
    MANAGED_BY,
    MANAGED_BY_LABEL,
    OWNER_LABEL,
    TITLE_ANNOTATION,
    Action,
    CreateChild,
    DeleteChild,
    ObservedObject,
    PatchStatus,
    ReconcileResult,
    UpdateChild,
)

DEFAULT_IMAGE = "nginx"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class InvalidSpec(ValueError):
    """The resource spec cannot be converged no matter how often we retry."""


@dataclass(frozen=True)
class DesiredApp:
    """Desired state derived from a ``CustomApp`` spec."""

    replicas: int
    image: str
    title: str
    content: str
    hide: bool

    @classmethod
    def from_spec(cls, spec: Mapping[str, Any]) -> DesiredApp:
        replicas = spec.get("replicas", 1)
        if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 0:
            raise InvalidSpec(f"spec.replicas must be a non-negative integer, got: {replicas!r}")
        image = spec.get("image", DEFAULT_IMAGE)
        if not isinstance(image, str) or not image.strip():
            raise InvalidSpec("spec.image must be a non-empty string")
        return cls(
            replicas=replicas,
            image=image,
            title=str(spec.get("title") or ""),
            content=str(spec.get("content") or ""),
            hide=bool(spec.get("hide", False)),
        )

    def child_annotations(self) -> dict[str, str]:
        return {TITLE_ANNOTATION: self.title, CONTENT_ANNOTATION: self.content}


def _container_image(child: ObservedObject) -> str | None:
    for container in child.spec.get("containers") or ():
        if container.get("name") == CHILD_CONTAINER:
            return container.get("image")
    return None


def _creation_order(child: ObservedObject) -> tuple[str, str]:
    return (child.creation_timestamp or "", child.ref.name)


def _condition_key(conditions: Sequence[Mapping[str, Any]]) -> list[tuple[Any, ...]]:
    return sorted(
        (c.get("type"), c.get("status"), c.get("reason"), c.get("message")) for c in conditions
    )


class Reconciler:
    """Pure decision function for ``CustomApp`` resources.

    Given the observed resource and the children the cache currently
    attributes to it, returns the ordered actions that move the cluster to
    the desired state plus a :class:`ReconcileResult`.  Nothing here talks
    to the API server or mutates the cache.

    Action order is creates, updates, deletes, then the status patch:
    surplus children go last so nothing still referenced mid-convergence is
    torn down early, and the status only reports what the preceding actions
    achieved.  On a converged state the action list is empty.
    """

    def __init__(
        self,
        requeue_after_seconds: float | None = 300,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.requeue_after_seconds = requeue_after_seconds
        self.now_fn = now_fn

    def reconcile(
        self, observed: ObservedObject, children: Sequence[ObservedObject]
    ) -> tuple[list[Action], ReconcileResult]:
        try:
            desired = DesiredApp.from_spec(observed.spec)
        except InvalidSpec as exc:
            return [], ReconcileResult(terminal_error=str(exc))

        live = sorted((c for c in children if not c.is_deleting), key=_creation_order)
        surplus = max(0, len(live) - desired.replicas)
        to_delete = live[:surplus]
        kept = live[surplus:]

        creates = [
            CreateChild(owner=observed.ref, body=self.build_child(observed, name, desired))
            for name in self._free_names(observed, children, desired.replicas - len(kept))
        ]
        updates = [
            UpdateChild(
                owner=observed.ref,
                target=child.ref,
                patch=self._child_patch(desired),
                expected_resource_version=child.resource_version,
            )
            for child in kept
            if not self._conforms(child, desired)
        ]
        deletes = [
            DeleteChild(
                owner=observed.ref,
                target=child.ref,
                expected_resource_version=child.resource_version,
            )
            for child in to_delete
        ]

        actions: list[Action] = [*creates, *updates, *deletes]
        status = self.desired_status(observed, desired, ready_children=len(kept) + len(creates))
        if status is not None:
            actions.append(
                PatchStatus(
                    owner=observed.ref,
                    status=status,
                    expected_resource_version=observed.resource_version,
                )
            )
        return actions, ReconcileResult(requeue_after=self.requeue_after_seconds)

    def cleanup(
        self, observed: ObservedObject, children: Sequence[ObservedObject]
    ) -> list[Action]:
        """Actions tearing down everything this resource owns, oldest child first."""
        return [
            DeleteChild(
                owner=observed.ref,
                target=child.ref,
                expected_resource_version=child.resource_version,
            )
            for child in sorted(children, key=_creation_order)
            if not child.is_deleting
        ]

    @staticmethod
    def _free_names(
        observed: ObservedObject, children: Sequence[ObservedObject], count: int
    ) -> list[str]:
        """Lowest unused ``<owner>-<ordinal>`` names; terminating pods still hold theirs."""
        taken = {child.ref.name for child in children}
        names: list[str] = []
        ordinal = 0
        while len(names) < count:
            candidate = f"{observed.ref.name}-{ordinal}"
            if candidate not in taken:
                names.append(candidate)
            ordinal += 1
        return names

    @staticmethod
    def _conforms(child: ObservedObject, desired: DesiredApp) -> bool:
        if _container_image(child) != desired.image:
            return False
        return all(
            child.annotations.get(key) == value
            for key, value in desired.child_annotations().items()
        )

    @staticmethod
    def _child_patch(desired: DesiredApp) -> dict[str, Any]:
        return {
            "metadata": {"annotations": desired.child_annotations()},
            "spec": {"containers": [{"name": CHILD_CONTAINER, "image": desired.image}]},
        }

    @staticmethod
    def build_child(owner: ObservedObject, name: str, desired: DesiredApp) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": CHILD_KIND,
            "metadata": {
                "name": name,
                "namespace": owner.ref.namespace,
                "labels": {
                    OWNER_LABEL: owner.ref.name,
                    MANAGED_BY_LABEL: MANAGED_BY,
                },
                "annotations": desired.child_annotations(),
                "ownerReferences": [
                    {
                        "apiVersion": API_VERSION,
                        "kind": KIND,
                        "name": owner.ref.name,
                        "uid": owner.uid,
                        "controller": True,
                        "blockOwnerDeletion": True,
                    }
                ],
            },
            "spec": {
                "containers": [{"name": CHILD_CONTAINER, "image": desired.image}],
            },
        }

    def desired_status(
        self, observed: ObservedObject, desired: DesiredApp, ready_children: int
    ) -> dict[str, Any] | None:
        """Status once the preceding actions have applied, or ``None`` when it already matches.

        *ready_children* counts the live children that are kept plus the ones
        being created.
        """
        current = observed.status
        message = f"{ready_children} child pod(s) up to date"
        previous_ready = next(
            (c for c in current.get("conditions") or () if c.get("type") == "Ready"), None
        )
        transition_time = (
            previous_ready.get("lastTransitionTime")
            if previous_ready is not None and previous_ready.get("status") == "True"
            else None
        )
        conditions = [
            {
                "type": "Ready",
                "status": "True",
                "reason": "Converged",
                "message": message,
                "lastTransitionTime": transition_time or self.now_fn(),
            }
        ]
        status = {
            "readyChildren": ready_children,
            "hidden": desired.hide,
            "observedGeneration": observed.generation,
            "conditions": conditions,
        }
        unchanged = (
            current.get("readyChildren") == status["readyChildren"]
            and bool(current.get("hidden", False)) == status["hidden"]
            and current.get("observedGeneration") == status["observedGeneration"]
            and _condition_key(current.get("conditions") or ()) == _condition_key(conditions)
        )
        return None if unchanged else status
