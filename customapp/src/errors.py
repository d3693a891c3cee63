from __future__ import annotations

from kubernetes.client import ApiException

from customapp.src.model import ResourceRef


class ReconcileError(Exception):
    """Base class for failures of a single reconcile attempt."""

    reason = "Error"

    def __init__(self, message: str, ref: ResourceRef | None = None) -> None:
        super().__init__(message)
        self.ref = ref


class TransientError(ReconcileError):
    """Network, availability or throttling failure; retried with backoff."""

    reason = "Transient"


class ConflictError(TransientError):
    """Optimistic-concurrency precondition failed; retried without backoff.

    A conflict means the cache is about to receive a newer version of the
    object, so the next attempt works from fresher state.
    """

    reason = "Conflict"


class TerminalError(ReconcileError):
    """Schema/admission rejection or unresolvable spec; bounded retries."""

    reason = "Terminal"


class FatalError(ReconcileError):
    """A programming invariant was violated (e.g. impossible state transition)."""

    reason = "Fatal"


class ReconcileCancelled(Exception):
    """Raised at a checkpoint once this replica may no longer write."""


_TERMINAL_STATUSES = frozenset({400, 403, 422})


def translate_api_exception(
    exc: ApiException, ref: ResourceRef, operation: str
) -> ReconcileError:
    """Map a Kubernetes ``ApiException`` onto the retry taxonomy."""
    status = exc.status or 0
    message = f"{operation} {ref} failed (status={status}): {exc.reason}"
    if status == 409:
        return ConflictError(message, ref)
    if status in _TERMINAL_STATUSES:
        return TerminalError(message, ref)
    return TransientError(message, ref)
