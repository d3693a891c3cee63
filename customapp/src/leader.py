from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from customapp.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaderState(enum.Enum):
    STANDBY = "standby"
    ACQUIRING = "acquiring"
    LEADING = "leading"


@dataclass(frozen=True)
class LeaseRecord:
    """The leadership-relevant part of a ``coordination.k8s.io/v1`` Lease."""

    holder_identity: str | None
    lease_duration_seconds: int | None
    renew_time: datetime | None
    acquire_time: datetime | None = None

    @classmethod
    def from_lease(cls, lease: V1Lease) -> LeaseRecord:
        spec = lease.spec or V1LeaseSpec()
        return cls(
            holder_identity=spec.holder_identity,
            lease_duration_seconds=spec.lease_duration_seconds,
            renew_time=spec.renew_time,
            acquire_time=spec.acquire_time,
        )

    def expired(self, now: datetime, default_duration_seconds: int) -> bool:
        """Return True once the holder has failed to renew within the lease duration."""
        if not self.holder_identity or self.renew_time is None:
            return True
        renew = self.renew_time if self.renew_time.tzinfo else self.renew_time.replace(tzinfo=UTC)
        duration = self.lease_duration_seconds or default_duration_seconds
        return (now - renew).total_seconds() >= duration


class LeaseLeaderElector:
    """Lease-based leader election using the ``coordination.k8s.io/v1`` Lease API.

    Ensures only one controller replica pulls from the work queue and writes
    to the cluster at a time.  The elector moves through three states:

    ``STANDBY``
        Not participating (before :meth:`run` and after it returns).
    ``ACQUIRING``
        Polling every ``retry_period_seconds``: create the Lease if it is
        missing, or take it over once the current holder has not renewed it
        for ``leaseDurationSeconds``.  ``409 Conflict`` means another
        replica won this round.
    ``LEADING``
        Renewing the Lease every ``retry_period_seconds``.  If no renewal
        succeeds for ``renew_deadline_seconds`` (strictly shorter than the
        lease duration) leadership is dropped and ``on_stopped_leading`` is
        invoked, before any other replica can legitimately take over.

    :meth:`holds_lease` answers the same question from the worker side so
    reconciles can check it between actions even while the election loop
    itself is stuck in a slow API call.

    All timestamps use UTC to avoid timezone ambiguity across nodes.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._state = LeaderState.STANDBY
        self._last_renew_success: float | None = None
        self._state_lock = threading.Lock()

    @property
    def state(self) -> LeaderState:
        with self._state_lock:
            return self._state

    @property
    def is_leader(self) -> bool:
        return self.state is LeaderState.LEADING

    def _set_state(self, state: LeaderState, last_renew_success: float | None = None) -> None:
        with self._state_lock:
            self._state = state
            self._last_renew_success = last_renew_success

    def holds_lease(self) -> bool:
        """Return True only while leading and the last renewal is within the deadline."""
        with self._state_lock:
            if self._state is not LeaderState.LEADING or self._last_renew_success is None:
                return False
            last_renew_success = self._last_renew_success
        return time.monotonic() - last_renew_success < self.renew_deadline_seconds

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _stamp(self, spec: V1LeaseSpec | None, now: datetime) -> V1LeaseSpec:
        """Write this replica's claim into ``spec``.

        ``acquireTime`` only moves when the holder changes; a takeover from
        another live identity also bumps ``leaseTransitions``.
        """
        spec = spec or V1LeaseSpec()
        previous_holder = spec.holder_identity
        if spec.acquire_time is None or previous_holder != self.identity:
            spec.acquire_time = now
            spec.lease_transitions = (spec.lease_transitions or 0) + int(bool(previous_holder))
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        return spec

    def _submit(self, lease: V1Lease, *, create: bool) -> bool:
        # A replace carries the read resourceVersion, so a concurrent writer gets a 409.
        verb = "create" if create else "replace"
        try:
            if create:
                self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
            else:
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s %s lost a race with another replica", self.lease_name, verb)
            else:
                LOGGER.warning("Lease %s %s failed: %s", self.lease_name, verb, exc.reason)
            return False
        return True

    def _try_acquire_or_renew(self) -> bool:
        """Run one election round.  Returns True if this replica holds the Lease afterwards."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status != 404:
                LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
                return False
            lease = V1Lease(
                metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
                spec=self._stamp(None, now),
            )
            created = self._submit(lease, create=True)
            if created:
                LOGGER.info("Created leader lease %s", self.lease_name)
            return created

        record = LeaseRecord.from_lease(lease)
        if record.holder_identity != self.identity and not record.expired(
            now, self.lease_duration_seconds
        ):
            return False
        lease.spec = self._stamp(lease.spec, now)
        return self._submit(lease, create=False)

    def _release_lease(self) -> None:
        """Clear holderIdentity so a standby replica can take over without waiting."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            released = self._submit(lease, create=False)
        except Exception:
            LOGGER.warning("Could not hand back leader lease %s", self.lease_name, exc_info=True)
            return
        if released:
            LOGGER.info("Released leader lease %s", self.lease_name)

    def _become_leader(self, campaign_started: float) -> None:
        acquired_at = time.monotonic()
        self._set_state(LeaderState.LEADING, acquired_at)
        LOGGER.info("Now leading lease %s as %s", self.lease_name, self.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(acquired_at - campaign_started)

    def _record_loss(self) -> None:
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def _drop_if_past_deadline(self) -> bool:
        """After a failed renewal, step down once the renew deadline has run out."""
        with self._state_lock:
            last_renew_success = self._last_renew_success or 0.0
        silent_for = time.monotonic() - last_renew_success
        if silent_for < self.renew_deadline_seconds:
            LOGGER.warning(
                "Renewal of lease %s failed; %.2fs of the %ss deadline used",
                self.lease_name,
                silent_for,
                self.renew_deadline_seconds,
            )
            return False
        LOGGER.warning(
            "Stepping down from lease %s after %.2fs without a renewal",
            self.lease_name,
            silent_for,
        )
        self._set_state(LeaderState.ACQUIRING)
        self._record_loss()
        return True

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign for the Lease until ``stop_event`` is set.

        ``on_started_leading`` fires on every move into ``LEADING`` and
        ``on_stopped_leading`` on every move out of it.  On shutdown the
        callback runs before the Lease is handed back.
        """
        LOGGER.info(
            "Campaigning for lease %s/%s as %s", self.namespace, self.lease_name, self.identity
        )
        campaign_started = time.monotonic()
        self._set_state(LeaderState.ACQUIRING)
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                renewed = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Election round for lease %s failed", self.lease_name)
                renewed = False

            if self.state is not LeaderState.LEADING:
                if renewed:
                    self._become_leader(campaign_started)
                    on_started_leading()
            elif renewed:
                self._set_state(LeaderState.LEADING, time.monotonic())
            elif self._drop_if_past_deadline():
                campaign_started = time.monotonic()
                on_stopped_leading()
            stop_event.wait(timeout=self.retry_period_seconds)

        was_leading = self.state is LeaderState.LEADING
        self._set_state(LeaderState.STANDBY)
        if was_leading:
            on_stopped_leading()
            self._release_lease()
            self._record_loss()
