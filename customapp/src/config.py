from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    The retry bound for terminal failures and the resync interval are policy
    knobs rather than constants; see ``load_config`` for the defaults.
    """

    namespace: str = "default"
    workers: int = 2
    resync_period_seconds: int = 600
    reconcile_requeue_seconds: int = 300
    watch_timeout_seconds: int = 30
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    max_terminal_retries: int = 5
    shutdown_grace_seconds: int = 30
    leader_election_enabled: bool = True
    lease_name: str = "customapp-controller-leader"
    identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    log_level: str = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def default_identity(values: Mapping[str, str]) -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name, giving each
    replica a stable identity for lease ownership.
    """
    return values.get("HOSTNAME", values.get("POD_NAME", "unknown"))


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``            namespace to reconcile (``default``).
        ``WORKERS``                    reconcile worker threads (``2``).
        ``RESYNC_PERIOD_SECONDS``      full re-announce of every key (``600``);
                                       also the retry interval for surfaced
                                       terminal failures.
        ``RECONCILE_REQUEUE_SECONDS``  re-check of converged resources (``300``,
                                       ``0`` disables).
        ``WATCH_TIMEOUT_SECONDS``      server-side watch timeout (``30``).
        ``BACKOFF_BASE_SECONDS`` / ``BACKOFF_MAX_SECONDS``  retry backoff (``1`` / ``300``).
        ``MAX_TERMINAL_RETRIES``       backoff retries before a terminal
                                       failure is surfaced (``5``).
        ``SHUTDOWN_GRACE_SECONDS``     wait for in-flight reconciles (``30``).
        ``LEADER_ELECTION_*``          lease settings (enabled, ``15``/``10``/``2`` s).
        ``LOG_LEVEL``                  log level (``INFO``).
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "default")
    if not namespace.strip():
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    backoff_base = env_int(values, "BACKOFF_BASE_SECONDS", 1, minimum=1)
    backoff_max = env_int(values, "BACKOFF_MAX_SECONDS", 300, minimum=1)
    if backoff_max < backoff_base:
        raise ConfigError("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS")

    lease_duration = env_int(values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew_deadline = env_int(values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1)
    retry_period = env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    return ControllerConfig(
        namespace=namespace,
        workers=env_int(values, "WORKERS", 2, minimum=1, maximum=64),
        resync_period_seconds=env_int(values, "RESYNC_PERIOD_SECONDS", 600, minimum=1),
        reconcile_requeue_seconds=env_int(values, "RECONCILE_REQUEUE_SECONDS", 300, minimum=0),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        backoff_base_seconds=float(backoff_base),
        backoff_max_seconds=float(backoff_max),
        max_terminal_retries=env_int(values, "MAX_TERMINAL_RETRIES", 5, minimum=0),
        shutdown_grace_seconds=env_int(values, "SHUTDOWN_GRACE_SECONDS", 30, minimum=1),
        leader_election_enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "customapp-controller-leader"),
        identity=values.get("LEADER_ELECTION_IDENTITY", default_identity(values)),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
    )
