from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.client import CoordinationV1Api

from customapp.src.config import ControllerConfig, load_config
from customapp.src.controller import CustomAppController, build_controller
from customapp.src.kube import build_clients, load_kube_configuration
from customapp.src.leader import LeaseLeaderElector
from customapp.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)
_RECONCILE_FIELDS = (
    "reconcile_ref",
    "reconcile_outcome",
    "reconcile_duration_seconds",
    "trace_id",
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    The per-attempt reconcile summary carries ``reconcile_*`` extras and the
    OpenTelemetry trace id; they are lifted into the JSON object so logs can
    be indexed and joined with traces.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for field in _RECONCILE_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))
    # The client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(logging.root.level, logging.INFO))


def run_with_leader_election(
    controller: CustomAppController,
    elector: LeaseLeaderElector,
    shutdown_event: threading.Event,
    stop_join_timeout_seconds: float,
) -> None:
    """Run the controller only while *elector* holds the lease.

    Each leadership term gets its own controller thread.  Losing the lease
    cancels in-flight reconciles and joins the thread; a thread that will
    not stop, or a controller that exits without being asked to, takes the
    whole process down rather than risk two writers.
    """
    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()
    controller_state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with controller_state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error(
                    "Refusing to start reconciling while the previous "
                    "controller thread is still running"
                )
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            term_stop = controller_stop

            def _run_controller() -> None:
                unexpected_exit = False
                try:
                    controller.run_forever(shutdown_event=term_stop)
                    unexpected_exit = not term_stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        LOGGER.error(
                            "Controller thread exited without a stop signal; terminating process"
                        )
                except Exception:
                    unexpected_exit = True
                    LOGGER.exception("Controller thread crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="controller", daemon=True
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with controller_state_lock:
            controller.request_stop()
            controller_stop.set()
            if controller_thread is None:
                return

            controller_thread.join(timeout=stop_join_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss during leadership "
                    "handoff; forcing process shutdown",
                    stop_join_timeout_seconds,
                )
                shutdown_event.set()
                return

            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def build_elector(
    config: ControllerConfig, coordination_api: CoordinationV1Api
) -> LeaseLeaderElector:
    return LeaseLeaderElector(
        coordination_api=coordination_api,
        namespace=config.namespace,
        lease_name=config.lease_name,
        identity=config.identity,
        lease_duration_seconds=config.lease_duration_seconds,
        renew_deadline_seconds=config.renew_deadline_seconds,
        retry_period_seconds=config.retry_period_seconds,
    )


def main() -> None:
    """Controller entrypoint: configure logging, elect a leader, and reconcile."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    custom_objects_api, core_api, coordination_api = build_clients()

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if config.leader_election_enabled:
        elector = build_elector(config, coordination_api)
        controller = build_controller(
            config, custom_objects_api, core_api, leadership_check=elector.holds_lease
        )
        # Covers one grace period for in-flight reconciles plus one for
        # informer watch streams to close.
        run_with_leader_election(
            controller,
            elector,
            shutdown_event,
            stop_join_timeout_seconds=2 * config.shutdown_grace_seconds
            + config.watch_timeout_seconds,
        )
    else:
        controller = build_controller(config, custom_objects_api, core_api)
        controller.run_forever(shutdown_event=shutdown_event)

    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
