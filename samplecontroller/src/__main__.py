from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from samplecontroller.src.controller import Controller, build_controller_from_env, env_int
from samplecontroller.src.health import start_health_server
from samplecontroller.src.kube import build_client, load_kube_configuration
from samplecontroller.src.metrics import METRICS

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

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def report_errors(controller: Controller, shutdown_event: threading.Event) -> bool:
    """Log everything the controller reports until it stops.

    Returns True if a fatal error was reported. A fatal error also sets
    *shutdown_event* so the process begins shutting down.
    """
    failed = False
    for error in controller.iter_errors():
        if error.fatal:
            failed = True
            LOGGER.error("Controller failed: %s", error)
            shutdown_event.set()
        else:
            LOGGER.warning("Controller error: %s", error)
    return failed


def main() -> int:
    """Controller entrypoint: configure logging, start the loop, and wait for it to drain."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    kube_client = build_client(load_kube_configuration())
    controller = build_controller_from_env(kube_client)

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(ready=controller.ready, port=health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    outcome: dict[str, bool] = {}

    def _report() -> None:
        outcome["failed"] = report_errors(controller, shutdown_event)
        # The controller may stop on its own (failed registration).
        shutdown_event.set()

    reporter = threading.Thread(target=_report, name="error-reporter", daemon=True)
    reporter.start()
    controller.start()

    shutdown_event.wait()
    controller.request_stop()
    reporter.join()

    health_server.shutdown()
    return 1 if outcome.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())
