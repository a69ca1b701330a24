from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from reloader.src.adapters import AdapterRegistry
from reloader.src.handler import ReloadHandler
from reloader.src.health import start_health_server
from reloader.src.kube import build_clients, detect_openshift, load_kube_configuration
from reloader.src.metrics import METRICS
from reloader.src.options import CONFIGMAP_KIND, SECRET_KIND, ReloaderOptions
from reloader.src.reporter import OutcomeReporter
from reloader.src.strategies import strategy_from_name
from reloader.src.watcher import ResourceWatcher

RUNTIME_VERSION = "1.0.0"
TEXT_LOG_FORMAT = "%(asctime)s [%(levelname)s] (%(name)s) - %(message)s"
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
    (
        re.compile(r"(?i)(https://hooks\.[^/\s]+/)(\S+)"),
        r"\1[REDACTED]",
    ),
)


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


def configure_logging(level: str, fmt: str) -> None:
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def main() -> None:
    """Reloader entrypoint: wire the handler to ConfigMap/Secret watchers and block until signalled."""
    options = ReloaderOptions.from_env()
    configure_logging(options.log_level, options.log_format)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_clients()

    openshift = options.is_openshift
    if openshift is None:
        openshift = detect_openshift(clients)

    adapters = AdapterRegistry.from_flags(
        clients,
        openshift=openshift,
        argo_rollouts=options.is_argo_rollouts,
        rollout_strategy_annotation=options.annotations.rollout_strategy,
    )
    handler = ReloadHandler(
        options=options,
        adapters=adapters,
        strategy=strategy_from_name(options.reload_strategy),
        reporter=OutcomeReporter(options, core_api=clients.core),
    )
    logger.info(
        "Starting reloader with strategy %s for %s",
        options.reload_strategy,
        ", ".join(adapters.kinds()),
    )

    watchers = [
        ResourceWatcher.for_kind(kind, clients.core, handler.handle, options)
        for kind in (CONFIGMAP_KIND, SECRET_KIND)
        if options.watches(kind)
    ]
    health_server = start_health_server(
        ready=[w.ready for w in watchers],
        port=options.health_port,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    def _run_watcher(resource_watcher: ResourceWatcher) -> None:
        try:
            resource_watcher.run_forever(shutdown_event=shutdown_event)
        except Exception:
            logger.exception("%s watcher crashed", resource_watcher.kind)
        finally:
            if not shutdown_event.is_set():
                logger.error("%s watcher exited without a stop signal; terminating", resource_watcher.kind)
                shutdown_event.set()

    threads = [
        threading.Thread(target=_run_watcher, args=(w,), daemon=True, name=f"{w.kind.lower()}-watcher")
        for w in watchers
    ]
    for thread in threads:
        thread.start()

    shutdown_event.wait()
    for resource_watcher in watchers:
        resource_watcher.request_stop()
    for thread in threads:
        thread.join(timeout=5)

    health_server.shutdown()
    logger.info("Reloader stopped")


if __name__ == "__main__":
    main()
