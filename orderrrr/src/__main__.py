from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import sys
import threading
from typing import NoReturn

from kubernetes.config.config_exception import ConfigException

from orderrrr.src.buffer import BufferingEventHandler, ChangeBuffer
from orderrrr.src.cache import CacheSyncError, ClusterCache
from orderrrr.src.config import DEFAULT_CONFIG_PATH, ConfigError, env_int, load_config
from orderrrr.src.health import start_health_server
from orderrrr.src.kube import AnnotationPatcher, build_clients, load_kube_configuration
from orderrrr.src.metrics import METRICS
from orderrrr.src.reconciler import Reconciler

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)
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
    """Install the JSON formatter on the root logger at ``LOG_LEVEL`` (default INFO)."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.handlers = [log_handler]
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="orderrrr",
        description="Roll pod controllers when the Secrets and ConfigMaps they use change.",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("ORDERRRR_CONFIG_PATH") or DEFAULT_CONFIG_PATH,
        help="Path to the YAML config file (env: ORDERRRR_CONFIG_PATH).",
    )
    parser.add_argument(
        "--kubeconfig",
        default=os.getenv("KUBECONFIG") or None,
        help="Path to a kubeconfig file (env: KUBECONFIG). In-cluster credentials when unset.",
    )
    return parser.parse_args(argv)


def _fatal(message: str, *args: object) -> NoReturn:
    LOGGER.error(message, *args)
    sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    """Controller entrypoint: load config, sync caches, and run the reconciliation loop."""
    configure_logging()
    args = parse_args(argv)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        _fatal("Error loading config from %s: %s", args.config, exc)
    if config.debug_output:
        logging.root.setLevel(logging.DEBUG)

    try:
        interval_seconds = env_int("RECONCILE_INTERVAL_SECONDS", 5, minimum=1)
        sync_timeout_seconds = env_int("CACHE_SYNC_TIMEOUT_SECONDS", 300, minimum=1)
        health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    except ValueError as exc:
        _fatal("Invalid environment configuration: %s", exc)

    try:
        load_kube_configuration(args.kubeconfig)
    except (ConfigException, OSError) as exc:
        _fatal("Could not load Kubernetes credentials: %s", exc)
    core_api, apps_api, batch_api = build_clients()

    buffer = ChangeBuffer()
    handler = BufferingEventHandler(buffer)
    cache = ClusterCache(
        core_api,
        apps_api,
        batch_api,
        resync_seconds=int(config.scope.controller_resync_period.total_seconds()),
        namespace_allowed=lambda namespace: reconciler.namespace_allowed(namespace),
        handler=handler,
    )
    reconciler = Reconciler(buffer, cache, AnnotationPatcher(apps_api, batch_api), config)
    handler.accept = reconciler.is_managed

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    def _handle_reload(signum: int, frame: object) -> None:
        try:
            reconciler.replace_config(load_config(args.config))
        except ConfigError:
            LOGGER.exception("Config reload from %s failed; keeping current config", args.config)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGHUP, _handle_reload)

    health_server = start_health_server(
        caches_synced=cache.synced,
        loop_running=reconciler.running,
        port=health_port,
    )

    cache.start(shutdown_event)
    try:
        cache.wait_for_sync(sync_timeout_seconds, shutdown_event)
    except CacheSyncError as exc:
        cache.stop()
        health_server.shutdown()
        if shutdown_event.is_set():
            LOGGER.info("Shutdown requested during cache sync")
            return
        shutdown_event.set()
        _fatal("Failed to reach initial cache sync: %s", exc)

    reconciler.run_forever(shutdown_event=shutdown_event, interval_seconds=interval_seconds)

    shutdown_event.set()
    cache.stop()
    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
