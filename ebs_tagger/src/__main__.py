from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Sequence

from ebs_tagger.src.aws import TagClient, build_ec2_client
from ebs_tagger.src.config import ConfigError, TaggerConfig, load_config
from ebs_tagger.src.coordinator import LeadershipCoordinator
from ebs_tagger.src.dispatcher import WatchDispatcher
from ebs_tagger.src.health import start_health_server, start_metrics_server
from ebs_tagger.src.kube import build_clients, load_kube_configuration
from ebs_tagger.src.leader import LeaseLeaderElector
from ebs_tagger.src.metrics import METRICS
from ebs_tagger.src.reconciler import Reconciler

RUNTIME_VERSION = "1.0.0"
LOGGER = logging.getLogger("ebs_tagger")
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|"
            r"aws_secret_access_key|aws_session_token)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)([?&](?:token|access_token|api_key|password|X-Amz-Security-Token)=)([^&\s]+)"
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


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in {"1", "t", "true", "yes", "on"}:
        return True
    if value in {"0", "f", "false", "no", "off"}:
        return False
    raise ConfigError(f"failed to parse {name} environment variable: {raw!r}")


def configure_logging() -> None:
    """Install the root handler: JSON unless ``LOG_FORMAT`` asks for text."""
    log_format = os.getenv("LOG_FORMAT", "json").strip().lower()
    log_handler = logging.StreamHandler()
    if log_format in {"", "json"}:
        log_handler.setFormatter(JSONFormatter())
    else:
        log_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    logging.root.addHandler(log_handler)

    if _parse_bool_env("DEBUG"):
        logging.root.setLevel(logging.DEBUG)
    else:
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    for noisy in ("botocore", "urllib3", "kubernetes"):
        logging.getLogger(noisy).setLevel(max(logging.root.level, logging.WARNING))


def build_coordinator(
    tagger_config: TaggerConfig, shutdown_event: threading.Event
) -> LeadershipCoordinator:
    """Wire Kubernetes and EC2 clients into a ready-to-run coordinator."""
    load_kube_configuration(tagger_config.kubeconfig, tagger_config.context)
    core_api, coordination_api = build_clients()

    # Set by every dispatcher stop so EC2 retries end with leadership.
    cancel_event = threading.Event()
    tag_client = TagClient(
        ec2_client=build_ec2_client(tagger_config.region),
        stop_event=cancel_event,
    )
    reconciler = Reconciler(
        core_api=core_api,
        tag_client=tag_client,
        annotation_prefix=tagger_config.annotation_prefix,
        default_tags=tagger_config.default_tags,
        managed_tag_pattern=tagger_config.managed_tag_pattern,
    )
    dispatcher = WatchDispatcher(
        core_api=core_api,
        namespaces=tagger_config.namespaces,
        handler=reconciler.handle_event,
        cancel_event=cancel_event,
    )
    elector = LeaseLeaderElector(
        coordination_api=coordination_api,
        namespace=tagger_config.lease_namespace,
        lease_name=tagger_config.lease_name,
        identity=tagger_config.lease_id,
        lease_duration_seconds=tagger_config.lease_duration_seconds,
        renew_deadline_seconds=tagger_config.renew_deadline_seconds,
        retry_period_seconds=tagger_config.retry_period_seconds,
    )
    return LeadershipCoordinator(
        elector=elector,
        dispatcher=dispatcher,
        shutdown_event=shutdown_event,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Tagger entrypoint: configure logging, elect a leader, and tag volumes while leading.

    Returns the process exit code: ``1`` for fatal startup errors, ``0`` for
    signal-driven shutdown or lost leadership.
    """
    try:
        configure_logging()
        tagger_config = load_config(argv)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    LOGGER.info(
        "Starting tagger (region=%s, prefix=%s, namespaces=%s, default tags=%s)",
        tagger_config.region,
        tagger_config.annotation_prefix,
        ",".join(ns or "<all>" for ns in tagger_config.namespaces),
        tagger_config.default_tags,
    )

    shutdown_event = threading.Event()
    try:
        coordinator = build_coordinator(tagger_config, shutdown_event)
    except Exception:
        LOGGER.exception("Unable to create Kubernetes or AWS clients")
        return 1

    health_server = start_health_server(tagger_config.status_port)
    metrics_server = start_metrics_server(tagger_config.metrics_port)

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        coordinator.run()
    finally:
        health_server.shutdown()
        metrics_server.shutdown()

    if coordinator.unclean_stop:
        LOGGER.error("Tagger stopped without cleanly stopping its PVC watchers")
        return 1
    LOGGER.info("Tagger stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
