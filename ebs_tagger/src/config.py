from __future__ import annotations

import argparse
import json
import os
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from ebs_tagger.src.aws import is_valid_region, metadata_region
from ebs_tagger.src.dispatcher import parse_namespaces
from ebs_tagger.src.kube import current_namespace
from ebs_tagger.src.leader import default_identity
from ebs_tagger.src.tags import validate_default_tags

DEFAULT_ANNOTATION_PREFIX = "aws-ebs-tagger"
DEFAULT_LEASE_LOCK_NAME = "k8s-aws-ebs-tagger"


class ConfigError(RuntimeError):
    """Raised when the tagger configuration is invalid; fatal at startup."""


@dataclass(frozen=True)
class TaggerConfig:
    """Immutable tagger configuration resolved once at startup.

    Attributes:
        region:             AWS region of the EBS volumes.
        lease_namespace:    Namespace of the leader-election Lease.
        default_tags:       Tags applied to every managed volume; validated
                            against EC2 tag rules at load time.
        annotation_prefix:  PVC annotations ``<prefix>/<key>`` become tags.
        managed_tag_pattern: Optional regex of extra tag keys the tagger may
                            remove when no longer desired.
        namespaces:         Namespaces to watch; ``[""]`` means all.
    """

    region: str
    lease_namespace: str
    lease_id: str
    kubeconfig: str | None = None
    context: str | None = None
    lease_name: str = DEFAULT_LEASE_LOCK_NAME
    lease_duration_seconds: int = 60
    renew_deadline_seconds: int = 15
    retry_period_seconds: int = 5
    default_tags: dict[str, str] = field(default_factory=dict)
    annotation_prefix: str = DEFAULT_ANNOTATION_PREFIX
    managed_tag_pattern: str | None = None
    namespaces: list[str] = field(default_factory=lambda: [""])
    status_port: int = 8000
    metrics_port: int = 8001


def _bounded_int(
    name: str,
    value: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc


def build_parser(env: Mapping[str, str]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="k8s-aws-ebs-tagger",
        description="Tag EBS volumes from PersistentVolumeClaim annotations.",
    )
    parser.add_argument(
        "--kubeconfig",
        default=env.get("KUBECONFIG", ""),
        help="absolute path to the kubeconfig file",
    )
    parser.add_argument("--context", default="", help="the kubeconfig context to use")
    parser.add_argument("--region", default=env.get("AWS_REGION", ""), help="the AWS region")
    parser.add_argument(
        "--lease-id", default=env.get("LEASE_ID", ""), help="the holder identity name"
    )
    parser.add_argument(
        "--lease-lock-name",
        default=DEFAULT_LEASE_LOCK_NAME,
        help="the lease lock resource name",
    )
    parser.add_argument(
        "--lease-lock-namespace",
        default=env.get("NAMESPACE", ""),
        help="the lease lock resource namespace (default: the pod's namespace)",
    )
    parser.add_argument(
        "--lease-duration",
        type=int,
        default=_env_int(env, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 60),
        help="seconds a lease is valid without renewal",
    )
    parser.add_argument(
        "--renew-deadline",
        type=int,
        default=_env_int(env, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 15),
        help="seconds the leader keeps trying to renew before giving up",
    )
    parser.add_argument(
        "--retry-period",
        type=int,
        default=_env_int(env, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 5),
        help="seconds between election attempts",
    )
    parser.add_argument(
        "--default-tags",
        default=env.get("DEFAULT_TAGS", ""),
        help="JSON object of default tags to add to EBS volumes",
    )
    parser.add_argument(
        "--annotation-prefix",
        default=env.get("ANNOTATION_PREFIX", DEFAULT_ANNOTATION_PREFIX),
        help="annotation prefix to check",
    )
    parser.add_argument(
        "--managed-tag-pattern",
        default=env.get("MANAGED_TAG_PATTERN", ""),
        help="regex of tag keys the tagger may remove when no longer annotated",
    )
    parser.add_argument(
        "--watch-namespace",
        default=env.get("WATCH_NAMESPACE", ""),
        help="comma-separated namespaces to watch (default is all namespaces)",
    )
    parser.add_argument(
        "--status-port",
        type=int,
        default=_env_int(env, "STATUS_PORT", 8000),
        help="the healthz port",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=_env_int(env, "METRICS_PORT", 8001),
        help="the prometheus metrics port",
    )
    return parser


def parse_default_tags(raw: str) -> dict[str, str]:
    if not raw.strip():
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"default-tags are not valid json key/value pairs: {exc}") from exc
    try:
        return validate_default_tags(decoded)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def resolve_region(
    region: str | None,
    fetch_metadata_region: Callable[[], str | None] = metadata_region,
) -> str:
    """Return a validated AWS region, consulting instance metadata when unset."""
    resolved = (region or "").strip() or (fetch_metadata_region() or "")
    if not resolved:
        raise ConfigError("unable to determine the AWS region (set --region or AWS_REGION)")
    if not is_valid_region(resolved):
        raise ConfigError(f"given AWS region {resolved!r} does not match AWS region format")
    return resolved


def load_config(
    argv: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
    *,
    fetch_metadata_region: Callable[[], str | None] = metadata_region,
    fetch_namespace: Callable[[], str] = current_namespace,
) -> TaggerConfig:
    """Load tagger config from command-line flags, falling back to the environment.

    Resolution order for values with fallbacks:
    1. Explicit flag.
    2. Environment variable (``AWS_REGION``, ``NAMESPACE``, ``WATCH_NAMESPACE``...).
    3. Runtime discovery: EC2 instance metadata for the region, the service
       account namespace file for the lease namespace.
    Anything still missing or malformed raises :class:`ConfigError`.
    """
    values = env if env is not None else os.environ
    args = build_parser(values).parse_args(list(argv) if argv is not None else None)

    if not args.lease_lock_name.strip():
        raise ConfigError("unable to get lease lock resource name (missing lease-lock-name flag)")
    lease_namespace = args.lease_lock_namespace.strip() or fetch_namespace()
    if not lease_namespace:
        raise ConfigError(
            "unable to get lease lock resource namespace (missing lease-lock-namespace flag)"
        )

    if not args.annotation_prefix.strip() or "/" in args.annotation_prefix:
        raise ConfigError(
            "annotation-prefix must be a non-empty string without '/', "
            f"got: {args.annotation_prefix!r}"
        )

    managed_tag_pattern = args.managed_tag_pattern.strip() or None
    if managed_tag_pattern is not None:
        try:
            re.compile(managed_tag_pattern)
        except re.error as exc:
            raise ConfigError(
                f"managed-tag-pattern is not a valid regular expression: {exc}"
            ) from exc

    lease_duration = _bounded_int("lease-duration", args.lease_duration, minimum=1)
    renew_deadline = _bounded_int("renew-deadline", args.renew_deadline, minimum=1)
    retry_period = _bounded_int("retry-period", args.retry_period, minimum=1)
    if renew_deadline >= lease_duration:
        raise ConfigError("renew-deadline must be smaller than lease-duration")
    if retry_period >= renew_deadline:
        raise ConfigError("retry-period must be smaller than renew-deadline")

    return TaggerConfig(
        region=resolve_region(args.region, fetch_metadata_region),
        lease_namespace=lease_namespace,
        lease_id=args.lease_id.strip() or default_identity(),
        kubeconfig=args.kubeconfig or None,
        context=args.context or None,
        lease_name=args.lease_lock_name.strip(),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        default_tags=parse_default_tags(args.default_tags),
        annotation_prefix=args.annotation_prefix.strip(),
        managed_tag_pattern=managed_tag_pattern,
        namespaces=parse_namespaces(args.watch_namespace),
        status_port=_bounded_int("status-port", args.status_port, minimum=1, maximum=65535),
        metrics_port=_bounded_int("metrics-port", args.metrics_port, minimum=1, maximum=65535),
    )
