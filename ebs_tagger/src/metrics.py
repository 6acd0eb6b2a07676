from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class TaggerMetrics:
    """Prometheus metrics exported by the tagger on ``/metrics``.

    ``actions_total`` carries a ``status`` label (``applied`` or ``failed``) so
    operators can alert on the tagging error rate; ignored PVCs and dropped
    invalid tag entries have dedicated counters.
    """

    actions_total: Counter = field(
        default_factory=lambda: Counter(
            "k8s_aws_ebs_tagger_actions_total",
            "The total number of PVCs tagged",
            ["status"],
        )
    )
    ignored_total: Counter = field(
        default_factory=lambda: Counter(
            "k8s_aws_ebs_tagger_pvc_ignored_total",
            "The total number of PVCs ignored",
        )
    )
    invalid_tags_total: Counter = field(
        default_factory=lambda: Counter(
            "k8s_aws_ebs_tagger_invalid_tags_total",
            "The total number of invalid tags found",
        )
    )
    tag_api_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "k8s_aws_ebs_tagger_tag_api_retries_total",
            "Total EC2 tag API calls retried after a transient failure",
            ["operation"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "k8s_aws_ebs_tagger_watch_errors_total",
            "Total Kubernetes PVC watch errors",
            ["namespace"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "k8s_aws_ebs_tagger_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["namespace"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "k8s_aws_ebs_tagger_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "k8s_aws_ebs_tagger_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "k8s_aws_ebs_tagger_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "k8s_aws_ebs_tagger",
            "Build information for the tagger",
        )
    )


METRICS = TaggerMetrics()
