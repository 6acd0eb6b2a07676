from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from ebs_tagger.src.aws import TagClient, TagClientError
from ebs_tagger.src.kube import PVCRef, pvc_ref_from_object, resolve_volume_id
from ebs_tagger.src.metrics import METRICS
from ebs_tagger.src.tags import ManagedKeySpace, compute_tag_diff, resolve_desired_tags


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of one reconciliation of a PVC against its EBS volume."""

    pvc: str
    outcome: Outcome
    reason: str
    volume_id: str | None = None
    added: int = 0
    removed: int = 0
    invalid: int = 0


class Reconciler:
    """Applies PVC annotation tags to the EBS volume bound to the claim.

    Every call recomputes desired and actual tags from scratch; nothing is
    remembered between events, so duplicate or out-of-order delivery only
    costs redundant ``DescribeTags`` calls.  A write is issued only when the
    diff is non-empty.

    Outcomes:
        ``ignored``
            No bound EBS volume, or the volume already carries the desired
            tags and no managed tag needs removing.
        ``applied``
            Tags were created and/or deleted on the volume.
        ``failed``
            PV lookup or an EC2 call failed; the error is logged and counted
            but never raised, so other PVCs keep being processed.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        tag_client: TagClient,
        annotation_prefix: str,
        default_tags: Mapping[str, str],
        managed_tag_pattern: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.tag_client = tag_client
        self.annotation_prefix = annotation_prefix
        self.default_tags = dict(default_tags)
        self.managed_keys = ManagedKeySpace(managed_tag_pattern)
        self.logger = logger or logging.getLogger(__name__)

    def _ignored(self, pvc: PVCRef, reason: str, **kwargs: Any) -> ReconcileResult:
        METRICS.ignored_total.inc()
        self.logger.debug("Ignoring PVC %s: %s", pvc, reason)
        return ReconcileResult(pvc=str(pvc), outcome=Outcome.IGNORED, reason=reason, **kwargs)

    def _failed(self, pvc: PVCRef, reason: str, **kwargs: Any) -> ReconcileResult:
        METRICS.actions_total.labels(status=Outcome.FAILED.value).inc()
        return ReconcileResult(pvc=str(pvc), outcome=Outcome.FAILED, reason=reason, **kwargs)

    def reconcile(self, pvc: PVCRef) -> ReconcileResult:
        try:
            volume_id = resolve_volume_id(self.core_api, pvc)
        except ApiException as exc:
            self.logger.error(
                "Failed to read PersistentVolume %s for PVC %s: %s",
                pvc.volume_name,
                pvc,
                exc.reason,
            )
            return self._failed(pvc, f"pv-lookup-failed: {exc.status}")
        if volume_id is None:
            return self._ignored(pvc, "volume-not-bound")

        resolved = resolve_desired_tags(pvc.annotations, self.annotation_prefix, self.default_tags)
        if resolved.invalid:
            METRICS.invalid_tags_total.inc(resolved.invalid)
        # Nothing desired and nothing removable: skip DescribeTags entirely.
        if not resolved.tags and not self.managed_keys:
            return self._ignored(
                pvc, "no-desired-tags", volume_id=volume_id, invalid=resolved.invalid
            )

        try:
            actual = self.tag_client.get_tags(volume_id)
            diff = compute_tag_diff(resolved.tags, actual, self.managed_keys)
            if diff.empty:
                return self._ignored(
                    pvc,
                    "converged" if resolved.tags else "no-desired-tags",
                    volume_id=volume_id,
                    invalid=resolved.invalid,
                )
            self.tag_client.apply_tags(
                volume_id,
                additions=diff.additions,
                removals=diff.removals,
                current=actual,
            )
        except TagClientError as exc:
            self.logger.error("Failed to tag volume %s for PVC %s: %s", volume_id, pvc, exc)
            return self._failed(
                pvc, exc.code, volume_id=volume_id, invalid=resolved.invalid
            )

        METRICS.actions_total.labels(status=Outcome.APPLIED.value).inc()
        self.logger.info(
            "Tagged volume %s for PVC %s (set=%s, removed=%s)",
            volume_id,
            pvc,
            sorted(diff.additions),
            sorted(diff.removals),
        )
        return ReconcileResult(
            pvc=str(pvc),
            outcome=Outcome.APPLIED,
            reason="tagged",
            volume_id=volume_id,
            added=len(diff.additions),
            removed=len(diff.removals),
            invalid=resolved.invalid,
        )

    def handle_event(self, event_type: str, obj: Any) -> ReconcileResult | None:
        """Reconcile the PVC carried by an ``ADDED`` or ``MODIFIED`` watch event.

        Returns ``None`` for other event types and malformed objects.
        """
        if event_type not in {"ADDED", "MODIFIED"}:
            return None
        pvc = pvc_ref_from_object(obj)
        if pvc is None:
            self.logger.warning("Skipping %s event for a PVC without metadata.name", event_type)
            return None
        return self.reconcile(pvc)
