from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoordinationV1Api, CoreV1Api
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

EBS_CSI_DRIVER = "ebs.csi.aws.com"
SERVICE_ACCOUNT_NAMESPACE_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")


def load_kube_configuration(kubeconfig: str | None = None, context: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit *kubeconfig* path or *context* selects the local kubeconfig.
    Otherwise in-cluster config is tried first (running inside a pod),
    falling back to the local kubeconfig for development.
    """
    if kubeconfig or context:
        config.load_kube_config(config_file=kubeconfig or None, context=context or None)
        LOGGER.info(
            "Loaded kubeconfig %s (context=%s)", kubeconfig or "<default>", context or "<current>"
        )
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CoordinationV1Api]:
    """Return CoreV1 and CoordinationV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CoordinationV1Api()


def current_namespace(path: Path = SERVICE_ACCOUNT_NAMESPACE_PATH) -> str:
    """Return the namespace this pod runs in, or ``""`` outside a cluster."""
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return ""


@dataclass(frozen=True)
class PVCRef:
    """Identity and annotations of a PersistentVolumeClaim as seen in one event."""

    namespace: str
    name: str
    resource_version: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    volume_name: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def pvc_ref_from_object(pvc: Any) -> PVCRef | None:
    """Build a :class:`PVCRef` from a ``V1PersistentVolumeClaim``.

    Returns ``None`` for objects without usable metadata.
    """
    metadata = getattr(pvc, "metadata", None)
    name = getattr(metadata, "name", None)
    if metadata is None or not name:
        return None
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, dict):
        annotations = {}
    spec = getattr(pvc, "spec", None)
    return PVCRef(
        namespace=getattr(metadata, "namespace", None) or "",
        name=name,
        resource_version=getattr(metadata, "resource_version", None) or "",
        annotations={
            k: ("" if v is None else str(v))
            for k, v in annotations.items()
            if isinstance(k, str)
        },
        volume_name=getattr(spec, "volume_name", None) or "",
    )


def parse_ebs_volume_id(raw: str | None) -> str | None:
    """Extract ``vol-…`` from a CSI handle or an in-tree ``aws://zone/vol-…`` ID."""
    if not raw:
        return None
    volume_id = raw.rstrip("/").rsplit("/", 1)[-1]
    if not volume_id.startswith("vol-"):
        return None
    return volume_id


def volume_id_from_pv(pv: Any) -> str | None:
    """Return the EBS volume ID backing a ``V1PersistentVolume``, if any."""
    spec = getattr(pv, "spec", None)
    csi = getattr(spec, "csi", None)
    if csi is not None and getattr(csi, "driver", None) == EBS_CSI_DRIVER:
        return parse_ebs_volume_id(getattr(csi, "volume_handle", None))
    in_tree = getattr(spec, "aws_elastic_block_store", None)
    if in_tree is not None:
        return parse_ebs_volume_id(getattr(in_tree, "volume_id", None))
    return None


def resolve_volume_id(core_api: CoreV1Api, pvc: PVCRef) -> str | None:
    """Resolve the EBS volume bound to *pvc* through its PersistentVolume.

    Returns ``None`` when the claim is not bound yet, the PV was deleted, or
    the PV is not backed by EBS.  Other API errors propagate.
    """
    if not pvc.volume_name:
        return None
    try:
        pv = core_api.read_persistent_volume(name=pvc.volume_name)
    except ApiException as exc:
        if exc.status == 404:
            LOGGER.info("PersistentVolume %s for %s no longer exists", pvc.volume_name, pvc)
            return None
        raise
    volume_id = volume_id_from_pv(pv)
    if volume_id is None:
        LOGGER.debug("PersistentVolume %s for %s is not backed by EBS", pvc.volume_name, pvc)
    return volume_id
