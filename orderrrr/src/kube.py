from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, BatchV1Api, CoreV1Api

from orderrrr.src.models import (
    ResourceIdentity,
    ResourceKind,
    WatchedResource,
    Workload,
    WorkloadIdentity,
    WorkloadKind,
)
from orderrrr.src.references import extract_references

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Uses the kubeconfig file at *kubeconfig* when given, otherwise the
    in-cluster service account credentials.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
    else:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, BatchV1Api]:
    """Return CoreV1, AppsV1 and BatchV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.BatchV1Api()


def template_annotations(obj: Any) -> dict[str, str]:
    """Extract pod template annotations from a pod controller object safely."""
    spec = getattr(obj, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in annotations.items()
        if isinstance(k, str)
    }


def resource_from_object(kind: ResourceKind, obj: Any) -> WatchedResource | None:
    """Convert a ``V1Secret`` / ``V1ConfigMap`` into a :class:`WatchedResource`."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    namespace = getattr(metadata, "namespace", None)
    if not name or not namespace:
        return None
    return WatchedResource(
        identity=ResourceIdentity(kind=kind, name=name, namespace=namespace),
        version=str(getattr(metadata, "resource_version", None) or ""),
        uid=str(getattr(metadata, "uid", None) or ""),
    )


def workload_from_object(kind: WorkloadKind, obj: Any) -> Workload | None:
    """Convert a DaemonSet, Deployment, Job or StatefulSet into a :class:`Workload`."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    namespace = getattr(metadata, "namespace", None)
    if not name or not namespace:
        return None

    pod_spec = getattr(getattr(getattr(obj, "spec", None), "template", None), "spec", None)
    volume_refs, env_refs = extract_references(pod_spec)
    return Workload(
        identity=WorkloadIdentity(kind=kind, name=name, namespace=namespace),
        volume_refs=volume_refs,
        env_refs=env_refs,
        annotations=template_annotations(obj),
    )


class AnnotationPatcher:
    """Patch collaborator: writes pod template annotations on a pod controller.

    Changing a pod template annotation is the same mechanism used by
    ``kubectl rollout restart``: the owning controller sees a template change
    and rolls new pods.  Raises :class:`kubernetes.client.ApiException` on
    failure (including ``409 Conflict``).
    """

    def __init__(self, apps_api: AppsV1Api, batch_api: BatchV1Api) -> None:
        self.apps_api = apps_api
        self.batch_api = batch_api

    def _patch_fn(self, kind: WorkloadKind) -> Any:
        if kind is WorkloadKind.DAEMON_SET:
            return self.apps_api.patch_namespaced_daemon_set
        if kind is WorkloadKind.DEPLOYMENT:
            return self.apps_api.patch_namespaced_deployment
        if kind is WorkloadKind.STATEFUL_SET:
            return self.apps_api.patch_namespaced_stateful_set
        if kind is WorkloadKind.JOB:
            return self.batch_api.patch_namespaced_job
        raise ValueError(f"unsupported pod controller kind: {kind!r}")

    def apply_annotations(self, identity: WorkloadIdentity, annotations: dict[str, str]) -> None:
        body = {
            "spec": {
                "template": {
                    "metadata": {
                        "annotations": dict(annotations)
                    }
                }
            }
        }
        self._patch_fn(identity.kind)(
            name=identity.name,
            namespace=identity.namespace,
            body=body,
        )
