from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

ANNOTATION_PREFIX = "orderrrr.kube-system.com"
LAST_ROLLING_RESTART_KEY = f"{ANNOTATION_PREFIX}/last-rolling-restart"
MANAGED_RESOURCES_HASH_KEY = f"{ANNOTATION_PREFIX}/managed-resources-hash"

RESERVED_SYSTEM_NAMESPACE = "kube-system"


class ResourceKind(Enum):
    """Kinds of mountable objects whose changes are watched."""

    SECRET = "Secret"
    CONFIG_MAP = "ConfigMap"

    @property
    def config_type(self) -> str:
        """Plural form used in the ``managed_resources[].type`` config field."""
        return f"{self.value}s"

    @classmethod
    def from_config_type(cls, value: str) -> ResourceKind:
        for kind in cls:
            if kind.config_type == value:
                return kind
        raise ValueError(f"unknown managed resource type: {value!r}")


class WorkloadKind(Enum):
    """Pod controllers that can be rolled by an annotation patch."""

    DAEMON_SET = "DaemonSet"
    DEPLOYMENT = "Deployment"
    JOB = "Job"
    STATEFUL_SET = "StatefulSet"

    @property
    def config_type(self) -> str:
        return f"{self.value}s"

    @classmethod
    def from_config_type(cls, value: str) -> WorkloadKind:
        for kind in cls:
            if kind.config_type == value:
                return kind
        raise ValueError(f"unknown pod controller type: {value!r}")


@dataclass(frozen=True)
class ResourceIdentity:
    kind: ResourceKind
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.kind.value} {self.namespace}/{self.name}"


@dataclass(frozen=True)
class WorkloadIdentity:
    kind: WorkloadKind
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.kind.value} {self.namespace}/{self.name}"


@dataclass(frozen=True)
class WatchedResource:
    """Snapshot of a Secret or ConfigMap as last observed by the cache."""

    identity: ResourceIdentity
    version: str
    uid: str

    @property
    def kind(self) -> ResourceKind:
        return self.identity.kind

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def namespace(self) -> str:
        return self.identity.namespace


@dataclass(frozen=True)
class ResourceReference:
    """A pod template's reference to a resource in the workload's own namespace."""

    kind: ResourceKind
    name: str


@dataclass(frozen=True)
class Workload:
    """Read-only snapshot of a pod controller.

    ``volume_refs`` and ``env_refs`` keep pod template order.  ``annotations``
    are the pod template annotations, where restart state is persisted.
    """

    identity: WorkloadIdentity
    volume_refs: tuple[ResourceReference, ...] = ()
    env_refs: tuple[ResourceReference, ...] = ()
    annotations: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def kind(self) -> WorkloadKind:
        return self.identity.kind

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def namespace(self) -> str:
        return self.identity.namespace

    @property
    def last_restart_annotation(self) -> str | None:
        return self.annotations.get(LAST_ROLLING_RESTART_KEY)

    @property
    def last_applied_fingerprint(self) -> str | None:
        return self.annotations.get(MANAGED_RESOURCES_HASH_KEY)
