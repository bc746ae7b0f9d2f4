from __future__ import annotations

from types import SimpleNamespace

from kubernetes.client import (
    V1ConfigMapEnvSource,
    V1ConfigMapKeySelector,
    V1ConfigMapProjection,
    V1ConfigMapVolumeSource,
    V1Container,
    V1EnvFromSource,
    V1EnvVar,
    V1EnvVarSource,
    V1PodSpec,
    V1ProjectedVolumeSource,
    V1SecretKeySelector,
    V1SecretVolumeSource,
    V1Volume,
    V1VolumeProjection,
)

from orderrrr.src.models import (
    ResourceIdentity,
    ResourceKind,
    ResourceReference,
    WatchedResource,
    Workload,
    WorkloadIdentity,
    WorkloadKind,
)
from orderrrr.src.references import extract_references, matches


def make_workload(
    pod_spec: object,
    namespace: str = "apps",
    kind: WorkloadKind = WorkloadKind.DEPLOYMENT,
) -> Workload:
    volume_refs, env_refs = extract_references(pod_spec)
    return Workload(
        identity=WorkloadIdentity(kind=kind, name="web", namespace=namespace),
        volume_refs=volume_refs,
        env_refs=env_refs,
    )


def secret(name: str, namespace: str = "apps") -> WatchedResource:
    return WatchedResource(
        identity=ResourceIdentity(ResourceKind.SECRET, name, namespace), version="1", uid="u1"
    )


def config_map(name: str, namespace: str = "apps") -> WatchedResource:
    return WatchedResource(
        identity=ResourceIdentity(ResourceKind.CONFIG_MAP, name, namespace), version="1", uid="u2"
    )


def test_secret_volume_mount_matches() -> None:
    pod_spec = V1PodSpec(
        containers=[V1Container(name="app")],
        volumes=[V1Volume(name="creds", secret=V1SecretVolumeSource(secret_name="db-creds"))],
    )
    workload = make_workload(pod_spec)

    assert matches(workload, secret("db-creds"))
    assert not matches(workload, secret("other"))


def test_config_map_volume_mount_matches() -> None:
    pod_spec = V1PodSpec(
        containers=[V1Container(name="app")],
        volumes=[V1Volume(name="conf", config_map=V1ConfigMapVolumeSource(name="app-config"))],
    )

    assert matches(make_workload(pod_spec), config_map("app-config"))


def test_env_secret_key_ref_matches() -> None:
    pod_spec = V1PodSpec(
        containers=[
            V1Container(
                name="app",
                env=[
                    V1EnvVar(name="PLAIN", value="x"),
                    V1EnvVar(
                        name="PASSWORD",
                        value_from=V1EnvVarSource(
                            secret_key_ref=V1SecretKeySelector(name="db-creds", key="password")
                        ),
                    ),
                ],
            )
        ]
    )

    assert matches(make_workload(pod_spec), secret("db-creds"))


def test_env_config_map_key_ref_matches() -> None:
    pod_spec = V1PodSpec(
        containers=[
            V1Container(
                name="app",
                env=[
                    V1EnvVar(
                        name="MODE",
                        value_from=V1EnvVarSource(
                            config_map_key_ref=V1ConfigMapKeySelector(name="app-config", key="mode")
                        ),
                    )
                ],
            )
        ]
    )

    assert matches(make_workload(pod_spec), config_map("app-config"))


def test_kind_must_match_as_well_as_name() -> None:
    pod_spec = V1PodSpec(
        containers=[V1Container(name="app")],
        volumes=[V1Volume(name="conf", config_map=V1ConfigMapVolumeSource(name="shared"))],
    )

    workload = make_workload(pod_spec)

    assert matches(workload, config_map("shared"))
    assert not matches(workload, secret("shared"))


def test_different_namespace_never_matches() -> None:
    pod_spec = V1PodSpec(
        containers=[V1Container(name="app")],
        volumes=[V1Volume(name="creds", secret=V1SecretVolumeSource(secret_name="db-creds"))],
    )

    assert not matches(make_workload(pod_spec, namespace="apps"), secret("db-creds", "other"))


def test_empty_pod_template_is_no_match() -> None:
    workload = make_workload(V1PodSpec(containers=[]))

    assert workload.volume_refs == ()
    assert workload.env_refs == ()
    assert not matches(workload, secret("db-creds"))


def test_missing_pod_spec_is_no_match() -> None:
    workload = make_workload(None)

    assert not matches(workload, secret("db-creds"))


def test_missing_arguments_are_no_match() -> None:
    workload = make_workload(V1PodSpec(containers=[]))

    assert matches(None, secret("db-creds")) is False
    assert matches(workload, None) is False


def test_matches_accepts_bare_identity() -> None:
    pod_spec = V1PodSpec(
        containers=[V1Container(name="app")],
        volumes=[V1Volume(name="creds", secret=V1SecretVolumeSource(secret_name="db-creds"))],
    )

    assert matches(
        make_workload(pod_spec), ResourceIdentity(ResourceKind.SECRET, "db-creds", "apps")
    )


def test_env_from_and_init_containers_are_references() -> None:
    pod_spec = V1PodSpec(
        init_containers=[
            V1Container(
                name="migrate",
                env_from=[V1EnvFromSource(config_map_ref=V1ConfigMapEnvSource(name="migrations"))],
            )
        ],
        containers=[V1Container(name="app")],
    )

    assert matches(make_workload(pod_spec), config_map("migrations"))


def test_projected_volume_sources_are_references() -> None:
    pod_spec = V1PodSpec(
        containers=[V1Container(name="app")],
        volumes=[
            V1Volume(
                name="bundle",
                projected=V1ProjectedVolumeSource(
                    sources=[V1VolumeProjection(config_map=V1ConfigMapProjection(name="ca-bundle"))]
                ),
            )
        ],
    )

    assert matches(make_workload(pod_spec), config_map("ca-bundle"))


def test_extract_references_keeps_order_and_dedupes() -> None:
    pod_spec = SimpleNamespace(
        volumes=[
            SimpleNamespace(secret=SimpleNamespace(secret_name="b"), config_map=None, projected=None),
            SimpleNamespace(secret=None, config_map=SimpleNamespace(name="a"), projected=None),
            SimpleNamespace(secret=SimpleNamespace(secret_name="b"), config_map=None, projected=None),
        ],
        init_containers=None,
        containers=None,
    )

    volume_refs, env_refs = extract_references(pod_spec)

    assert volume_refs == (
        ResourceReference(ResourceKind.SECRET, "b"),
        ResourceReference(ResourceKind.CONFIG_MAP, "a"),
    )
    assert env_refs == ()
