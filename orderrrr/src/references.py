from __future__ import annotations

from typing import Any

from orderrrr.src.models import (
    ResourceIdentity,
    ResourceKind,
    ResourceReference,
    WatchedResource,
    Workload,
)


def matches(
    workload: Workload | None, resource: WatchedResource | ResourceIdentity | None
) -> bool:
    """Return True if *workload*'s pod template mounts or injects *resource*.

    A pod template can only reference objects in its own namespace, so a
    namespace mismatch is never a match.  Missing arguments are not a match.
    """
    if workload is None or resource is None:
        return False

    identity = resource.identity if isinstance(resource, WatchedResource) else resource
    if workload.namespace != identity.namespace:
        return False

    wanted = ResourceReference(kind=identity.kind, name=identity.name)
    return wanted in workload.volume_refs or wanted in workload.env_refs


def _items(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _volume_references(volume: Any) -> list[ResourceReference]:
    refs: list[ResourceReference] = []

    secret_name = getattr(getattr(volume, "secret", None), "secret_name", None)
    if secret_name:
        refs.append(ResourceReference(ResourceKind.SECRET, secret_name))

    config_map_name = getattr(getattr(volume, "config_map", None), "name", None)
    if config_map_name:
        refs.append(ResourceReference(ResourceKind.CONFIG_MAP, config_map_name))

    # Projected volumes bundle several sources under one mount.
    projected = getattr(volume, "projected", None)
    for source in _items(getattr(projected, "sources", None)):
        name = getattr(getattr(source, "secret", None), "name", None)
        if name:
            refs.append(ResourceReference(ResourceKind.SECRET, name))
        name = getattr(getattr(source, "config_map", None), "name", None)
        if name:
            refs.append(ResourceReference(ResourceKind.CONFIG_MAP, name))

    return refs


def _container_references(container: Any) -> list[ResourceReference]:
    refs: list[ResourceReference] = []

    for env in _items(getattr(container, "env", None)):
        value_from = getattr(env, "value_from", None)
        if value_from is None:
            continue
        name = getattr(getattr(value_from, "secret_key_ref", None), "name", None)
        if name:
            refs.append(ResourceReference(ResourceKind.SECRET, name))
        name = getattr(getattr(value_from, "config_map_key_ref", None), "name", None)
        if name:
            refs.append(ResourceReference(ResourceKind.CONFIG_MAP, name))

    for env_from in _items(getattr(container, "env_from", None)):
        name = getattr(getattr(env_from, "secret_ref", None), "name", None)
        if name:
            refs.append(ResourceReference(ResourceKind.SECRET, name))
        name = getattr(getattr(env_from, "config_map_ref", None), "name", None)
        if name:
            refs.append(ResourceReference(ResourceKind.CONFIG_MAP, name))

    return refs


def _dedupe(refs: list[ResourceReference]) -> tuple[ResourceReference, ...]:
    return tuple(dict.fromkeys(refs))


def extract_references(
    pod_spec: Any,
) -> tuple[tuple[ResourceReference, ...], tuple[ResourceReference, ...]]:
    """Collect Secret and ConfigMap references from a Kubernetes ``V1PodSpec``.

    Returns ``(volume_refs, env_refs)`` in pod template order with duplicates
    removed.  A pod spec without volumes or containers (or no pod spec at all)
    yields two empty tuples.
    """
    if pod_spec is None:
        return (), ()

    volume_refs: list[ResourceReference] = []
    for volume in _items(getattr(pod_spec, "volumes", None)):
        volume_refs.extend(_volume_references(volume))

    env_refs: list[ResourceReference] = []
    containers = _items(getattr(pod_spec, "init_containers", None)) + _items(
        getattr(pod_spec, "containers", None)
    )
    for container in containers:
        env_refs.extend(_container_references(container))

    return _dedupe(volume_refs), _dedupe(env_refs)
