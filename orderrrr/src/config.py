from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from orderrrr.src.models import (
    RESERVED_SYSTEM_NAMESPACE,
    ResourceIdentity,
    ResourceKind,
    WorkloadIdentity,
    WorkloadKind,
)

SUPPORTED_CONFIG_VERSION = 0.1
DEFAULT_CONFIG_PATH = "/etc/orderrrr/config.yaml"

CONTROLLER_RESYNC_LOWER_BOUND = timedelta(seconds=15)
RESTART_COOLDOWN_LOWER_BOUND = timedelta(seconds=30)
POD_CONTROLLER_STAGGER_LOWER_BOUND = timedelta(seconds=5)

_DURATION_UNITS: dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string such as ``90s``, ``2m`` or ``1h30m``."""
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return timedelta(0)

    total = 0.0
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=sign * total)


def _bounded_duration(
    raw: Any, field_name: str, lower_bound: timedelta, *, default: timedelta | None = None
) -> timedelta:
    """Parse an optional duration field, rejecting values below *lower_bound*.

    Absent or empty values fall back to *default* (the lower bound when not given).
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default if default is not None else lower_bound
    if not isinstance(raw, str):
        raise ConfigError(f"{field_name} must be a duration string, got: {raw!r}")
    try:
        parsed = parse_duration(raw)
    except ValueError as exc:
        raise ConfigError(f"{field_name}: error parsing duration {raw!r}") from exc
    if parsed < lower_bound:
        raise ConfigError(
            f"{field_name}: {raw} is below the safety threshold of "
            f"{int(lower_bound.total_seconds())}s"
        )
    return parsed


@dataclass(frozen=True)
class ManagedResourceRule:
    """Declares a watched resource and which pod controllers its changes may roll."""

    resource: ResourceIdentity
    whitelisted_controllers: frozenset[WorkloadIdentity] = frozenset()
    blacklisted_controllers: frozenset[WorkloadIdentity] = frozenset()
    avoid_all_controllers_unless_whitelisted: bool = False
    restart_cooldown: timedelta | None = None


@dataclass(frozen=True)
class ScopeConfig:
    namespace_whitelist: tuple[str, ...] = ()
    namespace_blacklist: tuple[str, ...] = ()
    controller_resync_period: timedelta = CONTROLLER_RESYNC_LOWER_BOUND
    default_restart_cooldown: timedelta = RESTART_COOLDOWN_LOWER_BOUND
    pod_controller_stagger: timedelta = POD_CONTROLLER_STAGGER_LOWER_BOUND

    def namespace_allowed(self, namespace: str | None) -> bool:
        """Return True if pod controllers in *namespace* may ever be actioned.

        A non-empty whitelist is exhaustive.  Otherwise every namespace
        qualifies except the reserved system namespace and any blacklisted one.
        """
        if not namespace:
            return False
        if self.namespace_whitelist:
            return namespace in self.namespace_whitelist
        if namespace == RESERVED_SYSTEM_NAMESPACE:
            return False
        return namespace not in self.namespace_blacklist


@dataclass(frozen=True)
class OrderrrrConfig:
    """Immutable runtime configuration; a reload replaces it wholesale."""

    version: float
    scope: ScopeConfig
    managed_resources: tuple[ManagedResourceRule, ...] = ()
    debug_output: bool = False
    _rules_by_resource: dict[ResourceIdentity, tuple[ManagedResourceRule, ...]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        grouped: dict[ResourceIdentity, list[ManagedResourceRule]] = {}
        for rule in self.managed_resources:
            grouped.setdefault(rule.resource, []).append(rule)
        self._rules_by_resource.update({key: tuple(rules) for key, rules in grouped.items()})

    def rules_for(self, identity: ResourceIdentity) -> tuple[ManagedResourceRule, ...]:
        return self._rules_by_resource.get(identity, ())

    def is_managed(self, identity: ResourceIdentity) -> bool:
        return identity in self._rules_by_resource


def _require_str(entry: Mapping[str, Any], key: str, context: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{context}: {key} must be a non-empty string")
    return value.strip()


def _string_list(raw: Any, context: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ConfigError(f"{context} must be a list of strings")
    return tuple(item.strip() for item in raw if item.strip())


def _parse_controllers(raw: Any, context: str) -> frozenset[WorkloadIdentity]:
    if raw is None:
        return frozenset()
    if not isinstance(raw, list):
        raise ConfigError(f"{context} must be a list")

    controllers: set[WorkloadIdentity] = set()
    for index, entry in enumerate(raw):
        entry_context = f"{context}[{index}]"
        if not isinstance(entry, Mapping):
            raise ConfigError(f"{entry_context} must be a mapping")
        controller_type = _require_str(entry, "type", entry_context)
        try:
            kind = WorkloadKind.from_config_type(controller_type)
        except ValueError as exc:
            raise ConfigError(f"{entry_context}: {exc}") from exc
        controllers.add(
            WorkloadIdentity(
                kind=kind,
                name=_require_str(entry, "name", entry_context),
                namespace=_require_str(entry, "namespace", entry_context),
            )
        )
    return frozenset(controllers)


def _parse_rule(entry: Any, index: int) -> ManagedResourceRule:
    context = f"managed_resources[{index}]"
    if not isinstance(entry, Mapping):
        raise ConfigError(f"{context} must be a mapping")

    resource_type = _require_str(entry, "type", context)
    try:
        kind = ResourceKind.from_config_type(resource_type)
    except ValueError as exc:
        raise ConfigError(f"{context}: {exc}") from exc

    whitelisted = _parse_controllers(
        entry.get("whitelisted_controllers"), f"{context}.whitelisted_controllers"
    )
    blacklisted = _parse_controllers(
        entry.get("blacklisted_controllers"), f"{context}.blacklisted_controllers"
    )
    overlap = whitelisted & blacklisted
    if overlap:
        listed = ", ".join(sorted(str(item) for item in overlap))
        raise ConfigError(f"{context}: controllers both whitelisted and blacklisted: {listed}")

    avoid_all = entry.get("avoid_all_controllers_unless_whitelisted", False)
    if not isinstance(avoid_all, bool):
        raise ConfigError(f"{context}.avoid_all_controllers_unless_whitelisted must be a boolean")

    restart_cooldown = None
    if entry.get("restart_cooldown") not in (None, ""):
        restart_cooldown = _bounded_duration(
            entry.get("restart_cooldown"),
            f"{context}.restart_cooldown",
            RESTART_COOLDOWN_LOWER_BOUND,
        )

    return ManagedResourceRule(
        resource=ResourceIdentity(
            kind=kind,
            name=_require_str(entry, "name", context),
            namespace=_require_str(entry, "namespace", context),
        ),
        whitelisted_controllers=whitelisted,
        blacklisted_controllers=blacklisted,
        avoid_all_controllers_unless_whitelisted=avoid_all,
        restart_cooldown=restart_cooldown,
    )


def _parse_namespaces(raw: Any) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Accept either a plain whitelist or a ``{whitelist, blacklist}`` mapping."""
    if raw is None or isinstance(raw, list):
        return _string_list(raw, "namespaces"), ()
    if not isinstance(raw, Mapping):
        raise ConfigError("namespaces must be a list or a mapping with whitelist/blacklist")

    whitelist = _string_list(raw.get("whitelist"), "namespaces.whitelist")
    blacklist = _string_list(raw.get("blacklist"), "namespaces.blacklist")
    if whitelist and blacklist:
        raise ConfigError("namespaces.whitelist and namespaces.blacklist are mutually exclusive")
    return whitelist, blacklist


def parse_config(raw: Any) -> OrderrrrConfig:
    """Validate a decoded YAML document and build an :class:`OrderrrrConfig`."""
    if not isinstance(raw, Mapping):
        raise ConfigError("config document must be a mapping")

    version = raw.get("version")
    try:
        parsed_version = float(version)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"config version must be a number, got: {version!r}") from exc
    if parsed_version != SUPPORTED_CONFIG_VERSION:
        raise ConfigError(
            f"config version {version} is not supported "
            f"(expected {SUPPORTED_CONFIG_VERSION})"
        )

    whitelist, blacklist = _parse_namespaces(raw.get("namespaces"))
    scope = ScopeConfig(
        namespace_whitelist=whitelist,
        namespace_blacklist=blacklist,
        controller_resync_period=_bounded_duration(
            raw.get("controller_resync_duration"),
            "controller_resync_duration",
            CONTROLLER_RESYNC_LOWER_BOUND,
        ),
        default_restart_cooldown=_bounded_duration(
            raw.get("default_restart_cooldown"),
            "default_restart_cooldown",
            RESTART_COOLDOWN_LOWER_BOUND,
        ),
        pod_controller_stagger=_bounded_duration(
            raw.get("pod_controller_stagger"),
            "pod_controller_stagger",
            POD_CONTROLLER_STAGGER_LOWER_BOUND,
        ),
    )

    managed = raw.get("managed_resources") or []
    if not isinstance(managed, list):
        raise ConfigError("managed_resources must be a list")

    debug_output = raw.get("debug_output", False)
    if not isinstance(debug_output, bool):
        raise ConfigError("debug_output must be a boolean")

    return OrderrrrConfig(
        version=parsed_version,
        scope=scope,
        managed_resources=tuple(_parse_rule(entry, index) for index, entry in enumerate(managed)),
        debug_output=debug_output,
    )


def load_config(path: str | Path) -> OrderrrrConfig:
    """Read and validate the YAML config file at *path*."""
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"error reading config from {config_path}: {exc}") from exc

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"error parsing config from {config_path}: {exc}") from exc

    return parse_config(raw)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value
