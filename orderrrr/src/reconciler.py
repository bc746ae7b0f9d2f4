from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from kubernetes.client import ApiException

from orderrrr.src.buffer import ChangeBuffer, WorkItem, utc_now
from orderrrr.src.config import ManagedResourceRule, OrderrrrConfig
from orderrrr.src.fingerprint import fingerprint
from orderrrr.src.metrics import METRICS
from orderrrr.src.models import (
    LAST_ROLLING_RESTART_KEY,
    MANAGED_RESOURCES_HASH_KEY,
    ResourceIdentity,
    ResourceKind,
    WatchedResource,
    Workload,
    WorkloadIdentity,
    WorkloadKind,
)
from orderrrr.src.policy import (
    effective_cooldown,
    format_rfc3339,
    parse_restart_timestamp,
    permitted,
)
from orderrrr.src.references import matches
from orderrrr.src.scope import applicable_rules, in_scope


class WorkloadCache(Protocol):
    def list_workloads(self, kind: WorkloadKind) -> list[Workload]: ...

    def list_resources(self, kind: ResourceKind) -> list[WatchedResource]: ...

    def get_resource(self, identity: ResourceIdentity) -> WatchedResource | None: ...

    def get_workload(self, identity: WorkloadIdentity) -> Workload | None: ...


class Patcher(Protocol):
    def apply_annotations(
        self, identity: WorkloadIdentity, annotations: dict[str, str]
    ) -> None: ...


class Outcome(enum.Enum):
    RESTARTED = "restarted"
    UP_TO_DATE = "up_to_date"
    DEFERRED_COOLDOWN = "cooldown"
    DEFERRED_STAGGER = "stagger"
    FAILED = "error"
    REJECTED = "rejected"

    @property
    def needs_retry(self) -> bool:
        return self in {Outcome.DEFERRED_COOLDOWN, Outcome.DEFERRED_STAGGER, Outcome.FAILED}


@dataclass(frozen=True)
class TickResult:
    """Summary of one reconciliation tick."""

    popped: int
    restarted: int
    deferred: int
    failed: int
    requeued: int


class Reconciler:
    """Pops changed resources off the buffer and rolls the pod controllers that depend on them.

    Per buffered resource, each tick:

    1. Discards the item if no managed resource rule names it, or if the
       resource is no longer in the cache.
    2. Resolves affected pod controllers: those whose pod template references
       the resource, plus controllers whitelisted by its rules.
    3. Drops controllers that are out of scope for the resource's rules.
    4. Recomputes the controller's fingerprint over every managed resource it
       currently depends on and skips it when that matches the persisted
       ``managed-resources-hash`` annotation.
    5. Checks the per-controller cooldown and the process-wide stagger.  If
       either has not elapsed the item is retried on a later tick.
    6. Otherwise patches the restart timestamp and new fingerprint onto the
       pod template, which rolls its pods.

    A failed patch is logged and retried via the buffer; it never stops the
    remaining controllers in the tick.  A patch the API server rejects as
    invalid (``422``, e.g. a Job's immutable pod template) is not retried:
    the controller is tried again on the next change to its resources.
    Deferred items are returned to the buffer only after it has been
    drained, so every tick terminates.

    Key internal state:
        ``_last_global_action``
            Time of the last successful restart, for the stagger window.
        ``_unstamped_since``
            When each controller with a missing or corrupt restart annotation
            was first noticed.  That instant stands in for its last restart.
        ``_restarted_at``
            Restarts issued by this process that the cache has not shown yet.
            The later of this and the annotation is the last restart.

    Both maps are pruned of controllers that have left the cache at the end
    of every tick.
    """

    def __init__(
        self,
        buffer: ChangeBuffer,
        cache: WorkloadCache,
        patcher: Patcher,
        config: OrderrrrConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.buffer = buffer
        self.cache = cache
        self.patcher = patcher
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._config = config
        self._config_lock = threading.Lock()
        self._last_global_action: datetime | None = None
        self._unstamped_since: dict[WorkloadIdentity, datetime] = {}
        self._restarted_at: dict[WorkloadIdentity, datetime] = {}
        self.running = threading.Event()

    @property
    def config(self) -> OrderrrrConfig:
        with self._config_lock:
            return self._config

    def replace_config(self, config: OrderrrrConfig) -> None:
        with self._config_lock:
            self._config = config
        self.logger.info(
            "Loaded new configuration with %d managed resource(s)", len(config.managed_resources)
        )

    def is_managed(self, identity: ResourceIdentity) -> bool:
        return self.config.is_managed(identity)

    def namespace_allowed(self, namespace: str) -> bool:
        return self.config.scope.namespace_allowed(namespace)

    def resolve_affected_workloads(
        self, identity: ResourceIdentity, rules: tuple[ManagedResourceRule, ...]
    ) -> list[Workload]:
        """Union of controllers referencing *identity* and controllers whitelisted by *rules*."""
        affected: dict[WorkloadIdentity, Workload] = {}
        for kind in WorkloadKind:
            for workload in self.cache.list_workloads(kind):
                if matches(workload, identity):
                    affected[workload.identity] = workload

        for rule in rules:
            for workload_identity in rule.whitelisted_controllers:
                if workload_identity in affected:
                    continue
                workload = self.cache.get_workload(workload_identity)
                if workload is None:
                    self.logger.debug(
                        "Whitelisted %s for %s not found in cache", workload_identity, identity
                    )
                    continue
                affected[workload_identity] = workload
        return list(affected.values())

    def covering_rules(self, workload: Workload) -> list[ManagedResourceRule]:
        """Rules whose resource this controller depends on and which allow rolling it."""
        return [
            rule
            for rule in applicable_rules(workload, self.config.managed_resources)
            if matches(workload, rule.resource)
            or workload.identity in rule.whitelisted_controllers
        ]

    def matched_resources(self, rules: list[ManagedResourceRule]) -> list[WatchedResource]:
        """Current cache state of the resources named by *rules*, deduplicated."""
        resources: dict[ResourceIdentity, WatchedResource] = {}
        for rule in rules:
            if rule.resource in resources:
                continue
            resource = self.cache.get_resource(rule.resource)
            if resource is not None:
                resources[rule.resource] = resource
        return list(resources.values())

    def _last_restart(self, workload: Workload, now: datetime) -> datetime:
        parsed = parse_restart_timestamp(workload.last_restart_annotation, now)
        if parsed.defaulted:
            observed = self._unstamped_since.get(workload.identity)
            if observed is None:
                observed = self._unstamped_since[workload.identity] = parsed.value
                self.logger.info(
                    "%s has no valid %s annotation (%r); treating it as just restarted",
                    workload.identity,
                    LAST_ROLLING_RESTART_KEY,
                    workload.last_restart_annotation,
                )
        else:
            self._unstamped_since.pop(workload.identity, None)
            observed = parsed.value

        issued = self._restarted_at.get(workload.identity)
        if issued is None:
            return observed
        if observed >= issued:
            # The cache has caught up with our own patch.
            del self._restarted_at[workload.identity]
            return observed
        return issued

    def _prune_workload_state(self) -> None:
        for state in (self._unstamped_since, self._restarted_at):
            for identity in list(state):
                if self.cache.get_workload(identity) is None:
                    del state[identity]

    def reconcile_workload(self, workload: Workload) -> Outcome:
        rules = self.covering_rules(workload)
        digest = fingerprint(self.matched_resources(rules))
        if workload.last_applied_fingerprint == digest:
            self.logger.debug("%s is up to date with fingerprint %s", workload.identity, digest)
            METRICS.skipped_total.labels(reason=Outcome.UP_TO_DATE.value).inc()
            return Outcome.UP_TO_DATE

        scope = self.config.scope
        now = self.clock()
        last_restart = self._last_restart(workload, now)
        cooldown = effective_cooldown(scope.default_restart_cooldown, rules)

        if not permitted(last_restart, cooldown, None, scope.pod_controller_stagger, now):
            self.logger.info(
                "Deferring restart of %s: cooldown of %ss since %s not yet elapsed",
                workload.identity,
                int(cooldown.total_seconds()),
                format_rfc3339(last_restart),
            )
            METRICS.deferred_total.labels(reason=Outcome.DEFERRED_COOLDOWN.value).inc()
            return Outcome.DEFERRED_COOLDOWN

        if not permitted(
            last_restart, cooldown, self._last_global_action, scope.pod_controller_stagger, now
        ):
            self.logger.info(
                "Deferring restart of %s: stagger window of %ss not yet elapsed",
                workload.identity,
                int(scope.pod_controller_stagger.total_seconds()),
            )
            METRICS.deferred_total.labels(reason=Outcome.DEFERRED_STAGGER.value).inc()
            return Outcome.DEFERRED_STAGGER

        annotations = {
            LAST_ROLLING_RESTART_KEY: format_rfc3339(now),
            MANAGED_RESOURCES_HASH_KEY: digest,
        }
        try:
            self.patcher.apply_annotations(workload.identity, annotations)
        except ApiException as exc:
            if exc.status == 422:
                self.logger.warning(
                    "API server rejected patch of %s as invalid: %s", workload.identity, exc.reason
                )
                METRICS.restart_errors_total.labels(kind=workload.kind.value).inc()
                METRICS.skipped_total.labels(reason=Outcome.REJECTED.value).inc()
                return Outcome.REJECTED
            self.logger.exception(
                "Failed to patch %s (status=%s); will retry", workload.identity, exc.status
            )
            METRICS.restart_errors_total.labels(kind=workload.kind.value).inc()
            METRICS.deferred_total.labels(reason=Outcome.FAILED.value).inc()
            return Outcome.FAILED
        except Exception:
            self.logger.exception("Unexpected error patching %s; will retry", workload.identity)
            METRICS.restart_errors_total.labels(kind=workload.kind.value).inc()
            METRICS.deferred_total.labels(reason=Outcome.FAILED.value).inc()
            return Outcome.FAILED

        self._last_global_action = now
        self._unstamped_since.pop(workload.identity, None)
        self._restarted_at[workload.identity] = now.replace(microsecond=0)
        METRICS.restarts_total.labels(kind=workload.kind.value).inc()
        self.logger.info(
            "Triggered rolling restart for %s (fingerprint %s)", workload.identity, digest
        )
        return Outcome.RESTARTED

    def reconcile_item(self, item: WorkItem) -> list[Outcome]:
        """Process one buffered change and return the outcome per affected controller."""
        config = self.config
        rules = config.rules_for(item.identity)
        if not rules:
            self.logger.debug("Discarding unmanaged %s", item.identity)
            METRICS.skipped_total.labels(reason="unmanaged").inc()
            return []

        if self.cache.get_resource(item.identity) is None:
            self.logger.info("Discarding %s: no longer present in cache", item.identity)
            METRICS.skipped_total.labels(reason="missing").inc()
            return []

        self.logger.debug(
            "Processing %s at version %s (attempt %d)",
            item.identity,
            item.pending_version,
            item.attempts,
        )
        outcomes: list[Outcome] = []
        for workload in self.resolve_affected_workloads(item.identity, rules):
            if not in_scope(workload, rules, config.scope):
                METRICS.skipped_total.labels(reason="out_of_scope").inc()
                continue
            outcomes.append(self.reconcile_workload(workload))
        return outcomes

    def tick(self) -> TickResult:
        """Drain the buffer once, then return deferred items to it."""
        started = time.monotonic()
        retry: list[WorkItem] = []
        popped = restarted = deferred = failed = 0

        while True:
            item = self.buffer.pop()
            if item is None:
                break
            popped += 1
            try:
                outcomes = self.reconcile_item(item)
            except Exception:
                # Cache reads are expected not to fail; if one does the item
                # is retried rather than lost.
                self.logger.exception("Unexpected error processing %s", item.identity)
                outcomes = [Outcome.FAILED]

            restarted += outcomes.count(Outcome.RESTARTED)
            failed += outcomes.count(Outcome.FAILED) + outcomes.count(Outcome.REJECTED)
            deferred += sum(
                1
                for outcome in outcomes
                if outcome in {Outcome.DEFERRED_COOLDOWN, Outcome.DEFERRED_STAGGER}
            )
            if any(outcome.needs_retry for outcome in outcomes):
                retry.append(item)

        requeued = sum(1 for item in retry if self.buffer.requeue(item))
        self._prune_workload_state()
        METRICS.tick_duration_seconds.observe(time.monotonic() - started)
        return TickResult(
            popped=popped,
            restarted=restarted,
            deferred=deferred,
            failed=failed,
            requeued=requeued,
        )

    def run_forever(
        self, shutdown_event: threading.Event | None = None, interval_seconds: float = 5.0
    ) -> None:
        """Run ticks at a fixed interval until *shutdown_event* is set.

        A tick in progress always completes.  Whatever is left in the buffer
        at shutdown is dropped; it is rebuilt from the initial cache sync on
        the next start.
        """
        stop = shutdown_event or threading.Event()
        self.running.set()
        self.logger.info("Reconciliation loop started (interval %.1fs)", interval_seconds)
        try:
            while not stop.is_set():
                result = self.tick()
                if result.popped:
                    self.logger.debug("Tick finished: %s", result)
                stop.wait(timeout=interval_seconds)
        finally:
            self.running.clear()
            dropped = self.buffer.clear()
            if dropped:
                METRICS.buffer_dropped_total.inc(dropped)
                self.logger.warning("Dropping %d buffered change(s) on shutdown", dropped)
            self.logger.info("Reconciliation loop stopped")
