from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, BatchV1Api, CoreV1Api

from orderrrr.src.buffer import BufferingEventHandler
from orderrrr.src.kube import resource_from_object, workload_from_object
from orderrrr.src.metrics import METRICS
from orderrrr.src.models import (
    ResourceIdentity,
    ResourceKind,
    WatchedResource,
    Workload,
    WorkloadIdentity,
    WorkloadKind,
)

T = TypeVar("T", WatchedResource, Workload)


class CacheSyncError(RuntimeError):
    """Raised when the caches cannot complete their initial sync."""


class Informer(Generic[T]):
    """List-then-watch cache of one Kubernetes object kind across all namespaces.

    1. Lists all objects with exponential backoff until the first list
       succeeds, dispatching ``on_add`` for each and setting ``synced``.
    2. Watches from the list's ``resourceVersion``.  Each stream times out
       after ``resync_seconds`` and is followed by a full re-list (resync),
       which replaces the store and dispatches ``on_update`` so changes missed
       by the watch are still observed.
    3. On ``410 Gone`` re-lists immediately.  On other errors, including a
       failed re-list, backs off with jitter (1 s doubling, 30 s cap) and
       keeps serving the last snapshot.

    ``401`` / ``403`` during the initial list are RBAC errors: ``failed`` is
    set and the informer stops rather than retrying forever.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        convert: Callable[[Any], T | None],
        *,
        resync_seconds: int,
        on_add: Callable[[T], Any] | None = None,
        on_update: Callable[[T | None, T], Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.convert = convert
        self.resync_seconds = max(1, resync_seconds)
        self.on_add = on_add
        self.on_update = on_update
        self.logger = logger or logging.getLogger(__name__)

        self.synced = threading.Event()
        self.failed = threading.Event()
        self._store: dict[tuple[str, str], T] = {}
        self._lock = threading.Lock()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def items(self) -> list[T]:
        with self._lock:
            return list(self._store.values())

    def get(self, namespace: str, name: str) -> T | None:
        with self._lock:
            return self._store.get((namespace, name))

    def _dispatch(self, previous: T | None, current: T) -> None:
        try:
            if previous is None and self.on_add is not None:
                self.on_add(current)
            elif previous is not None and self.on_update is not None:
                self.on_update(previous, current)
        except Exception:
            self.logger.exception("%s event handler failed for %s", self.name, current.identity)

    def _replace_all(self, listing: Any) -> str | None:
        """Replace the store with a full listing and notify handlers of changes."""
        fresh: dict[tuple[str, str], T] = {}
        for raw in getattr(listing, "items", None) or []:
            converted = self.convert(raw)
            if converted is not None:
                fresh[(converted.namespace, converted.name)] = converted

        with self._lock:
            previous = self._store
            self._store = fresh

        for key, current in fresh.items():
            self._dispatch(previous.get(key), current)

        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _apply_event(self, event_type: str, raw: Any) -> None:
        converted = self.convert(raw)
        if converted is None:
            return
        key = (converted.namespace, converted.name)

        if event_type == "DELETED":
            with self._lock:
                self._store.pop(key, None)
            return
        if event_type not in {"ADDED", "MODIFIED"}:
            return

        with self._lock:
            previous = self._store.get(key)
            self._store[key] = converted
        self._dispatch(previous, converted)

    def stop(self) -> None:
        """Interrupt any open watch stream."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        """Sleep a jittered *backoff_seconds* (or until *stop*) and return the next delay."""
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def _initial_list(self, stop: threading.Event) -> str | None:
        backoff_seconds = 1
        while not stop.is_set():
            try:
                resource_version = self._replace_all(self.list_fn())
                self.synced.set()
                self.logger.info(
                    "%s cache synced at resourceVersion %s", self.name, resource_version
                )
                return resource_version
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.name,
                        exc.status,
                    )
                    self.failed.set()
                    return None
                self.logger.exception("Initial %s list failed", self.name)
                METRICS.watch_errors_total.labels(kind=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.name)
                METRICS.watch_errors_total.labels(kind=self.name).inc()

            backoff_seconds = self._backoff(stop, backoff_seconds)
        return None

    def run(self, stop: threading.Event) -> None:
        resource_version = self._initial_list(stop)
        if not self.synced.is_set():
            return

        backoff_seconds = 1
        watch_stream_count = 0
        while not stop.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.resync_seconds,
                )
                for event in stream:
                    if stop.is_set():
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    self._apply_event(str(event.get("type", "")), obj)

                if stop.is_set():
                    break
                # Stream timed out: periodic resync.
                resource_version = self._replace_all(self.list_fn())
                self.logger.debug("%s cache resynced", self.name)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.name)
                    try:
                        resource_version = self._replace_all(self.list_fn())
                        continue
                    except Exception:
                        # Watch from "now" on the next attempt; the store keeps
                        # serving the last snapshot meanwhile.
                        self.logger.exception("Failed to re-list %s after 410", self.name)
                        resource_version = None
                else:
                    self.logger.exception(
                        "Kubernetes API watch error for %s; serving last known state", self.name
                    )
                METRICS.watch_errors_total.labels(kind=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.name)
                METRICS.watch_errors_total.labels(kind=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class ClusterCache:
    """Eventually consistent, read-only view of watched resources and pod controllers.

    Runs one :class:`Informer` per kind.  Resource informers forward add and
    update notifications to ``handler`` so changes reach the change buffer.
    Workload and resource reads are filtered by ``namespace_allowed``, which
    is looked up on every call so a config reload takes effect immediately.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        batch_api: BatchV1Api,
        *,
        resync_seconds: int,
        namespace_allowed: Callable[[str], bool],
        handler: BufferingEventHandler | None = None,
    ) -> None:
        self.namespace_allowed = namespace_allowed
        on_add = handler.on_add if handler is not None else None
        on_update = handler.on_update if handler is not None else None

        resource_list_fns = {
            ResourceKind.SECRET: core_api.list_secret_for_all_namespaces,
            ResourceKind.CONFIG_MAP: core_api.list_config_map_for_all_namespaces,
        }
        workload_list_fns = {
            WorkloadKind.DAEMON_SET: apps_api.list_daemon_set_for_all_namespaces,
            WorkloadKind.DEPLOYMENT: apps_api.list_deployment_for_all_namespaces,
            WorkloadKind.JOB: batch_api.list_job_for_all_namespaces,
            WorkloadKind.STATEFUL_SET: apps_api.list_stateful_set_for_all_namespaces,
        }

        self.resource_informers: dict[ResourceKind, Informer[WatchedResource]] = {
            kind: Informer(
                kind.config_type,
                list_fn,
                lambda obj, kind=kind: resource_from_object(kind, obj),
                resync_seconds=resync_seconds,
                on_add=on_add,
                on_update=on_update,
            )
            for kind, list_fn in resource_list_fns.items()
        }
        self.workload_informers: dict[WorkloadKind, Informer[Workload]] = {
            kind: Informer(
                kind.config_type,
                list_fn,
                lambda obj, kind=kind: workload_from_object(kind, obj),
                resync_seconds=resync_seconds,
            )
            for kind, list_fn in workload_list_fns.items()
        }
        self._threads: list[threading.Thread] = []

    def _informers(self) -> list[Informer[Any]]:
        # Pod controllers first so the buffer never pops a resource before
        # the workloads that reference it are known.
        return [*self.workload_informers.values(), *self.resource_informers.values()]

    def start(self, stop: threading.Event) -> None:
        for informer in self._informers():
            thread = threading.Thread(
                target=informer.run, args=(stop,), name=f"informer-{informer.name}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        for informer in self._informers():
            informer.stop()

    def synced(self) -> bool:
        return all(informer.synced.is_set() for informer in self._informers())

    def wait_for_sync(
        self,
        timeout_seconds: float,
        stop: threading.Event,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        """Block until every informer has synced, logging progress while waiting.

        Raises :class:`CacheSyncError` on timeout, on an informer giving up
        (access denied), or when *stop* is set first.
        """
        deadline = time.monotonic() + timeout_seconds
        while True:
            failed = [i.name for i in self._informers() if i.failed.is_set()]
            if failed:
                raise CacheSyncError(f"caches failed to sync: {', '.join(failed)}")

            pending = [i.name for i in self._informers() if not i.synced.is_set()]
            if not pending:
                logging.getLogger(__name__).info("All caches synced and ready")
                return

            if stop.is_set():
                raise CacheSyncError("shutdown requested before caches synced")
            if time.monotonic() >= deadline:
                raise CacheSyncError(
                    f"timed out after {timeout_seconds:.0f}s waiting for caches: "
                    f"{', '.join(pending)}"
                )

            logging.getLogger(__name__).info(
                "Not all caches synced (waiting for %s), re-checking shortly", ", ".join(pending)
            )
            stop.wait(timeout=poll_interval_seconds)

    def list_workloads(self, kind: WorkloadKind) -> list[Workload]:
        return [
            workload
            for workload in self.workload_informers[kind].items()
            if self.namespace_allowed(workload.namespace)
        ]

    def list_resources(self, kind: ResourceKind) -> list[WatchedResource]:
        return [
            resource
            for resource in self.resource_informers[kind].items()
            if self.namespace_allowed(resource.namespace)
        ]

    def get_resource(self, identity: ResourceIdentity) -> WatchedResource | None:
        if not self.namespace_allowed(identity.namespace):
            return None
        return self.resource_informers[identity.kind].get(identity.namespace, identity.name)

    def get_workload(self, identity: WorkloadIdentity) -> Workload | None:
        workload = self.workload_informers[identity.kind].get(identity.namespace, identity.name)
        if workload is None or not self.namespace_allowed(workload.namespace):
            return None
        return workload
