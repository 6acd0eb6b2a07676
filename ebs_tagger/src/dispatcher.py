from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from ebs_tagger.src.metrics import METRICS

ALL_NAMESPACES = ""

EventHandler = Callable[[str, Any], object]


def parse_namespaces(raw: str | None) -> list[str]:
    """Split a comma-separated namespace list; empty means all namespaces."""
    namespaces = [part.strip() for part in (raw or "").split(",") if part.strip()]
    return list(dict.fromkeys(namespaces)) or [ALL_NAMESPACES]


class NamespaceWatcher:
    """List-then-watch loop for the PVCs of a single namespace.

    1. Lists PVCs (retrying with jittered exponential backoff) and hands
       every item to the handler as an ``ADDED`` event, so claims annotated
       while no replica was leading are reconciled.
    2. Streams watch events from the list's ``resourceVersion`` and calls
       the handler synchronously, in delivery order.
    3. On ``410 Gone`` re-lists, reconciles the fresh snapshot and resumes.
    4. ``401`` / ``403`` are RBAC errors: the loop logs and exits instead of
       retrying forever.

    The stream timeout bounds how long a stop request can go unnoticed;
    :meth:`request_stop` additionally stops the open watch.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        handler: EventHandler,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.handler = handler
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def label(self) -> str:
        return self.namespace or "<all>"

    @property
    def _list_fn(self) -> Callable[..., Any]:
        if self.namespace == ALL_NAMESPACES:
            return self.core_api.list_persistent_volume_claim_for_all_namespaces
        return self.core_api.list_namespaced_persistent_volume_claim

    def _watch_kwargs(self) -> dict[str, Any]:
        if self.namespace == ALL_NAMESPACES:
            return {}
        return {"namespace": self.namespace}

    def _list(self) -> Any:
        return self._list_fn(**self._watch_kwargs())

    def request_stop(self) -> None:
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _dispatch(self, event_type: str, obj: Any) -> None:
        try:
            self.handler(event_type, obj)
        except Exception:
            name = getattr(getattr(obj, "metadata", None), "name", None)
            self.logger.exception(
                "Unhandled error processing %s event for PVC %s in %s",
                event_type,
                name,
                self.label,
            )

    def _reconcile_listing(self, listing: Any) -> str | None:
        for item in getattr(listing, "items", None) or []:
            if self._stop.is_set():
                break
            self._dispatch("ADDED", item)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _is_access_denied(self, exc: ApiException, during: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s for namespace %s (status=%s). "
            "Check RBAC for persistentvolumeclaims and persistentvolumes.",
            during,
            self.label,
            exc.status,
        )
        METRICS.watch_errors_total.labels(namespace=self.label).inc()
        return True

    def _initial_list(self) -> tuple[bool, str | None]:
        backoff_seconds = 1
        while not self._stop.is_set():
            try:
                listing = self._list()
                return True, self._reconcile_listing(listing)
            except ApiException as exc:
                if self._is_access_denied(exc, "initial list"):
                    return False, None
                self.logger.exception("Initial PVC list failed for namespace %s", self.label)
                METRICS.watch_errors_total.labels(namespace=self.label).inc()
            except Exception:
                self.logger.exception("Unexpected error listing PVCs in namespace %s", self.label)
                METRICS.watch_errors_total.labels(namespace=self.label).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            self._stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False, None

    def run(self) -> None:
        ok, resource_version = self._initial_list()
        if not ok:
            return
        self.logger.info(
            "Watching PVCs in namespace %s from resourceVersion %s", self.label, resource_version
        )

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(namespace=self.label).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._watch_kwargs(),
                )
                for event in stream:
                    if self._stop.is_set():
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version
                    self._dispatch(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Watch resource version expired for namespace %s, re-listing", self.label
                    )
                    try:
                        resource_version = self._reconcile_listing(self._list())
                    except ApiException as relist_exc:
                        if self._is_access_denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list after 410 in %s", self.label)
                        METRICS.watch_errors_total.labels(namespace=self.label).inc()
                        resource_version = None
                    continue
                if self._is_access_denied(exc, "watch"):
                    return
                self.logger.exception("Kubernetes API watch error in namespace %s", self.label)
                METRICS.watch_errors_total.labels(namespace=self.label).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error in namespace %s", self.label)
                METRICS.watch_errors_total.labels(namespace=self.label).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.logger.info("Stopped watching PVCs in namespace %s", self.label)


class WatchDispatcher:
    """Runs one :class:`NamespaceWatcher` thread per namespace.

    Events within a namespace are handled in order on that namespace's
    thread; namespaces proceed concurrently.  :meth:`stop` returns only after
    every thread has exited (or the timeout elapsed), which is what lets the
    leadership coordinator release the lease safely.

    ``cancel_event`` is cleared on every start and set on every stop; hand it
    to long-running handler work (the EC2 tag client) so a stop also aborts
    pending retries.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespaces: Iterable[str],
        handler: EventHandler,
        watch_timeout_seconds: int = 30,
        watcher_factory: Callable[..., NamespaceWatcher] = NamespaceWatcher,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespaces = list(namespaces) or [ALL_NAMESPACES]
        self.handler = handler
        self.watch_timeout_seconds = watch_timeout_seconds
        self.watcher_factory = watcher_factory
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._watchers: list[NamespaceWatcher] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    @property
    def running(self) -> bool:
        with self._lock:
            return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        with self._lock:
            if any(thread.is_alive() for thread in self._threads):
                raise RuntimeError("namespace watchers are already running")
            self.cancel_event.clear()
            self._watchers = []
            self._threads = []
            for namespace in self.namespaces:
                watcher = self.watcher_factory(
                    core_api=self.core_api,
                    namespace=namespace,
                    handler=self.handler,
                    watch_timeout_seconds=self.watch_timeout_seconds,
                )
                thread = threading.Thread(
                    target=watcher.run,
                    name=f"pvc-watch-{namespace or 'all'}",
                    daemon=True,
                )
                self._watchers.append(watcher)
                self._threads.append(thread)
            for thread in self._threads:
                thread.start()
        self.logger.info(
            "Started PVC watchers for namespaces: %s",
            ", ".join(ns or "<all>" for ns in self.namespaces),
        )

    def stop(self, timeout: float | None = None) -> bool:
        """Cancel every watcher and join its thread.

        Returns False when some thread is still alive after *timeout*
        seconds (shared across all threads).
        """
        self.cancel_event.set()
        with self._lock:
            watchers = list(self._watchers)
            threads = list(self._threads)
        for watcher in watchers:
            watcher.request_stop()

        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(timeout=remaining)

        alive = [thread.name for thread in threads if thread.is_alive()]
        if alive:
            self.logger.error("PVC watchers did not stop in time: %s", ", ".join(alive))
            return False
        with self._lock:
            self._watchers = []
            self._threads = []
        return True
