from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from reloader.src.adapters import UpdateError
from reloader.src.change import ChangeConfig, content_hash, normalize_data
from reloader.src.metrics import METRICS
from reloader.src.options import CONFIGMAP_KIND, SECRET_KIND, ReloaderOptions

LOGGER = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30


class ResourceWatcher:
    """Watches ConfigMaps or Secrets and hands real content changes to a handler.

    Keeps the content hash of every resource it has seen, keyed by
    ``(namespace, name)``, and only reports a change when that hash moves.
    Metadata-only edits and the ADDED events replayed on every (re)list are
    therefore ignored.
    """

    def __init__(
        self,
        kind: str,
        list_namespaced: Callable[..., Any],
        list_all_namespaces: Callable[..., Any],
        on_change: Callable[[ChangeConfig], None],
        options: ReloaderOptions,
    ) -> None:
        if kind not in {CONFIGMAP_KIND, SECRET_KIND}:
            raise ValueError(f"unsupported resource kind: {kind!r}")
        self.kind = kind
        self.list_namespaced = list_namespaced
        self.list_all_namespaces = list_all_namespaces
        self.on_change = on_change
        self.options = options
        self.ready = threading.Event()
        self._hashes: dict[tuple[str, str], str] = {}
        self._seeded = False
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @classmethod
    def for_kind(
        cls,
        kind: str,
        core_api: Any,
        on_change: Callable[[ChangeConfig], None],
        options: ReloaderOptions,
    ) -> ResourceWatcher:
        if kind == CONFIGMAP_KIND:
            return cls(
                kind,
                core_api.list_namespaced_config_map,
                core_api.list_config_map_for_all_namespaces,
                on_change,
                options,
            )
        return cls(
            kind,
            core_api.list_namespaced_secret,
            core_api.list_secret_for_all_namespaces,
            on_change,
            options,
        )

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        if self.options.resource_label_selector:
            kwargs["label_selector"] = self.options.resource_label_selector
        if self.options.namespace:
            kwargs["namespace"] = self.options.namespace
            return self.list_namespaced, kwargs
        return self.list_all_namespaces, kwargs

    def _hash_resource(self, obj: Any) -> str:
        data = normalize_data(getattr(obj, "data", None))
        binary_data = None
        if self.kind == CONFIGMAP_KIND:
            binary_data = normalize_data(getattr(obj, "binary_data", None))
        return content_hash(data, binary_data)

    def _seed_from_list(self, listing: Any) -> None:
        for obj in getattr(listing, "items", None) or []:
            metadata = getattr(obj, "metadata", None)
            if metadata is None or not metadata.name:
                continue
            self._hashes[(metadata.namespace or "", metadata.name)] = self._hash_resource(obj)

    def _reconcile_from_list(self, listing: Any) -> None:
        """Report changes missed while the watch was down, then forget deleted resources."""
        seen: set[tuple[str, str]] = set()
        for obj in getattr(listing, "items", None) or []:
            metadata = getattr(obj, "metadata", None)
            if metadata is None or not metadata.name:
                continue
            key = (metadata.namespace or "", metadata.name)
            seen.add(key)
            self.handle_event("MODIFIED" if key in self._hashes else "ADDED", obj)
        for key in set(self._hashes) - seen:
            del self._hashes[key]

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def handle_event(self, event_type: str, obj: Any) -> ChangeConfig | None:
        """Process one watch event and return the change it produced, if any."""
        metadata = getattr(obj, "metadata", None)
        if metadata is None or not metadata.name:
            return None

        key = (metadata.namespace or "", metadata.name)
        if event_type == "DELETED":
            self._hashes.pop(key, None)
            return None
        if event_type not in {"ADDED", "MODIFIED"}:
            return None

        current_hash = self._hash_resource(obj)
        previous_hash = self._hashes.get(key)
        self._hashes[key] = current_hash

        if previous_hash is None and event_type == "ADDED" and not self.options.reload_on_create:
            LOGGER.debug("Ignoring ADDED %s %s/%s with no prior baseline", self.kind, *key)
            return None
        if previous_hash == current_hash:
            LOGGER.debug("Ignoring unchanged data for %s %s/%s", self.kind, *key)
            return None

        change = ChangeConfig.for_resource(
            kind=self.kind,
            name=metadata.name,
            namespace=metadata.namespace or "",
            content_hash=current_hash,
            keys=self.options.annotations,
            resource_annotations=metadata.annotations or {},
        )
        LOGGER.info("Detected change in %s %s/%s", self.kind, change.namespace, change.resource_name)
        try:
            self.on_change(change)
        except UpdateError:
            # The next change to this resource is delivered again.
            LOGGER.exception("Reload for %s %s/%s failed", self.kind, *key)
        return change

    def _initial_list(self, stop: threading.Event) -> str | None:
        list_func, kwargs = self._list_call()
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = list_func(**kwargs)
                if self._seeded:
                    self._reconcile_from_list(initial)
                else:
                    self._seed_from_list(initial)
                    self._seeded = True
                self.ready.set()
                return getattr(getattr(initial, "metadata", None), "resource_version", None)
            except ApiException as exc:
                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Kubernetes API access denied listing %ss (status=%s). "
                        "Check RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    raise
                LOGGER.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
        return None

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch until shutdown.

        ``410 Gone`` re-lists, reports data that changed in the gap and resumes
        from the fresh resourceVersion.
        ``401``/``403`` end the loop. Other errors back off with jitter, capped
        at 30 s.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        try:
            resource_version = self._initial_list(stop)
        except ApiException:
            self.ready.clear()
            return

        list_func, kwargs = self._list_call()
        backoff_seconds = 1
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                for event in watcher.stream(
                    list_func,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **kwargs,
                ):
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    LOGGER.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        resource_version = self._initial_list(stop)
                    except ApiException:
                        self.ready.clear()
                        return
                    continue
                if exc.status in {401, 403}:
                    LOGGER.error("Kubernetes API watch on %ss denied (status=%s)", self.kind, exc.status)
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self.ready.clear()
                    return
                LOGGER.exception("Kubernetes API watch error for %ss", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            except Exception:
                LOGGER.exception("Unexpected watch error for %ss", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
