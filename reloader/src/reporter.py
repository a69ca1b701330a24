from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException, CoreV1Event, V1EventSource, V1ObjectMeta, V1ObjectReference

from reloader.src import alerts
from reloader.src.adapters import ResourceAdapter, WorkloadItem
from reloader.src.change import ChangeConfig
from reloader.src.metrics import METRICS, ReloaderMetrics
from reloader.src.options import ReloaderOptions

LOGGER = logging.getLogger(__name__)

EVENT_SOURCE_COMPONENT = "reloader"
REASON_RELOADED = "Reloaded"
REASON_RELOAD_FAIL = "ReloadFail"


def _spawn_daemon(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, daemon=True).start()


class OutcomeReporter:
    """Records reload outcomes as metrics, Kubernetes Events and webhooks.

    Nothing here raises: Event and webhook failures are logged and dropped so
    that reporting can never change the outcome of a reload.
    """

    def __init__(
        self,
        options: ReloaderOptions,
        core_api: Any = None,
        metrics: ReloaderMetrics = METRICS,
        dispatch: Callable[[Callable[[], None]], None] = _spawn_daemon,
    ) -> None:
        self.options = options
        self.core_api = core_api
        self.metrics = metrics
        self.dispatch = dispatch

    def _count(self, success: bool, namespace: str) -> None:
        label = "true" if success else "false"
        self.metrics.reloaded_total.labels(success=label).inc()
        self.metrics.reloaded_by_namespace_total.labels(success=label, namespace=namespace).inc()

    def record_success(
        self, adapter: ResourceAdapter, item: WorkloadItem, config: ChangeConfig
    ) -> None:
        workload = adapter.name(item)
        message = (
            f"Changes detected in '{config.resource_name}' of type '{config.type_postfix}' "
            f"in namespace '{config.namespace}', Updated '{workload}' of type "
            f"'{adapter.kind}' in namespace '{config.namespace}'"
        )
        LOGGER.info(message)
        self._count(True, config.namespace)
        self._record_event(adapter, item, config.namespace, "Normal", REASON_RELOADED, message)

        if self.options.webhook_url:
            url = self.options.webhook_url
            self.dispatch(lambda: self._deliver("upgrade webhook", alerts.send_upgrade_webhook, url))

        if self.options.alert_on_reload and self.options.alert_webhook_url:
            alert = (
                f"Reloader detected changes in *{config.resource_name}* of type "
                f"*{config.type_postfix}* in namespace *{config.namespace}*. Hence reloaded "
                f"*{workload}* of type *{adapter.kind}* in namespace *{config.namespace}*"
            )
            self.dispatch(
                lambda: self._deliver(
                    "reload alert",
                    alerts.send_alert,
                    self.options.alert_webhook_url,
                    self.options.alert_sink,
                    alert,
                    self.options.alert_additional_info,
                )
            )

    def record_failure(
        self,
        adapter: ResourceAdapter,
        item: WorkloadItem,
        config: ChangeConfig,
        error: Exception,
    ) -> None:
        message = (
            f"Update for '{adapter.name(item)}' of type '{adapter.kind}' in namespace "
            f"'{config.namespace}' failed with error {error}"
        )
        LOGGER.error(message)
        self._count(False, config.namespace)
        self._record_event(adapter, item, config.namespace, "Warning", REASON_RELOAD_FAIL, message)

    @staticmethod
    def _deliver(what: str, send: Callable[..., None], *args: str) -> None:
        try:
            send(*args)
        except alerts.DeliveryError as exc:
            LOGGER.error("Failed to send %s: %s", what, exc)

    def _record_event(
        self,
        adapter: ResourceAdapter,
        item: WorkloadItem,
        namespace: str,
        event_type: str,
        reason: str,
        message: str,
    ) -> None:
        if self.core_api is None:
            return
        metadata = item.get("metadata") or {}
        name = adapter.name(item)
        now = datetime.now(UTC)
        event = CoreV1Event(
            metadata=V1ObjectMeta(generate_name=f"{name}.", namespace=namespace),
            involved_object=V1ObjectReference(
                api_version=item.get("apiVersion"),
                kind=adapter.kind,
                name=name,
                namespace=namespace,
                uid=metadata.get("uid"),
                resource_version=metadata.get("resourceVersion"),
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=EVENT_SOURCE_COMPONENT),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=namespace, body=event)
        except ApiException as exc:
            LOGGER.warning("Failed to record %s event for %s/%s: %s", reason, namespace, name, exc.reason)
