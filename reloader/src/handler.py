from __future__ import annotations

import logging
import re
import threading
from collections.abc import Mapping

from reloader.src.adapters import AdapterRegistry, ResourceAdapter, UpdateError, WorkloadItem
from reloader.src.change import ChangeConfig
from reloader.src.delayed import DelayedBatch, DelayedUpgradeCoalescer, TimerFactory
from reloader.src.options import ReloaderOptions, parse_annotation_bool
from reloader.src.reporter import OutcomeReporter
from reloader.src.strategies import ReloadStrategy, Result, aggregate

LOGGER = logging.getLogger(__name__)


def is_resource_excluded(resource_name: str, excluded_resources: str) -> bool:
    """Return True if *resource_name* appears in a comma-separated exclude list."""
    if not excluded_resources:
        return False
    return any(part.strip() == resource_name for part in excluded_resources.split(","))


def matches_reload_annotation(annotation_value: str, resource_name: str) -> list[str]:
    """Return the tokens of a manual reload annotation that match *resource_name*.

    Each comma-separated token is a regular expression anchored to the whole
    name, so ``app`` matches ``app`` but not ``app-config``.
    """
    matched: list[str] = []
    for token in annotation_value.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            if re.fullmatch(token, resource_name):
                matched.append(token)
        except re.error:
            LOGGER.warning("Ignoring invalid reload pattern %r", token)
    return matched


class ReloadHandler:
    """Decides which workloads a ConfigMap or Secret change reloads, and reloads them.

    For every active adapter the handler lists the workloads in the change's
    namespace and evaluates each one. Evaluation order per config:

    1. Exclusion list for the resource kind (skip silently).
    2. Delayed-upgrade annotation (hand off to the coalescer).
    3. Auto reload (typed, generic, or global "reload all").
    4. Manual reload annotation, anchored regex per token.
    5. Search annotation paired with a match annotation on the resource.

    The first ``Updated`` result wins; a workload touched by several configs
    is applied once.
    """

    def __init__(
        self,
        options: ReloaderOptions,
        adapters: AdapterRegistry,
        strategy: ReloadStrategy,
        reporter: OutcomeReporter,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.options = options
        self.adapters = adapters
        self.strategy = strategy
        self.reporter = reporter
        self.coalescer = DelayedUpgradeCoalescer(
            flush=self._perform_delayed_upgrade,
            delay_seconds=options.delayed_upgrade_seconds,
            timer_factory=timer_factory,
        )

    def handle(self, config: ChangeConfig) -> None:
        """Run a rolling upgrade for *config* across every active workload kind.

        The first :class:`UpdateError` stops the remaining kinds and is re-raised.
        """
        for adapter in self.adapters:
            try:
                self.perform_action(adapter, config)
            except UpdateError as exc:
                LOGGER.error(
                    "Rolling upgrade for '%s' failed with error = %s", config.resource_name, exc
                )
                raise

    def perform_action(self, adapter: ResourceAdapter, config: ChangeConfig) -> None:
        for item in adapter.list_items(config.namespace):
            self.perform_action_on_single_item(adapter, item, [config])

    def _reload_annotations(
        self, adapter: ResourceAdapter, item: WorkloadItem, config: ChangeConfig
    ) -> Mapping[str, str]:
        """Read reload annotations from the workload, else from its pod template."""
        keys = self.options.annotations
        annotations = adapter.annotations(item)
        lookup = (config.annotation_key, keys.auto, config.typed_auto_annotation_key, keys.search)
        if any(key in annotations for key in lookup):
            return annotations
        return adapter.template_annotations(item)

    def perform_action_on_single_item(
        self,
        adapter: ResourceAdapter,
        item: WorkloadItem,
        configs: list[ChangeConfig],
        *,
        allow_delay: bool = True,
    ) -> Result:
        keys = self.options.annotations
        workload_annotations = adapter.annotations(item)
        results: list[Result] = []
        updated_config: ChangeConfig | None = None

        for config in configs:
            excluded = workload_annotations.get(keys.exclude_for(config.kind), "")
            if is_resource_excluded(config.resource_name, excluded):
                continue

            if allow_delay and keys.delayed_upgrade in workload_annotations:
                LOGGER.info(
                    "Found delayed upgrade annotation for '%s' in namespace '%s'",
                    adapter.name(item),
                    config.namespace,
                )
                self.coalescer.submit(adapter, item, config)
                continue

            LOGGER.info(
                "Checking for changes in '%s' of type '%s' in namespace '%s'",
                config.resource_name,
                config.type_postfix,
                config.namespace,
            )
            result = self.evaluate(adapter, item, config, self._reload_annotations(adapter, item, config))
            LOGGER.debug("Result for %s after checking annotations is %s", config.resource_name, result)
            results.append(result)
            if result is Result.UPDATED:
                updated_config = config

        if aggregate(results) is not Result.UPDATED or updated_config is None:
            return Result.NOT_UPDATED

        try:
            adapter.apply_update(updated_config.namespace, item)
        except UpdateError as exc:
            self.reporter.record_failure(adapter, item, updated_config, exc)
            raise
        self.reporter.record_success(adapter, item, updated_config)
        return Result.UPDATED

    def evaluate(
        self,
        adapter: ResourceAdapter,
        item: WorkloadItem,
        config: ChangeConfig,
        annotations: Mapping[str, str],
    ) -> Result:
        """Apply the strategy according to the workload's annotations, without updating."""
        keys = self.options.annotations
        manual_value = annotations.get(config.annotation_key, "")
        search_value = annotations.get(keys.search, "")
        auto_value = annotations.get(keys.auto, "")
        typed_auto_value = annotations.get(config.typed_auto_annotation_key, "")

        result = Result.NOT_UPDATED
        reload_all = not auto_value and not typed_auto_value and self.options.auto_reload_all
        if parse_annotation_bool(auto_value) or parse_annotation_bool(typed_auto_value) or reload_all:
            result = self.strategy(adapter, item, config, True)
            LOGGER.info(
                "Auto reload result for '%s' of type '%s' in namespace '%s' is %s",
                config.resource_name,
                config.type_postfix,
                config.namespace,
                result,
            )

        if result is not Result.UPDATED and manual_value:
            for _ in matches_reload_annotation(manual_value, config.resource_name):
                result = self.strategy(adapter, item, config, False)
                if result is Result.UPDATED:
                    break

        if result is not Result.UPDATED and search_value == "true":
            LOGGER.info(
                "Auto search enabled for '%s' of type '%s' in namespace '%s'",
                config.resource_name,
                config.type_postfix,
                config.namespace,
            )
            if config.resource_annotations.get(keys.match) == "true":
                result = self.strategy(adapter, item, config, True)

        return result

    def _perform_delayed_upgrade(self, batch: DelayedBatch, configs: list[ChangeConfig]) -> None:
        """Re-resolve the live workload and evaluate every queued config at once."""
        adapter = batch.adapter
        item = next(
            (i for i in adapter.list_items(batch.namespace) if adapter.name(i) == batch.name),
            None,
        )
        if item is None:
            LOGGER.warning(
                "Workload '%s' disappeared before its delayed upgrade; dropping %d config(s)",
                batch.item_id,
                len(configs),
            )
            return

        try:
            result = self.perform_action_on_single_item(adapter, item, configs, allow_delay=False)
        except UpdateError as exc:
            LOGGER.error("Delayed update for '%s' failed with error %s", batch.item_id, exc)
            return
        LOGGER.info("Delayed update for '%s' finished with result %s", batch.item_id, result)
