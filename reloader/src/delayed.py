from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from reloader.src.adapters import ResourceAdapter, WorkloadItem
from reloader.src.change import ChangeConfig
from reloader.src.metrics import METRICS, ReloaderMetrics

LOGGER = logging.getLogger(__name__)

DEFAULT_DELAY_SECONDS = 10


class BatchState(enum.Enum):
    PENDING = "Pending"
    FIRING = "Firing"
    DONE = "Done"


class SubmitOutcome(enum.Enum):
    CREATED = "created"
    MERGED = "merged"
    REPLACED = "replaced"
    DROPPED = "dropped"


@dataclass
class DelayedBatch:
    """Changes queued for one workload until its debounce window closes.

    ``pending_configs`` is keyed by resource name, so a second change to the
    same ConfigMap or Secret replaces the first and only the latest content
    hash is applied.
    """

    item_id: str
    namespace: str
    name: str
    adapter: ResourceAdapter
    fire_at: float
    pending_configs: dict[str, ChangeConfig] = field(default_factory=dict)
    state: BatchState = BatchState.PENDING


FlushFunc = Callable[[DelayedBatch, list[ChangeConfig]], Any]
TimerFactory = Callable[[float, Callable[[], None]], Any]


def workload_id(adapter: ResourceAdapter, item: WorkloadItem, namespace: str) -> str:
    kind, item_namespace, name = adapter.identity(item)
    return f"{kind}/{item_namespace or namespace}/{name}"


class DelayedUpgradeCoalescer:
    """Debounces changes per workload into a single update.

    Key internal state:
        ``_batches``
            Maps workload identity (``<kind>/<namespace>/<name>``) to its open
            :class:`DelayedBatch`. Every read-modify-write of this map and of a
            batch's fields happens under ``_lock``; the flush itself (listing
            and updating through the API) runs outside it on the timer thread
            after the pending configs were snapshotted.

    A batch owns exactly one timer, started when the batch is created, so at
    most one flush per workload can be in flight. Changes that arrive while a
    batch is firing are dropped with a warning.
    """

    def __init__(
        self,
        flush: FlushFunc,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        timer_factory: TimerFactory = threading.Timer,
        metrics: ReloaderMetrics = METRICS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        self._flush = flush
        self.delay_seconds = delay_seconds
        self._timer_factory = timer_factory
        self._metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()
        self._batches: dict[str, DelayedBatch] = {}

    def submit(
        self,
        adapter: ResourceAdapter,
        item: WorkloadItem,
        config: ChangeConfig,
    ) -> SubmitOutcome:
        """Queue *config* for the workload, creating its batch on first use."""
        item_id = workload_id(adapter, item, config.namespace)
        with self._lock:
            batch = self._batches.get(item_id)
            if batch is None:
                batch = DelayedBatch(
                    item_id=item_id,
                    namespace=config.namespace,
                    name=adapter.name(item),
                    adapter=adapter,
                    fire_at=self._clock() + self.delay_seconds,
                    pending_configs={config.resource_name: config},
                )
                self._batches[item_id] = batch
                self._metrics.delayed_upgrades_pending.set(len(self._batches))
                outcome = SubmitOutcome.CREATED
            elif batch.state is not BatchState.PENDING:
                outcome = SubmitOutcome.DROPPED
            elif config.resource_name in batch.pending_configs:
                batch.pending_configs[config.resource_name] = config
                outcome = SubmitOutcome.REPLACED
            else:
                batch.pending_configs[config.resource_name] = config
                outcome = SubmitOutcome.MERGED

        if outcome is SubmitOutcome.CREATED:
            LOGGER.info(
                "Creating delayed upgrade for '%s' for config '%s', firing in %ss",
                item_id,
                config.resource_name,
                self.delay_seconds,
            )
            try:
                timer = self._timer_factory(self.delay_seconds, lambda: self._fire(item_id))
                timer.daemon = True
                timer.start()
            except Exception:
                # Every pending batch must own a started timer.
                with self._lock:
                    if self._batches.get(item_id) is batch:
                        del self._batches[item_id]
                    self._metrics.delayed_upgrades_pending.set(len(self._batches))
                raise
        elif outcome is SubmitOutcome.DROPPED:
            self._metrics.delayed_changes_dropped_total.inc()
            LOGGER.warning(
                "Delayed upgrade for '%s' is already in progress; dropping change to '%s'",
                item_id,
                config.resource_name,
            )
        elif outcome is SubmitOutcome.REPLACED:
            LOGGER.info(
                "Config '%s' is already part of the delayed upgrade for '%s'; keeping latest hash",
                config.resource_name,
                item_id,
            )
        else:
            LOGGER.info("Added config '%s' to the delayed upgrade for '%s'", config.resource_name, item_id)
        return outcome

    def _fire(self, item_id: str) -> None:
        with self._lock:
            batch = self._batches.get(item_id)
            if batch is None or batch.state is not BatchState.PENDING:
                LOGGER.error("Delayed upgrade for '%s' not found", item_id)
                return
            batch.state = BatchState.FIRING
            configs = list(batch.pending_configs.values())

        LOGGER.info("Timer fired for delayed upgrade for '%s' with %d config(s)", item_id, len(configs))
        try:
            self._flush(batch, configs)
        except Exception:
            LOGGER.exception("Delayed upgrade for '%s' crashed", item_id)
        finally:
            with self._lock:
                batch.state = BatchState.DONE
                if self._batches.get(item_id) is batch:
                    del self._batches[item_id]
                self._metrics.delayed_upgrades_pending.set(len(self._batches))

    def pending(self) -> dict[str, list[str]]:
        """Return a snapshot of open batches and the resource names they hold."""
        with self._lock:
            return {
                item_id: sorted(batch.pending_configs)
                for item_id, batch in self._batches.items()
            }

    def state_of(self, item_id: str) -> BatchState | None:
        with self._lock:
            batch = self._batches.get(item_id)
            return batch.state if batch is not None else None
