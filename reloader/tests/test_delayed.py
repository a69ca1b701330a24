from __future__ import annotations

import threading
import time
from typing import Any

import pytest
from prometheus_client import REGISTRY

from reloader.src.adapters import AdapterRegistry, DeploymentAdapter
from reloader.src.change import ChangeConfig
from reloader.src.delayed import BatchState, DelayedBatch, DelayedUpgradeCoalescer, SubmitOutcome
from reloader.src.handler import ReloadHandler
from reloader.src.options import SECRET_KIND, ReloaderOptions
from reloader.src.reporter import OutcomeReporter
from reloader.src.strategies import EnvVarsStrategy
from reloader.tests.fakes import (
    FakeWorkloadApi,
    TimerRecorder,
    make_change,
    make_clients,
    make_workload,
)

DELAYED = "reloader.stakater.com/delayed-upgrade"
SECRET_RELOAD = "secret.reloader.stakater.com/reload"
CONFIGMAP_RELOAD = "configmap.reloader.stakater.com/reload"
EXCLUDE = "configmaps.exclude.reloader.stakater.com/reload"
WORKLOAD_ID = "Deployment/default/web"


def _make_handler(
    items: list[dict[str, Any]], options: ReloaderOptions | None = None
) -> tuple[ReloadHandler, FakeWorkloadApi, TimerRecorder]:
    apps = FakeWorkloadApi(items)
    timers = TimerRecorder()
    options = options or ReloaderOptions()
    handler = ReloadHandler(
        options=options,
        adapters=AdapterRegistry([DeploymentAdapter(make_clients(apps=apps))]),
        strategy=EnvVarsStrategy(),
        reporter=OutcomeReporter(options, dispatch=lambda fn: fn()),
        timer_factory=timers,
    )
    return handler, apps, timers


def _env_of(body: dict[str, Any]) -> dict[str, str]:
    container = body["spec"]["template"]["spec"]["containers"][0]
    return {var["name"]: var["value"] for var in container.get("env") or []}


def _secret(name: str, content_hash: str = "abc123") -> ChangeConfig:
    return make_change(name, kind=SECRET_KIND, content_hash=content_hash)


# ---------------------------------------------------------------------------
# Through the handler
# ---------------------------------------------------------------------------


def test_two_secrets_in_the_window_produce_one_update() -> None:
    workload = make_workload(annotations={DELAYED: "true", SECRET_RELOAD: "db-secret,tls-secret"})
    handler, apps, timers = _make_handler([workload])

    handler.handle(_secret("db-secret", "h-db"))
    handler.handle(_secret("tls-secret", "h-tls"))

    assert apps.updates == []
    assert len(timers.timers) == 1
    assert timers.timers[0].interval == 10
    assert timers.timers[0].daemon is True
    assert timers.timers[0].started is True
    assert handler.coalescer.pending() == {WORKLOAD_ID: ["db-secret", "tls-secret"]}

    timers.timers[0].fire()

    assert len(apps.updates) == 1
    assert _env_of(apps.updates[0][2]) == {
        "STAKATER_DB_SECRET_SECRET": "h-db",
        "STAKATER_TLS_SECRET_SECRET": "h-tls",
    }
    assert handler.coalescer.pending() == {}
    assert handler.coalescer.state_of(WORKLOAD_ID) is None


def test_repeated_change_to_same_resource_keeps_latest_hash() -> None:
    workload = make_workload(annotations={DELAYED: "true", CONFIGMAP_RELOAD: "app-config"})
    handler, apps, timers = _make_handler([workload])

    handler.handle(make_change(content_hash="h1"))
    handler.handle(make_change(content_hash="h2"))
    timers.timers[0].fire()

    assert len(timers.timers) == 1
    assert len(apps.updates) == 1
    assert _env_of(apps.updates[0][2]) == {"STAKATER_APP_CONFIG_CONFIGMAP": "h2"}


def test_change_after_flush_opens_new_batch() -> None:
    workload = make_workload(annotations={DELAYED: "true", CONFIGMAP_RELOAD: "app-config"})
    handler, apps, timers = _make_handler([workload])

    handler.handle(make_change(content_hash="h1"))
    timers.timers[0].fire()
    handler.handle(make_change(content_hash="h2"))
    timers.timers[1].fire()

    assert len(timers.timers) == 2
    assert [_env_of(body)["STAKATER_APP_CONFIG_CONFIGMAP"] for _, _, body in apps.updates] == [
        "h1",
        "h2",
    ]


def test_delay_is_configurable() -> None:
    workload = make_workload(annotations={DELAYED: "true", CONFIGMAP_RELOAD: "app-config"})
    handler, _, timers = _make_handler([workload], options=ReloaderOptions(delayed_upgrade_seconds=3))

    handler.handle(make_change())

    assert timers.timers[0].interval == 3


def test_excluded_resource_is_never_queued() -> None:
    workload = make_workload(
        annotations={DELAYED: "true", CONFIGMAP_RELOAD: "app-config", EXCLUDE: "app-config"}
    )
    handler, _, timers = _make_handler([workload])

    handler.handle(make_change())

    assert timers.timers == []
    assert handler.coalescer.pending() == {}


def test_flush_skips_workload_that_disappeared() -> None:
    workload = make_workload(annotations={DELAYED: "true", CONFIGMAP_RELOAD: "app-config"})
    handler, apps, timers = _make_handler([workload])

    handler.handle(make_change())
    apps.items.clear()
    timers.timers[0].fire()

    assert apps.updates == []
    assert handler.coalescer.pending() == {}


def test_flush_update_failure_is_logged_not_raised() -> None:
    workload = make_workload(annotations={DELAYED: "true", CONFIGMAP_RELOAD: "app-config"})
    handler, apps, timers = _make_handler([workload])
    apps.fail_update = True

    handler.handle(make_change())
    timers.timers[0].fire()

    assert apps.updates == []
    assert handler.coalescer.state_of(WORKLOAD_ID) is None


def test_flush_does_not_requeue_into_delay() -> None:
    workload = make_workload(annotations={DELAYED: "true", CONFIGMAP_RELOAD: "app-config"})
    handler, apps, timers = _make_handler([workload])

    handler.handle(make_change())
    timers.timers[0].fire()

    assert len(timers.timers) == 1
    assert len(apps.updates) == 1


# ---------------------------------------------------------------------------
# Coalescer state machine
# ---------------------------------------------------------------------------


class TestCoalescer:
    def setup_method(self) -> None:
        self.adapter = DeploymentAdapter(make_clients())
        self.item = make_workload()
        self.flushed: list[tuple[DelayedBatch, list[ChangeConfig]]] = []
        self.timers = TimerRecorder()
        self.coalescer = DelayedUpgradeCoalescer(
            flush=lambda batch, configs: self.flushed.append((batch, configs)),
            delay_seconds=5,
            timer_factory=self.timers,
            clock=lambda: 100.0,
        )

    def test_submit_outcomes(self) -> None:
        assert self.coalescer.submit(self.adapter, self.item, make_change("a")) is SubmitOutcome.CREATED
        assert self.coalescer.submit(self.adapter, self.item, make_change("b")) is SubmitOutcome.MERGED
        assert self.coalescer.submit(self.adapter, self.item, make_change("a", content_hash="x")) is (
            SubmitOutcome.REPLACED
        )
        assert self.coalescer.state_of(WORKLOAD_ID) is BatchState.PENDING
        assert len(self.timers.timers) == 1

    def test_fire_passes_snapshot_and_clears_batch(self) -> None:
        self.coalescer.submit(self.adapter, self.item, make_change("a"))
        self.coalescer.submit(self.adapter, self.item, make_change("b"))

        self.timers.timers[0].fire()

        batch, configs = self.flushed[0]
        assert batch.item_id == WORKLOAD_ID
        assert batch.fire_at == 105.0
        assert batch.state is BatchState.DONE
        assert sorted(c.resource_name for c in configs) == ["a", "b"]
        assert self.coalescer.pending() == {}

    def test_workloads_are_batched_separately(self) -> None:
        other = make_workload(name="api")

        self.coalescer.submit(self.adapter, self.item, make_change("a"))
        self.coalescer.submit(self.adapter, other, make_change("a"))

        assert len(self.timers.timers) == 2
        assert self.coalescer.pending() == {
            "Deployment/default/api": ["a"],
            WORKLOAD_ID: ["a"],
        }

    def test_second_fire_for_finished_batch_is_ignored(self) -> None:
        self.coalescer.submit(self.adapter, self.item, make_change("a"))

        self.timers.timers[0].fire()
        self.timers.timers[0].fire()

        assert len(self.flushed) == 1

    def test_negative_delay_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="delay_seconds"):
            DelayedUpgradeCoalescer(flush=lambda batch, configs: None, delay_seconds=-1)


def test_change_arriving_while_firing_is_dropped() -> None:
    adapter = DeploymentAdapter(make_clients())
    item = make_workload()
    timers = TimerRecorder()
    outcomes: list[SubmitOutcome] = []
    states: list[BatchState | None] = []
    coalescer: DelayedUpgradeCoalescer

    def flush(batch: DelayedBatch, configs: list[ChangeConfig]) -> None:
        states.append(coalescer.state_of(batch.item_id))
        outcomes.append(coalescer.submit(adapter, item, make_change("late")))

    coalescer = DelayedUpgradeCoalescer(flush=flush, timer_factory=timers)
    dropped_before = REGISTRY.get_sample_value("reloader_delayed_changes_dropped_total") or 0.0

    coalescer.submit(adapter, item, make_change("early"))
    timers.timers[0].fire()

    assert states == [BatchState.FIRING]
    assert outcomes == [SubmitOutcome.DROPPED]
    assert len(timers.timers) == 1
    assert coalescer.pending() == {}
    assert REGISTRY.get_sample_value("reloader_delayed_changes_dropped_total") == dropped_before + 1


def test_crashing_flush_still_clears_batch() -> None:
    adapter = DeploymentAdapter(make_clients())
    timers = TimerRecorder()

    def flush(batch: DelayedBatch, configs: list[ChangeConfig]) -> None:
        raise RuntimeError("boom")

    coalescer = DelayedUpgradeCoalescer(flush=flush, timer_factory=timers)
    coalescer.submit(adapter, make_workload(), make_change())

    timers.timers[0].fire()

    assert coalescer.pending() == {}
    assert REGISTRY.get_sample_value("reloader_delayed_upgrades_pending") == 0.0


def test_concurrent_submits_and_fire_do_not_deadlock() -> None:
    adapter = DeploymentAdapter(make_clients())
    item = make_workload()
    timers = TimerRecorder()
    flushed: list[list[str]] = []
    flush_started = threading.Event()

    def flush(batch: DelayedBatch, configs: list[ChangeConfig]) -> None:
        flush_started.set()
        time.sleep(0.05)
        flushed.append(sorted(c.resource_name for c in configs))

    coalescer = DelayedUpgradeCoalescer(flush=flush, timer_factory=timers)
    coalescer.submit(adapter, item, make_change("seed"))

    outcomes: list[SubmitOutcome] = []
    errors: list[BaseException] = []
    outcomes_lock = threading.Lock()
    start = threading.Barrier(9)

    def submitter(index: int) -> None:
        try:
            start.wait(timeout=5)
            for round_number in range(20):
                outcome = coalescer.submit(adapter, item, make_change(f"cm-{index}-{round_number}"))
                with outcomes_lock:
                    outcomes.append(outcome)
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    def firer() -> None:
        start.wait(timeout=5)
        timers.timers[0].fire()

    threads = [threading.Thread(target=submitter, args=(i,)) for i in range(8)]
    threads.append(threading.Thread(target=firer))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert not any(thread.is_alive() for thread in threads)
    assert errors == []
    assert flush_started.is_set()
    assert len(outcomes) == 160
    assert set(outcomes) <= {
        SubmitOutcome.CREATED,
        SubmitOutcome.MERGED,
        SubmitOutcome.DROPPED,
    }
    # At most one flush is in flight; a new batch may open once the first one finished.
    assert len(flushed) == 1
    assert "seed" in flushed[0]
    assert len(timers.timers) == 1 + outcomes.count(SubmitOutcome.CREATED)
    for timer in timers.timers[1:]:
        timer.fire()
    assert coalescer.pending() == {}


def test_timer_start_failure_discards_the_batch() -> None:
    adapter = DeploymentAdapter(make_clients())
    item = make_workload()
    timers = TimerRecorder()
    attempts = 0

    def flaky_timer_factory(interval: float, function: Any) -> Any:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("can't start new thread")
        return timers(interval, function)

    coalescer = DelayedUpgradeCoalescer(flush=lambda batch, configs: None, timer_factory=flaky_timer_factory)

    with pytest.raises(RuntimeError, match="new thread"):
        coalescer.submit(adapter, item, make_change("a"))

    assert coalescer.pending() == {}
    assert coalescer.submit(adapter, item, make_change("b")) is SubmitOutcome.CREATED
    assert timers.timers[0].started is True
