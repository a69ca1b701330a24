from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock, patch

from kubernetes.client import ApiException
from prometheus_client import REGISTRY

from reloader.src.adapters import DeploymentAdapter
from reloader.src.alerts import UPGRADE_WEBHOOK_BODY, DeliveryError
from reloader.src.options import ReloaderOptions
from reloader.src.reporter import OutcomeReporter
from reloader.tests.fakes import make_change, make_clients, make_workload

ADAPTER = DeploymentAdapter(make_clients())


def _by_namespace(success: str, namespace: str) -> float:
    return (
        REGISTRY.get_sample_value(
            "reloader_reload_executed_by_namespace_total",
            {"success": success, "namespace": namespace},
        )
        or 0.0
    )


def _reporter(options: ReloaderOptions, core_api: Any = None) -> OutcomeReporter:
    return OutcomeReporter(options, core_api=core_api, dispatch=lambda fn: fn())


def test_success_counts_per_namespace() -> None:
    reporter = _reporter(ReloaderOptions())
    before = _by_namespace("true", "payments")

    reporter.record_success(ADAPTER, make_workload(namespace="payments"), make_change(namespace="payments"))

    assert _by_namespace("true", "payments") == before + 1


def test_failure_counts_and_records_warning_event() -> None:
    core_api = MagicMock()
    reporter = _reporter(ReloaderOptions(), core_api=core_api)
    before = _by_namespace("false", "default")

    reporter.record_failure(ADAPTER, make_workload(), make_change(), RuntimeError("conflict"))

    assert _by_namespace("false", "default") == before + 1
    kwargs = core_api.create_namespaced_event.call_args.kwargs
    assert kwargs["namespace"] == "default"
    assert kwargs["body"].type == "Warning"
    assert "conflict" in kwargs["body"].message
    assert kwargs["body"].involved_object.uid == "uid-web"
    assert kwargs["body"].source.component == "reloader"


def test_event_failure_is_swallowed() -> None:
    core_api = MagicMock()
    core_api.create_namespaced_event.side_effect = ApiException(status=403, reason="Forbidden")
    reporter = _reporter(ReloaderOptions(), core_api=core_api)

    reporter.record_success(ADAPTER, make_workload(), make_change())

    core_api.create_namespaced_event.assert_called_once()


def test_upgrade_webhook_is_posted_on_success() -> None:
    reporter = _reporter(ReloaderOptions(webhook_url="http://hooks.local/upgrade"))

    with patch("reloader.src.alerts.post_json", return_value="ok") as mock_post:
        reporter.record_success(ADAPTER, make_workload(), make_change())

    mock_post.assert_called_once_with("http://hooks.local/upgrade", UPGRADE_WEBHOOK_BODY)


def test_no_webhooks_without_configuration() -> None:
    reporter = _reporter(ReloaderOptions())

    with patch("reloader.src.alerts.post_json") as mock_post:
        reporter.record_success(ADAPTER, make_workload(), make_change())

    mock_post.assert_not_called()


def test_alert_is_sent_in_sink_format() -> None:
    options = ReloaderOptions(
        alert_on_reload=True,
        alert_webhook_url="http://alerts.local/hook",
        alert_sink="teams",
        alert_additional_info="cluster=prod",
    )
    reporter = _reporter(options)

    with patch("reloader.src.alerts.post_json", return_value="") as mock_post:
        reporter.record_success(ADAPTER, make_workload(), make_change())

    url, payload = mock_post.call_args.args
    assert url == "http://alerts.local/hook"
    assert "**app-config**" in payload["text"]
    assert payload["text"].endswith(": cluster=prod")


def test_alert_requires_alert_on_reload() -> None:
    reporter = _reporter(ReloaderOptions(alert_webhook_url="http://alerts.local/hook"))

    with patch("reloader.src.alerts.post_json") as mock_post:
        reporter.record_success(ADAPTER, make_workload(), make_change())

    mock_post.assert_not_called()


def test_delivery_errors_do_not_propagate() -> None:
    reporter = _reporter(ReloaderOptions(webhook_url="http://hooks.local/upgrade"))

    with patch("reloader.src.alerts.post_json", side_effect=DeliveryError("down")) as mock_post:
        reporter.record_success(ADAPTER, make_workload(), make_change())

    mock_post.assert_called_once()


def test_webhooks_are_dispatched_off_the_caller() -> None:
    dispatched: list[Any] = []
    reporter = OutcomeReporter(
        ReloaderOptions(webhook_url="http://hooks.local/upgrade"), dispatch=dispatched.append
    )

    with patch("reloader.src.alerts.post_json") as mock_post:
        reporter.record_success(ADAPTER, make_workload(), make_change())
        mock_post.assert_not_called()
        dispatched[0]()

    mock_post.assert_called_once()
