from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

ENV_VARS_RELOAD_STRATEGY = "env-vars"
ANNOTATIONS_RELOAD_STRATEGY = "annotations"

CONFIGMAP_KIND = "ConfigMap"
SECRET_KIND = "Secret"


class ConfigError(RuntimeError):
    """Raised when the reloader configuration is invalid."""


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_annotation_bool(value: str | None) -> bool:
    """Parse an annotation value the way the upstream Go controllers do.

    Only ``1``, ``t``, ``T``, ``TRUE``, ``true`` and ``True`` are truthy; any
    other value, including unparsable text, is false.
    """
    return value in {"1", "t", "T", "TRUE", "true", "True"}


def _env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _split_list(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class AnnotationKeys:
    """Annotation names read from workloads and from ConfigMaps/Secrets."""

    configmap_reload: str = "configmap.reloader.stakater.com/reload"
    secret_reload: str = "secret.reloader.stakater.com/reload"
    auto: str = "reloader.stakater.com/auto"
    configmap_auto: str = "configmap.reloader.stakater.com/auto"
    secret_auto: str = "secret.reloader.stakater.com/auto"
    search: str = "reloader.stakater.com/search"
    match: str = "reloader.stakater.com/match"
    configmap_exclude: str = "configmaps.exclude.reloader.stakater.com/reload"
    secret_exclude: str = "secrets.exclude.reloader.stakater.com/reload"
    delayed_upgrade: str = "reloader.stakater.com/delayed-upgrade"
    rollout_strategy: str = "reloader.stakater.com/rollout-strategy"

    def reload_for(self, kind: str) -> str:
        return self.configmap_reload if kind == CONFIGMAP_KIND else self.secret_reload

    def typed_auto_for(self, kind: str) -> str:
        return self.configmap_auto if kind == CONFIGMAP_KIND else self.secret_auto

    def exclude_for(self, kind: str) -> str:
        return self.configmap_exclude if kind == CONFIGMAP_KIND else self.secret_exclude

    @classmethod
    def from_env(cls, values: Mapping[str, str]) -> AnnotationKeys:
        defaults = cls()
        overrides = {
            "configmap_reload": "CONFIGMAP_UPDATE_ON_CHANGE_ANNOTATION",
            "secret_reload": "SECRET_UPDATE_ON_CHANGE_ANNOTATION",
            "auto": "RELOADER_AUTO_ANNOTATION",
            "configmap_auto": "CONFIGMAP_AUTO_ANNOTATION",
            "secret_auto": "SECRET_AUTO_ANNOTATION",
            "search": "AUTO_SEARCH_ANNOTATION",
            "match": "SEARCH_MATCH_ANNOTATION",
            "configmap_exclude": "CONFIGMAP_EXCLUDE_ANNOTATION",
            "secret_exclude": "SECRET_EXCLUDE_ANNOTATION",
            "delayed_upgrade": "DELAYED_UPGRADE_ANNOTATION",
            "rollout_strategy": "ROLLOUT_STRATEGY_ANNOTATION",
        }
        kwargs = {
            field_name: values.get(env_name) or getattr(defaults, field_name)
            for field_name, env_name in overrides.items()
        }
        return cls(**kwargs)


@dataclass(frozen=True)
class ReloaderOptions:
    """Immutable process-wide options loaded once at startup.

    Attributes:
        reload_strategy:   ``env-vars`` or ``annotations``.
        auto_reload_all:   Reload workloads that carry no auto annotation at all.
        delayed_upgrade_seconds: Debounce window for workloads carrying the
                           delayed-upgrade annotation.
        is_openshift:      ``None`` means "detect from the API server".
    """

    annotations: AnnotationKeys = AnnotationKeys()
    reload_strategy: str = ENV_VARS_RELOAD_STRATEGY
    auto_reload_all: bool = False
    reload_on_create: bool = False
    namespace: str = ""
    resource_label_selector: str = ""
    resources_to_ignore: tuple[str, ...] = ()
    delayed_upgrade_seconds: int = 10
    is_openshift: bool | None = None
    is_argo_rollouts: bool = False
    webhook_url: str = ""
    alert_on_reload: bool = False
    alert_webhook_url: str = ""
    alert_sink: str = "raw"
    alert_additional_info: str = ""
    health_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"

    def watches(self, kind: str) -> bool:
        ignored = {name.lower() for name in self.resources_to_ignore}
        if kind == CONFIGMAP_KIND:
            return "configmaps" not in ignored
        return "secrets" not in ignored

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ReloaderOptions:
        """Load options from the environment, raising :class:`ConfigError` on bad input."""
        values = env if env is not None else os.environ

        reload_strategy = values.get("RELOAD_STRATEGY", ENV_VARS_RELOAD_STRATEGY).strip()
        if reload_strategy not in {ENV_VARS_RELOAD_STRATEGY, ANNOTATIONS_RELOAD_STRATEGY}:
            raise ConfigError(
                f"RELOAD_STRATEGY must be {ENV_VARS_RELOAD_STRATEGY!r} or "
                f"{ANNOTATIONS_RELOAD_STRATEGY!r}, got: {reload_strategy!r}"
            )

        resources_to_ignore = _split_list(values.get("RESOURCES_TO_IGNORE"))
        for resource in resources_to_ignore:
            if resource.lower() not in {"configmaps", "secrets"}:
                raise ConfigError(
                    f"RESOURCES_TO_IGNORE only accepts 'configMaps' or 'secrets', got: {resource!r}"
                )
        if len({r.lower() for r in resources_to_ignore}) > 1:
            raise ConfigError("RESOURCES_TO_IGNORE cannot ignore both configMaps and secrets")

        alert_sink = values.get("ALERT_SINK", "raw").strip().lower() or "raw"
        if alert_sink not in {"slack", "teams", "gchat", "raw"}:
            raise ConfigError(f"ALERT_SINK must be slack, teams, gchat or raw, got: {alert_sink!r}")

        log_format = values.get("LOG_FORMAT", "json").strip().lower() or "json"
        if log_format not in {"json", "text"}:
            raise ConfigError(f"LOG_FORMAT must be 'json' or 'text', got: {log_format!r}")

        raw_openshift = values.get("IS_OPENSHIFT")
        is_openshift = None if raw_openshift is None or not raw_openshift.strip() else parse_bool(raw_openshift)

        health_port = _env_int(values, "HEALTH_PORT", 9090, minimum=0)
        if health_port > 65535:
            raise ConfigError(f"HEALTH_PORT must be <= 65535, got: {health_port}")

        return cls(
            annotations=AnnotationKeys.from_env(values),
            reload_strategy=reload_strategy,
            auto_reload_all=parse_bool(values.get("AUTO_RELOAD_ALL")),
            reload_on_create=parse_bool(values.get("RELOAD_ON_CREATE")),
            namespace=values.get("KUBERNETES_NAMESPACE", "").strip(),
            resource_label_selector=values.get("RESOURCE_LABEL_SELECTOR", "").strip(),
            resources_to_ignore=resources_to_ignore,
            delayed_upgrade_seconds=_env_int(values, "DELAYED_UPGRADE_SECONDS", 10, minimum=0),
            is_openshift=is_openshift,
            is_argo_rollouts=parse_bool(values.get("IS_ARGO_ROLLOUTS")),
            webhook_url=values.get("WEBHOOK_URL", "").strip(),
            alert_on_reload=parse_bool(values.get("ALERT_ON_RELOAD")),
            alert_webhook_url=values.get("ALERT_WEBHOOK_URL", "").strip(),
            alert_sink=alert_sink,
            alert_additional_info=values.get("ALERT_ADDITIONAL_INFO", "").strip(),
            health_port=health_port,
            log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            log_format=log_format,
        )
