"""Interchangeable ways of forcing a workload's pod template to change."""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod

from reloader.src.adapters import ResourceAdapter, WorkloadItem
from reloader.src.change import ChangeConfig, ReloadSource, env_var_name
from reloader.src.options import ANNOTATIONS_RELOAD_STRATEGY, ENV_VARS_RELOAD_STRATEGY
from reloader.src.scanner import find_consuming_container

LOGGER = logging.getLogger(__name__)

RELOADER_ANNOTATION_PREFIX = "reloader.stakater.com"
LAST_RELOADED_FROM_ANNOTATION = f"{RELOADER_ANNOTATION_PREFIX}/last-reloaded-from"


class Result(enum.Enum):
    UPDATED = "Updated"
    NOT_UPDATED = "NotUpdated"
    NO_CONTAINER_FOUND = "NoContainerFound"
    NO_ENV_VAR_FOUND = "NoEnvVarFound"

    def __str__(self) -> str:
        return self.value


def aggregate(results: list[Result]) -> Result:
    """Combine per-config results for one workload; ``UPDATED`` dominates."""
    if Result.UPDATED in results:
        return Result.UPDATED
    return Result.NOT_UPDATED


class ReloadStrategy(ABC):
    """Mutates a workload in memory so that applying it rolls the pods."""

    name: str = ""

    @abstractmethod
    def __call__(
        self,
        adapter: ResourceAdapter,
        item: WorkloadItem,
        config: ChangeConfig,
        auto_reload: bool,
    ) -> Result: ...


class AnnotationsStrategy(ReloadStrategy):
    """Stamp the pod template with the resource that caused the reload.

    Only the latest source is kept under one key so the annotation never grows.
    """

    name = ANNOTATIONS_RELOAD_STRATEGY

    def __call__(
        self,
        adapter: ResourceAdapter,
        item: WorkloadItem,
        config: ChangeConfig,
        auto_reload: bool,
    ) -> Result:
        container = find_consuming_container(adapter, item, config, auto_reload)
        if container is None:
            return Result.NO_CONTAINER_FOUND

        source = ReloadSource.from_config(config, [container.get("name") or ""])
        try:
            value = source.to_json()
        except (TypeError, ValueError):
            LOGGER.exception("Failed to create reloaded annotation for %s", config.resource_name)
            return Result.NOT_UPDATED

        pod_annotations = adapter.pod_annotations(item)
        if pod_annotations is None:
            return Result.NOT_UPDATED
        pod_annotations[LAST_RELOADED_FROM_ANNOTATION] = value
        return Result.UPDATED


class EnvVarsStrategy(ReloadStrategy):
    """Inject ``STAKATER_<NAME>_<KIND>=<content hash>`` into the consuming container."""

    name = ENV_VARS_RELOAD_STRATEGY

    def __call__(
        self,
        adapter: ResourceAdapter,
        item: WorkloadItem,
        config: ChangeConfig,
        auto_reload: bool,
    ) -> Result:
        container = find_consuming_container(adapter, item, config, auto_reload)
        if container is None:
            return Result.NO_CONTAINER_FOUND

        env_name = env_var_name(config)
        result = self._update_existing(adapter.containers(item), env_name, config.content_hash)
        if result is Result.NO_ENV_VAR_FOUND:
            env = container.get("env")
            if env is None:
                env = container["env"] = []
            env.append({"name": env_name, "value": config.content_hash})
            result = Result.UPDATED
        return result

    @staticmethod
    def _update_existing(containers: list[dict], env_name: str, value: str) -> Result:
        for container in containers:
            for env in container.get("env") or []:
                if env.get("name") != env_name:
                    continue
                if env.get("value") != value:
                    env["value"] = value
                    return Result.UPDATED
                return Result.NOT_UPDATED
        return Result.NO_ENV_VAR_FOUND


def strategy_from_name(name: str) -> ReloadStrategy:
    if name == ANNOTATIONS_RELOAD_STRATEGY:
        return AnnotationsStrategy()
    if name == ENV_VARS_RELOAD_STRATEGY:
        return EnvVarsStrategy()
    raise ValueError(f"unknown reload strategy: {name!r}")
