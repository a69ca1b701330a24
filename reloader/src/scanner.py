"""Locate the container in a workload that consumes a ConfigMap or Secret."""

from __future__ import annotations

from typing import Any

from reloader.src.adapters import ResourceAdapter, WorkloadItem
from reloader.src.change import ChangeConfig
from reloader.src.options import CONFIGMAP_KIND

Container = dict[str, Any]


def _source_name(source: Any, kind: str) -> str | None:
    if not isinstance(source, dict):
        return None
    if kind == CONFIGMAP_KIND:
        ref = source.get("configMap")
        return ref.get("name") if isinstance(ref, dict) else None
    ref = source.get("secret")
    if not isinstance(ref, dict):
        return None
    # Volume sources name secrets with ``secretName``; projections use ``name``.
    return ref.get("secretName") or ref.get("name")


def volume_mount_name(volumes: list[dict[str, Any]], kind: str, resource_name: str) -> str:
    """Return the name of the volume that mounts *resource_name*, or ``""``."""
    for volume in volumes:
        if _source_name(volume, kind) == resource_name:
            return volume.get("name") or ""

        projected = volume.get("projected")
        if isinstance(projected, dict):
            for source in projected.get("sources") or []:
                if _source_name(source, kind) == resource_name:
                    return volume.get("name") or ""
    return ""


def container_with_volume_mount(
    containers: list[Container], mount_name: str
) -> Container | None:
    for container in containers:
        for mount in container.get("volumeMounts") or []:
            if mount.get("name") == mount_name:
                return container
    return None


def container_with_env_reference(
    containers: list[Container], resource_name: str, kind: str
) -> Container | None:
    key_ref = "configMapKeyRef" if kind == CONFIGMAP_KIND else "secretKeyRef"
    from_ref = "configMapRef" if kind == CONFIGMAP_KIND else "secretRef"

    for container in containers:
        for env in container.get("env") or []:
            value_from = env.get("valueFrom") or {}
            ref = value_from.get(key_ref)
            if isinstance(ref, dict) and ref.get("name") == resource_name:
                return container

        for env_from in container.get("envFrom") or []:
            ref = env_from.get(from_ref)
            if isinstance(ref, dict) and ref.get("name") == resource_name:
                return container
    return None


def find_consuming_container(
    adapter: ResourceAdapter,
    item: WorkloadItem,
    config: ChangeConfig,
    auto_reload: bool,
) -> Container | None:
    """Find the container to anchor a reload on.

    Volume mounts are checked before env references. A resource consumed only
    by an init container resolves to the first regular container, because only
    the pod template drives a rollout. When nothing references the resource,
    an explicit manual annotation (``auto_reload=False``) still falls back to
    the first container, while auto reload returns None.
    """
    containers = adapter.containers(item)
    init_containers = adapter.init_containers(item)
    if not containers:
        return None

    mount_name = volume_mount_name(adapter.volumes(item), config.kind, config.resource_name)
    if mount_name:
        container = container_with_volume_mount(containers, mount_name)
        if container is not None:
            return container
        if container_with_volume_mount(init_containers, mount_name) is not None:
            return containers[0]

    container = container_with_env_reference(containers, config.resource_name, config.kind)
    if container is not None:
        return container
    if container_with_env_reference(init_containers, config.resource_name, config.kind) is not None:
        return containers[0]

    if not auto_reload:
        return containers[0]
    return None
