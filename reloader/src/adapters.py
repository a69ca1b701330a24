"""Per-kind access to workloads that own a pod template.

Every workload is handled as a JSON-shaped dict with camelCase keys, the same
shape the API server returns for custom resources. Typed client results are
normalized into that shape on listing so that the scanner and the update
strategies never branch on kind.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from kubernetes.client import ApiClient, ApiException
from urllib3.exceptions import HTTPError

from reloader.src.kube import KubeClients

LOGGER = logging.getLogger(__name__)

WorkloadItem = dict[str, Any]


class UpdateError(RuntimeError):
    """Raised when the API server rejects a workload update."""

    def __init__(self, kind: str, namespace: str, name: str, cause: Exception) -> None:
        super().__init__(
            f"update of {kind} {namespace}/{name} failed: {getattr(cause, 'reason', None) or cause}"
        )
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.cause = cause


@lru_cache(maxsize=1)
def _serializer() -> ApiClient:
    return ApiClient()


def to_item(obj: Any) -> WorkloadItem:
    """Return *obj* as a camelCase dict, serializing typed client models."""
    if isinstance(obj, dict):
        return obj
    return _serializer().sanitize_for_serialization(obj)


def utc_now_rfc3339() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ResourceAdapter(ABC):
    """Capability set for one workload kind.

    Subclasses supply listing and updating; reading annotations, containers
    and volumes is shared because every kind nests a standard pod template.
    """

    kind: str = ""

    def __init__(self, clients: KubeClients) -> None:
        self.clients = clients

    @abstractmethod
    def _list(self, namespace: str) -> list[Any]: ...

    @abstractmethod
    def _update(self, namespace: str, item: WorkloadItem) -> None: ...

    def list_items(self, namespace: str) -> list[WorkloadItem]:
        """List every workload of this kind in *namespace*.

        API and transport errors degrade to an empty list; the next change
        event for the namespace will list again.
        """
        try:
            return [to_item(obj) for obj in self._list(namespace)]
        except (ApiException, HTTPError):
            LOGGER.exception("Failed to list %s in namespace %s", self.kind, namespace)
            return []

    def apply_update(self, namespace: str, item: WorkloadItem) -> None:
        try:
            self._update(namespace, item)
        except (ApiException, HTTPError) as exc:
            raise UpdateError(self.kind, namespace, self.name(item), exc) from exc

    @staticmethod
    def name(item: WorkloadItem) -> str:
        return (item.get("metadata") or {}).get("name") or ""

    def identity(self, item: WorkloadItem) -> tuple[str, str, str]:
        metadata = item.get("metadata") or {}
        return self.kind, metadata.get("namespace") or "", metadata.get("name") or ""

    def annotations(self, item: WorkloadItem) -> dict[str, str]:
        return (item.get("metadata") or {}).get("annotations") or {}

    def pod_template(self, item: WorkloadItem) -> dict[str, Any] | None:
        spec = item.get("spec")
        if not isinstance(spec, dict):
            return None
        template = spec.get("template")
        return template if isinstance(template, dict) else None

    def template_annotations(self, item: WorkloadItem) -> dict[str, str]:
        """Return the pod template's annotations without creating them."""
        template = self.pod_template(item) or {}
        return (template.get("metadata") or {}).get("annotations") or {}

    def pod_annotations(self, item: WorkloadItem) -> dict[str, str] | None:
        """Return the pod template's annotations as a writable dict.

        The dict is created in place when absent so strategies can stamp it.
        Returns None only when the workload has no pod template at all.
        """
        template = self.pod_template(item)
        if template is None:
            return None
        metadata = template.setdefault("metadata", {})
        if metadata.get("annotations") is None:
            metadata["annotations"] = {}
        return metadata["annotations"]

    def _pod_spec_list(self, item: WorkloadItem, key: str) -> list[dict[str, Any]]:
        template = self.pod_template(item) or {}
        pod_spec = template.get("spec") or {}
        return pod_spec.get(key) or []

    def containers(self, item: WorkloadItem) -> list[dict[str, Any]]:
        return self._pod_spec_list(item, "containers")

    def init_containers(self, item: WorkloadItem) -> list[dict[str, Any]]:
        return self._pod_spec_list(item, "initContainers")

    def volumes(self, item: WorkloadItem) -> list[dict[str, Any]]:
        return self._pod_spec_list(item, "volumes")


class DeploymentAdapter(ResourceAdapter):
    kind = "Deployment"

    def _list(self, namespace: str) -> list[Any]:
        return self.clients.apps.list_namespaced_deployment(namespace=namespace).items or []

    def _update(self, namespace: str, item: WorkloadItem) -> None:
        self.clients.apps.replace_namespaced_deployment(
            name=self.name(item), namespace=namespace, body=item
        )


class DaemonSetAdapter(ResourceAdapter):
    kind = "DaemonSet"

    def _list(self, namespace: str) -> list[Any]:
        return self.clients.apps.list_namespaced_daemon_set(namespace=namespace).items or []

    def _update(self, namespace: str, item: WorkloadItem) -> None:
        self.clients.apps.replace_namespaced_daemon_set(
            name=self.name(item), namespace=namespace, body=item
        )


class StatefulSetAdapter(ResourceAdapter):
    kind = "StatefulSet"

    def _list(self, namespace: str) -> list[Any]:
        return self.clients.apps.list_namespaced_stateful_set(namespace=namespace).items or []

    def _update(self, namespace: str, item: WorkloadItem) -> None:
        self.clients.apps.replace_namespaced_stateful_set(
            name=self.name(item), namespace=namespace, body=item
        )


class CronJobAdapter(ResourceAdapter):
    """CronJobs are reloaded by instantiating a Job from their job template.

    The CronJob itself is never modified; the mutated template only shapes the
    one-off Job, the same way ``kubectl create job --from=cronjob/<name>`` does.
    """

    kind = "CronJob"
    INSTANTIATE_ANNOTATION = "cronjob.kubernetes.io/instantiate"

    def _list(self, namespace: str) -> list[Any]:
        return self.clients.batch.list_namespaced_cron_job(namespace=namespace).items or []

    def pod_template(self, item: WorkloadItem) -> dict[str, Any] | None:
        job_spec = ((item.get("spec") or {}).get("jobTemplate") or {}).get("spec")
        if not isinstance(job_spec, dict):
            return None
        template = job_spec.get("template")
        return template if isinstance(template, dict) else None

    def _update(self, namespace: str, item: WorkloadItem) -> None:
        metadata = item.get("metadata") or {}
        cron_job_name = self.name(item)
        job_template = (item.get("spec") or {}).get("jobTemplate") or {}
        template_metadata = job_template.get("metadata") or {}

        annotations = dict(template_metadata.get("annotations") or {})
        annotations[self.INSTANTIATE_ANNOTATION] = "manual"
        job_metadata: dict[str, Any] = {
            "generateName": f"{cron_job_name}-",
            "namespace": namespace,
            "annotations": annotations,
            "labels": dict(template_metadata.get("labels") or {}),
        }
        if metadata.get("uid"):
            job_metadata["ownerReferences"] = [
                {
                    "apiVersion": "batch/v1",
                    "kind": "CronJob",
                    "name": cron_job_name,
                    "uid": metadata["uid"],
                    "controller": True,
                }
            ]

        body = {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": job_metadata,
            "spec": job_template.get("spec") or {},
        }
        self.clients.batch.create_namespaced_job(namespace=namespace, body=body)


class CustomResourceAdapter(ResourceAdapter):
    group = ""
    version = ""
    plural = ""

    def _list(self, namespace: str) -> list[Any]:
        result = self.clients.custom.list_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=namespace,
            plural=self.plural,
        )
        return (result or {}).get("items") or []

    def _update(self, namespace: str, item: WorkloadItem) -> None:
        self.clients.custom.replace_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=namespace,
            plural=self.plural,
            name=self.name(item),
            body=item,
        )


class DeploymentConfigAdapter(CustomResourceAdapter):
    kind = "DeploymentConfig"
    group = "apps.openshift.io"
    version = "v1"
    plural = "deploymentconfigs"


class RolloutAdapter(CustomResourceAdapter):
    """Argo Rollouts.

    A Rollout annotated with ``<rollout-strategy>: restart`` is restarted
    through ``spec.restartAt`` instead of having its template replaced.
    """

    kind = "Rollout"
    group = "argoproj.io"
    version = "v1alpha1"
    plural = "rollouts"
    RESTART_STRATEGY = "restart"

    def __init__(self, clients: KubeClients, rollout_strategy_annotation: str) -> None:
        super().__init__(clients)
        self.rollout_strategy_annotation = rollout_strategy_annotation

    def _update(self, namespace: str, item: WorkloadItem) -> None:
        strategy = self.annotations(item).get(self.rollout_strategy_annotation, "")
        if strategy.strip().lower() != self.RESTART_STRATEGY:
            super()._update(namespace, item)
            return

        self.clients.custom.patch_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=namespace,
            plural=self.plural,
            name=self.name(item),
            body={"spec": {"restartAt": utc_now_rfc3339()}},
        )


class AdapterRegistry:
    """Ordered set of adapters active for this cluster."""

    def __init__(self, adapters: list[ResourceAdapter]) -> None:
        self._adapters = tuple(adapters)

    def __iter__(self) -> Iterator[ResourceAdapter]:
        return iter(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)

    def kinds(self) -> list[str]:
        return [adapter.kind for adapter in self._adapters]

    @classmethod
    def from_flags(
        cls,
        clients: KubeClients,
        *,
        openshift: bool,
        argo_rollouts: bool,
        rollout_strategy_annotation: str,
    ) -> AdapterRegistry:
        adapters: list[ResourceAdapter] = [
            DeploymentAdapter(clients),
            CronJobAdapter(clients),
            DaemonSetAdapter(clients),
            StatefulSetAdapter(clients),
        ]
        if openshift:
            adapters.append(DeploymentConfigAdapter(clients))
        if argo_rollouts:
            adapters.append(RolloutAdapter(clients, rollout_strategy_annotation))
        return cls(adapters)
