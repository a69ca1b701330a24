from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

OPENSHIFT_APPS_GROUP = "apps.openshift.io"


@dataclass(frozen=True)
class KubeClients:
    """API clients for every group the reloader reads or writes."""

    core: Any
    apps: Any
    batch: Any
    custom: Any
    apis: Any = None


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return API clients using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        batch=client.BatchV1Api(),
        custom=client.CustomObjectsApi(),
        apis=client.ApisApi(),
    )


def detect_openshift(clients: KubeClients) -> bool:
    """Return True when the API server serves the OpenShift ``apps`` group."""
    if clients.apis is None:
        return False
    try:
        group_list = clients.apis.get_api_versions()
    except ApiException as exc:
        LOGGER.warning("Could not list API groups for OpenShift detection: %s", exc.reason)
        return False
    groups = getattr(group_list, "groups", None) or []
    found = any(getattr(group, "name", None) == OPENSHIFT_APPS_GROUP for group in groups)
    if found:
        LOGGER.info("Detected OpenShift API group %s", OPENSHIFT_APPS_GROUP)
    return found
