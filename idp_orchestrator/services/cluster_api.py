"""Kubernetes API access used for idempotency (existence) checks."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from ..config import KubernetesConfig
from ..orchestration.errors import EngineUnavailable, StepExecutionError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomResourceLocator:
    group: str
    version: str
    plural: str
    namespace: Optional[str] = None


RESOURCE_LOCATORS: Dict[str, CustomResourceLocator] = {
    "ManagedCluster": CustomResourceLocator(
        "containerservice.azure.com", "v1api20240402preview", "managedclusters", "azure-system"
    ),
    "AKSNodeClass": CustomResourceLocator("karpenter.azure.com", "v1alpha2", "aksnodeclasses"),
    "NodePool": CustomResourceLocator("karpenter.sh", "v1", "nodepools"),
    "AKSCluster": CustomResourceLocator("kro.run", "v1alpha1", "aksclusters", "default"),
}


class KubernetesClients:
    """Lazily loads kube configuration and hands out shared API clients."""

    def __init__(self, settings: KubernetesConfig) -> None:
        self._settings = settings
        self._lock = threading.Lock()
        self._api_client: Optional[client.ApiClient] = None

    def _ensure_api_client(self) -> client.ApiClient:
        if self._api_client is not None:
            return self._api_client
        with self._lock:
            if self._api_client is not None:
                return self._api_client
            try:
                if self._settings.in_cluster:
                    config.load_incluster_config()
                else:
                    config.load_kube_config(
                        config_file=self._settings.kubeconfig_path,
                        context=self._settings.context,
                    )
            except ConfigException as exc:
                LOGGER.warning("Kubernetes configuration unavailable", extra={"error": str(exc)})
                raise EngineUnavailable(f"kubernetes configuration unavailable: {exc}") from exc
            self._api_client = client.ApiClient()
            LOGGER.info(
                "Kubernetes clients initialised",
                extra={"in_cluster": self._settings.in_cluster, "context": self._settings.context},
            )
            return self._api_client

    def core(self) -> client.CoreV1Api:
        return client.CoreV1Api(self._ensure_api_client())

    def custom(self) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(self._ensure_api_client())


def translate_api_error(exc: Exception, action: str) -> Exception:
    """Classify a client failure as transient (5xx, transport) or permanent."""

    if isinstance(exc, ApiException) and exc.status is not None and exc.status < 500:
        return StepExecutionError(f"{action} rejected: {exc.status} {exc.reason}")
    return EngineUnavailable(f"{action} failed: {exc}")


class KubernetesClusterApi:
    """``exists(kind, name)`` against the live API server."""

    def __init__(self, clients: KubernetesClients) -> None:
        self._clients = clients

    def exists(self, kind: str, name: str) -> bool:
        try:
            if kind == "Namespace":
                self._clients.core().read_namespace(name)
                return True
            locator = RESOURCE_LOCATORS.get(kind)
            if locator is None:
                raise ValueError(f"no locator registered for kind {kind!r}")
            self._get_custom(locator, name)
            return True
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise translate_api_error(exc, f"existence check for {kind}/{name}") from exc
        except HTTPError as exc:
            raise translate_api_error(exc, f"existence check for {kind}/{name}") from exc

    def _get_custom(self, locator: CustomResourceLocator, name: str) -> Dict[str, Any]:
        custom = self._clients.custom()
        if locator.namespace:
            return custom.get_namespaced_custom_object(
                locator.group, locator.version, locator.namespace, locator.plural, name
            )
        return custom.get_cluster_custom_object(locator.group, locator.version, locator.plural, name)


__all__ = [
    "CustomResourceLocator",
    "RESOURCE_LOCATORS",
    "KubernetesClients",
    "KubernetesClusterApi",
    "translate_api_error",
]
