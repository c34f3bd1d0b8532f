"""Argo Workflows adapter for the workflow engine interface."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

import yaml
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from ...config import ArgoConfig
from ...services.cluster_api import KubernetesClients, translate_api_error
from ..models import ManifestSet
from .base import EngineObservation, ResourceAction

LOGGER = logging.getLogger(__name__)

ARGO_GROUP = "argoproj.io"
ARGO_VERSION = "v1alpha1"
ARGO_PLURAL = "workflows"
ENTRYPOINT = "main"

# Argo resource template action per engine action.
RESOURCE_ACTIONS = {ResourceAction.APPLY: "create", ResourceAction.DELETE: "delete"}


def _template_name(manifest_key: str, action: ResourceAction) -> str:
    return f"{action.value}-{manifest_key}"


def build_workflow(
    manifests: ManifestSet,
    settings: ArgoConfig,
    labels: Dict[str, str],
    action: ResourceAction = ResourceAction.APPLY,
) -> dict:
    """One ``resource`` template per manifest, chained sequentially from ``main``."""

    templates: List[Dict[str, Any]] = [
        {
            "name": ENTRYPOINT,
            "steps": [[{"name": key, "template": _template_name(key, action)}] for key in manifests],
        }
    ]
    for key, document in manifests.items():
        templates.append(
            {
                "name": _template_name(key, action),
                "resource": {
                    "action": RESOURCE_ACTIONS[action],
                    "manifest": yaml.safe_dump(document, sort_keys=False),
                },
            }
        )
    return {
        "apiVersion": f"{ARGO_GROUP}/{ARGO_VERSION}",
        "kind": "Workflow",
        "metadata": {
            "generateName": settings.generate_name_prefix,
            "namespace": settings.namespace,
            "labels": labels,
        },
        "spec": {
            "serviceAccountName": settings.service_account,
            "entrypoint": ENTRYPOINT,
            "templates": templates,
        },
    }


def observation_from_workflow(workflow: Dict[str, Any]) -> EngineObservation:
    status = workflow.get("status") or {}
    nodes = status.get("nodes") or {}
    step_status: Dict[str, str] = {}
    logs: List[str] = []
    for node in nodes.values():
        template = node.get("templateName")
        if not template or template == ENTRYPOINT:
            continue
        phase = (node.get("phase") or "pending").lower()
        step_status[template] = phase
        if node.get("message"):
            logs.append(f"{template}: {node['message']}")
    message = status.get("message") or ""
    if message:
        logs.append(message)
    return EngineObservation(
        phase=(status.get("phase") or "pending").lower(),
        finished=bool(status.get("finishedAt")),
        step_status=step_status,
        logs=logs,
        message=message,
    )


class ArgoWorkflowEngine:
    """Submit manifest sets as Argo ``Workflow`` objects and watch their phase."""

    def __init__(self, clients: KubernetesClients, settings: ArgoConfig) -> None:
        self._clients = clients
        self._settings = settings

    def submit(self, manifests: ManifestSet, action: ResourceAction = ResourceAction.APPLY) -> str:
        labels = {
            "idp.platform/manifests": "-".join(manifests)[:63].strip("-"),
            "idp.platform/action": action.value,
        }
        body = build_workflow(manifests, self._settings, labels, action)
        try:
            created = self._clients.custom().create_namespaced_custom_object(
                ARGO_GROUP, ARGO_VERSION, self._settings.namespace, ARGO_PLURAL, body
            )
        except (ApiException, HTTPError) as exc:
            LOGGER.warning(
                "Argo workflow submission failed",
                extra={"namespace": self._settings.namespace, "error": str(exc)},
            )
            raise translate_api_error(exc, "workflow submission") from exc
        job_id = created["metadata"]["name"]
        LOGGER.info(
            "Submitted Argo workflow",
            extra={"job_id": job_id, "manifests": list(manifests), "action": action.value},
        )
        return job_id

    def observe(self, job_id: str) -> EngineObservation:
        try:
            workflow = self._clients.custom().get_namespaced_custom_object(
                ARGO_GROUP, ARGO_VERSION, self._settings.namespace, ARGO_PLURAL, job_id
            )
        except ApiException as exc:
            if exc.status == 404:
                return EngineObservation(
                    phase="error", finished=True, message=f"workflow {job_id} not found"
                )
            raise translate_api_error(exc, f"observing workflow {job_id}") from exc
        except HTTPError as exc:
            raise translate_api_error(exc, f"observing workflow {job_id}") from exc
        return observation_from_workflow(workflow)

    def cancel(self, job_id: str) -> None:
        try:
            self._clients.custom().patch_namespaced_custom_object(
                ARGO_GROUP,
                ARGO_VERSION,
                self._settings.namespace,
                ARGO_PLURAL,
                job_id,
                {"spec": {"shutdown": "Terminate"}},
            )
        except (ApiException, HTTPError) as exc:
            raise translate_api_error(exc, f"cancelling workflow {job_id}") from exc
        LOGGER.info("Requested Argo workflow termination", extra={"job_id": job_id})


__all__ = ["ArgoWorkflowEngine", "build_workflow", "observation_from_workflow"]
