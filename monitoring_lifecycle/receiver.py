"""Resources for the webhook receiver that alerts are delivered to.

The receiver is a small deployment that annotates itself once it has handled
an alert callback, which is what the delivery check waits on. It is exposed
with a NodePort service so Alertmanager can reach it through the address of
any node.
"""

import logging
import random
from typing import Any

from .config import ReceiverConfig
from .exceptions import ResourceError
from .manifest import (
    DEPLOYMENT_KIND,
    EXTERNAL_IP_ANNOTATION,
    NAMESPACE_KIND,
    NODE_KIND,
    PROJECT_ID_ANNOTATION,
    PROMETHEUS_RULE_KIND,
    SERVICE_KIND,
    WebhookEndpoint,
)
from .resources import ResourceClient

__all__ = [
    "namespace_doc",
    "receiver_docs",
    "service_doc",
    "prometheus_rule_doc",
    "alert_matchers",
    "node_port",
    "node_address",
    "webhook_endpoint",
]

_LOGGER = logging.getLogger(__name__)


RULE_LABEL = "monitoring-lifecycle"


def _labels(receiver: ReceiverConfig) -> dict[str, str]:
    return {"app": receiver.deployment}


def namespace_doc(name: str, project_id: str | None) -> dict[str, Any]:
    """Return a Namespace that belongs to the Rancher project."""
    annotations = {PROJECT_ID_ANNOTATION: project_id} if project_id else {}
    return {
        "apiVersion": "v1",
        "kind": NAMESPACE_KIND,
        "metadata": {
            "name": name,
            "annotations": annotations,
        },
    }


def receiver_docs(receiver: ReceiverConfig) -> list[dict[str, Any]]:
    """Return the receiver deployment and the RBAC it needs to annotate itself."""
    metadata = {"name": receiver.deployment, "namespace": receiver.namespace}
    return [
        {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": metadata,
        },
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "Role",
            "metadata": metadata,
            "rules": [
                {
                    "apiGroups": ["apps"],
                    "resources": ["deployments"],
                    "resourceNames": [receiver.deployment],
                    "verbs": ["get", "patch", "update"],
                }
            ],
        },
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "RoleBinding",
            "metadata": metadata,
            "roleRef": {
                "apiGroup": "rbac.authorization.k8s.io",
                "kind": "Role",
                "name": receiver.deployment,
            },
            "subjects": [
                {
                    "kind": "ServiceAccount",
                    "name": receiver.deployment,
                    "namespace": receiver.namespace,
                }
            ],
        },
        {
            "apiVersion": "apps/v1",
            "kind": DEPLOYMENT_KIND,
            "metadata": metadata,
            "spec": {
                "replicas": 1,
                "selector": {"matchLabels": _labels(receiver)},
                "template": {
                    "metadata": {"labels": _labels(receiver)},
                    "spec": {
                        "serviceAccountName": receiver.deployment,
                        "containers": [
                            {
                                "name": receiver.deployment,
                                "image": receiver.image,
                                "ports": [{"containerPort": receiver.port}],
                                "env": [
                                    {"name": "DEPLOYMENT_NAME", "value": receiver.deployment},
                                    {
                                        "name": "NAMESPACE",
                                        "valueFrom": {
                                            "fieldRef": {"fieldPath": "metadata.namespace"}
                                        },
                                    },
                                    {"name": "ANNOTATION_KEY", "value": receiver.annotation_key},
                                    {
                                        "name": "ANNOTATION_VALUE",
                                        "value": receiver.annotation_value,
                                    },
                                ],
                            }
                        ],
                    },
                },
            },
        },
    ]


def service_doc(receiver: ReceiverConfig, deployment: dict[str, Any]) -> dict[str, Any]:
    """Return a NodePort Service selecting the pods of the receiver deployment."""
    template = (deployment.get("spec") or {}).get("template") or {}
    selector = (template.get("metadata") or {}).get("labels") or _labels(receiver)
    return {
        "apiVersion": "v1",
        "kind": SERVICE_KIND,
        "metadata": {"name": receiver.service, "namespace": receiver.namespace},
        "spec": {
            "type": "NodePort",
            "ports": [
                {
                    "name": "port",
                    "port": receiver.port,
                    "targetPort": receiver.port,
                }
            ],
            "selector": selector,
        },
    }


def prometheus_rule_doc(receiver: ReceiverConfig, namespace: str) -> dict[str, Any]:
    """Return a PrometheusRule with an alert that fires immediately."""
    return {
        "apiVersion": "monitoring.coreos.com/v1",
        "kind": PROMETHEUS_RULE_KIND,
        "metadata": {"name": receiver.rule_name, "namespace": namespace},
        "spec": {
            "groups": [
                {
                    "name": f"{receiver.rule_name}-group",
                    "interval": "30s",
                    "rules": [
                        {
                            "alert": receiver.alert_name,
                            "expr": "vector(1)",
                            "for": "0s",
                            "labels": {"source": RULE_LABEL},
                            "annotations": {
                                "summary": "Test alert for webhook receiver delivery"
                            },
                        }
                    ],
                }
            ]
        },
    }


def alert_matchers(receiver: ReceiverConfig) -> list[str]:
    """Return the Alertmanager matchers selecting the test alert."""
    return [f'alertname="{receiver.alert_name}"']


def node_port(service: dict[str, Any]) -> int:
    """Return the node port allocated to the first port of a Service."""
    ports = (service.get("spec") or {}).get("ports") or []
    if not ports or not ports[0].get("nodePort"):
        raise ResourceError(
            f"Service {service.get('metadata', {}).get('name')} has no node port allocated"
        )
    return int(ports[0]["nodePort"])


def _external_address(node: dict[str, Any]) -> str | None:
    annotations = (node.get("metadata") or {}).get("annotations") or {}
    if address := annotations.get(EXTERNAL_IP_ANNOTATION):
        return str(address)
    for address in (node.get("status") or {}).get("addresses") or []:
        if address.get("type") == "ExternalIP":
            return str(address.get("address"))
    return None


async def node_address(resources: ResourceClient) -> str:
    """Return the external address of a random node of the cluster."""
    nodes = await resources.list(NODE_KIND, None)
    addresses = [address for node in nodes if (address := _external_address(node))]
    if not addresses:
        raise ResourceError("No node has an external address")
    return random.choice(addresses)


async def webhook_endpoint(
    resources: ResourceClient, receiver: ReceiverConfig, service: dict[str, Any]
) -> WebhookEndpoint:
    """Return the address alerts should be delivered to."""
    endpoint = WebhookEndpoint(
        host=await node_address(resources),
        port=node_port(service),
        path=receiver.path,
    )
    _LOGGER.info("Webhook receiver reachable at %s", endpoint.url)
    return endpoint
