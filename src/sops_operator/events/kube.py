from typing import Any

from kubernetes.client import CoreV1Api
from kubernetes.client.api_client import ApiClient
from kubernetes.client.exceptions import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from sops_operator.events import COMPONENT, EventRecorder, EventType
from sops_operator.resources import KubernetesResource, format_timestamp, now


class KubernetesEventRecorder(EventRecorder):
    """
    Creates core/v1 `Event` objects in the namespace of the object that the event is about.
    """

    def __init__(self, client: ApiClient, component: str = COMPONENT, timeout: float = 10.0) -> None:
        self._core = CoreV1Api(client)
        self._component = component
        self._timeout = timeout

    def build(self, obj: KubernetesResource, type: EventType, reason: str, message: str) -> dict[str, Any]:
        """
        Build the `Event` manifest for an event about *obj*.
        """

        metadata = obj.metadata  # type: ignore[attr-defined]
        timestamp = format_timestamp(now())
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{metadata.name}.",
                "namespace": metadata.namespace,
            },
            "involvedObject": {
                "apiVersion": obj.API_VERSION,
                "kind": obj.KIND,
                "name": metadata.name,
                "namespace": metadata.namespace,
                "uid": metadata.uid,
                "resourceVersion": metadata.resourceVersion,
            },
            "type": type.value,
            "reason": reason,
            "message": message,
            "source": {"component": self._component},
            "reportingComponent": self._component,
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }

    # EventRecorder

    def event(self, obj: KubernetesResource, type: EventType, reason: str, message: str) -> None:
        body = self.build(obj, type, reason, message)
        try:
            self._core.create_namespaced_event(
                namespace=body["metadata"]["namespace"], body=body, _request_timeout=self._timeout
            )
        except (ApiException, HTTPError) as exc:
            logger.warning("Unable to record event {} {} for {}: {}", type.value, reason, obj.KIND, exc)
