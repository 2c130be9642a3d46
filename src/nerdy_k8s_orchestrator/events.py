from __future__ import annotations

import logging
import uuid

from kubernetes import client
from kubernetes.client import ApiException

from .models import Record, utc_now

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
DEFAULT_COMPONENT = "nerdy-k8s-orchestrator"


class EventRecorder:
    """Records Kubernetes events against custom resources.

    Events are informational; a failure to record one is logged and never
    interrupts the reconcile that produced it.
    """

    def __init__(self, core_api: client.CoreV1Api, *, component: str = DEFAULT_COMPONENT) -> None:
        self._core_api = core_api
        self._component = component

    def event(self, record: Record, event_type: str, reason: str, message: str) -> None:
        namespace = record.metadata.namespace or "default"
        now = utc_now()
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                name=f"{record.metadata.name}.{uuid.uuid4().hex[:16]}",
                namespace=namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=record.KIND.api_version,
                kind=record.KIND.kind,
                name=record.metadata.name,
                namespace=record.metadata.namespace,
                uid=record.metadata.uid or None,
                resource_version=record.metadata.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            source=client.V1EventSource(component=self._component),
        )
        try:
            self._core_api.create_namespaced_event(namespace=namespace, body=body)
        except ApiException as error:
            logger.warning(
                "Unable to record %s event %s for %s %s: API status %s (%s)",
                event_type,
                reason,
                record.KIND.kind,
                record.display_name,
                error.status,
                error.reason,
            )

    def normal(self, record: Record, reason: str, message: str) -> None:
        self.event(record, EVENT_TYPE_NORMAL, reason, message)

    def warning(self, record: Record, reason: str, message: str) -> None:
        self.event(record, EVENT_TYPE_WARNING, reason, message)
