from __future__ import annotations

from datetime import UTC, datetime

from kubernetes import client

from .constants import API_GROUP_VERSION, FIELD_MANAGER, KIND_WORKSPACE
from .logging import logger


def emit_event(
    *,
    namespace: str,
    name: str,
    reason: str,
    message: str,
    type_: str = "Normal",
    kind: str = KIND_WORKSPACE,
    uid: str | None = None,
) -> None:
    """Attach a Kubernetes Event to the given object.

    Events are for operators reading ``kubectl describe``; a failure to post
    one never fails the reconciliation.
    """
    try:
        v1 = client.CoreV1Api()
        involved = client.V1ObjectReference(
            api_version=API_GROUP_VERSION,
            kind=kind,
            name=name,
            namespace=namespace,
            uid=uid,
        )
        now = datetime.now(UTC)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{name}-"),
            type=type_,
            reason=reason,
            message=message,
            involved_object=involved,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            source=client.V1EventSource(component=FIELD_MANAGER),
        )
        v1.create_namespaced_event(namespace=namespace, body=event)
    except Exception as e:
        logger.warning(
            f"Failed to emit event: {e}",
            resource=f"{namespace}/{name}",
            event="event",
            reason=reason,
        )
