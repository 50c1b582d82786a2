"""Generic Observe -> Create/Update/Delete driver.

kopf dispatches events, serializes handlers per object and retries failed
ones; this module turns one handler invocation into a single pass over the
controller contract and persists the resulting status.
"""

from __future__ import annotations

from time import monotonic
from typing import Any, NamedTuple

from kubernetes import client

from .. import metrics
from ..constants import (
    API_GROUP,
    API_GROUP_VERSION,
    API_VERSION,
    FIELD_MANAGER,
    KIND_WORKSPACE,
    PLURAL_WORKSPACES,
    STATUS_UPDATE_MAX_ATTEMPTS,
)
from ..errors import OperatorError, StatusConflictError
from ..logging import logger
from ..resources.workspace import Workspace
from .state_machine import Observation, WorkspaceController


class ReconcileResult(NamedTuple):
    observation: Observation
    # True once the external resource is gone and the finalizer may be removed
    finalize: bool


def reconcile(ws: Workspace, controller: WorkspaceController) -> ReconcileResult:
    """Run one reconcile pass for ``ws`` and persist its status.

    Errors from the controller are recorded on the Synced condition and
    re-raised after the status write so the caller can back off.
    """
    started_at = monotonic()
    observation = Observation.wait()
    finalize = False
    error: Exception | None = None

    logger.info(
        "Starting workspace reconciliation",
        controller=KIND_WORKSPACE,
        resource=ws.key,
        uid=ws.uid,
        event="reconcile",
        reason="ReconcileStarted",
        phase=ws.reason.value,
    )
    try:
        observation = controller.observe(ws)
        if ws.deletion_requested:
            if not observation.exists:
                finalize = True
            elif not observation.pending:
                controller.delete(ws)
        elif not observation.pending:
            if not observation.exists:
                controller.create(ws)
            elif not observation.up_to_date:
                controller.update(ws)
    except (OperatorError, client.exceptions.ApiException) as e:
        error = e

    ws.set_synced(error)
    try:
        if not finalize:
            write_status(ws)
    finally:
        metrics.RECONCILE_DURATION.labels(kind=KIND_WORKSPACE).observe(monotonic() - started_at)

    if error is not None:
        logger.error(
            f"Workspace reconciliation failed: {error}",
            controller=KIND_WORKSPACE,
            resource=ws.key,
            uid=ws.uid,
            event="reconcile",
            reason="ReconcileFailed",
            phase=ws.reason.value,
        )
        metrics.RECONCILE_TOTAL.labels(kind=KIND_WORKSPACE, result="error").inc()
        raise error

    logger.info(
        "Workspace reconciliation completed",
        controller=KIND_WORKSPACE,
        resource=ws.key,
        uid=ws.uid,
        event="reconcile",
        reason="ReconcileSucceeded",
        phase=ws.reason.value,
        finalize=finalize,
    )
    metrics.RECONCILE_TOTAL.labels(kind=KIND_WORKSPACE, result="success").inc()
    return ReconcileResult(observation, finalize)


def fetch_workspace(namespace: str, name: str) -> Workspace | None:
    """Read the current Workspace, or None once it is gone."""
    try:
        body = client.CustomObjectsApi().get_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=PLURAL_WORKSPACES,
            name=name,
        )
    except client.exceptions.ApiException as e:
        if e.status == 404:
            return None
        raise
    return Workspace(body)


def write_status(ws: Workspace) -> None:
    """Replace the Workspace status, guarded by its resourceVersion.

    On a conflict the current version is fetched and the write retried; the
    reconciler is the only writer of status, so the newer version carries
    nothing that must be kept.
    """
    api = client.CustomObjectsApi()
    resource_version = ws.resource_version

    for _ in range(STATUS_UPDATE_MAX_ATTEMPTS):
        metadata: dict[str, Any] = {"name": ws.name, "namespace": ws.namespace}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        body = {
            "apiVersion": API_GROUP_VERSION,
            "kind": KIND_WORKSPACE,
            "metadata": metadata,
            "status": ws.status_body(),
        }
        try:
            result = api.replace_namespaced_custom_object_status(
                group=API_GROUP,
                version=API_VERSION,
                namespace=ws.namespace,
                plural=PLURAL_WORKSPACES,
                name=ws.name,
                body=body,
                field_manager=FIELD_MANAGER,
            )
        except client.exceptions.ApiException as e:
            if e.status == 404:
                # Already gone
                return
            if e.status != 409:
                raise
            metrics.STATUS_CONFLICTS_TOTAL.labels(kind=KIND_WORKSPACE).inc()
            current = api.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=ws.namespace,
                plural=PLURAL_WORKSPACES,
                name=ws.name,
            )
            resource_version = (current.get("metadata") or {}).get("resourceVersion")
            continue

        ws.resource_version = (result.get("metadata") or {}).get("resourceVersion")
        return

    raise StatusConflictError(
        f"status of {ws.key} changed concurrently {STATUS_UPDATE_MAX_ATTEMPTS} times"
    )
