"""Job orchestration for OpenTofu lifecycle actions.

One Workspace action (apply, plan or destroy) runs as one batch Job together
with a ServiceAccount, Role and RoleBinding of the same name. The supporting
objects are owned by the Job, so deleting the Job with foreground
propagation removes everything it brought along.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, NamedTuple

from kubernetes import client
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..builders.job_builder import Action, build_job, job_name, supporting_objects
from ..constants import (
    CLI_TIMEOUT_SECONDS,
    FIELD_MANAGER,
    INSTALL_MAX_ATTEMPTS,
    INSTALL_RETRY_WAIT_SECONDS,
    LABEL_JOB_NAME,
    UNKNOWN_ERROR,
)
from ..errors import JobCreateError, JobLogsError
from ..logging import logger
from ..resources.connector import ConnectorConfig, resolve_connector
from ..resources.workspace import Workspace
from ..utils.classifier import classify_error, classify_plan_result, parse_outputs


class JobState(str, Enum):
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class JobInfo(NamedTuple):
    """What a finished Job left behind in its pods."""

    logs: str
    errors: str
    error: str
    exit_code: int | None
    no_drift: bool
    outputs: dict[str, str]


def job_state(job: Any) -> JobState:
    """Collapse a Job's status into running / succeeded / failed."""
    status = job.status
    if status is None:
        return JobState.RUNNING

    for condition in status.conditions or []:
        if condition.status != "True":
            continue
        if condition.type == "Complete":
            return JobState.SUCCEEDED
        if condition.type == "Failed":
            return JobState.FAILED

    if status.succeeded:
        return JobState.SUCCEEDED
    if status.active:
        return JobState.RUNNING
    if status.failed:
        return JobState.FAILED
    return JobState.RUNNING


class JobOrchestrator:
    """Create, inspect and remove the Jobs that run OpenTofu."""

    def __init__(
        self,
        *,
        max_attempts: int = INSTALL_MAX_ATTEMPTS,
        retry_wait: float = INSTALL_RETRY_WAIT_SECONDS,
        log_timeout: float = CLI_TIMEOUT_SECONDS,
    ) -> None:
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait
        self._log_timeout = log_timeout

    # --- launching --------------------------------------------------------

    def run(
        self,
        workspace: Workspace,
        action: Action,
        connector: ConnectorConfig | None = None,
    ) -> Any:
        """Launch the Job for ``action`` unless it already exists.

        Raises:
            ResolveError: if the TFConnector cannot be resolved.
            JobCreateError: if any cluster object fails to materialise.
        """
        if connector is None:
            connector = resolve_connector(workspace)

        name = job_name(workspace.name, action)
        objects = supporting_objects(
            workspace_name=workspace.name,
            namespace=workspace.namespace,
            owner_uid=workspace.uid,
            action=action,
        )
        for manifest in objects:
            try:
                self._install(manifest)
            except client.exceptions.ApiException as e:
                raise JobCreateError(
                    f"failed to create {manifest['kind']} {workspace.namespace}/{name}: {e.reason}"
                ) from e

        manifest = build_job(
            workspace_name=workspace.name,
            namespace=workspace.namespace,
            owner_uid=workspace.uid,
            action=action,
            module=workspace.module,
            source=workspace.source,
            connector=connector,
        )
        job = self._create_job(manifest)

        owner_ref = {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "name": job.metadata.name,
            "uid": job.metadata.uid,
        }
        for obj in objects:
            try:
                self._set_owner(obj, owner_ref)
            except client.exceptions.ApiException as e:
                raise JobCreateError(
                    f"failed to add owner reference to {obj['kind']} "
                    f"{workspace.namespace}/{name}: {e.reason}"
                ) from e

        logger.info(
            "OpenTofu job launched",
            controller="Workspace",
            resource=workspace.key,
            uid=workspace.uid,
            action=action.value,
            job=name,
            event="job",
            reason="JobCreated",
        )
        return job

    def _api_calls(self, kind: str) -> tuple[Callable[..., Any], Callable[..., Any], Callable[..., Any]]:
        """read / create / patch functions for a supporting object kind."""
        if kind == "ServiceAccount":
            core = client.CoreV1Api()
            return (
                core.read_namespaced_service_account,
                core.create_namespaced_service_account,
                core.patch_namespaced_service_account,
            )
        rbac = client.RbacAuthorizationV1Api()
        if kind == "Role":
            return (
                rbac.read_namespaced_role,
                rbac.create_namespaced_role,
                rbac.patch_namespaced_role,
            )
        if kind == "RoleBinding":
            return (
                rbac.read_namespaced_role_binding,
                rbac.create_namespaced_role_binding,
                rbac.patch_namespaced_role_binding,
            )
        raise ValueError(f"unsupported kind {kind}")

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_fixed(self._retry_wait),
            retry=retry_if_exception_type(client.exceptions.ApiException),
            reraise=True,
        )

    def _install(self, manifest: dict[str, Any]) -> None:
        """Get-or-create ``manifest``, retrying transient API errors."""
        read, create, _ = self._api_calls(manifest["kind"])
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"]["namespace"]

        for attempt in self._retrying():
            with attempt:
                try:
                    read(name=name, namespace=namespace)
                except client.exceptions.ApiException as e:
                    if e.status != 404:
                        raise
                    try:
                        create(namespace=namespace, body=manifest, field_manager=FIELD_MANAGER)
                    except client.exceptions.ApiException as ce:
                        # Lost a creation race; the object exists now
                        if ce.status != 409:
                            raise

    def _create_job(self, manifest: dict[str, Any]) -> Any:
        batch_api = client.BatchV1Api()
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"]["namespace"]
        try:
            return batch_api.create_namespaced_job(
                namespace=namespace,
                body=manifest,
                field_manager=FIELD_MANAGER,
            )
        except client.exceptions.ApiException as e:
            if e.status != 409:
                raise JobCreateError(f"failed to create Job {namespace}/{name}: {e.reason}") from e

        # Job already exists: reuse it
        try:
            return batch_api.read_namespaced_job(name=name, namespace=namespace)
        except client.exceptions.ApiException as e:
            raise JobCreateError(f"failed to read Job {namespace}/{name}: {e.reason}") from e

    def _set_owner(self, manifest: dict[str, Any], owner_ref: dict[str, Any]) -> None:
        _, _, patch = self._api_calls(manifest["kind"])
        for attempt in self._retrying():
            with attempt:
                patch(
                    name=manifest["metadata"]["name"],
                    namespace=manifest["metadata"]["namespace"],
                    body={"metadata": {"ownerReferences": [owner_ref]}},
                    field_manager=FIELD_MANAGER,
                )

    # --- inspection -------------------------------------------------------

    def get_job(self, name: str, namespace: str) -> Any | None:
        """Return the Job, or None when no Job of that name is outstanding."""
        try:
            return client.BatchV1Api().read_namespaced_job(name=name, namespace=namespace)
        except client.exceptions.ApiException as e:
            if e.status == 404:
                return None
            raise

    def get_job_info(self, name: str, namespace: str, action: Action) -> JobInfo:
        """Collect logs and outcome from the pods of a terminated Job.

        Raises:
            JobLogsError: if not a single pod log could be read.
        """
        core = client.CoreV1Api()
        pods = core.list_namespaced_pod(
            namespace=namespace, label_selector=f"{LABEL_JOB_NAME}={name}"
        ).items

        logs: list[str] = []
        errors: list[str] = []
        error = UNKNOWN_ERROR
        exit_code: int | None = None
        success_log: str | None = None

        for pod in pods:
            pod_name = pod.metadata.name
            container, code = _terminated_container(pod, name)
            try:
                # The deadline is the CLI's own; the log stays useful after the caller gives up
                text = core.read_namespaced_pod_log(
                    name=pod_name,
                    namespace=namespace,
                    container=container,
                    _request_timeout=self._log_timeout,
                )
            except client.exceptions.ApiException as e:
                errors.append(f"{pod_name}: {e.reason}")
                continue

            text = text or ""
            logs.append(text)
            classified = classify_error(text)
            errors.append(f"{pod_name}: {classified}")

            if code is not None:
                exit_code = code
            if code == 0 and container == name:
                success_log = text
            else:
                error = classified

        if not logs:
            raise JobLogsError(
                f"no logs available for Job {namespace}/{name}: " + ("; ".join(errors) or "no pods")
            )

        if success_log is not None:
            exit_code = 0

        return JobInfo(
            logs="\n".join(logs),
            errors="\n".join(errors),
            error=error,
            exit_code=exit_code,
            no_drift=action is Action.PLAN
            and success_log is not None
            and classify_plan_result(success_log),
            outputs=parse_outputs(success_log) if action is Action.APPLY and success_log else {},
        )

    # --- cleanup ----------------------------------------------------------

    def delete_job(self, name: str, namespace: str) -> None:
        """Delete the Job and, through owner references, its supporting objects."""
        try:
            client.BatchV1Api().delete_namespaced_job(
                name=name,
                namespace=namespace,
                propagation_policy="Foreground",
            )
        except client.exceptions.ApiException as e:
            if e.status != 404:
                raise


def _terminated_container(pod: Any, main_container: str) -> tuple[str, int | None]:
    """Pick the container whose log explains the pod's outcome.

    A failed source fetch never starts the main container, so its init
    container log is the one worth reading.
    """
    status = pod.status
    for init_status in (status.init_container_statuses or []) if status else []:
        terminated = init_status.state.terminated if init_status.state else None
        if terminated is not None and terminated.exit_code != 0:
            return init_status.name, terminated.exit_code

    for container_status in (status.container_statuses or []) if status else []:
        if container_status.name != main_container:
            continue
        terminated = container_status.state.terminated if container_status.state else None
        if terminated is not None:
            return main_container, terminated.exit_code
    return main_container, None
