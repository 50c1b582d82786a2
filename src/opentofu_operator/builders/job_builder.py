from __future__ import annotations

import hashlib
import shlex
from enum import Enum
from typing import Any

from ..constants import (
    API_GROUP_VERSION,
    CONFIGURATION_FILE,
    GIT_IMAGE,
    INLINE_MAIN_FILE,
    JOB_BACKOFF_LIMIT,
    KIND_WORKSPACE,
    LABEL_ACTION,
    LABEL_MANAGED_BY,
    LABEL_OWNER_NAME,
    LABEL_OWNER_UID,
    LABEL_VALUE_MAX_LENGTH,
    MODULE_DIR,
    MOUNT_PATH,
    OPENTOFU_IMAGE,
    SOURCE_INLINE,
    WORKSPACE_STORAGE_SIZE,
)
from ..resources.connector import ConnectorConfig


class Action(str, Enum):
    APPLY = "apply"
    DESTROY = "destroy"
    PLAN = "plan"

    def __str__(self) -> str:
        return self.value

    @property
    def commands(self) -> list[str]:
        """The two CLI steps run by the main container, in order."""
        init = "tofu init -no-color -input=false"
        if self is Action.APPLY:
            return [init, "tofu apply -no-color -auto-approve -input=false"]
        if self is Action.DESTROY:
            return [init, "tofu destroy -no-color -auto-approve -input=false"]
        return [init, "tofu plan -no-color -input=false"]


def job_name(resource_name: str, action: Action | str) -> str:
    """Deterministic Job name for one lifecycle action of a Workspace."""
    return f"{resource_name}-opentofu-{action}"


def normalize_restart_policy(policy: str | None) -> str:
    """Job pods may only use OnFailure or Never."""
    if policy in ("Always", "OnFailure"):
        return "OnFailure"
    return "Never"


def label_value(value: str) -> str:
    """Fit ``value`` into the 63 character limit of a label value.

    Long values keep a readable prefix and end in a digest of the full value.
    """
    if len(value) <= LABEL_VALUE_MAX_LENGTH:
        return value
    digest = hashlib.sha256(value.encode()).hexdigest()[:10]
    prefix = value[: LABEL_VALUE_MAX_LENGTH - len(digest) - 1].rstrip("-_.")
    return f"{prefix}-{digest}"


def _labels(workspace_name: str, namespace: str, owner_uid: str, action: Action) -> dict[str, str]:
    return {
        LABEL_MANAGED_BY: "opentofu-operator",
        LABEL_OWNER_NAME: label_value(f"{namespace}.{workspace_name}"),
        LABEL_OWNER_UID: owner_uid,
        LABEL_ACTION: action.value,
    }


def _metadata(name: str, namespace: str, labels: dict[str, str]) -> dict[str, Any]:
    return {"name": name, "namespace": namespace, "labels": dict(labels)}


def build_service_account(*, name: str, namespace: str, labels: dict[str, str]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": _metadata(name, namespace, labels),
    }


def build_role(*, name: str, namespace: str, labels: dict[str, str]) -> dict[str, Any]:
    """Role for the execution pod.

    OpenTofu's kubernetes backend keeps state in secrets and locks it with
    leases in the Job's namespace.
    """
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": _metadata(name, namespace, labels),
        "rules": [
            {"apiGroups": [""], "resources": ["secrets"], "verbs": ["*"]},
            {"apiGroups": ["coordination.k8s.io"], "resources": ["leases"], "verbs": ["*"]},
        ],
    }


def build_role_binding(*, name: str, namespace: str, labels: dict[str, str]) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": _metadata(name, namespace, labels),
        "subjects": [{"kind": "ServiceAccount", "name": name, "namespace": namespace}],
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "Role", "name": name},
    }


def build_source_script(
    *, module: str, source: str, connector: ConnectorConfig
) -> list[str]:
    """Shell lines run by the init container to lay out the module directory.

    Inline modules and inline configuration arrive through environment
    variables so their content never needs shell quoting.
    """
    module_dir = f"{MOUNT_PATH}/{MODULE_DIR}"
    lines: list[str] = ["set -eu", f"rm -rf {module_dir}"]

    if source == SOURCE_INLINE:
        lines.append(f"mkdir -p {module_dir}")
        lines.append(f'printf \'%s\\n\' "$TF_INLINE_MODULE" > {module_dir}/{INLINE_MAIN_FILE}')
    else:
        # GIT_CREDENTIALS comes from the connector's git credential source
        helper = "!f() { echo username=opentofu; echo \"password=$GIT_CREDENTIALS\"; };f"
        lines.append(
            f"git clone -c credential.helper={shlex.quote(helper)} "
            f"{shlex.quote(module)} {module_dir}"
        )

    if connector.configuration is not None:
        lines.append(
            f'printf \'%s\\n\' "$TF_CONNECTOR_CONFIGURATION" > {module_dir}/{CONFIGURATION_FILE}'
        )

    for index, cred in enumerate(connector.credential_files):
        target = f"{module_dir}/{cred.filename}"
        lines.append(f"mkdir -p $(dirname {shlex.quote(target)})")
        lines.append(
            f"install -m 0600 /credentials/{index}/{shlex.quote(cred.secret_key)} "
            f"{shlex.quote(target)}"
        )

    return lines


def build_job(
    *,
    workspace_name: str,
    namespace: str,
    owner_uid: str,
    action: Action,
    module: str,
    source: str,
    connector: ConnectorConfig,
    restart_policy: str | None = None,
    opentofu_image: str = OPENTOFU_IMAGE,
    git_image: str = GIT_IMAGE,
    storage_size: str = WORKSPACE_STORAGE_SIZE,
) -> dict[str, Any]:
    """Render the Job manifest for one lifecycle action of a Workspace.

    This function is pure and safe to unit-test.
    """
    name = job_name(workspace_name, action)
    labels = _labels(workspace_name, namespace, owner_uid, action)
    volume_name = "workspace"

    volumes: list[dict[str, Any]] = [
        {
            "name": volume_name,
            "ephemeral": {
                "volumeClaimTemplate": {
                    "metadata": {"labels": dict(labels)},
                    "spec": {
                        "accessModes": ["ReadWriteOnce"],
                        "resources": {"requests": {"storage": storage_size}},
                    },
                }
            },
        }
    ]
    shared_mount = {"name": volume_name, "mountPath": MOUNT_PATH}
    init_mounts: list[dict[str, Any]] = [dict(shared_mount)]

    for index, cred in enumerate(connector.credential_files):
        cred_volume = f"credentials-{index}"
        volumes.append(
            {
                "name": cred_volume,
                "secret": {
                    "secretName": cred.secret_name,
                    "items": [{"key": cred.secret_key, "path": cred.secret_key}],
                },
            }
        )
        init_mounts.append(
            {"name": cred_volume, "mountPath": f"/credentials/{index}", "readOnly": True}
        )

    init_env: list[dict[str, Any]] = []
    if source == SOURCE_INLINE:
        init_env.append({"name": "TF_INLINE_MODULE", "value": module})
    if connector.configuration is not None:
        init_env.append({"name": "TF_CONNECTOR_CONFIGURATION", "value": connector.configuration})

    init_container: dict[str, Any] = {
        "name": f"{name}-init",
        "image": git_image,
        "workingDir": MOUNT_PATH,
        "command": ["sh", "-c"],
        "args": ["\n".join(build_source_script(module=module, source=source, connector=connector))],
        "volumeMounts": init_mounts,
        **({"env": init_env} if init_env else {}),
        **({"envFrom": connector.init_env_from} if connector.init_env_from else {}),
    }

    main_container: dict[str, Any] = {
        "name": name,
        "image": opentofu_image,
        "workingDir": f"{MOUNT_PATH}/{MODULE_DIR}",
        "command": ["sh", "-c"],
        "args": [" && ".join(action.commands)],
        "volumeMounts": [dict(shared_mount)],
        **({"envFrom": connector.container_env_from} if connector.container_env_from else {}),
    }

    manifest: dict[str, Any] = {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            **_metadata(name, namespace, labels),
            "ownerReferences": [
                {
                    "apiVersion": API_GROUP_VERSION,
                    "kind": KIND_WORKSPACE,
                    "name": workspace_name,
                    "uid": owner_uid,
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ],
        },
        "spec": {
            # Retries are driven by the reconcile loop, not by the Job controller
            "backoffLimit": JOB_BACKOFF_LIMIT,
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {
                    "restartPolicy": normalize_restart_policy(restart_policy),
                    "serviceAccountName": name,
                    "initContainers": [init_container],
                    "containers": [main_container],
                    "volumes": volumes,
                },
            },
        },
    }
    return manifest


def supporting_objects(
    *, workspace_name: str, namespace: str, owner_uid: str, action: Action
) -> list[dict[str, Any]]:
    """ServiceAccount, Role and RoleBinding for a Job, in creation order."""
    name = job_name(workspace_name, action)
    labels = _labels(workspace_name, namespace, owner_uid, action)
    return [
        build_service_account(name=name, namespace=namespace, labels=labels),
        build_role(name=name, namespace=namespace, labels=labels),
        build_role_binding(name=name, namespace=namespace, labels=labels),
    ]
