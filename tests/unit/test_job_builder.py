import shlex

import pytest

from opentofu_operator.builders.job_builder import (
    Action,
    build_job,
    build_source_script,
    job_name,
    label_value,
    normalize_restart_policy,
    supporting_objects,
)
from opentofu_operator.constants import API_GROUP_VERSION, LABEL_ACTION, LABEL_OWNER_NAME, LABEL_OWNER_UID
from opentofu_operator.resources.connector import ConnectorConfig, CredentialFile

MODULE = "https://git.example.com/infra/network.git"


def _connector() -> ConnectorConfig:
    return ConnectorConfig(
        env_from=[{"configMapRef": {"name": "tofu-env"}}],
        provider_env_from=[{"secretRef": {"name": "aws-keys"}}],
        credential_files=[CredentialFile("creds/gcp.json", "gcp-sa", "key.json")],
        git_credentials={"secretRef": {"name": "git-token"}},
        configuration='provider "aws" {\n  region = "eu-west-1"\n}',
    )


def _job(action: Action = Action.APPLY, **kwargs):
    params = dict(
        workspace_name="network",
        namespace="infra",
        owner_uid="ws-uid-1",
        action=action,
        module=MODULE,
        source="Remote",
        connector=_connector(),
    )
    params.update(kwargs)
    return build_job(**params)


def test_job_name_is_deterministic():
    """Job names derive from the workspace name and action only."""
    assert job_name("network", Action.APPLY) == "network-opentofu-apply"
    assert job_name("network", Action.DESTROY) == "network-opentofu-destroy"
    assert job_name("network", "plan") == job_name("network", Action.PLAN)


@pytest.mark.parametrize(
    "action, verb",
    [
        (Action.APPLY, "tofu apply -no-color -auto-approve -input=false"),
        (Action.DESTROY, "tofu destroy -no-color -auto-approve -input=false"),
        (Action.PLAN, "tofu plan -no-color -input=false"),
    ],
)
def test_action_commands(action, verb):
    assert action.commands == ["tofu init -no-color -input=false", verb]


@pytest.mark.parametrize(
    "policy, expected",
    [("Always", "OnFailure"), ("OnFailure", "OnFailure"), ("Never", "Never"), (None, "Never"), ("bogus", "Never")],
)
def test_restart_policy_normalization(policy, expected):
    assert normalize_restart_policy(policy) == expected


def test_job_basic_structure():
    """Test that the Job has correct metadata, owner and pod spec."""
    job = _job()

    assert job["kind"] == "Job"
    assert job["metadata"]["name"] == "network-opentofu-apply"
    assert job["metadata"]["namespace"] == "infra"
    assert job["metadata"]["labels"][LABEL_ACTION] == "apply"
    assert job["metadata"]["labels"][LABEL_OWNER_UID] == "ws-uid-1"

    owner_refs = job["metadata"]["ownerReferences"]
    assert len(owner_refs) == 1
    assert owner_refs[0]["apiVersion"] == API_GROUP_VERSION
    assert owner_refs[0]["kind"] == "Workspace"
    assert owner_refs[0]["uid"] == "ws-uid-1"
    assert owner_refs[0]["controller"] is True

    spec = job["spec"]
    assert spec["backoffLimit"] == 1

    template = spec["template"]["spec"]
    assert template["restartPolicy"] == "Never"
    assert template["serviceAccountName"] == "network-opentofu-apply"


def test_main_container_runs_init_then_action():
    container = _job(Action.DESTROY)["spec"]["template"]["spec"]["containers"][0]

    assert container["name"] == "network-opentofu-destroy"
    assert container["command"] == ["sh", "-c"]
    assert container["args"] == [
        "tofu init -no-color -input=false && tofu destroy -no-color -auto-approve -input=false"
    ]
    assert container["workingDir"] == "/mnt/workspace"


def test_env_sources_are_split_between_containers():
    """Git credentials only reach the fetch step; provider credentials only the CLI."""
    pod = _job()["spec"]["template"]["spec"]
    init = pod["initContainers"][0]
    main = pod["containers"][0]

    assert main["envFrom"] == [
        {"configMapRef": {"name": "tofu-env"}},
        {"secretRef": {"name": "aws-keys"}},
    ]
    assert init["envFrom"] == [{"secretRef": {"name": "git-token"}}]


def test_credential_files_are_mounted_from_secrets():
    pod = _job()["spec"]["template"]["spec"]
    volumes = {v["name"]: v for v in pod["volumes"]}

    assert volumes["credentials-0"]["secret"]["secretName"] == "gcp-sa"
    assert volumes["credentials-0"]["secret"]["items"] == [{"key": "key.json", "path": "key.json"}]
    mounts = {m["name"]: m for m in pod["initContainers"][0]["volumeMounts"]}
    assert mounts["credentials-0"]["mountPath"] == "/credentials/0"
    assert mounts["credentials-0"]["readOnly"] is True
    # The CLI container only sees the prepared workspace volume
    assert [m["name"] for m in pod["containers"][0]["volumeMounts"]] == ["workspace"]


def test_workspace_volume_is_ephemeral():
    volume = _job(storage_size="5Gi")["spec"]["template"]["spec"]["volumes"][0]

    assert volume["name"] == "workspace"
    claim = volume["ephemeral"]["volumeClaimTemplate"]["spec"]
    assert claim["resources"]["requests"]["storage"] == "5Gi"


def test_images_are_configurable():
    pod = _job(opentofu_image="tofu:1.8", git_image="git:2")["spec"]["template"]["spec"]

    assert pod["containers"][0]["image"] == "tofu:1.8"
    assert pod["initContainers"][0]["image"] == "git:2"


def test_configuration_is_passed_through_env():
    init = _job()["spec"]["template"]["spec"]["initContainers"][0]
    env = {e["name"]: e["value"] for e in init["env"]}

    assert env["TF_CONNECTOR_CONFIGURATION"].startswith('provider "aws"')
    assert "opentofu-provider-config.tf" in init["args"][0]


def test_remote_source_is_cloned():
    script = build_source_script(module=MODULE, source="Remote", connector=ConnectorConfig())

    assert script[0] == "set -eu"
    assert any(line.startswith("git clone") and MODULE in line for line in script)
    assert not any("TF_INLINE_MODULE" in line for line in script)


def test_inline_source_is_written_from_env():
    module = 'resource "null_resource" "x" {}'
    job = _job(source="Inline", module=module, connector=ConnectorConfig())
    init = job["spec"]["template"]["spec"]["initContainers"][0]

    assert {"name": "TF_INLINE_MODULE", "value": module} in init["env"]
    assert "/mnt/workspace/main.tf" in init["args"][0]
    assert "git clone" not in init["args"][0]
    assert "envFrom" not in init


def test_credential_file_targets_are_quoted():
    connector = ConnectorConfig(credential_files=[CredentialFile("my creds.json", "s", "k")])

    script = build_source_script(module=MODULE, source="Remote", connector=connector)

    assert f"install -m 0600 /credentials/0/k {shlex.quote('/mnt/workspace/my creds.json')}" in script


def test_supporting_objects_order_and_binding():
    objects = supporting_objects(
        workspace_name="network", namespace="infra", owner_uid="ws-uid-1", action=Action.PLAN
    )

    assert [o["kind"] for o in objects] == ["ServiceAccount", "Role", "RoleBinding"]
    assert {o["metadata"]["name"] for o in objects} == {"network-opentofu-plan"}
    binding = objects[2]
    assert binding["subjects"] == [
        {"kind": "ServiceAccount", "name": "network-opentofu-plan", "namespace": "infra"}
    ]
    assert binding["roleRef"]["name"] == "network-opentofu-plan"


def test_short_label_values_are_kept():
    assert label_value("infra.network") == "infra.network"


def test_long_label_values_are_shortened():
    value = "platform-team-" + "x" * 60 + ".network"

    shortened = label_value(value)

    assert len(shortened) <= 63
    assert shortened.startswith("platform-team-")
    assert shortened[-1].isalnum()
    assert shortened == label_value(value)
    assert shortened != label_value(value + "-2")


def test_owner_name_label_fits_long_names():
    job = _job(workspace_name="n" * 50, namespace="ns-" + "a" * 40)

    assert len(job["metadata"]["labels"][LABEL_OWNER_NAME]) <= 63
