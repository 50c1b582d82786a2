"""Resolution of the TFConnector referenced by a Workspace.

The TFConnector carries everything an execution Job needs from the outside
world: environment sources, provider credential files, git credentials and
optional inline configuration. Nothing here reads secret values; secrets stay
references and are wired into the pod template by the job builder.
"""

from __future__ import annotations

import posixpath
from typing import Any

from kubernetes import client

from ..constants import API_GROUP, API_VERSION, KIND_TFCONNECTOR, PLURAL_TFCONNECTORS
from ..errors import ResolveError
from .workspace import Workspace


class CredentialFile:
    """A provider credential file sourced from a secret key."""

    def __init__(self, filename: str, secret_name: str, secret_key: str):
        self.filename = filename
        self.secret_name = secret_name
        self.secret_key = secret_key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CredentialFile):
            return NotImplemented
        return (self.filename, self.secret_name, self.secret_key) == (
            other.filename,
            other.secret_name,
            other.secret_key,
        )

    def __repr__(self) -> str:
        return f"CredentialFile({self.filename!r}, {self.secret_name!r}, {self.secret_key!r})"


class ConnectorConfig:
    """Resolved, read-only view of a TFConnector spec."""

    def __init__(
        self,
        env_from: list[dict[str, Any]] | None = None,
        provider_env_from: list[dict[str, Any]] | None = None,
        credential_files: list[CredentialFile] | None = None,
        git_credentials: dict[str, Any] | None = None,
        configuration: str | None = None,
    ):
        self.env_from = list(env_from or [])
        self.provider_env_from = list(provider_env_from or [])
        self.credential_files = list(credential_files or [])
        self.git_credentials = git_credentials
        self.configuration = configuration

    @classmethod
    def from_spec(cls, spec: dict[str, Any]) -> ConnectorConfig:
        providers = spec.get("providersCredentials") or {}
        files: list[CredentialFile] = []
        for item in providers.get("files") or []:
            filename = _safe_filename(item.get("filename") or "")
            secret_ref = item.get("secretRef") or {}
            if filename and secret_ref.get("name") and secret_ref.get("key"):
                files.append(CredentialFile(filename, secret_ref["name"], secret_ref["key"]))

        return cls(
            env_from=spec.get("envVars"),
            provider_env_from=providers.get("envVars"),
            credential_files=files,
            git_credentials=spec.get("gitCredentials"),
            configuration=spec.get("configuration"),
        )

    @property
    def container_env_from(self) -> list[dict[str, Any]]:
        """Environment of the main container: general sources, then provider ones."""
        return [*self.env_from, *self.provider_env_from]

    @property
    def init_env_from(self) -> list[dict[str, Any]]:
        """Environment of the source-fetch step: git credentials only."""
        return [self.git_credentials] if self.git_credentials else []


def _safe_filename(filename: str) -> str:
    """Keep credential files inside the module directory."""
    normalized = posixpath.normpath("/" + filename.replace("\\", "/")).lstrip("/")
    return "" if normalized in ("", ".") else normalized


def resolve_connector(workspace: Workspace) -> ConnectorConfig:
    """Fetch the TFConnector referenced by ``workspace``.

    Raises:
        ResolveError: if the reference is missing or the object cannot be read.
    """
    ref = workspace.connector_ref
    if ref is None:
        raise ResolveError(f"no {KIND_TFCONNECTOR} referenced by workspace {workspace.key}")

    try:
        obj = client.CustomObjectsApi().get_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=ref["namespace"],
            plural=PLURAL_TFCONNECTORS,
            name=ref["name"],
        )
    except client.exceptions.ApiException as e:
        raise ResolveError(
            f"cannot get {KIND_TFCONNECTOR} {ref['namespace']}/{ref['name']}: {e.reason}"
        ) from e

    return ConnectorConfig.from_spec(obj.get("spec") or {})
