"""
Shared fixtures for unit tests: Workspace bodies and an in-memory Job backend.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Callable
from unittest.mock import patch

import pytest

from opentofu_operator.builders.job_builder import Action, job_name
from opentofu_operator.constants import COND_READY
from opentofu_operator.resources.connector import ConnectorConfig
from opentofu_operator.resources.workspace import Workspace
from opentofu_operator.services.orchestrator import JobInfo, JobState


def fake_job(state: JobState) -> SimpleNamespace:
    """Minimal stand-in for a V1Job as returned by the batch API."""
    if state is JobState.RUNNING:
        status = SimpleNamespace(conditions=None, succeeded=None, active=1, failed=None)
    else:
        condition_type = "Complete" if state is JobState.SUCCEEDED else "Failed"
        status = SimpleNamespace(
            conditions=[SimpleNamespace(type=condition_type, status="True")],
            succeeded=1 if state is JobState.SUCCEEDED else None,
            active=None,
            failed=1 if state is JobState.FAILED else None,
        )
    return SimpleNamespace(metadata=SimpleNamespace(name="job", uid="job-uid"), status=status)


def job_info(
    *,
    error: str = "unknown error",
    exit_code: int | None = 0,
    no_drift: bool = False,
    outputs: dict[str, str] | None = None,
    logs: str = "",
) -> JobInfo:
    return JobInfo(
        logs=logs,
        errors="",
        error=error,
        exit_code=exit_code,
        no_drift=no_drift,
        outputs=outputs or {},
    )


class FakeOrchestrator:
    """Keeps Jobs in a dict keyed by name instead of talking to a cluster."""

    def __init__(self) -> None:
        self.jobs: dict[str, JobState] = {}
        self.infos: dict[str, JobInfo] = {}
        self.runs: list[Action] = []
        self.deleted: list[str] = []

    def run(self, workspace: Workspace, action: Action, connector: Any = None) -> Any:
        name = job_name(workspace.name, action)
        self.runs.append(action)
        self.jobs.setdefault(name, JobState.RUNNING)
        return fake_job(self.jobs[name])

    def get_job(self, name: str, namespace: str) -> Any:
        state = self.jobs.get(name)
        return fake_job(state) if state is not None else None

    def get_job_info(self, name: str, namespace: str, action: Action) -> JobInfo:
        return self.infos.get(name, job_info())

    def delete_job(self, name: str, namespace: str) -> None:
        self.jobs.pop(name, None)
        self.deleted.append(name)

    def finish(self, workspace: Workspace, action: Action, state: JobState, info: JobInfo | None = None) -> None:
        name = job_name(workspace.name, action)
        self.jobs[name] = state
        if info is not None:
            self.infos[name] = info


@pytest.fixture
def make_workspace() -> Callable[..., Workspace]:
    def _make(
        *,
        reason: str | None = None,
        error: str | None = None,
        deleting: bool = False,
        allowed_actions: dict[str, bool] | None = None,
        deletion_policy: str | None = None,
        source: str = "Remote",
        module: str = "https://git.example.com/infra/network.git",
    ) -> Workspace:
        spec: dict[str, Any] = {
            "workspace": {"module": module, "source": source},
            "tfConnectorRef": {"name": "aws-connector"},
        }
        if allowed_actions is not None:
            spec["allowedActions"] = allowed_actions
        if deletion_policy is not None:
            spec["deletionPolicy"] = deletion_policy

        status: dict[str, Any] = {}
        if reason is not None:
            status["conditions"] = [{"type": COND_READY, "status": "False", "reason": reason}]
        if error is not None:
            status["error"] = error

        metadata: dict[str, Any] = {
            "name": "network",
            "namespace": "infra",
            "uid": "ws-uid-1",
            "resourceVersion": "1",
        }
        if deleting:
            metadata["deletionTimestamp"] = "2024-01-01T12:00:00Z"

        return Workspace({"metadata": metadata, "spec": spec, "status": status})

    return _make


@pytest.fixture
def fake_orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator()


@pytest.fixture
def no_connector_lookup():
    """Resolve every TFConnector reference to an empty connector."""
    with patch(
        "opentofu_operator.controller.state_machine.resolve_connector",
        return_value=ConnectorConfig(),
    ) as mock_resolve:
        yield mock_resolve
