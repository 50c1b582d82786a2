from __future__ import annotations

import threading
from contextlib import suppress
from time import monotonic
from typing import Any

import kopf
from kubernetes import client, config
from prometheus_client import start_http_server

from .constants import (
    API_GROUP_VERSION,
    BACKOFF_MAX_SECONDS,
    KIND_WORKSPACE,
    METRICS_PORT,
    PLURAL_WORKSPACES,
    POLL_INTERVAL_SECONDS,
)
from .controller.driver import ReconcileResult, fetch_workspace, reconcile
from .controller.state_machine import Observation, WorkspaceController
from .errors import OperatorError
from .logging import logger, setup_structured_logging
from .resources.workspace import Reason, Workspace

controller = WorkspaceController()


class _ObjectState:
    """Reconcile lock and failure backoff of one Workspace."""

    def __init__(self) -> None:
        # kopf runs timers beside change handlers; at most one reconcile per object
        self.lock = threading.Lock()
        self.failures = 0
        self.not_before = 0.0


_states: dict[str, _ObjectState] = {}
_states_lock = threading.Lock()


def _state(key: str) -> _ObjectState:
    with _states_lock:
        return _states.setdefault(key, _ObjectState())


def _forget(key: str) -> None:
    with _states_lock:
        _states.pop(key, None)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    setup_structured_logging()

    # status belongs to the reconciler; kopf keeps its bookkeeping in annotations
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage()
    settings.posting.level = 0
    settings.networking.request_timeout = 30.0
    settings.execution.max_workers = 4

    with suppress(Exception):
        start_http_server(METRICS_PORT)

    # Load cluster config if running in cluster; fallback to local for tests
    try:
        config.load_incluster_config()
    except Exception:
        try:
            config.load_kube_config()
        except Exception:
            # Running without kube config (e.g., unit tests)
            return


def backoff_delay(retry: int) -> float:
    """Exponential backoff for failed reconciles, capped."""
    return float(min(POLL_INTERVAL_SECONDS * (2 ** max(retry, 0)), BACKOFF_MAX_SECONDS))


def _run(
    body: kopf.Body | dict[str, Any], retry: int, *, periodic: bool = False
) -> ReconcileResult | None:
    """Reconcile the current version of ``body`` under its object lock.

    Failures are counted per object; periodic passes are skipped until the
    backoff of the last failure has passed, and the count resets once the
    Workspace is healthy again. Returns None for a skipped pass.
    """
    cached = Workspace(body)
    key = cached.uid or cached.key
    state = _state(key)
    with state.lock:
        if periodic and monotonic() < state.not_before:
            return None
        try:
            # The cached body may predate a status write made by another handler
            ws = fetch_workspace(cached.namespace, cached.name)
            if ws is None:
                _forget(key)
                return ReconcileResult(Observation.absent(), True)
            result = reconcile(ws, controller)
        except (OperatorError, client.exceptions.ApiException) as e:
            state.failures += 1
            delay = backoff_delay(max(retry, state.failures - 1))
            state.not_before = monotonic() + delay
            raise kopf.TemporaryError(str(e), delay=delay) from e

        state.not_before = 0.0
        if result.finalize:
            _forget(key)
        elif ws.reason in (Reason.AVAILABLE, Reason.OBSERVING):
            state.failures = 0
        return result


@kopf.on.create(API_GROUP_VERSION, PLURAL_WORKSPACES)
@kopf.on.update(API_GROUP_VERSION, PLURAL_WORKSPACES)
@kopf.on.resume(API_GROUP_VERSION, PLURAL_WORKSPACES)
def reconcile_workspace(body: kopf.Body, retry: int = 0, **_: Any) -> None:
    _run(body, retry)


@kopf.timer(API_GROUP_VERSION, PLURAL_WORKSPACES, interval=POLL_INTERVAL_SECONDS, idle=POLL_INTERVAL_SECONDS)
def poll_workspace(body: kopf.Body, meta: kopf.Meta, **_: Any) -> None:
    """Periodic resync: picks up Job progress and detects drift."""
    if meta.get("deletionTimestamp"):
        # The delete handler drives the object from here on
        return
    try:
        _run(body, 0, periodic=True)
    except kopf.TemporaryError as e:
        # A later tick retries once the backoff has passed; the error is on Synced
        logger.warning(
            f"Periodic workspace resync failed: {e}",
            controller=KIND_WORKSPACE,
            resource=f"{meta.get('namespace')}/{meta.get('name')}",
            uid=meta.get("uid"),
            event="timer",
        )


@kopf.on.delete(API_GROUP_VERSION, PLURAL_WORKSPACES)
def delete_workspace(body: kopf.Body, retry: int = 0, **_: Any) -> None:
    result = _run(body, retry)
    if result is None or not result.finalize:
        # Keep the finalizer until destroy has finished or been skipped
        raise kopf.TemporaryError("waiting for OpenTofu destroy", delay=POLL_INTERVAL_SECONDS)
