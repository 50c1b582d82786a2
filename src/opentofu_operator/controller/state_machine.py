"""Workspace lifecycle state machine.

The phase of a Workspace is the reason of its Ready condition. Each phase
owns at most one Job (apply while CREATING, plan while AVAILABLE/OBSERVING,
destroy while DELETING) and every reconcile looks at that Job to decide the
next phase. ``transition`` is the whole table as a pure function;
``WorkspaceController`` performs the side effects it asks for.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, NamedTuple

from .. import metrics
from ..builders.job_builder import Action, job_name
from ..constants import (
    DELETION_POLICY_DELETE,
    EVENT_DESTROY_SKIPPED,
    EVENT_JOB_CREATED,
    EVENT_JOB_FAILED,
    EVENT_JOB_SUCCEEDED,
)
from ..errors import JobFailedError, JobLogsError
from ..events import emit_event
from ..logging import logger
from ..resources.connector import resolve_connector
from ..resources.workspace import Reason, Workspace
from ..services.orchestrator import JobInfo, JobOrchestrator, JobState, job_state


class Observation(NamedTuple):
    """What the driver needs to know about the external resource."""

    exists: bool
    up_to_date: bool
    pending: bool = False

    @classmethod
    def absent(cls) -> Observation:
        return cls(exists=False, up_to_date=False)

    @classmethod
    def converged(cls) -> Observation:
        return cls(exists=True, up_to_date=True)

    @classmethod
    def drifted(cls) -> Observation:
        return cls(exists=True, up_to_date=False)

    @classmethod
    def wait(cls) -> Observation:
        """A Job is in flight: neither converged nor failed."""
        return cls(exists=True, up_to_date=True, pending=True)


class Effect(str, Enum):
    NONE = "None"
    LAUNCH = "Launch"  # start the phase's Job
    REAP = "Reap"  # delete the phase's finished Job
    FAIL = "Fail"  # harvest the error, delete the Job, go Unavailable


class Step(NamedTuple):
    next_reason: Reason | None
    effect: Effect
    observation: Observation
    clear_error: bool = False
    restore_deletion: bool = False


# The Job each phase watches
PHASE_ACTIONS: dict[Reason, Action] = {
    Reason.CREATING: Action.APPLY,
    Reason.AVAILABLE: Action.PLAN,
    Reason.OBSERVING: Action.PLAN,
    Reason.DELETING: Action.DESTROY,
}


def transition(
    reason: Reason,
    job: JobState | None,
    *,
    no_drift: bool = False,
    exit_code: int | None = 0,
    other_jobs: bool = False,
) -> Step:
    """Next step for a Workspace in ``reason`` whose phase Job is ``job``.

    ``job`` is None when no Job is outstanding. ``no_drift`` and
    ``exit_code`` only matter for a succeeded plan; ``other_jobs`` only while
    DELETING, where destroy waits for apply/plan Jobs to go away.
    """
    if reason is Reason.UNAVAILABLE:
        return Step(None, Effect.NONE, Observation.absent())

    if job is JobState.FAILED:
        return Step(Reason.UNAVAILABLE, Effect.FAIL, Observation.absent())

    if reason is Reason.CREATING:
        if job is None:
            return Step(Reason.AVAILABLE, Effect.NONE, Observation.converged(), clear_error=True)
        if job is JobState.SUCCEEDED:
            return Step(None, Effect.REAP, Observation.wait())
        return Step(None, Effect.NONE, Observation.wait())

    if reason is Reason.AVAILABLE:
        if job is None:
            return Step(Reason.OBSERVING, Effect.LAUNCH, Observation.converged())
        # A plan Job is already out there; watch it from OBSERVING
        return Step(Reason.OBSERVING, Effect.NONE, Observation.wait())

    if reason is Reason.OBSERVING:
        if job is None:
            return Step(Reason.AVAILABLE, Effect.NONE, Observation.converged(), clear_error=True)
        if job is JobState.RUNNING:
            return Step(None, Effect.NONE, Observation.wait())
        if exit_code not in (0, None):
            return Step(Reason.UNAVAILABLE, Effect.FAIL, Observation.absent())
        if no_drift:
            return Step(Reason.AVAILABLE, Effect.REAP, Observation.converged(), clear_error=True)
        return Step(None, Effect.REAP, Observation.drifted())

    if reason is Reason.DELETING:
        if job is None:
            if other_jobs:
                return Step(None, Effect.NONE, Observation.wait())
            # Still exists and nothing runs: the driver calls delete
            return Step(None, Effect.NONE, Observation.converged())
        if job is JobState.SUCCEEDED:
            return Step(None, Effect.REAP, Observation.absent(), restore_deletion=True)
        return Step(None, Effect.NONE, Observation.wait())

    raise ValueError(f"unhandled workspace phase {reason!r}")


class WorkspaceController:
    """Observe / create / update / delete for one Workspace kind."""

    def __init__(
        self,
        orchestrator: JobOrchestrator | None = None,
        emit: Callable[..., None] = emit_event,
    ) -> None:
        self.orchestrator = orchestrator or JobOrchestrator()
        self._emit = emit

    # --- entry points used by the driver ----------------------------------

    def observe(self, ws: Workspace) -> Observation:
        reason = ws.reason

        if ws.deletion_requested and reason is not Reason.DELETING:
            if ws.error is not None or not self._destroy_allowed(ws):
                return self._skip_destroy(ws)
            ws.set_reason(Reason.DELETING)
            reason = Reason.DELETING

        if reason is Reason.AVAILABLE and not ws.action_allowed(Action.PLAN):
            return Observation.converged()

        action = PHASE_ACTIONS.get(reason)
        if action is None:
            return transition(reason, None).observation

        name = job_name(ws.name, action)
        job = self.orchestrator.get_job(name, ws.namespace)
        state = job_state(job) if job is not None else None

        info: JobInfo | None = None
        logs_error: JobLogsError | None = None
        if reason is Reason.OBSERVING and state is JobState.SUCCEEDED:
            try:
                info = self.orchestrator.get_job_info(name, ws.namespace, action)
            except JobLogsError as e:
                # Without its log the plan outcome is unknown; treat it as failed
                logs_error = e
                state = JobState.FAILED

        step = transition(
            reason,
            state,
            no_drift=info.no_drift if info else False,
            exit_code=info.exit_code if info else 0,
            other_jobs=reason is Reason.DELETING and state is None and self._other_jobs(ws),
        )
        if reason is Reason.DELETING and step.observation.pending:
            # Keep the driver from finalizing until destroy has succeeded
            ws.hide_deletion()
        self._apply(ws, action, step, info, logs_error)
        return step.observation

    def create(self, ws: Workspace) -> None:
        self._launch_apply(ws)

    def update(self, ws: Workspace) -> None:
        self._launch_apply(ws)

    def delete(self, ws: Workspace) -> None:
        if not self._destroy_allowed(ws):
            logger.info(
                "Destroy not allowed; leaving infrastructure in place",
                controller="Workspace",
                resource=ws.key,
                uid=ws.uid,
                action=Action.DESTROY.value,
                event="delete",
                reason=EVENT_DESTROY_SKIPPED,
            )
            return
        self._launch(ws, Action.DESTROY)
        ws.set_reason(Reason.DELETING)
        ws.hide_deletion()

    # --- helpers ----------------------------------------------------------

    def _destroy_allowed(self, ws: Workspace) -> bool:
        return ws.deletion_policy == DELETION_POLICY_DELETE and ws.action_allowed(Action.DESTROY)

    def _other_jobs(self, ws: Workspace) -> bool:
        """True while an apply or plan Job is still running.

        Finished ones are reaped here since no phase will look at them anymore.
        A failed one does not stop destroy.
        """
        running = False
        for action in (Action.APPLY, Action.PLAN):
            name = job_name(ws.name, action)
            job = self.orchestrator.get_job(name, ws.namespace)
            if job is None:
                continue
            state = job_state(job)
            if state is JobState.RUNNING:
                running = True
            elif state is JobState.SUCCEEDED:
                self._reap(ws, action, name, None)
            else:
                self._record_failure(ws, action, name, self._failure_message(ws, action, name))
        return running

    def _skip_destroy(self, ws: Workspace) -> Observation:
        message = (
            f"destroy skipped after previous error: {ws.error}"
            if ws.error is not None
            else "destroy skipped by deletion policy"
        )
        logger.info(
            "Skipping OpenTofu destroy",
            controller="Workspace",
            resource=ws.key,
            uid=ws.uid,
            event="delete",
            reason=EVENT_DESTROY_SKIPPED,
            detail=message,
        )
        self._emit(
            namespace=ws.namespace,
            name=ws.name,
            uid=ws.uid,
            reason=EVENT_DESTROY_SKIPPED,
            message=message,
        )
        ws.error = None
        ws.set_reason(Reason.DELETING)
        return Observation.absent()

    def _launch_apply(self, ws: Workspace) -> None:
        if not ws.action_allowed(Action.APPLY):
            logger.info(
                "Apply not allowed; not launching job",
                controller="Workspace",
                resource=ws.key,
                uid=ws.uid,
                action=Action.APPLY.value,
                event="apply",
                reason="ActionNotAllowed",
            )
            return
        self._launch(ws, Action.APPLY)
        ws.set_reason(Reason.CREATING)

    def _launch(self, ws: Workspace, action: Action) -> None:
        # Resolved connector data only ever reaches the Job template
        connector = resolve_connector(ws)
        self.orchestrator.run(ws, action, connector)
        self._emit(
            namespace=ws.namespace,
            name=ws.name,
            uid=ws.uid,
            reason=EVENT_JOB_CREATED,
            message=f"opentofu {action} job '{job_name(ws.name, action)}' created",
        )

    def _apply(
        self,
        ws: Workspace,
        action: Action,
        step: Step,
        info: JobInfo | None,
        logs_error: JobLogsError | None = None,
    ) -> None:
        name = job_name(ws.name, action)

        if step.effect is Effect.LAUNCH:
            self._launch(ws, action)
        elif step.effect is Effect.REAP:
            self._reap(ws, action, name, info)
        elif step.effect is Effect.FAIL:
            self._fail(ws, action, name, info, logs_error)

        if step.clear_error:
            ws.error = None
        if step.restore_deletion:
            ws.restore_deletion()
        if step.next_reason is not None:
            ws.set_reason(step.next_reason)

    def _reap(self, ws: Workspace, action: Action, name: str, info: JobInfo | None) -> None:
        if action is Action.APPLY:
            try:
                info = self.orchestrator.get_job_info(name, ws.namespace, action)
            except JobLogsError as e:
                logger.warning(
                    f"Apply succeeded but outputs are unavailable: {e}",
                    controller="Workspace",
                    resource=ws.key,
                    uid=ws.uid,
                    action=action.value,
                    job=name,
                )
            else:
                ws.outputs = info.outputs

        self.orchestrator.delete_job(name, ws.namespace)
        metrics.JOB_RUNS_TOTAL.labels(action=action.value, result="succeeded").inc()
        logger.info(
            "OpenTofu job succeeded",
            controller="Workspace",
            resource=ws.key,
            uid=ws.uid,
            action=action.value,
            job=name,
            event="job",
            reason=EVENT_JOB_SUCCEEDED,
        )
        self._emit(
            namespace=ws.namespace,
            name=ws.name,
            uid=ws.uid,
            reason=EVENT_JOB_SUCCEEDED,
            message=f"opentofu {action} '{ws.name} (id: {ws.uid})' success",
        )

    def _fail(
        self,
        ws: Workspace,
        action: Action,
        name: str,
        info: JobInfo | None,
        logs_error: JobLogsError | None = None,
    ) -> None:
        if logs_error is not None:
            message = str(logs_error)
        elif info is not None:
            message = info.error
        else:
            message = self._failure_message(ws, action, name)

        self._record_failure(ws, action, name, message)
        ws.error = message
        ws.set_reason(Reason.UNAVAILABLE, message)
        raise JobFailedError(action.value, message)

    def _failure_message(self, ws: Workspace, action: Action, name: str) -> str:
        try:
            return self.orchestrator.get_job_info(name, ws.namespace, action).error
        except JobLogsError as e:
            return str(e)

    def _record_failure(self, ws: Workspace, action: Action, name: str, message: str) -> None:
        """Delete a failed Job and report it."""
        self.orchestrator.delete_job(name, ws.namespace)
        metrics.JOB_RUNS_TOTAL.labels(action=action.value, result="failed").inc()
        logger.warning(
            f"OpenTofu job failed: {message}",
            controller="Workspace",
            resource=ws.key,
            uid=ws.uid,
            action=action.value,
            job=name,
            event="job",
            reason=EVENT_JOB_FAILED,
        )
        self._emit(
            namespace=ws.namespace,
            name=ws.name,
            uid=ws.uid,
            reason=EVENT_JOB_FAILED,
            message=f"opentofu {action} failed: {message}",
            type_="Warning",
        )
