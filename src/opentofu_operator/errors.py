"""Exceptions raised while reconciling Workspaces."""

from __future__ import annotations


class OperatorError(Exception):
    """Base class for errors surfaced to the reconcile driver."""


class ResolveError(OperatorError):
    """The TFConnector reference is missing or could not be read."""


class JobCreateError(OperatorError):
    """A Job or one of its supporting objects could not be created."""


class JobLogsError(OperatorError):
    """No log could be retrieved from any pod of a Job."""


class JobFailedError(OperatorError):
    """An OpenTofu Job finished unsuccessfully.

    ``message`` is the classified, single-line error also stored in
    ``status.error``.
    """

    def __init__(self, action: str, message: str):
        super().__init__(f"opentofu {action} failed: {message}")
        self.action = action
        self.message = message


class StatusConflictError(OperatorError):
    """The Workspace kept changing underneath a status write."""
