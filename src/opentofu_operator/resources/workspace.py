"""In-memory view of a Workspace custom resource.

A ``Workspace`` is built from the object kopf hands to a handler. The
reconciler mutates its status (and, transiently, its deletion marker) and the
driver persists the result.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..constants import (
    COND_READY,
    COND_SYNCED,
    DELETION_POLICY_DELETE,
    REASON_RECONCILE_ERROR,
    REASON_RECONCILE_SUCCESS,
    SOURCE_REMOTE,
)


class Reason(str, Enum):
    """Lifecycle phase carried as the reason of the Ready condition."""

    UNAVAILABLE = "Unavailable"
    CREATING = "Creating"
    OBSERVING = "Observing"
    AVAILABLE = "Available"
    DELETING = "Deleting"

    @classmethod
    def parse(cls, value: str | None) -> Reason:
        """Map a stored reason to a phase; unknown or unset is UNAVAILABLE."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNAVAILABLE


# Ready condition status and message for each phase
_READY_CONDITIONS: dict[Reason, tuple[str, str]] = {
    Reason.UNAVAILABLE: ("False", "OpenTofu workspace is not available"),
    Reason.CREATING: ("False", "OpenTofu apply in progress"),
    Reason.OBSERVING: ("True", "OpenTofu plan in progress to detect drift"),
    Reason.AVAILABLE: ("True", "OpenTofu workspace is applied"),
    Reason.DELETING: ("False", "OpenTofu destroy in progress"),
}


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class Workspace:
    def __init__(self, body: Mapping[str, Any]):
        metadata = body.get("metadata") or {}
        self.name: str = metadata.get("name", "")
        self.namespace: str = metadata.get("namespace", "")
        self.uid: str = metadata.get("uid", "")
        self.resource_version: str | None = metadata.get("resourceVersion")
        self.deletion_timestamp: str | None = metadata.get("deletionTimestamp")
        self.spec: dict[str, Any] = copy.deepcopy(dict(body.get("spec") or {}))

        status = body.get("status") or {}
        self.conditions: list[dict[str, Any]] = copy.deepcopy(list(status.get("conditions") or []))
        self.error: str | None = status.get("error")
        outputs = status.get("outputs")
        self.outputs: dict[str, str] | None = dict(outputs) if outputs is not None else None

        # The deletion marker as observed; the reconciler may hide it temporarily
        self._observed_deletion_timestamp = self.deletion_timestamp

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    # --- spec accessors ---------------------------------------------------

    @property
    def module(self) -> str:
        return (self.spec.get("workspace") or {}).get("module") or ""

    @property
    def source(self) -> str:
        return (self.spec.get("workspace") or {}).get("source") or SOURCE_REMOTE

    @property
    def connector_ref(self) -> dict[str, str] | None:
        ref = self.spec.get("tfConnectorRef")
        if not ref or not ref.get("name"):
            return None
        return {"name": ref["name"], "namespace": ref.get("namespace") or self.namespace}

    @property
    def deletion_policy(self) -> str:
        return self.spec.get("deletionPolicy") or DELETION_POLICY_DELETE

    def action_allowed(self, action: str) -> bool:
        allowed = self.spec.get("allowedActions") or {}
        return bool(allowed.get(str(action), True))

    # --- deletion marker --------------------------------------------------

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None

    def hide_deletion(self) -> None:
        """Clear the deletion marker so the driver does not finalize yet."""
        self.deletion_timestamp = None

    def restore_deletion(self) -> None:
        """Reinstate the deletion marker seen on the API object."""
        self.deletion_timestamp = self._observed_deletion_timestamp or _now()

    # --- conditions -------------------------------------------------------

    def get_condition(self, type_: str) -> dict[str, Any] | None:
        return next((c for c in self.conditions if c.get("type") == type_), None)

    def set_condition(self, type_: str, status: str, reason: str, message: str = "") -> None:
        previous = self.get_condition(type_)
        transition_time = _now()
        if previous and previous.get("status") == status and previous.get("lastTransitionTime"):
            transition_time = previous["lastTransitionTime"]

        condition = {
            "type": type_,
            "status": status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": transition_time,
        }
        self.conditions = [c for c in self.conditions if c.get("type") != type_]
        self.conditions.append(condition)

    @property
    def reason(self) -> Reason:
        ready = self.get_condition(COND_READY) or {}
        return Reason.parse(ready.get("reason"))

    def set_reason(self, reason: Reason, message: str | None = None) -> None:
        status, default_message = _READY_CONDITIONS[reason]
        self.set_condition(COND_READY, status, reason.value, message or default_message)

    def set_synced(self, error: Exception | None = None) -> None:
        if error is None:
            self.set_condition(COND_SYNCED, "True", REASON_RECONCILE_SUCCESS)
        else:
            self.set_condition(COND_SYNCED, "False", REASON_RECONCILE_ERROR, str(error))

    # --- status -----------------------------------------------------------

    def status_body(self) -> dict[str, Any]:
        return {
            "conditions": copy.deepcopy(self.conditions),
            "error": self.error,
            "outputs": dict(self.outputs) if self.outputs is not None else None,
        }
