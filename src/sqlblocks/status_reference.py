"""Execution status lifecycle reference used by ``sqlblocks help-status``."""

from __future__ import annotations

from typing import Any

from sqlblocks.models import Status
from sqlblocks.status import ALLOWED_TRANSITIONS

STATUS_REFERENCE_SCHEMA = "status_reference_v1"

_MEANINGS = {
    Status.QUEUED: "Accepted by a session and waiting behind the head of its queue.",
    Status.EXECUTING: "Commands transmitted; waiting for the completion marker or process exit.",
    Status.COMPLETED: "Finished with a zero exit and no diagnostics.",
    Status.COMPLETED_WITH_ERRORS: (
        "Finished with a zero exit but the engine wrote diagnostics; both are delivered."
    ),
    Status.ERROR: "Engine exited nonzero, the session died, or result handling failed.",
    Status.CANCELLED: "Interrupted while executing, or dropped from the queue before it started.",
    Status.UNKNOWN: "Finished without an exit code or any recognizable cancellation message.",
}

EXECUTION_STATUS_LIFECYCLE = [
    {
        "status": str(status),
        "meaning": _MEANINGS[status],
        "typical_transitions": sorted(str(s) for s in ALLOWED_TRANSITIONS.get(status, ())),
    }
    for status in Status
]

CANCEL_OUTCOMES = [
    {"outcome": "interrupted", "meaning": "SIGINT sent to the process running the execution."},
    {"outcome": "dequeued", "meaning": "Queued execution marked cancelled; it is never sent."},
    {"outcome": "not_found", "meaning": "Unknown id, or the execution already finished."},
]


def get_status_reference() -> dict[str, Any]:
    """Return a machine-parseable lifecycle reference payload."""
    return {
        "schema": STATUS_REFERENCE_SCHEMA,
        "lifecycles": [
            {
                "type": "execution",
                "label": "Execution lifecycle",
                "description": "Statuses of a session or one-off execution.",
                "statuses": [dict(entry) for entry in EXECUTION_STATUS_LIFECYCLE],
            }
        ],
        "cancel_outcomes": [dict(entry) for entry in CANCEL_OUTCOMES],
    }
