"""Run event models.

This module defines the data models for run events:
- RunEventType: Enum of all event types emitted during a run
- RunEvent: Structured event with run id, message and optional data

Run events feed the per-run event buffer (served to clients following a
run), structured logs and Prometheus metrics.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class RunEventType(str, Enum):
    """Types of events emitted during a pipeline run.

    Attributes:
        STATUS: The run moved to a new status.
        STEP: A named step inside a stage started or finished.
        TASK: A plan task was executed.
        COMMAND: The sandbox runner executed (or refused) a command.
        FILE: The sandbox runner read or wrote a file.
        LOG: Free-form progress message.
        ERROR: Something failed; the run may or may not continue.
        COMPLETION: The run reached a terminal status.
    """

    STATUS = "status"
    STEP = "step"
    TASK = "task"
    COMMAND = "command"
    FILE = "file"
    LOG = "log"
    ERROR = "error"
    COMPLETION = "completion"


class RunEvent(BaseModel):
    """A single progress event for a run.

    Attributes:
        run_id: The run this event belongs to.
        event_type: The category of event.
        message: Human-readable description.
        repository: Repository in "{owner}/{repo}" form, when known.
        timestamp: When the event occurred (UTC timezone).
        data: Additional context specific to the event type.

    Data Field Conventions:
        For STATUS events:
            - status: The new run status
            - from_status: The previous run status

        For COMPLETION events:
            - status: The terminal status
            - duration_seconds: Total run time
            - pr_url: URL of the created pull request, if any

        For ERROR events:
            - error_type: Exception class name
            - status: Status the run was in when the error occurred
    """

    run_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the run that emitted the event",
    )

    event_type: RunEventType = Field(
        ...,
        description="The category of event being emitted",
    )

    message: str = Field(
        default="",
        description="Human-readable description of the event",
    )

    repository: Optional[str] = Field(
        default=None,
        description='Repository in "{owner}/{repo}" form',
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert event to a flat dictionary for structured logging.

        Returns:
            Dict[str, Any]: Flat dictionary representation of the event.
        """
        return {
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "repository": self.repository,
            "timestamp": self.timestamp.isoformat(),
            "event_message": self.message,
            **self.data,
        }
