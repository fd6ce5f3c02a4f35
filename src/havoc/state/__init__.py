"""Run state machine and persistence.

Runs progress through the pipeline statuses:
- pending → cloning → analyzing → planning → editing
- → testing → reviewing → publishing → done | failed

State is persisted to PostgreSQL (or memory) with optimistic locking for
concurrent update protection.
"""

from havoc.state.models import (
    Run,
    RunStatus,
    StatusTransition,
    VALID_TRANSITIONS,
    is_terminal_status,
    is_valid_transition,
)
from havoc.state.machine import (
    InvalidTransitionError,
    RunImmutableError,
    RunNotFoundError,
    RunRepository,
    RunStateMachine,
    VersionConflictError,
)
from havoc.state.repository import (
    DatabaseError,
    InMemoryRunRepository,
    PostgresRunRepository,
)

__all__ = [
    # Models
    "Run",
    "RunStatus",
    "StatusTransition",
    "VALID_TRANSITIONS",
    "is_terminal_status",
    "is_valid_transition",
    # State machine
    "InvalidTransitionError",
    "RunImmutableError",
    "RunNotFoundError",
    "RunRepository",
    "RunStateMachine",
    "VersionConflictError",
    # Repository
    "DatabaseError",
    "InMemoryRunRepository",
    "PostgresRunRepository",
]
