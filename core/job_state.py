"""
Transcode Job State Machine - explicit status transitions for jobs and profiles.

Jobs and profiles move in lockstep but are separate records, so both share
one transition table (profiles have the extra PENDING entry state):

    PENDING ──> QUEUED ──> PROCESSING ──> COMPLETED
                  ^             │
                  │             v
                  └────────── FAILED   (explicit re-queue only)

Entering a state has field side effects, computed here so every writer
stamps the same columns:

- PROCESSING: started_at = now (profiles also reset progress to 0)
- COMPLETED:  completed_at = now, error cleared (profiles: progress = 100)
- FAILED:     completed_at = now, error stored (last progress is kept)

Usage:
    from core.job_state import job_state_machine

    job_state_machine.validate("profile", current, ProfileStatus.PROCESSING)
    values = job_state_machine.profile_values(ProfileStatus.PROCESSING)

Note: validation is point-in-time. Writers that race (the single-flight
queue claim, the video completion flip) use a transaction around
read-then-write instead of relying on this check alone.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional, Union

from core.enums import JobStatus, ProfileStatus
from core.errors import InvalidTransitionError, truncate_error

logger = logging.getLogger(__name__)

StatusLike = Union[str, JobStatus, ProfileStatus]

# Allowed targets per current status (values are plain strings, as stored)
PROFILE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    ProfileStatus.PENDING.value: frozenset({ProfileStatus.QUEUED.value}),
    ProfileStatus.QUEUED.value: frozenset({ProfileStatus.PROCESSING.value, ProfileStatus.FAILED.value}),
    ProfileStatus.PROCESSING.value: frozenset({ProfileStatus.COMPLETED.value, ProfileStatus.FAILED.value}),
    ProfileStatus.COMPLETED.value: frozenset(),
    ProfileStatus.FAILED.value: frozenset({ProfileStatus.QUEUED.value}),
}

JOB_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    JobStatus.QUEUED.value: frozenset({JobStatus.PROCESSING.value, JobStatus.FAILED.value}),
    JobStatus.PROCESSING.value: frozenset({JobStatus.COMPLETED.value, JobStatus.FAILED.value}),
    JobStatus.COMPLETED.value: frozenset(),
    JobStatus.FAILED.value: frozenset(),
}

# Statuses a profile can be queued from
QUEUEABLE_PROFILE_STATUSES = (ProfileStatus.PENDING.value, ProfileStatus.FAILED.value)

# A job in one of these statuses is "live" - at most one per (video, profile)
LIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)


def _value(status: StatusLike) -> str:
    return status.value if hasattr(status, "value") else str(status)


class TranscodeStateMachine:
    """
    Transition validation and side-effect values for job/profile status changes.

    Stateless and safe to share between workers.
    """

    def _table(self, kind: str) -> Dict[str, FrozenSet[str]]:
        if kind == "profile":
            return PROFILE_TRANSITIONS
        if kind == "job":
            return JOB_TRANSITIONS
        raise ValueError(f"Unknown record kind: {kind}")

    def can_transition(self, kind: str, current: StatusLike, target: StatusLike) -> bool:
        """Check whether `kind` ("job" or "profile") may move from current to target."""
        return _value(target) in self._table(kind).get(_value(current), frozenset())

    def validate(self, kind: str, current: StatusLike, target: StatusLike) -> None:
        """Raise InvalidTransitionError if the transition is not allowed."""
        if not self.can_transition(kind, current, target):
            raise InvalidTransitionError(kind, _value(current), _value(target))

    def is_terminal(self, status: StatusLike) -> bool:
        return _value(status) in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

    def is_live(self, status: StatusLike) -> bool:
        return _value(status) in LIVE_JOB_STATUSES

    def job_values(
        self,
        target: StatusLike,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Column values to write when a job enters `target`."""
        now = now or datetime.now(timezone.utc)
        target = _value(target)
        values = {"status": target}

        if target == JobStatus.PROCESSING.value:
            values["started_at"] = now
        elif target == JobStatus.COMPLETED.value:
            values["completed_at"] = now
            values["error_message"] = None
        elif target == JobStatus.FAILED.value:
            values["completed_at"] = now
            values["error_message"] = truncate_error(error)
        elif target == JobStatus.QUEUED.value:
            values["started_at"] = None
            values["completed_at"] = None
            values["error_message"] = None

        return values

    def profile_values(
        self,
        target: StatusLike,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Column values to write when a profile enters `target`."""
        now = now or datetime.now(timezone.utc)
        target = _value(target)
        values = {"status": target}

        if target == ProfileStatus.PROCESSING.value:
            values["started_at"] = now
            values["completed_at"] = None
            values["progress_percentage"] = 0
        elif target == ProfileStatus.COMPLETED.value:
            values["completed_at"] = now
            values["progress_percentage"] = 100
            values["error_message"] = None
        elif target == ProfileStatus.FAILED.value:
            values["completed_at"] = now
            values["error_message"] = truncate_error(error)
        elif target == ProfileStatus.QUEUED.value:
            values["error_message"] = None

        return values


# Module-level singleton for convenience (stateless)
job_state_machine = TranscodeStateMachine()
