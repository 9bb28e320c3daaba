"""
Job State Transition Validator
==============================

Single source of truth for which job status changes are legal, including the
transitions that only exist for one execution mode. Services call
validate_and_transition() instead of assigning job.status directly.
"""

import logging
from typing import Dict, Set, Optional, Tuple, Union

from models import JobStatus, ExecutionMode
from utils.exception_handler import StateConflict

logger = logging.getLogger(__name__)


class StateTransitionError(StateConflict):
    """Raised when an invalid job state transition is attempted"""
    error_code = "invalid_transition"


def _as_status(value: Union[str, JobStatus]) -> JobStatus:
    return value if isinstance(value, JobStatus) else JobStatus(value)


def _as_mode(value: Union[str, ExecutionMode]) -> ExecutionMode:
    return value if isinstance(value, ExecutionMode) else ExecutionMode(value)


class JobStateValidator:
    """
    Validates job state transitions.

    Prevents invalid transitions like:
    - COMPLETED -> IN_PROGRESS (resurrection)
    - FUNDING_OPEN -> UNDER_REVIEW (skipping execution)
    - FUNDING_COMPLETE -> WORKER_SELECTED on a leader-executed job
    """

    VALID_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
        # Leader-executed jobs skip worker selection once funded
        JobStatus.FUNDING_OPEN: {
            JobStatus.FUNDING_COMPLETE,
            JobStatus.IN_PROGRESS,
        },
        JobStatus.FUNDING_COMPLETE: {
            JobStatus.WORKER_SELECTED,
            JobStatus.IN_PROGRESS,
        },
        JobStatus.WORKER_SELECTED: {
            JobStatus.IN_PROGRESS,
        },
        JobStatus.IN_PROGRESS: {
            JobStatus.AWAITING_VERIFICATION,
            JobStatus.UNDER_REVIEW,
        },
        JobStatus.AWAITING_VERIFICATION: {
            JobStatus.UNDER_REVIEW,
        },
        JobStatus.UNDER_REVIEW: {
            JobStatus.COMPLETED,
            JobStatus.DISPUTED,
            JobStatus.CANCELLED,
        },
        # Admin decision resumes review, pays out, or cancels
        JobStatus.DISPUTED: {
            JobStatus.UNDER_REVIEW,
            JobStatus.COMPLETED,
            JobStatus.CANCELLED,
        },
        JobStatus.COMPLETED: set(),
        JobStatus.CANCELLED: set(),
    }

    # Transitions that exist for one execution mode only
    MODE_RESTRICTED: Dict[Tuple[JobStatus, JobStatus], ExecutionMode] = {
        (JobStatus.FUNDING_OPEN, JobStatus.IN_PROGRESS): ExecutionMode.LEADER_EXECUTION,
        (JobStatus.FUNDING_COMPLETE, JobStatus.IN_PROGRESS): ExecutionMode.LEADER_EXECUTION,
        (JobStatus.IN_PROGRESS, JobStatus.UNDER_REVIEW): ExecutionMode.LEADER_EXECUTION,
        (JobStatus.DISPUTED, JobStatus.UNDER_REVIEW): ExecutionMode.LEADER_EXECUTION,
        (JobStatus.FUNDING_COMPLETE, JobStatus.WORKER_SELECTED): ExecutionMode.WORKER_EXECUTION,
        (JobStatus.WORKER_SELECTED, JobStatus.IN_PROGRESS): ExecutionMode.WORKER_EXECUTION,
    }

    TERMINAL_STATES: Set[JobStatus] = {
        JobStatus.COMPLETED,
        JobStatus.CANCELLED,
    }

    # Job fields may only be edited before anyone is committed to the work
    EDITABLE_STATES: Set[JobStatus] = {
        JobStatus.FUNDING_OPEN,
        JobStatus.FUNDING_COMPLETE,
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: Union[str, JobStatus],
        to_status: Union[str, JobStatus],
        execution_mode: Union[str, ExecutionMode],
        job_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        from_enum = _as_status(from_status)
        to_enum = _as_status(to_status)
        mode = _as_mode(execution_mode)
        job_ref = f"Job {job_id}" if job_id else "Job"

        if from_enum == to_enum:
            return True, "No status change required"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_enum, set())
        if to_enum not in valid_next_states:
            logger.warning(
                f"❌ INVALID_TRANSITION: {job_ref} {from_enum.value} -> {to_enum.value} "
                f"Valid options: {sorted(s.value for s in valid_next_states)}"
            )
            return False, (
                f"Invalid transition: {from_enum.value} -> {to_enum.value}. "
                f"Valid transitions from {from_enum.value}: {sorted(s.value for s in valid_next_states)}"
            )

        required_mode = cls.MODE_RESTRICTED.get((from_enum, to_enum))
        if required_mode is not None and required_mode != mode:
            logger.warning(
                f"❌ INVALID_TRANSITION: {job_ref} {from_enum.value} -> {to_enum.value} "
                f"requires {required_mode.value}, job is {mode.value}"
            )
            return False, (
                f"Transition {from_enum.value} -> {to_enum.value} is only available "
                f"for {required_mode.value} jobs"
            )

        return True, "Valid state transition"

    @classmethod
    def validate_and_transition(cls, job, new_status: Union[str, JobStatus]) -> bool:
        """
        Validate and apply a state transition to a job row.

        Raises:
            StateTransitionError: If the transition is invalid
        """
        current = _as_status(job.status)
        target = _as_status(new_status)

        is_valid, reason = cls.validate_transition(current, target, job.execution_mode, job.id)
        if not is_valid:
            raise StateTransitionError(reason)

        if current != target:
            job.status = target.value
            logger.info(f"🔄 STATUS_UPDATED: Job {job.id} {current.value} -> {target.value}")
        return True

    @classmethod
    def is_terminal_state(cls, status: Union[str, JobStatus]) -> bool:
        return _as_status(status) in cls.TERMINAL_STATES

    @classmethod
    def is_editable_state(cls, status: Union[str, JobStatus]) -> bool:
        return _as_status(status) in cls.EDITABLE_STATES
