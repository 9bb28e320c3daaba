"""
Legacy Status Mapping System
Maps job status names written by earlier releases onto the current JobStatus values
and rewrites stored rows once at startup.
"""

from typing import Dict, Optional
import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Job, JobStatus

logger = logging.getLogger(__name__)


class LegacyStatusMapper:
    """Mapping from retired job status names to the canonical lifecycle"""

    # =============== JOB STATUS MAPPINGS ===============
    LEGACY_JOB_STATUS_MAP: Dict[str, JobStatus] = {
        # Funding phase
        "CREATED": JobStatus.FUNDING_OPEN,
        "FUNDING": JobStatus.FUNDING_OPEN,
        "FUNDED": JobStatus.FUNDING_COMPLETE,

        # Execution phase
        "LEADER_EXECUTING": JobStatus.IN_PROGRESS,
        "REVIEW_WINDOW": JobStatus.UNDER_REVIEW,

        # Terminal phase
        "CLOSED": JobStatus.COMPLETED,
    }

    ALL_JOB_STATUSES = {status.value for status in JobStatus}

    @classmethod
    def normalize_job_status(cls, value: Optional[str]) -> Optional[JobStatus]:
        """
        Map a stored status string to JobStatus.

        Returns None for values that are neither canonical nor known legacy names.
        """
        if value is None:
            return None
        key = str(value).strip().upper()
        if key in cls.ALL_JOB_STATUSES:
            return JobStatus(key)
        return cls.LEGACY_JOB_STATUS_MAP.get(key)

    @classmethod
    def normalize_legacy_job_statuses(cls, session: Session) -> Dict[str, int]:
        """Rewrite legacy status values in place; returns rows updated per legacy name"""
        updated = {}
        for legacy, canonical in cls.LEGACY_JOB_STATUS_MAP.items():
            result = session.execute(
                update(Job)
                .where(Job.status == legacy)
                .values(status=canonical.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                updated[legacy] = result.rowcount
                logger.info(f"🔄 LEGACY_STATUS_NORMALIZED: {result.rowcount} jobs {legacy} -> {canonical.value}")

        if not updated:
            logger.debug("No legacy job statuses found")
        return updated
