"""
Background jobs: typed payloads, the dispatcher and the event handlers.
"""

from autonaim_interview.jobs.dispatcher import JobDispatcher
from autonaim_interview.jobs.schemas import JOB_SCHEMAS, JobHandle, JobStatus, RetryPolicy

__all__ = [
    "JOB_SCHEMAS",
    "JobDispatcher",
    "JobHandle",
    "JobStatus",
    "RetryPolicy",
]
