"""
In-memory job registry shared by every in-flight request.

The registry maps a job identity to its current status. It is the only
shared mutable structure in the service, so every read and write goes
through a single lock. The lock guards dictionary operations only and is
never held across an ``await``: a status query is never stalled behind a
running upscale.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

from .models import JobStatus

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    status: JobStatus
    updated_at: float


class JobRegistry:
    """
    Concurrent mapping from job identity to status.

    State machine per identity: ``Processing -> {Completed, Failed, Error}``.
    Terminal states are absorbing; a second completion is ignored.

    Thread Safety:
        A ``threading.Lock`` protects the mapping. Sync handlers run in the
        threadpool, so readers are not always on the event loop's thread.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = Lock()
        self._clock = clock

    def record_processing(self, job_id: str) -> None:
        """
        Register a new job in the ``Processing`` state.

        Raises:
            ValueError: If the identity has been issued before
        """
        with self._lock:
            if job_id in self._entries:
                raise ValueError(f"Job identity {job_id} already registered")
            self._entries[job_id] = RegistryEntry(JobStatus.PROCESSING, self._clock())

    def complete(self, job_id: str, status: JobStatus) -> JobStatus:
        """
        Move a job to a terminal state.

        Args:
            job_id: The job to update
            status: One of the terminal statuses

        Returns:
            The status the job holds after the call. This differs from
            ``status`` when the job had already reached a terminal state.

        Raises:
            ValueError: If ``status`` is not terminal
            KeyError: If the job was never registered
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        with self._lock:
            entry = self._entries[job_id]
            if entry.status.is_terminal:
                current = entry.status
            else:
                entry.status = status
                entry.updated_at = self._clock()
                return status
        logger.warning(f"Job {job_id} already {current.value}; ignoring transition to {status.value}")
        return current

    def get(self, job_id: str) -> Optional[JobStatus]:
        with self._lock:
            entry = self._entries.get(job_id)
            return entry.status if entry else None

    def snapshot(self) -> Dict[str, JobStatus]:
        """
        Return a copy of the current id -> status mapping.

        Diagnostic accessor for debugging and tests; request handlers look
        jobs up one at a time through ``get``.
        """
        with self._lock:
            return {job_id: entry.status for job_id, entry in self._entries.items()}

    def evict_expired(self, ttl_seconds: float) -> int:
        """
        Drop terminal jobs whose last transition is older than ``ttl_seconds``.

        ``Processing`` jobs are never evicted, so a running job always stays
        visible to status queries.

        Returns:
            Number of evicted entries
        """
        cutoff = self._clock() - ttl_seconds
        with self._lock:
            expired = [
                job_id
                for job_id, entry in self._entries.items()
                if entry.status.is_terminal and entry.updated_at <= cutoff
            ]
            for job_id in expired:
                del self._entries[job_id]
        if expired:
            logger.info(f"Evicted {len(expired)} expired job(s) from registry")
        return len(expired)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
