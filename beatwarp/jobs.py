"""
In-process job queue.

A stand-in for the external job-queue collaborator: jobs are enqueued with a
priority (lower runs first) and an attempt budget, executed on a thread pool,
and retried generically until the budget runs out. Only the newest
``retention`` finished jobs are kept for status lookups.
"""

from __future__ import annotations

import copy
import heapq
import itertools
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .config import settings
from .errors import WarpError
from .logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Dict[str, Any]]


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobRecord:
    id: str
    job_type: str
    payload: Dict[str, Any]
    priority: int = 0
    attempts: int = 1
    attempts_made: int = 0
    state: JobState = JobState.PENDING
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def done(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.id,
            "job_type": self.job_type,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
        }


class LocalJobQueue:
    """
    Priority job queue over a ThreadPoolExecutor.

    ``max_workers=0`` runs nothing on its own; call ``run_next()`` to execute
    the highest-priority pending job on the calling thread.
    """

    def __init__(self, max_workers: int = 2, retention: Optional[int] = None):
        self.retention = max(1, settings.JOB_RETENTION if retention is None else retention)
        self._handlers: Dict[str, Handler] = {}
        self._jobs: Dict[str, JobRecord] = {}
        self._events: Dict[str, threading.Event] = {}
        self._heap: List[Tuple[int, int, str]] = []
        self._finished: Deque[str] = deque()   # finished job ids, oldest first
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers) if max_workers > 0 else None

    def register(self, job_type: str, handler: Handler) -> None:
        self._handlers[job_type] = handler

    def enqueue(self, job_type: str, payload: Dict[str, Any], priority: int = 0, attempts: int = 1) -> str:
        if job_type not in self._handlers:
            raise KeyError(f"No handler registered for job type {job_type!r}")
        job = JobRecord(
            id=uuid.uuid4().hex,
            job_type=job_type,
            payload=copy.deepcopy(payload),  # snapshot: later caller edits never reach the job
            priority=priority,
            attempts=max(1, attempts),
        )
        with self._lock:
            self._jobs[job.id] = job
            self._events[job.id] = threading.Event()
        self._push(job)
        logger.info("Enqueued %s job %s (priority=%d, attempts=%d)", job_type, job.id, priority, job.attempts)
        return job.id

    def status(self, job_id: str) -> JobRecord:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"Unknown job {job_id!r}")
            return copy.deepcopy(job)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobRecord:
        with self._lock:
            event = self._events.get(job_id)
        if event is None:
            raise KeyError(f"Unknown job {job_id!r}")
        event.wait(timeout)
        return self.status(job_id)

    def run_next(self) -> Optional[JobRecord]:
        with self._lock:
            if not self._heap:
                return None
            _, _, job_id = heapq.heappop(self._heap)
            job = self._jobs[job_id]
            job.state = JobState.RUNNING
            job.attempts_made += 1
            payload = copy.deepcopy(job.payload)

        logger.debug("Running %s job %s (attempt %d/%d)", job.job_type, job.id, job.attempts_made, job.attempts)
        try:
            result = self._handlers[job.job_type](payload)
        except Exception as e:  # noqa: BLE001 - recorded on the job, surfaced through status()
            error = e.to_dict() if isinstance(e, WarpError) else {"error": type(e).__name__, "message": str(e)}
            retry = job.attempts_made < job.attempts
            logger.warning(
                "%s job %s failed on attempt %d/%d: %s",
                job.job_type, job.id, job.attempts_made, job.attempts, e,
                exc_info=not retry,
            )
            if retry:
                with self._lock:
                    job.error = error
                    job.state = JobState.PENDING
                self._push(job)
                return self.status(job.id)
            return self._finish(job, JobState.FAILED, error=error)

        logger.info("%s job %s completed", job.job_type, job.id)
        return self._finish(job, JobState.COMPLETED, result=result)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _finish(
        self,
        job: JobRecord,
        state: JobState,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> JobRecord:
        with self._lock:
            job.result = result
            job.error = error
            job.state = state
            job.finished_at = time.time()
            snapshot = copy.deepcopy(job)
            event = self._events[job.id]
            self._finished.append(job.id)
            self._prune()
        event.set()
        return snapshot

    def _prune(self) -> None:
        """Forget the oldest finished jobs beyond ``retention``. Caller holds the lock."""
        while len(self._finished) > self.retention:
            job_id = self._finished.popleft()
            del self._jobs[job_id]
            del self._events[job_id]

    def _push(self, job: JobRecord) -> None:
        with self._lock:
            heapq.heappush(self._heap, (job.priority, next(self._seq), job.id))
        if self._executor is not None:
            self._executor.submit(self.run_next)
