"""
In-process background runner for full-history scans.

Full scans run in daemon threads so the Django request returns immediately.
Job records live in memory (lost on restart); completed payloads are also
written to the cache so a restarted process can still serve them.

Job identity is the hash of the scan parameters, so identical concurrent
requests attach to one job instead of running the scan twice.
"""

import logging
import threading
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from src.api.exceptions import ScanJobFailed
from src.interfaces.cache_store import ICacheStore
from src.services.concurrency import Deadline

from .scanner import PortfolioScanner, ScanParams

logger = logging.getLogger(__name__)

PENDING = 'pending'
RUNNING = 'running'
COMPLETED = 'completed'
FAILED = 'failed'


def run_in_thread(fn: Callable[[], None]) -> None:
    """Run *fn* in a daemon thread."""
    t = threading.Thread(target=fn, daemon=True)
    t.start()


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class ScanJob:
    id: str
    params: ScanParams
    status: str
    created_at: float
    updated_at: float
    result_cache_key: str
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    traceback: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'job_id': self.id,
            'status': self.status,
            'address': self.params.address,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'finished_at': _iso(self.finished_at),
            'error': self.error,
            'result_cache_key': self.result_cache_key,
        }


class ScanJobManager:
    """
    Owns every ScanJob of this process.

    A job record is only written under the manager's lock, and only by the
    manager, so one job id never has two concurrent writers.
    """

    def __init__(
        self,
        scanner_factory: Callable[[], PortfolioScanner],
        cache: Optional[ICacheStore] = None,
        job_ttl_seconds: int = 3600,
        result_ttl_seconds: int = 3600,
        runner: Callable[[Callable[[], None]], None] = run_in_thread,
        clock: Callable[[], float] = time.time,
    ):
        self._scanner_factory = scanner_factory
        self._cache = cache
        self._job_ttl = job_ttl_seconds
        self._result_ttl = result_ttl_seconds
        self._runner = runner
        self._clock = clock
        self._jobs: Dict[str, ScanJob] = {}
        self._results: Dict[str, dict] = {}
        self._lock = threading.Lock()

    @staticmethod
    def result_key(job_id: str) -> str:
        return f'scan:{job_id}'

    def cached_result(self, params: ScanParams) -> Optional[dict]:
        """Payload of an earlier identical full scan, if still cached."""
        job_id = params.cache_key()
        with self._lock:
            in_memory = self._results.get(job_id)
        if in_memory is not None:
            return in_memory
        if self._cache is None:
            return None
        return self._cache.get_json(self.result_key(job_id))

    def submit(self, params: ScanParams) -> ScanJob:
        """
        Return the job for these params, starting it if needed.

        Pending and running jobs are shared. Failed jobs, and completed jobs
        whose result has been evicted, are reset and run again.
        """
        params = params.normalized()
        job_id = params.cache_key()
        now = self._clock()

        with self._lock:
            self._prune(now)
            job = self._jobs.get(job_id)
            if job is not None and job.status in (PENDING, RUNNING):
                return job
            if job is not None and job.status == COMPLETED and self._has_result(job_id):
                return job

            job = ScanJob(
                id=job_id,
                params=params,
                status=PENDING,
                created_at=now,
                updated_at=now,
                result_cache_key=self.result_key(job_id),
            )
            self._jobs[job_id] = job

        logger.info(f'Scan job {job_id} queued for {params.address}')
        self._runner(lambda: self._run(job_id))
        return job

    def get(self, job_id: str) -> Optional[ScanJob]:
        with self._lock:
            self._prune(self._clock())
            return self._jobs.get(job_id)

    def result(self, job_id: str) -> Optional[dict]:
        """
        Payload of a completed job; None while it is still running.

        Raises ScanJobFailed for a failed job.
        """
        job = self.get(job_id)
        if job is None:
            return None
        if job.status == FAILED:
            raise ScanJobFailed(job_id, job.error or 'unknown error')
        if job.status != COMPLETED:
            return None
        with self._lock:
            payload = self._results.get(job_id)
        if payload is None and self._cache is not None:
            payload = self._cache.get_json(job.result_cache_key)
        return payload

    def _run(self, job_id: str) -> None:
        self._update(job_id, status=RUNNING, started_at=self._clock())
        job = self.get(job_id)
        if job is None:
            return
        try:
            payload = self._scanner_factory().run(job.params, deadline=Deadline.unbounded())
        except Exception as e:
            logger.error(f'Scan job {job_id} failed: {e}')
            self._update(job_id, status=FAILED, error=str(e),
                         traceback=traceback.format_exc(), finished_at=self._clock())
            return

        with self._lock:
            self._results[job_id] = payload
        if self._cache is not None:
            self._cache.set_json(self.result_key(job_id), payload, ttl=self._result_ttl)
        self._update(job_id, status=COMPLETED, finished_at=self._clock())
        logger.info(f'Scan job {job_id} completed')

    def _update(self, job_id: str, **fields) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            for name, value in fields.items():
                setattr(job, name, value)
            job.updated_at = self._clock()

    def _has_result(self, job_id: str) -> bool:
        if job_id in self._results:
            return True
        return self._cache is not None and self._cache.get_json(self.result_key(job_id)) is not None

    def _prune(self, now: float) -> None:
        """Drop finished jobs (and their in-memory results) idle for longer than the TTL."""
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.status in (COMPLETED, FAILED) and now - job.updated_at > self._job_ttl
        ]
        for job_id in expired:
            del self._jobs[job_id]
            self._results.pop(job_id, None)
        if expired:
            logger.debug(f'Pruned {len(expired)} expired scan jobs')
