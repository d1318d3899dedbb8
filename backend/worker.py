# worker.py
"""Thread-based worker pool that drains a JobQueue.

One thread per logical worker, each holding at most one job. A maintenance
thread promotes delayed jobs and recovers stalled ones; a heartbeat thread per
job keeps its lock alive.
"""
from __future__ import annotations
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from errors import QueueUnavailableError, WorkerStartError, is_retryable
from helpers import _iso_now
from job_queue import Job, JobQueue

LOG = logging.getLogger("worker")

Processor = Callable[[Dict[str, Any], "JobContext"], Any]


class JobContext:
    """Handed to the processor for one job attempt."""

    def __init__(self, pool: "WorkerPool", job: Job, token: str):
        self.pool = pool
        self.job = job
        self.token = token
        self.lost = threading.Event()

    @property
    def job_id(self) -> str:
        return self.job.id

    def update_progress(self, pct: int):
        # telemetry only; a store hiccup must not fail the job
        try:
            self.pool.queue.update_progress(self.job.id, pct)
            self.job.progress = pct
        except QueueUnavailableError as e:
            LOG.warning("job %s: progress update to %s%% dropped: %s", self.job.id, pct, e)

    def is_cancelled(self) -> bool:
        return self.lost.is_set() or self.pool._abandon.is_set()


class WorkerPool:
    def __init__(self, queue: JobQueue, processor: Processor, concurrency: int = 2,
                 stalled_interval: float = 30.0, max_stalled_count: int = 1, poll_interval: float = 1.0):
        self.queue = queue
        self.processor = processor
        self.concurrency = max(1, int(concurrency))
        self.stalled_interval = stalled_interval
        self.max_stalled_count = max_stalled_count
        self.poll_interval = poll_interval

        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()
        self._abandon = threading.Event()
        self._running = False
        self._shutting_down = False
        self._lock = threading.Lock()
        self._active: Dict[str, JobContext] = {}
        self._started_at: Optional[str] = None
        self.worker_id = uuid.uuid4().hex

    @property
    def registry_ttl_ms(self) -> int:
        return int(max(self.stalled_interval, self.poll_interval * 3) * 1000)

    def _register(self):
        self.queue.register_worker(self.worker_id, self.registry_ttl_ms,
                                   {"concurrency": self.concurrency, "startedAt": self._started_at})

    @property
    def lock_ms(self) -> int:
        return int(self.stalled_interval * 1000)

    # -------- lifecycle --------
    def start(self, concurrency: Optional[int] = None):
        with self._lock:
            if self._running:
                LOG.warning("worker pool already running")
                return
            if not self.queue.ping():
                raise WorkerStartError(
                    f"queue store unreachable, refusing to start workers for {self.queue.name}"
                )
            if concurrency is not None:
                self.concurrency = max(1, int(concurrency))
            self._stop.clear()
            self._abandon.clear()
            self._shutting_down = False
            self._threads = [
                threading.Thread(target=self._work_loop, name=f"{self.queue.name}-worker-{i}", daemon=True)
                for i in range(self.concurrency)
            ]
            self._threads.append(
                threading.Thread(target=self._maintenance_loop, name=f"{self.queue.name}-maintenance", daemon=True)
            )
            self._started_at = _iso_now()
            self._register()
            self._running = True

        for t in self._threads:
            t.start()
        LOG.info("worker pool started: queue=%s concurrency=%d stalledInterval=%.0fs",
                 self.queue.name, self.concurrency, self.stalled_interval)

    def shutdown(self, grace_period: float = 30.0):
        with self._lock:
            if not self._running or self._shutting_down:
                return
            self._shutting_down = True
        LOG.info("worker pool shutting down, waiting up to %.0fs for %d in-flight job(s)",
                 grace_period, len(self._active))
        self._stop.set()

        deadline = time.monotonic() + grace_period
        for t in self._threads:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            t.join(timeout=remaining)

        leftover = [t for t in self._threads if t.is_alive()]
        if leftover:
            # heartbeats stop, so another worker's stalled check will pick these up
            self._abandon.set()
            with self._lock:
                abandoned = list(self._active)
            LOG.warning("grace period expired, abandoning job(s): %s", ", ".join(abandoned) or "-")

        try:
            self.queue.unregister_worker(self.worker_id)
        except QueueUnavailableError as e:
            LOG.warning("could not deregister worker %s: %s", self.worker_id, e)
        with self._lock:
            self._running = False
            self._shutting_down = False
            self._threads = []
        LOG.info("worker pool stopped")

    def is_running(self) -> bool:
        return self._running and not self._shutting_down

    def health(self) -> Dict[str, Any]:
        with self._lock:
            active = len(self._active)
        return {
            "workerId": self.worker_id,
            "isRunning": self.is_running(),
            "isShuttingDown": self._shutting_down,
            "concurrency": self.concurrency,
            "activeJobs": active,
            "stalledInterval": self.lock_ms,
            "timestamp": _iso_now(),
        }

    # -------- loops --------
    def _work_loop(self):
        while not self._stop.is_set():
            try:
                got = self.run_once()
            except QueueUnavailableError as e:
                LOG.warning("queue unavailable, backing off: %s", e)
                got = False
            except Exception:
                LOG.exception("unexpected error in worker loop")
                got = False
            if not got:
                self._stop.wait(self.poll_interval)

    def _maintenance_loop(self):
        while not self._stop.is_set():
            try:
                self._register()
                self.queue.promote_delayed()
                self.queue.check_stalled(self.lock_ms, self.max_stalled_count)
            except QueueUnavailableError as e:
                LOG.warning("maintenance skipped, queue unavailable: %s", e)
            except Exception:
                LOG.exception("unexpected error in maintenance loop")
            self._stop.wait(self.poll_interval)

    def _heartbeat(self, ctx: JobContext, done: threading.Event):
        interval = max(self.stalled_interval / 2.0, 0.05)
        while not done.wait(interval):
            if self._abandon.is_set():
                return
            try:
                if not self.queue.extend_lock(ctx.job.id, ctx.token, self.lock_ms):
                    LOG.warning("job %s: lock lost (interview %s)", ctx.job.id, ctx.job.interview_id)
                    ctx.lost.set()
                    return
            except QueueUnavailableError as e:
                LOG.warning("job %s: heartbeat failed: %s", ctx.job.id, e)

    # -------- processing --------
    def run_once(self, token: Optional[str] = None) -> bool:
        """Fetch and process a single job on the calling thread. False if nothing was waiting."""
        token = token or uuid.uuid4().hex
        job = self.queue.fetch_next(token, self.lock_ms)
        if job is None:
            return False
        self._process(job, token)
        return True

    def _process(self, job: Job, token: str):
        ctx = JobContext(self, job, token)
        done = threading.Event()
        heartbeat = threading.Thread(target=self._heartbeat, args=(ctx, done),
                                     name=f"heartbeat-{job.id}", daemon=True)
        with self._lock:
            self._active[job.id] = ctx
        heartbeat.start()

        started = time.monotonic()
        LOG.info("job %s started (interview %s, attempt %d/%d)",
                 job.id, job.interview_id, job.attempts_made + 1, job.max_attempts)
        try:
            result = self.processor(job.data, ctx)
        except Exception as e:
            done.set()
            if self._abandon.is_set():
                LOG.warning("job %s abandoned during shutdown, left for stalled recovery", job.id)
                return
            reason = str(e) or e.__class__.__name__
            retryable = is_retryable(e)
            state = self.queue.fail(job, token, reason, retryable=retryable)
            LOG.error("job %s failed (interview %s, attempt %d/%d, retryable=%s, now %s): %s",
                      job.id, job.interview_id, job.attempts_made + 1, job.max_attempts,
                      retryable, state, reason)
        else:
            done.set()
            if self._abandon.is_set():
                return
            self.queue.complete(job, token, result)
            LOG.info("job %s completed in %.1fs (interview %s)",
                     job.id, time.monotonic() - started, job.interview_id)
        finally:
            done.set()
            with self._lock:
                self._active.pop(job.id, None)
