# job_queue.py
"""Durable job queue on Redis.

Layout per queue (P = "<prefix>:<name>"):
    P:job:<id>            hash with every job field
    P:wait                list, LPUSH on enqueue, popped from the right (FIFO)
    P:active              list of jobs currently held by a worker
    P:delayed             zset scored by the ms timestamp the job becomes runnable
    P:completed/failed    zsets scored by finishedAt
    P:paused              flag key
    P:lock:<id>           worker token with PX expiry (heartbeat)
    P:stalled-check       throttle for stalled detection
    P:inflight:<iid>      id of the single unfinished job for an interview
    P:worker:<id>         live worker pools (PX, refreshed by the pool)

Every state transition runs inside a WATCH/MULTI transaction.
"""
from __future__ import annotations
import functools
import json
import logging
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, List, Optional, Tuple

import redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from errors import QueueUnavailableError, JobNotFoundError, InvalidJobStateError, DuplicateJobError
from helpers import _now_ms

LOG = logging.getLogger("queue")

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
DELAYED = "delayed"
PAUSED = "paused"

TERMINAL_STATES = {COMPLETED, FAILED}
STALLED_REASON = "job stalled more than allowable limit"


def _translate_errors(fn):
    """Surface an unreachable Redis as a retryable QueueUnavailableError."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            LOG.error("queue store unavailable during %s: %s", fn.__name__, e)
            raise QueueUnavailableError(f"Job queue is unavailable: {e}") from e
    return wrapper


def backoff_delay(attempts_made: int, backoff: Optional[Dict[str, Any]]) -> int:
    """Delay in ms before the next attempt, after `attempts_made` failures."""
    backoff = backoff or {}
    delay = int(backoff.get("delay") or 0)
    if attempts_made < 1 or delay <= 0:
        return 0
    if backoff.get("type") == "fixed":
        return delay
    return delay * (2 ** (attempts_made - 1))


# -------- Job model --------
@dataclass
class JobOptions:
    attempts: int = 3
    backoff: Dict[str, Any] = field(default_factory=lambda: {"type": "exponential", "delay": 5000})
    delay: int = 1000
    remove_on_complete: int = 10
    remove_on_fail: int = 50

    def merged(self, overrides: Optional[Dict[str, Any]] = None) -> "JobOptions":
        if not overrides:
            return replace(self, backoff=dict(self.backoff))
        unknown = set(overrides) - set(asdict(self))
        if unknown:
            raise ValueError(f"unknown job options: {sorted(unknown)}")
        return replace(self, **overrides)


@dataclass
class Job:
    id: str
    name: str
    queue_name: str
    data: Dict[str, Any]
    state: str = WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: Dict[str, Any] = field(default_factory=dict)
    delay: int = 0
    remove_on_complete: int = 10
    remove_on_fail: int = 50
    created_at: int = 0
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    failed_reason: Optional[str] = None
    progress: int = 0
    stalled_count: int = 0
    retry_count: int = 0
    return_value: Any = None
    token: Optional[str] = None

    @property
    def interview_id(self) -> str:
        return str(self.data.get("interviewId") or "")

    def to_hash(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "queueName": self.queue_name,
            "data": json.dumps(self.data, default=str),
            "state": self.state,
            "attemptsMade": self.attempts_made,
            "maxAttempts": self.max_attempts,
            "backoff": json.dumps(self.backoff),
            "delay": self.delay,
            "removeOnComplete": self.remove_on_complete,
            "removeOnFail": self.remove_on_fail,
            "createdAt": self.created_at,
            "processedAt": self.processed_at if self.processed_at is not None else "",
            "finishedAt": self.finished_at if self.finished_at is not None else "",
            "failedReason": self.failed_reason or "",
            "progress": self.progress,
            "stalledCount": self.stalled_count,
            "retryCount": self.retry_count,
            "returnValue": json.dumps(self.return_value, default=str) if self.return_value is not None else "",
            "token": self.token or "",
        }

    @classmethod
    def from_hash(cls, h: Dict[str, str]) -> "Job":
        def _opt_int(v):
            return int(v) if v not in (None, "") else None

        return cls(
            id=h["id"],
            name=h.get("name", ""),
            queue_name=h.get("queueName", ""),
            data=json.loads(h.get("data") or "{}"),
            state=h.get("state", WAITING),
            attempts_made=int(h.get("attemptsMade") or 0),
            max_attempts=int(h.get("maxAttempts") or 1),
            backoff=json.loads(h.get("backoff") or "{}"),
            delay=int(h.get("delay") or 0),
            remove_on_complete=int(h.get("removeOnComplete") or 0),
            remove_on_fail=int(h.get("removeOnFail") or 0),
            created_at=int(h.get("createdAt") or 0),
            processed_at=_opt_int(h.get("processedAt")),
            finished_at=_opt_int(h.get("finishedAt")),
            failed_reason=h.get("failedReason") or None,
            progress=int(h.get("progress") or 0),
            stalled_count=int(h.get("stalledCount") or 0),
            retry_count=int(h.get("retryCount") or 0),
            return_value=json.loads(h["returnValue"]) if h.get("returnValue") else None,
            token=h.get("token") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Public view for the admin API (no worker token)."""
        return {
            "id": self.id,
            "name": self.name,
            "queueName": self.queue_name,
            "data": self.data,
            "state": self.state,
            "attemptsMade": self.attempts_made,
            "maxAttempts": self.max_attempts,
            "backoff": self.backoff,
            "progress": self.progress,
            "failedReason": self.failed_reason,
            "stalledCount": self.stalled_count,
            "retryCount": self.retry_count,
            "timestamp": self.created_at,
            "processedOn": self.processed_at,
            "finishedOn": self.finished_at,
        }


# -------- Queue --------
class JobQueue:
    def __init__(self, client: "redis.Redis", name: str = "media-analysis", prefix: str = "mq",
                 default_options: Optional[JobOptions] = None):
        # client must be created with decode_responses=True
        self.redis = client
        self.name = name
        self.prefix = prefix
        self.default_options = default_options or JobOptions()

    @classmethod
    def from_url(cls, url: str, name: str = "media-analysis", prefix: str = "mq",
                 default_options: Optional[JobOptions] = None) -> "JobQueue":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=10,
            socket_timeout=10,
            health_check_interval=30,
        )
        return cls(client, name=name, prefix=prefix, default_options=default_options)

    def key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self.key(f"job:{job_id}")

    def _lock_key(self, job_id: str) -> str:
        return self.key(f"lock:{job_id}")

    def _inflight_key(self, interview_id: str) -> str:
        return self.key(f"inflight:{interview_id}")

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            LOG.warning("redis availability check failed: %s", e)
            return False

    def close(self):
        self.redis.close()

    # -------- worker registry --------
    @_translate_errors
    def register_worker(self, worker_id: str, ttl_ms: int, info: Optional[Dict[str, Any]] = None):
        self.redis.set(self.key(f"worker:{worker_id}"), json.dumps(info or {}), px=ttl_ms)

    @_translate_errors
    def unregister_worker(self, worker_id: str):
        self.redis.delete(self.key(f"worker:{worker_id}"))

    @_translate_errors
    def live_workers(self) -> List[Dict[str, Any]]:
        out = []
        for key in self.redis.scan_iter(match=self.key("worker:*")):
            raw = self.redis.get(key)
            if raw is not None:
                out.append({"id": key.rsplit(":", 1)[-1], **json.loads(raw)})
        return out

    # -------- Producer / admin operations --------
    @_translate_errors
    def enqueue(self, job_type: str, payload: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Job:
        interview_id = str(payload.get("interviewId") or "").strip()
        user_id = str(payload.get("userId") or "").strip()
        if not interview_id or not user_id:
            raise ValueError("job payload requires non-empty interviewId and userId")

        opts = self.default_options.merged(options)
        now = _now_ms()
        job_id = f"{job_type}-{interview_id}-{now}"
        job = Job(
            id=job_id,
            name=job_type,
            queue_name=self.name,
            data={**payload, "interviewId": interview_id, "userId": user_id, "timestamp": now},
            state=DELAYED if opts.delay > 0 else WAITING,
            max_attempts=max(1, opts.attempts),
            backoff=dict(opts.backoff),
            delay=max(0, opts.delay),
            remove_on_complete=opts.remove_on_complete,
            remove_on_fail=opts.remove_on_fail,
            created_at=now,
        )

        self._claim_inflight(interview_id, job_id)

        pipe = self.redis.pipeline(transaction=True)
        pipe.hset(self._job_key(job_id), mapping=job.to_hash())
        if job.state == DELAYED:
            pipe.zadd(self.key("delayed"), {job_id: now + job.delay})
        else:
            pipe.lpush(self.key("wait"), job_id)
        pipe.execute()

        LOG.info("job %s added to queue %s for interview %s", job_id, self.name, interview_id)
        return job

    def _claim_inflight(self, interview_id: str, job_id: str):
        """The claim has no expiry; it lives until complete/fail/clean releases it
        or a later enqueue finds its holder finished or gone."""
        key = self._inflight_key(interview_id)
        if self.redis.set(key, job_id, nx=True):
            return

        def _tx(pipe):
            holder_id = pipe.get(key)
            if holder_id:
                state = pipe.hget(self._job_key(holder_id), "state")
                if state and state not in TERMINAL_STATES:
                    raise DuplicateJobError(holder_id)
            # stale claim (holder finished or was removed)
            pipe.multi()
            pipe.set(key, job_id)

        self.redis.transaction(_tx, key)

    def _load(self, job_id: str) -> Optional[Job]:
        raw = self.redis.hgetall(self._job_key(job_id))
        return Job.from_hash(raw) if raw.get("id") else None

    @_translate_errors
    def get_job(self, job_id: str) -> Optional[Job]:
        job = self._load(job_id)
        if job is not None and job.state == WAITING and self.redis.exists(self.key("paused")):
            job.state = PAUSED
        return job

    @_translate_errors
    def get_inflight_job(self, interview_id: str) -> Optional[Job]:
        holder_id = self.redis.get(self._inflight_key(interview_id))
        if not holder_id:
            return None
        job = self.get_job(holder_id)
        if job is None or job.state in TERMINAL_STATES:
            return None
        return job

    @_translate_errors
    def get_stats(self) -> Dict[str, Any]:
        pipe = self.redis.pipeline(transaction=False)
        pipe.llen(self.key("wait"))
        pipe.llen(self.key("active"))
        pipe.zcard(self.key("completed"))
        pipe.zcard(self.key("failed"))
        pipe.zcard(self.key("delayed"))
        pipe.exists(self.key("paused"))
        waiting, active, completed, failed, delayed, paused = pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
            "paused": bool(paused),
        }

    @_translate_errors
    def list_failed(self, offset: int = 0, limit: int = 10) -> List[Job]:
        if limit <= 0:
            return []
        ids = self.redis.zrevrange(self.key("failed"), offset, offset + limit - 1)
        jobs = []
        for job_id in ids:
            job = self._load(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    @_translate_errors
    def retry(self, job_id: str) -> Job:
        job_key = self._job_key(job_id)
        current = self._load(job_id)
        if current is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        inflight_key = self._inflight_key(current.interview_id)

        def _tx(pipe):
            raw = pipe.hgetall(job_key)
            if not raw.get("id"):
                raise JobNotFoundError(f"Job {job_id} not found")
            job = Job.from_hash(raw)
            if job.state != FAILED:
                raise InvalidJobStateError(f"Job {job_id} is not in failed state (state: {job.state})")
            holder = pipe.get(inflight_key)
            if holder and holder != job_id:
                holder_state = pipe.hget(self._job_key(holder), "state")
                if holder_state and holder_state not in TERMINAL_STATES:
                    raise DuplicateJobError(holder)
            pipe.multi()
            pipe.zrem(self.key("failed"), job_id)
            pipe.hset(job_key, mapping={
                "state": WAITING,
                "maxAttempts": max(job.max_attempts, job.attempts_made + 1),
                "failedReason": "",
                "finishedAt": "",
                "processedAt": "",
                "progress": 0,
                "stalledCount": 0,
                "token": "",
                "retryCount": job.retry_count + 1,
            })
            pipe.lpush(self.key("wait"), job_id)
            pipe.set(inflight_key, job_id)

        self.redis.transaction(_tx, job_key, inflight_key)
        LOG.info("retried failed job %s", job_id)
        return self.get_job(job_id)

    @_translate_errors
    def pause(self):
        self.redis.set(self.key("paused"), _now_ms())
        LOG.info("queue %s paused", self.name)

    @_translate_errors
    def resume(self):
        self.redis.delete(self.key("paused"))
        LOG.info("queue %s resumed", self.name)

    @_translate_errors
    def is_paused(self) -> bool:
        return bool(self.redis.exists(self.key("paused")))

    @_translate_errors
    def clean(self, older_than_ms: int, limit: int = 100, state: str = COMPLETED) -> List[str]:
        """Hard-delete jobs in `state` older than the threshold. Returns removed ids."""
        cutoff = _now_ms() - max(0, older_than_ms)
        if limit <= 0:
            return []

        if state in (COMPLETED, FAILED):
            ids = self.redis.zrangebyscore(self.key(state), "-inf", cutoff, start=0, num=limit)
            self._remove_jobs(ids, state)
            return ids

        if state == DELAYED:
            candidates = self.redis.zrange(self.key("delayed"), 0, -1)
        elif state == WAITING or (state == PAUSED and self.redis.exists(self.key("paused"))):
            candidates = self.redis.lrange(self.key("wait"), 0, -1)
            state = WAITING
        elif state == PAUSED:
            return []
        else:
            raise ValueError(f"cannot clean jobs in state {state!r}")

        ids = []
        for job_id in candidates:
            created = self.redis.hget(self._job_key(job_id), "createdAt")
            if created is not None and int(created) <= cutoff:
                ids.append(job_id)
                if len(ids) >= limit:
                    break
        self._remove_jobs(ids, state)
        return ids

    def _remove_jobs(self, ids: List[str], state: str):
        if not ids:
            return
        interview_ids = {}
        for job_id in ids:
            raw_data = self.redis.hget(self._job_key(job_id), "data")
            if raw_data:
                interview_ids[job_id] = str(json.loads(raw_data).get("interviewId") or "")
        pipe = self.redis.pipeline(transaction=True)
        for job_id in ids:
            if state == WAITING:
                pipe.lrem(self.key("wait"), 0, job_id)
            else:
                pipe.zrem(self.key(state), job_id)
            pipe.delete(self._job_key(job_id))
        pipe.execute()
        if state not in TERMINAL_STATES:
            for job_id, interview_id in interview_ids.items():
                self._release_inflight_if_held(interview_id, job_id)

    def _release_inflight_if_held(self, interview_id: str, job_id: str):
        if not interview_id:
            return
        key = self._inflight_key(interview_id)
        if self.redis.get(key) == job_id:
            self.redis.delete(key)

    def _trim(self, state: str, keep: int):
        if keep < 0:
            return
        key = self.key(state)
        count = self.redis.zcard(key)
        if count <= keep:
            return
        ids = self.redis.zrange(key, 0, count - keep - 1)
        pipe = self.redis.pipeline(transaction=True)
        for job_id in ids:
            pipe.zrem(key, job_id)
            pipe.delete(self._job_key(job_id))
        pipe.execute()
        LOG.debug("trimmed %d %s job(s) from %s", len(ids), state, self.name)

    # -------- Worker-side transitions --------
    @_translate_errors
    def fetch_next(self, token: str, lock_ms: int) -> Optional[Job]:
        wait_key = self.key("wait")
        paused_key = self.key("paused")
        now = _now_ms()

        def _tx(pipe):
            if pipe.exists(paused_key):
                return None
            job_id = pipe.lindex(wait_key, -1)
            if job_id is None:
                return None
            pipe.multi()
            pipe.rpop(wait_key)
            pipe.lpush(self.key("active"), job_id)
            pipe.hset(self._job_key(job_id), mapping={"state": ACTIVE, "processedAt": now, "token": token})
            pipe.set(self._lock_key(job_id), token, px=lock_ms)
            return job_id

        job_id = self.redis.transaction(_tx, wait_key, paused_key, value_from_callable=True)
        if job_id is None:
            return None
        job = self._load(job_id)
        if job is None:
            # hash vanished underneath us
            self.redis.lrem(self.key("active"), 0, job_id)
            self.redis.delete(self._job_key(job_id), self._lock_key(job_id))
            return None
        return job

    @_translate_errors
    def extend_lock(self, job_id: str, token: str, lock_ms: int) -> bool:
        lock_key = self._lock_key(job_id)
        job_key = self._job_key(job_id)

        def _tx(pipe):
            if pipe.hget(job_key, "token") != token or pipe.hget(job_key, "state") != ACTIVE:
                return False
            current = pipe.get(lock_key)
            if current is not None and current != token:
                return False
            pipe.multi()
            pipe.set(lock_key, token, px=lock_ms)
            return True

        return self.redis.transaction(_tx, lock_key, job_key, value_from_callable=True)

    @_translate_errors
    def update_progress(self, job_id: str, progress: int):
        pct = max(0, min(100, int(progress)))
        job_key = self._job_key(job_id)
        if self.redis.exists(job_key):
            self.redis.hset(job_key, "progress", pct)

    @_translate_errors
    def is_active(self, job_id: str, token: str) -> bool:
        state, owner = self.redis.hmget(self._job_key(job_id), ["state", "token"])
        return state == ACTIVE and owner == token

    @_translate_errors
    def complete(self, job: Job, token: str, result: Any = None) -> bool:
        job_key = self._job_key(job.id)
        inflight_key = self._inflight_key(job.interview_id)
        now = _now_ms()

        def _tx(pipe):
            state, owner = pipe.hmget(job_key, ["state", "token"])
            if state != ACTIVE or owner != token:
                return False
            holder = pipe.get(inflight_key)
            pipe.multi()
            pipe.lrem(self.key("active"), 0, job.id)
            pipe.zadd(self.key("completed"), {job.id: now})
            pipe.hset(job_key, mapping={
                "state": COMPLETED,
                "finishedAt": now,
                "progress": 100,
                "returnValue": json.dumps(result, default=str) if result is not None else "",
                "token": "",
            })
            pipe.delete(self._lock_key(job.id))
            if holder == job.id:
                pipe.delete(inflight_key)
            return True

        ok = self.redis.transaction(_tx, job_key, inflight_key, value_from_callable=True)
        if not ok:
            LOG.warning("job %s: lost ownership before completion, result discarded", job.id)
            return False
        job.state, job.finished_at, job.progress, job.return_value = COMPLETED, now, 100, result
        self._trim(COMPLETED, job.remove_on_complete)
        return True

    @_translate_errors
    def fail(self, job: Job, token: str, error: str, retryable: bool = True) -> Optional[str]:
        """Record a failed attempt; returns the new state (delayed or failed)."""
        job_key = self._job_key(job.id)
        inflight_key = self._inflight_key(job.interview_id)
        now = _now_ms()

        def _tx(pipe):
            raw = pipe.hgetall(job_key)
            if not raw or raw.get("state") != ACTIVE or raw.get("token") != token:
                return None
            current = Job.from_hash(raw)
            attempts = current.attempts_made + 1
            holder = pipe.get(inflight_key)
            pipe.multi()
            pipe.lrem(self.key("active"), 0, job.id)
            pipe.delete(self._lock_key(job.id))
            if retryable and attempts < current.max_attempts:
                run_at = now + backoff_delay(attempts, current.backoff)
                pipe.zadd(self.key("delayed"), {job.id: run_at})
                pipe.hset(job_key, mapping={
                    "state": DELAYED, "attemptsMade": attempts, "failedReason": error, "token": "",
                })
                return DELAYED
            pipe.zadd(self.key("failed"), {job.id: now})
            pipe.hset(job_key, mapping={
                "state": FAILED, "attemptsMade": attempts, "failedReason": error,
                "finishedAt": now, "token": "",
            })
            if holder == job.id:
                pipe.delete(inflight_key)
            return FAILED

        new_state = self.redis.transaction(_tx, job_key, inflight_key, value_from_callable=True)
        if new_state is None:
            LOG.warning("job %s: lost ownership before failure could be recorded", job.id)
            return None
        job.state = new_state
        job.failed_reason = error
        if new_state == FAILED:
            self._trim(FAILED, job.remove_on_fail)
        return new_state

    @_translate_errors
    def promote_delayed(self, now_ms: Optional[int] = None) -> int:
        now = now_ms if now_ms is not None else _now_ms()
        delayed_key = self.key("delayed")
        moved = 0
        for job_id in self.redis.zrangebyscore(delayed_key, "-inf", now):
            def _tx(pipe, job_id=job_id):
                if pipe.zscore(delayed_key, job_id) is None:
                    return False
                pipe.multi()
                pipe.zrem(delayed_key, job_id)
                pipe.lpush(self.key("wait"), job_id)
                pipe.hset(self._job_key(job_id), "state", WAITING)
                return True

            if self.redis.transaction(_tx, delayed_key, value_from_callable=True):
                moved += 1
        if moved:
            LOG.debug("promoted %d delayed job(s) in %s", moved, self.name)
        return moved

    @_translate_errors
    def check_stalled(self, stalled_interval_ms: int, max_stalled_count: int,
                      force: bool = False) -> Tuple[List[str], List[str]]:
        """Re-queue or fail active jobs whose lock expired. Runs once per interval cluster-wide."""
        check_key = self.key("stalled-check")
        if not force and not self.redis.set(check_key, _now_ms(), nx=True, px=stalled_interval_ms):
            return [], []

        requeued, failed = [], []
        for job_id in self.redis.lrange(self.key("active"), 0, -1):
            if self.redis.exists(self._lock_key(job_id)):
                continue
            job = self._load(job_id)
            if job is None:
                self.redis.lrem(self.key("active"), 0, job_id)
                continue
            outcome = self._handle_stalled(job, max_stalled_count)
            if outcome == WAITING:
                requeued.append(job_id)
                LOG.warning("job %s stalled, moved back to wait (stalled %d time(s))", job_id, job.stalled_count + 1)
            elif outcome == FAILED:
                failed.append(job_id)
                LOG.error("job %s stalled more than %d time(s), marked failed", job_id, max_stalled_count)
        if failed:
            self._trim(FAILED, self.default_options.remove_on_fail)
        return requeued, failed

    def _handle_stalled(self, job: Job, max_stalled_count: int) -> Optional[str]:
        job_key = self._job_key(job.id)
        lock_key = self._lock_key(job.id)
        inflight_key = self._inflight_key(job.interview_id)
        now = _now_ms()

        def _tx(pipe):
            if pipe.exists(lock_key):
                return None
            raw = pipe.hgetall(job_key)
            if not raw or raw.get("state") != ACTIVE:
                return None
            count = int(raw.get("stalledCount") or 0) + 1
            holder = pipe.get(inflight_key)
            pipe.multi()
            pipe.lrem(self.key("active"), 0, job.id)
            if count > max_stalled_count:
                pipe.zadd(self.key("failed"), {job.id: now})
                pipe.hset(job_key, mapping={
                    "state": FAILED, "stalledCount": count, "failedReason": STALLED_REASON,
                    "finishedAt": now, "token": "",
                })
                if holder == job.id:
                    pipe.delete(inflight_key)
                return FAILED
            # back to the head of the line
            pipe.rpush(self.key("wait"), job.id)
            pipe.hset(job_key, mapping={"state": WAITING, "stalledCount": count, "token": ""})
            return WAITING

        return self.redis.transaction(_tx, lock_key, job_key, inflight_key, value_from_callable=True)
