"""
Redis-backed job store (production).

Key layout, ``base = {prefix}:{queue}``:
  {base}:job:{id}     hash, one job record (see job_queue.models)
  {base}:wait:{type}  sorted set, score = wait_score
  {base}:delayed      sorted set, score = run-at ms
  {base}:active       sorted set, score = lock expiry ms
  {base}:completed    sorted set, score = finished_on
  {base}:failed       sorted set, score = finished_on
  {base}:types        set of job types seen on the queue
  {base}:id / :seq    counters
  {base}:paused       flag key

Every transition between sets is a Lua script, so concurrent workers in
separate processes never claim the same job twice.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from job_queue.errors import QueueError, QueueUnavailable
from job_queue.models import PRIORITY_LIMIT, Job
from job_queue.store import CONNECT, END, ERROR, READY, STALLED_REASON, JobStore

logger = structlog.get_logger()

_SCORE_FMT = "%.0f"

ADD_JOB = f"""
if redis.call("EXISTS", KEYS[1]) == 1 then return false end
local seq = redis.call("INCR", KEYS[2])
local score = string.format("{_SCORE_FMT}", ({PRIORITY_LIMIT} - tonumber(ARGV[2])) * 2147483648 + (seq % 2147483648))
redis.call("HSET", KEYS[1], unpack(ARGV, 5))
redis.call("SADD", KEYS[5], ARGV[4])
if tonumber(ARGV[3]) > 0 then
  redis.call("ZADD", KEYS[3], ARGV[3], ARGV[1])
  redis.call("HSET", KEYS[1], "state", "delayed", "wait_score", score)
else
  redis.call("ZADD", KEYS[4], score, ARGV[1])
  redis.call("HSET", KEYS[1], "state", "waiting", "wait_score", score)
end
return score
"""

CLAIM_NEXT = """
if redis.call("EXISTS", KEYS[1]) == 1 then return false end
while true do
  local popped = redis.call("ZPOPMIN", KEYS[2])
  if #popped == 0 then return false end
  local jobKey = ARGV[3] .. popped[1]
  if redis.call("EXISTS", jobKey) == 1 then
    redis.call("ZADD", KEYS[3], ARGV[1], popped[1])
    redis.call("HSET", jobKey, "state", "active", "processed_on", ARGV[2])
    return redis.call("HGETALL", jobKey)
  end
end
"""

PROMOTE_DELAYED = """
local ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, tonumber(ARGV[4]))
local promoted = {}
for _, id in ipairs(ids) do
  redis.call("ZREM", KEYS[1], id)
  local jobKey = ARGV[2] .. id
  local fields = redis.call("HMGET", jobKey, "name", "wait_score")
  if fields[1] then
    redis.call("ZADD", ARGV[3] .. fields[1], fields[2], id)
    redis.call("HSET", jobKey, "state", "waiting")
    table.insert(promoted, id)
  end
end
return promoted
"""

FINISH_JOB = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 0 then return 0 end
local jobKey = ARGV[3] .. ARGV[1]
local keep = tonumber(ARGV[4])
if keep == 0 then
  redis.call("DEL", jobKey)
  return 1
end
redis.call("HSET", jobKey, unpack(ARGV, 5))
redis.call("ZADD", KEYS[2], ARGV[2], ARGV[1])
if keep > 0 then
  local excess = redis.call("ZRANGE", KEYS[2], 0, -(keep + 1))
  for _, old in ipairs(excess) do
    redis.call("DEL", ARGV[3] .. old)
  end
  if #excess > 0 then redis.call("ZREMRANGEBYRANK", KEYS[2], 0, -(keep + 1)) end
end
return 1
"""

RETRY_JOB = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 0 then return 0 end
local jobKey = ARGV[4] .. ARGV[1]
redis.call("HSET", jobKey, unpack(ARGV, 6))
if tonumber(ARGV[2]) > tonumber(ARGV[3]) then
  redis.call("ZADD", KEYS[2], ARGV[2], ARGV[1])
  redis.call("HSET", jobKey, "state", "delayed")
else
  local fields = redis.call("HMGET", jobKey, "name", "wait_score")
  redis.call("ZADD", ARGV[5] .. fields[1], fields[2], ARGV[1])
  redis.call("HSET", jobKey, "state", "waiting")
end
return 1
"""

REQUEUE_STALLED = """
local ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", "(" .. ARGV[1])
local requeued, failed = {}, {}
for _, id in ipairs(ids) do
  redis.call("ZREM", KEYS[1], id)
  local jobKey = ARGV[2] .. id
  if redis.call("EXISTS", jobKey) == 1 then
    local count = redis.call("HINCRBY", jobKey, "stalled_count", 1)
    if count > tonumber(ARGV[4]) then
      redis.call("HSET", jobKey, "state", "failed", "finished_on", ARGV[1], "failed_reason", ARGV[5])
      redis.call("ZADD", KEYS[2], ARGV[1], id)
      table.insert(failed, id)
    else
      local fields = redis.call("HMGET", jobKey, "name", "wait_score")
      redis.call("ZADD", ARGV[3] .. fields[1], fields[2], id)
      redis.call("HSET", jobKey, "state", "waiting")
      table.insert(requeued, id)
    end
  end
end
return {requeued, failed}
"""


def _pairs(mapping: dict[str, str]) -> list[str]:
    flat = []
    for key, value in mapping.items():
        flat.extend((key, value))
    return flat


def _hash(flat: list[Any]) -> dict[str, Any]:
    return dict(zip(flat[::2], flat[1::2]))


class RedisJobStore(JobStore):
    """Production store backed by redis.asyncio sorted sets and Lua scripts."""

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = "wq",
                 socket_timeout: float = 5.0):
        super().__init__()
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._socket_timeout = socket_timeout
        self._redis = None
        self._scripts: dict[str, Any] = {}

    # ── keys ───────────────────────────────────────────────

    def _base(self, queue: str) -> str:
        return f"{self._prefix}:{queue}"

    def _job_prefix(self, queue: str) -> str:
        return f"{self._base(queue)}:job:"

    def _wait_prefix(self, queue: str) -> str:
        return f"{self._base(queue)}:wait:"

    def _key(self, queue: str, name: str) -> str:
        return f"{self._base(queue)}:{name}"

    # ── connection ─────────────────────────────────────────

    async def connect(self):
        import redis.asyncio as aioredis

        self._set_state(CONNECT)
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
        )
        for name, source in (
            ("add", ADD_JOB), ("claim", CLAIM_NEXT), ("promote", PROMOTE_DELAYED),
            ("finish", FINISH_JOB), ("retry", RETRY_JOB), ("stalled", REQUEUE_STALLED),
        ):
            self._scripts[name] = self._redis.register_script(source)
        try:
            await self._redis.ping()
        except RedisError as e:
            self._set_state(ERROR, e)
            raise QueueUnavailable(f"Redis connection failed: {e}") from e
        self._set_state(READY)
        logger.info("redis_store_connected", url=self._redis_url, prefix=self._prefix)

    async def close(self):
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except RedisError as e:
                logger.warning("redis_store_close_error", error=str(e))
            self._redis = None
        self._set_state(END)

    async def ping(self) -> bool:
        if self._redis is None or self._state == END:
            return False
        try:
            await self._redis.ping()
        except RedisError as e:
            self._set_state(ERROR, e)
            return False
        self._set_state(READY)
        return True

    async def _run(self, coro):
        """Await a Redis call, translating connection failures into state changes."""
        try:
            return await coro
        except (RedisConnectionError, RedisTimeoutError) as e:
            self._set_state(ERROR, e)
            raise QueueUnavailable(str(e)) from e
        except RedisError as e:
            raise QueueError(str(e)) from e

    async def _script(self, name: str, keys: list[str], args: list[Any]):
        self._ensure_ready()
        return await self._run(self._scripts[name](keys=keys, args=args))

    # ── jobs ───────────────────────────────────────────────

    async def next_job_id(self, queue: str) -> str:
        self._ensure_ready()
        return str(await self._run(self._redis.incr(self._key(queue, "id"))))

    async def add_job(self, queue: str, job: Job, run_at: Optional[int] = None) -> bool:
        score = await self._script(
            "add",
            keys=[
                self._job_prefix(queue) + job.id,
                self._key(queue, "seq"),
                self._key(queue, "delayed"),
                self._wait_prefix(queue) + job.name,
                self._key(queue, "types"),
            ],
            args=[job.id, job.opts.priority, run_at or 0, job.name] + _pairs(job.to_dict()),
        )
        if score is None:
            return False
        job.wait_score = float(score)
        return True

    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        self._ensure_ready()
        raw = await self._run(self._redis.hgetall(self._job_prefix(queue) + job_id))
        return Job.from_dict(raw) if raw else None

    async def update_progress(self, queue: str, job_id: str, progress: Any) -> None:
        self._ensure_ready()
        key = self._job_prefix(queue) + job_id
        if await self._run(self._redis.exists(key)):
            await self._run(self._redis.hset(key, "progress", json.dumps(progress)))

    async def remove_job(self, queue: str, job_id: str) -> bool:
        self._ensure_ready()
        key = self._job_prefix(queue) + job_id
        name = await self._run(self._redis.hget(key, "name"))
        if name is None:
            return False
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._wait_prefix(queue) + name, job_id)
            for index in ("delayed", "active", "completed", "failed"):
                pipe.zrem(self._key(queue, index), job_id)
            pipe.delete(key)
            await self._run(pipe.execute())
        return True

    # ── claiming ───────────────────────────────────────────

    async def claim_next(self, queue: str, job_type: str, lock_until: int, now: int) -> Optional[Job]:
        raw = await self._script(
            "claim",
            keys=[
                self._key(queue, "paused"),
                self._wait_prefix(queue) + job_type,
                self._key(queue, "active"),
            ],
            args=[lock_until, now, self._job_prefix(queue)],
        )
        return Job.from_dict(_hash(raw)) if raw else None

    async def extend_lock(self, queue: str, job_id: str, lock_until: int) -> bool:
        self._ensure_ready()
        changed = await self._run(
            self._redis.zadd(self._key(queue, "active"), {job_id: lock_until}, xx=True, ch=True)
        )
        return bool(changed)

    async def promote_delayed(self, queue: str, now: int, limit: int = 1000) -> list[str]:
        return list(await self._script(
            "promote",
            keys=[self._key(queue, "delayed")],
            args=[now, self._job_prefix(queue), self._wait_prefix(queue), limit],
        ) or [])

    async def next_delayed_at(self, queue: str) -> Optional[int]:
        self._ensure_ready()
        head = await self._run(self._redis.zrange(self._key(queue, "delayed"), 0, 0, withscores=True))
        return int(head[0][1]) if head else None

    # ── finishing ──────────────────────────────────────────

    async def _finish(self, queue: str, job: Job, index: str, keep: Optional[int]) -> bool:
        result = await self._script(
            "finish",
            keys=[self._key(queue, "active"), self._key(queue, index)],
            args=[job.id, job.finished_on, self._job_prefix(queue), -1 if keep is None else keep]
            + _pairs(job.to_dict()),
        )
        return bool(result)

    async def complete_job(self, queue: str, job: Job, keep: Optional[int]) -> bool:
        return await self._finish(queue, job, "completed", keep)

    async def fail_job(self, queue: str, job: Job, keep: Optional[int]) -> bool:
        return await self._finish(queue, job, "failed", keep)

    async def retry_job(self, queue: str, job: Job, run_at: int, now: int) -> bool:
        result = await self._script(
            "retry",
            keys=[self._key(queue, "active"), self._key(queue, "delayed")],
            args=[job.id, run_at, now, self._job_prefix(queue), self._wait_prefix(queue)]
            + _pairs(job.to_dict()),
        )
        return bool(result)

    async def requeue_stalled(self, queue: str, now: int, max_stalled_count: int) -> tuple[list[str], list[str]]:
        requeued, failed = await self._script(
            "stalled",
            keys=[self._key(queue, "active"), self._key(queue, "failed")],
            args=[now, self._job_prefix(queue), self._wait_prefix(queue), max_stalled_count, STALLED_REASON],
        )
        return list(requeued or []), list(failed or [])

    # ── queue level ────────────────────────────────────────

    async def pause(self, queue: str) -> None:
        self._ensure_ready()
        await self._run(self._redis.set(self._key(queue, "paused"), "1"))

    async def resume(self, queue: str) -> None:
        self._ensure_ready()
        await self._run(self._redis.delete(self._key(queue, "paused")))

    async def is_paused(self, queue: str) -> bool:
        self._ensure_ready()
        return bool(await self._run(self._redis.exists(self._key(queue, "paused"))))

    async def get_counts(self, queue: str) -> dict[str, int]:
        self._ensure_ready()
        types = await self._run(self._redis.smembers(self._key(queue, "types")))
        async with self._redis.pipeline(transaction=False) as pipe:
            for job_type in types:
                pipe.zcard(self._wait_prefix(queue) + job_type)
            for index in ("active", "completed", "failed", "delayed"):
                pipe.zcard(self._key(queue, index))
            counts = await self._run(pipe.execute())
        waiting = sum(counts[: len(types)])
        active, completed, failed, delayed = counts[len(types):]
        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
        }

    async def clean(self, queue: str, grace_ms: int, state: str, now: int, limit: int = 0) -> list[str]:
        if state not in ("completed", "failed"):
            return []
        self._ensure_ready()
        index = self._key(queue, state)
        kwargs = {"start": 0, "num": limit} if limit else {}
        ids = await self._run(self._redis.zrangebyscore(index, "-inf", f"({now - grace_ms}", **kwargs))
        if not ids:
            return []
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(index, *ids)
            pipe.delete(*(self._job_prefix(queue) + job_id for job_id in ids))
            await self._run(pipe.execute())
        return list(ids)
