"""Redis-backed dispatch backend.

Layout under ``key``:

- ``<key>:waiting`` sorted set of entry JSON scored by priority band and a
  global sequence number, so ZPOPMIN yields highest priority first and FIFO
  within a priority.
- ``<key>:delayed`` sorted set of entry JSON scored by due time (epoch ms).
- ``<key>:active`` hash of entry id to entry JSON for popped, unacked entries.
- ``<key>:seq`` counter feeding the FIFO tie-break.
- ``<key>:paused`` present while an operator has paused the queue.
"""

import time

import redis

from publisher.core.errors import translate_store_errors
from publisher.core.logging import get_logger
from publisher.dispatch.backends import MAX_PRIORITY, DispatchBackend
from publisher.dispatch.types import DispatchEntry, QueueStats

logger = get_logger(__name__).bind(module="redis_dispatch")

# Score band width per priority level; sequence numbers stay below it
PRIORITY_BAND = 1_000_000_000_000

# BZPOPMIN rounds shorter timeouts down to zero, which blocks forever
MIN_BLOCK_SECONDS = 0.01

PROMOTE_DUE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, member in ipairs(due) do
  local entry = cjson.decode(member)
  local seq = redis.call('INCR', KEYS[3])
  local score = (tonumber(ARGV[3]) - tonumber(entry['priority'])) * tonumber(ARGV[4]) + seq
  redis.call('ZREM', KEYS[1], member)
  redis.call('ZADD', KEYS[2], score, member)
end
return #due
"""


class RedisDispatchBackend(DispatchBackend):
    """Dispatch backend shared by every worker process through Redis."""

    def __init__(
        self,
        client: redis.Redis,
        key: str = "publisher:dispatch",
        poll_interval: float = 1.0,
        promote_batch: int = 100,
    ) -> None:
        """Initialize backend.

        Args:
            client: Redis client
            key: Key prefix for the queue structures
            poll_interval: Longest single blocking pop, so delayed entries
                are promoted while workers wait
            promote_batch: Maximum delayed entries promoted per pop
        """
        self.client = client
        self.key = key
        self.poll_interval = poll_interval
        self.promote_batch = promote_batch
        self.waiting_key = f"{key}:waiting"
        self.delayed_key = f"{key}:delayed"
        self.active_key = f"{key}:active"
        self.seq_key = f"{key}:seq"
        self.paused_key = f"{key}:paused"
        self._promote = client.register_script(PROMOTE_DUE_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, key: str, pool_size: int = 10) -> "RedisDispatchBackend":
        """Create a backend with its own connection pool."""
        pool = redis.ConnectionPool.from_url(
            redis_url,
            max_connections=pool_size,
            socket_connect_timeout=5,
            socket_keepalive=True,
        )
        return cls(redis.Redis(connection_pool=pool), key=key)

    def push(self, entry: DispatchEntry, delay: float = 0.0) -> None:
        payload = entry.model_dump_json()
        with translate_store_errors("dispatch"):
            if delay > 0:
                due_ms = int((time.time() + delay) * 1000)
                self.client.zadd(self.delayed_key, {payload: due_ms})
                return
            seq = int(self.client.incr(self.seq_key))
            score = (MAX_PRIORITY - entry.priority) * PRIORITY_BAND + seq
            self.client.zadd(self.waiting_key, {payload: score})

    def _promote_due(self) -> int:
        now_ms = int(time.time() * 1000)
        return int(
            self._promote(
                keys=[self.delayed_key, self.waiting_key, self.seq_key],
                args=[now_ms, self.promote_batch, MAX_PRIORITY, PRIORITY_BAND],
            )
        )

    def pop(self, timeout: float | None = None) -> DispatchEntry | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with translate_store_errors("dispatch"):
            while True:
                promoted = self._promote_due()
                if promoted:
                    logger.debug("Promoted delayed entries", count=promoted)

                block_for = max(self.poll_interval, MIN_BLOCK_SECONDS)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining < MIN_BLOCK_SECONDS:
                        item = self.client.zpopmin(self.waiting_key)
                        return self._activate(item[0][0]) if item else None
                    block_for = min(block_for, remaining)

                item = self.client.bzpopmin([self.waiting_key], timeout=block_for)
                if item:
                    _, member, _ = item
                    return self._activate(member)

    def _activate(self, member: bytes | str) -> DispatchEntry:
        entry = DispatchEntry.model_validate_json(member)
        self.client.hset(self.active_key, entry.entry_id, entry.model_dump_json())
        return entry

    def ack(self, entry: DispatchEntry) -> None:
        with translate_store_errors("dispatch"):
            self.client.hdel(self.active_key, entry.entry_id)

    def stats(self) -> QueueStats:
        with translate_store_errors("dispatch"):
            pipe = self.client.pipeline()
            pipe.zcard(self.waiting_key)
            pipe.hlen(self.active_key)
            pipe.zcard(self.delayed_key)
            waiting, active, delayed = pipe.execute()
        return QueueStats(waiting=int(waiting), active=int(active), delayed=int(delayed))

    def outstanding(self) -> list[DispatchEntry]:
        with translate_store_errors("dispatch"):
            members = list(self.client.zrange(self.waiting_key, 0, -1))
            members.extend(self.client.zrange(self.delayed_key, 0, -1))
            members.extend(self.client.hvals(self.active_key))
        return [DispatchEntry.model_validate_json(member) for member in members]

    def set_paused(self, paused: bool) -> None:
        with translate_store_errors("dispatch"):
            if paused:
                self.client.set(self.paused_key, "1")
            else:
                self.client.delete(self.paused_key)

    def is_paused(self) -> bool:
        with translate_store_errors("dispatch"):
            return bool(self.client.exists(self.paused_key))

    def ping(self) -> bool:
        with translate_store_errors("dispatch"):
            return bool(self.client.ping())

    def close(self) -> None:
        self.client.close()
