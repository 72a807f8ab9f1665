"""
Pull queue of confirmed customers awaiting access provisioning.

The access controller has no push channel: it polls, and each poll removes
at most one entry. Two backends share one interface:

1. InMemoryPullQueue - a lock-protected deque owned by the coordinator
   (single API worker, default)
2. RedisPullQueue - one Redis list, RPUSH to enqueue and LPOP to pop,
   for deployments running several API workers
"""
import json
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, Dict, List, Optional

import redis.asyncio as aioredis
import structlog

from hotspot_bridge.config import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class QueueEntry:
    """A customer approved for access."""

    phone: str
    plan: str

    def to_record(self) -> str:
        """Render the `identity,plan` line the access controller parses."""
        return f"{self.phone},{self.plan}"

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "QueueEntry":
        data = json.loads(raw)
        return cls(phone=data["phone"], plan=data["plan"])


# Returned to the controller when there is no work.
EMPTY_ENTRY = QueueEntry(phone="none", plan="none")


class PullQueue(ABC):
    """FIFO hand-off buffer with at-most-once delivery per entry."""

    @abstractmethod
    async def enqueue(self, entry: QueueEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    async def try_pop(self) -> Optional[QueueEntry]:
        """Remove and return the head, or None when the queue is empty."""
        raise NotImplementedError

    @abstractmethod
    async def peek_all(self) -> List[QueueEntry]:
        """Snapshot of the queue, head first. Does not mutate."""
        raise NotImplementedError

    @abstractmethod
    async def size(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryPullQueue(PullQueue):
    """
    Deque guarded by a mutex.

    The critical sections never await, so holding a threading lock is safe
    from coroutines and also covers callers on other threads.
    """

    def __init__(self) -> None:
        self._entries: Deque[QueueEntry] = deque()
        self._lock = threading.Lock()

    async def enqueue(self, entry: QueueEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    async def try_pop(self) -> Optional[QueueEntry]:
        with self._lock:
            if not self._entries:
                return None
            return self._entries.popleft()

    async def peek_all(self) -> List[QueueEntry]:
        with self._lock:
            return list(self._entries)

    async def size(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisPullQueue(PullQueue):
    """Pull queue stored in a Redis list; LPOP gives the atomic pop."""

    def __init__(
        self,
        redis_url: str,
        key: str = "hotspot:pull_queue",
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.key = key
        self.redis_client = redis_client
        self._owns_client = redis_client is None

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def enqueue(self, entry: QueueEntry) -> None:
        redis = await self._ensure_redis()
        await redis.rpush(self.key, entry.to_json())

    async def try_pop(self) -> Optional[QueueEntry]:
        redis = await self._ensure_redis()
        raw = await redis.lpop(self.key)
        if raw is None:
            return None
        return QueueEntry.from_json(raw)

    async def peek_all(self) -> List[QueueEntry]:
        redis = await self._ensure_redis()
        return [QueueEntry.from_json(raw) for raw in await redis.lrange(self.key, 0, -1)]

    async def size(self) -> int:
        redis = await self._ensure_redis()
        return int(await redis.llen(self.key))

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._owns_client:
            await self.redis_client.aclose()
            self.redis_client = None


def build_pull_queue(settings: Settings) -> PullQueue:
    """Create the pull queue selected by the QUEUE_BACKEND setting."""
    if settings.queue_backend == "redis":
        logger.info("pull_queue_backend_selected", backend="redis", key=settings.queue_redis_key)
        return RedisPullQueue(settings.redis_url, key=settings.queue_redis_key)
    logger.info("pull_queue_backend_selected", backend="memory")
    return InMemoryPullQueue()
