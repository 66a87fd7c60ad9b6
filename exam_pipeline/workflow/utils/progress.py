from __future__ import annotations

import json
from typing import Any, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from exam_pipeline.utils.logging_config import get_logger

logger = get_logger(__name__)


class ProgressPublisher:
    """Push stage snapshots to a Redis hash and pubsub channel.

    Disabled when no URL is configured. Publishing failures are logged and
    never interrupt the pipeline.
    """

    def __init__(self, redis_url: Optional[str], job_id: str, *, client: Optional[Redis] = None) -> None:
        self.redis_url = redis_url
        self.job_id = job_id
        self._client = client
        if self._client is None and redis_url:
            self._client = Redis.from_url(redis_url, decode_responses=True)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def emit(
        self,
        lesson: str,
        status: str,
        current_step: str,
        progress: float | int = 0,
        extra: Dict[str, Any] | None = None,
    ) -> bool:
        if self._client is None:
            return False

        payload: Dict[str, Any] = {
            "lesson": lesson,
            "status": status,
            "current_step": current_step,
            "progress": progress,
        }
        if extra:
            payload.update(extra)

        try:
            self._client.hset(f"job:{self.job_id}", mapping={k: str(v) for k, v in payload.items() if v is not None})
            self._client.publish(f"progress:{self.job_id}", json.dumps(payload))
        except RedisError:
            logger.warning("Failed to publish progress | job=%s lesson=%s", self.job_id, lesson, exc_info=True)
            return False
        return True


__all__ = ["ProgressPublisher"]
