from typing import Optional

import redis.asyncio as redis

from ...config import WEBHOOK_BACKEND as BACKEND, WEBHOOK_RETENTION_DAYS

if BACKEND == "redis":
    from ._redis import WebhookEventStore as _WebhookEventStore
else:
    from ._postgres import WebhookEventStore as _WebhookEventStore


RETENTION_SECONDS = WEBHOOK_RETENTION_DAYS * 24 * 3600


# backend is fixed at import time
def new_store(*, r: Optional[redis.Redis] = None,
              retention_seconds: int = RETENTION_SECONDS):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return _WebhookEventStore(r=r, retention_seconds=retention_seconds)
    return _WebhookEventStore(retention_seconds=retention_seconds)


WebhookEventStore = _WebhookEventStore
__all__ = ["WebhookEventStore", "new_store", "BACKEND", "RETENTION_SECONDS"]
