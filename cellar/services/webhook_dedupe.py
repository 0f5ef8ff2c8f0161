"""
Webhook Deduplication

Remembers recently applied provider event ids so redeliveries can be
acknowledged without being processed again. Ids live in Redis for
WEBHOOK_DEDUPE_TTL_SECONDS; while Redis is unavailable a bounded in-process
LRU takes over.

This is only a shortcut: every webhook handler also checks the
subscription's current state, so duplicates without an id, or ones that
outlive this window, are still harmless.
"""

import logging
from collections import OrderedDict

from cellar.config import settings
from cellar.utils.cache import CacheManager

logger = logging.getLogger(__name__)


class WebhookDeduplicator:
    def __init__(
        self,
        cache: CacheManager | None = None,
        ttl_seconds: int | None = None,
        max_entries: int | None = None,
    ):
        self.cache = cache
        self.ttl_seconds = ttl_seconds or settings.webhook_dedupe_ttl_seconds
        self.max_entries = max_entries or settings.webhook_dedupe_max_entries
        self._recent: OrderedDict[str, None] = OrderedDict()

    @staticmethod
    def _key(event_id: str) -> str:
        return f"{CacheManager.PREFIX_WEBHOOK}{event_id}"

    async def seen(self, event_id: str | None) -> bool:
        """True if ``event_id`` was already marked as applied."""
        if not event_id:
            return False

        if event_id in self._recent:
            self._recent.move_to_end(event_id)
            return True

        if self.cache is not None:
            exists = await self.cache.exists(self._key(event_id))
            if exists:
                return True
        return False

    async def mark(self, event_id: str | None) -> None:
        """Record ``event_id`` as applied."""
        if not event_id:
            return

        if self.cache is not None:
            stored = await self.cache.set_nx(self._key(event_id), "1", self.ttl_seconds)
            if stored is None:
                logger.debug("Redis unavailable, remembering webhook event %s in process", event_id)

        self._recent[event_id] = None
        self._recent.move_to_end(event_id)
        while len(self._recent) > self.max_entries:
            self._recent.popitem(last=False)

    def __len__(self) -> int:
        return len(self._recent)
