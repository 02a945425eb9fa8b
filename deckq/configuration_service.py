"""Queue configuration with a short-lived local cache in front of storage."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from cachetools import TTLCache

_CACHE_TTL_SECONDS = 9 * 60
_CACHE_MAX_ENTRIES = 100_000


@dataclass
class QueueConfiguration:
    """Settings of one queue."""

    queue: str = ""
    max_elements: int = 0


class QueueConfigurationService:
    """Reads and edits queue configurations, caching reads for nine minutes."""

    def __init__(self, storage: Any) -> None:
        self.storage = storage
        self.local_cache: TTLCache = TTLCache(
            maxsize=_CACHE_MAX_ENTRIES, ttl=_CACHE_TTL_SECONDS
        )

    def edit_queue_configuration(self, configuration: QueueConfiguration | None) -> None:
        """Store a configuration unless it is empty or already cached unchanged."""
        if configuration is None or configuration.max_elements == 0:
            return

        cached = self.local_cache.get(configuration.queue)
        if cached is None:
            self.storage.edit_queue_configuration(configuration)
            return

        if cached.max_elements != configuration.max_elements:
            try:
                self.storage.edit_queue_configuration(configuration)
            finally:
                self.local_cache.pop(configuration.queue, None)

    def get_queue_configuration(self, queue: str) -> QueueConfiguration:
        """The configuration of a queue, a default one when storage has none."""
        cached = self.local_cache.get(queue)
        if cached is not None:
            return cached

        configuration = self.storage.get_queue_configuration(queue)
        if configuration is None:
            configuration = QueueConfiguration(queue=queue)

        self.local_cache[queue] = configuration
        return configuration