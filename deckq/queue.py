"""The queue: messages kept in storage and ordered by score in a cache."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from . import score as scores

logger = logging.getLogger(__name__)


@dataclass
class Message:
    """A queued message as seen by the queue logic."""

    id: str = ""
    queue: str = ""
    internal_id: Any = None
    score: float = 0.0
    last_score_subtract: float = 0.0
    breakpoint: str = ""
    lock_ms: int = 0
    last_usage: datetime | None = None
    expiry_date: datetime | None = None


@dataclass
class InternalFilter:
    """Filter applied by storage lookups."""

    ids: list[str] | None = None
    queue: str = ""
    queue_prefix: str = ""
    expiry_date: datetime | None = None
    internal_id_breakpoint_gt: str = ""
    internal_id_breakpoint_lte: str = ""


@dataclass
class FindOptions:
    """Options of a storage lookup."""

    internal_filter: InternalFilter | None = None
    projection: dict[str, int] | None = None
    sort: dict[str, int] | None = None
    limit: int = 0
    retry: bool = False
    comment: str = ""


@dataclass
class CountOptions:
    """Options of a storage count."""

    comment: str = ""


class AuditSignal(str, Enum):
    """What happened to a message."""

    INSERT_CACHE = "INSERT_CACHE"
    ACK = "ACK"
    NACK = "NACK"
    TIMEOUT = "TIMEOUT"
    MISSING_STORAGE = "MISSING_STORAGE"
    REMOVE = "REMOVE"
    UNLOCK = "UNLOCK"


@dataclass
class AuditEntry:
    """One audited event on a message."""

    id: str
    queue: str
    signal: AuditSignal
    reason: str = ""
    last_score_subtract: float = 0.0
    breakpoint: str = ""
    lock_ms: int = 0


class LockType(str, Enum):
    """Pool a locked message waits in."""

    LOCK_ACK = "LOCK_ACK"
    LOCK_NACK = "LOCK_NACK"


class QueueError(Exception):
    """An operation on the queue failed."""

    def __init__(self, message: str, *, storage_removed: int = 0) -> None:
        super().__init__(message)
        self.storage_removed = storage_removed


class QueueMetrics:
    """Counters keyed by metric name and labels."""

    def __init__(self) -> None:
        self.counters: Counter = Counter()

    def add(self, name: str, value: int, **kwargs: str) -> None:
        key = (name, tuple(sorted(kwargs.items())))
        self.counters[key] += value


class Queue:
    """Coordinates storage, cache and auditor for every queue operation."""

    def __init__(self, auditor: Any, storage: Any, configuration_service: Any, cache: Any) -> None:
        self.auditor = auditor
        self.storage = storage
        self.configuration_service = configuration_service
        self.cache = cache
        self.metrics = QueueMetrics()

    def count(self, options: FindOptions | None) -> int:
        """Number of stored messages matching the options' filter."""
        comment = "queue.Count"
        if options is None:
            options = FindOptions(comment=comment)
        try:
            return self.storage.count(
                FindOptions(internal_filter=options.internal_filter, comment=comment),
                CountOptions(comment=comment),
            )
        except Exception as err:
            logger.error("Error counting elements: %s", err)
            raise QueueError("internal error counting elements") from err

    def get_storage_messages(self, options: FindOptions | None) -> list[Message]:
        """Messages found in storage."""
        try:
            return self.storage.find(options)
        except Exception as err:
            logger.error("Error getting storage elements: %s", err)
            raise

    def add_messages_to_storage(self, *args: Message) -> tuple[int, int]:
        """Insert messages into storage, returning (inserted, updated)."""
        try:
            return self.storage.insert(*args)
        except Exception as err:
            logger.error("Error inserting storage data: %s", err)
            raise

    def add_messages_to_cache(self, *args: Message, reason: str = "") -> int:
        """Insert messages into the cache queue by queue; returns how many went in."""
        by_queue: dict[str, list[Message]] = {}
        for message in args:
            by_queue.setdefault(message.queue, []).append(message)

        count = 0
        for queue_name, elements in by_queue.items():
            try:
                insertions = self.cache.insert(queue_name, *elements)
            except Exception as err:
                logger.error("Error inserting cache data: %s", err)
                raise QueueError(f"error inserting cache data: {err}") from err

            insertions = insertions or []
            for message_id in insertions:
                self.auditor.store(
                    AuditEntry(
                        id=message_id,
                        queue=queue_name,
                        signal=AuditSignal.INSERT_CACHE,
                        reason=reason,
                    )
                )
            count += len(insertions)
        return count

    @staticmethod
    def _validate(message: Message) -> None:
        if not message.queue:
            raise QueueError("message has a invalid queue")
        if not message.id:
            raise QueueError("message has a invalid ID")

    def _audit_release(self, message: Message, signal: AuditSignal, reason: str, locked: bool) -> None:
        self.auditor.store(
            AuditEntry(
                id=message.id,
                queue=message.queue,
                signal=signal,
                reason=reason,
                last_score_subtract=message.last_score_subtract,
                breakpoint=message.breakpoint,
                lock_ms=message.lock_ms if locked else 0,
            )
        )

    def nack(self, message: Message | None, timestamp: datetime, reason: str) -> bool:
        """Return a message to its queue, locked or with the minimum score."""
        if message is None:
            return False
        self._validate(message)

        try:
            self.storage.nack(message)
        except Exception as err:
            logger.error("Error nacking element on storage: %s", err)
            raise

        try:
            if message.lock_ms > 0:
                try:
                    result = self.cache.lock_message(message, LockType.LOCK_NACK)
                except Exception as err:
                    logger.error("Error locking message: %s", err)
                    raise
                self._audit_release(message, AuditSignal.NACK, reason, locked=True)
                return result

            message.score = scores.MIN
            try:
                result = self.cache.make_available(message)
            except Exception as err:
                logger.error("Error making element available: %s", err)
                raise
            self._audit_release(message, AuditSignal.NACK, reason, locked=False)
            return result
        finally:
            self.metrics.add("queue_nack", 1, queue=message.queue, reason=reason)

    def ack(self, message: Message | None, reason: str) -> bool:
        """Acknowledge a message and make it available again or lock it."""
        if message is None:
            return False
        self._validate(message)

        try:
            self.storage.ack(message)
        except Exception as err:
            logger.error("Error acking element on storage: %s", err)
            raise

        self.metrics.add("queue_ack", 1, queue=message.queue, reason=reason)

        if message.lock_ms > 0:
            try:
                result = self.cache.lock_message(message, LockType.LOCK_ACK)
            except Exception as err:
                logger.error("Error locking element: %s", err)
                raise
            self._audit_release(message, AuditSignal.ACK, reason, locked=True)
            return result

        try:
            result = self.cache.make_available(message)
        except Exception as err:
            logger.error("Error making element available: %s", err)
            raise
        self._audit_release(message, AuditSignal.ACK, reason, locked=False)
        return result

    def timeout_messages(self, queue: str) -> list[str]:
        """Return timed-out messages of a queue to it and list their ids."""
        try:
            ids = self.cache.timeout_messages(queue)
        except Exception as err:
            logger.error("Error on queue timeouts: %s", err)
            raise

        ids = list(ids or [])
        if ids:
            self.metrics.add("queue_timeout", len(ids), queue=queue)
            for message_id in ids:
                self.auditor.store(AuditEntry(id=message_id, queue=queue, signal=AuditSignal.TIMEOUT))
        return ids

    def pull(
        self,
        queue: str,
        n: int,
        min_score: float | None,
        max_score: float | None,
        ack_deadline_ms: int,
    ) -> list[Message]:
        """Take up to n messages from a queue, ordered by score."""
        try:
            ids = self.cache.pull_messages(queue, n, min_score, max_score, ack_deadline_ms)
        except Exception as err:
            logger.error("Error pulling cache elements: %s", err)
            raise

        if not ids:
            self.metrics.add("queue_empty", 1, queue=queue)
            return []

        messages, not_found = self._get_from_storage(ids, queue, retry=False)
        if not not_found:
            return messages

        retry_messages, retry_not_found = self._get_from_storage(not_found, queue, retry=True)

        if retry_not_found:
            self.metrics.add("queue_not_found_in_storage", len(not_found), queue=queue)
            for message_id in retry_not_found:
                self.auditor.store(
                    AuditEntry(id=message_id, queue=queue, signal=AuditSignal.MISSING_STORAGE)
                )
            # Probably removed from storage but left behind in the cache.
            try:
                self.cache.remove(queue, *retry_not_found)
            except Exception as err:
                logger.error("Error removing inconsistent elements from cache: %s", err)

        if retry_messages:
            messages = sorted(messages + retry_messages, key=lambda message: message.score)

        if not messages:
            self.metrics.add("queue_empty_storage", 1, queue=queue)
        return messages

    def _get_from_storage(
        self, ids: list[str], queue: str, retry: bool
    ) -> tuple[list[Message], list[str]]:
        options = FindOptions(
            sort={"score": 1},
            internal_filter=InternalFilter(ids=list(ids), queue=queue),
            limit=len(ids),
            retry=retry,
        )
        try:
            messages = list(self.storage.find(options) or [])
        except Exception as err:
            logger.error("Error getting data from storage: %s", err)
            raise QueueError(f"error getting storage data: {err}") from err
        return messages, not_found_ids(ids, messages)

    def remove(self, queue: str, reason: str, *args: str) -> tuple[int, int]:
        """Remove messages from storage, then cache; returns (cache, storage) counts."""
        try:
            storage_count = self.storage.remove(queue, *args)
        except Exception as err:
            logger.error("Error removing elements from storage: %s", err)
            raise

        try:
            cache_count = self.cache.remove(queue, *args)
        except Exception as err:
            logger.error("Error removing elements from cache: %s", err)
            raise QueueError(
                f"error removing elements from cache: {err}", storage_removed=storage_count
            ) from err

        for message_id in args:
            self.auditor.store(
                AuditEntry(id=message_id, queue=queue, signal=AuditSignal.REMOVE, reason=reason)
            )
        return cache_count, storage_count

    def flush(self) -> bool:
        """Drop every message from cache and storage."""
        self.cache.flush()
        try:
            self.storage.flush()
        except Exception as err:
            logger.error("Error flushing deckard: %s", err)
            raise
        return True


def not_found_ids(ids: Iterable[str], messages: Iterable[Message]) -> list[str]:
    """Ids, in order, that no message in messages carries."""
    found = {message.id for message in messages}
    return [message_id for message_id in ids if message_id not in found]