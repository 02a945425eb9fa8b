"""Periodic maintenance of queues: timeouts, unlocks, recovery, TTL and size limits."""

from __future__ import annotations

import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from . import score as scores
from .configuration_service import QueueConfiguration
from .queue import (
    AuditEntry,
    AuditSignal,
    CountOptions,
    FindOptions,
    InternalFilter,
    LockType,
    Message,
    Queue,
)

logger = logging.getLogger(__name__)

PROCESSING_POOL = "processing"
LOCK_ACK_POOL = "lock_ack"
LOCK_NACK_POOL = "lock_nack"

RECOVERY_RUNNING = "deckard:recovery:running"
RECOVERY_STORAGE_BREAKPOINT_KEY = "deckard:recovery:storage_breakpoint"
RECOVERY_BREAKPOINT_KEY = "deckard:recovery:breakpoint"
RECOVERY_FINISHED = "finished"

RECOVERY_BATCH_SIZE = 4000
TTL_BATCH_SIZE = 10000

StopCheck = Optional[Callable[[], bool]]

_MILLISECOND = timedelta(milliseconds=1)


@dataclass
class ElementMetrics:
    """Per queue prefix: age in milliseconds of the oldest message and message totals."""

    oldest_element: dict[str, int] = field(default_factory=dict)
    total_elements: dict[str, int] = field(default_factory=dict)


def _stopping(stop: StopCheck) -> bool:
    return stop is not None and stop()


def _elapsed_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return (datetime.now(timezone.utc) - moment) // _MILLISECOND


def _set_quietly(queue: Queue, key: str, value: str) -> None:
    with suppress(Exception):
        queue.cache.set(key, value)


def process_timeout_messages(queue: Queue, stop: StopCheck = None) -> int:
    """Return timed-out messages of every processing queue; gives how many timed out."""
    started = time.monotonic()
    try:
        names = list(queue.cache.list_queues("*", PROCESSING_POOL) or [])
    except Exception as err:
        logger.error("Error list processing queues: %s", err)
        raise

    logger.debug("Processing queues timeout for: %s", names)

    total = 0
    for name in names:
        if _stopping(stop):
            logger.info("Shutdown started. Stopping timeout process.")
            break
        try:
            ids = queue.timeout_messages(name)
        except Exception as err:
            logger.error("Error processing timeouts for queue %s: %s", name, err)
            continue
        if ids:
            logger.warning("Queue %s had %d timeouts.", name, len(ids))
        total += len(ids)

    if total > 0:
        logger.warning(
            "%d elements got timeout. Processed in %.3fs.", total, time.monotonic() - started
        )
    return total


def process_lock_pool(queue: Queue, stop: StopCheck = None) -> int:
    """Move locked messages back to their queues; gives how many were unlocked."""
    try:
        ack_queues = list(queue.cache.list_queues("*", LOCK_ACK_POOL) or [])
    except Exception as err:
        logger.error("Error getting lock_ack queue names: %s", err)
        return 0

    unlocked = _unlock_messages(queue, ack_queues, LockType.LOCK_ACK, stop)

    if _stopping(stop):
        logger.info("Shutdown started. Stopping unlock process.")
        return unlocked

    try:
        nack_queues = list(queue.cache.list_queues("*", LOCK_NACK_POOL) or [])
    except Exception as err:
        logger.error("Error getting lock_nack queue names: %s", err)
        return unlocked

    return unlocked + _unlock_messages(queue, nack_queues, LockType.LOCK_NACK, stop)


def _unlock_messages(queue: Queue, names: list[str], lock_type: LockType, stop: StopCheck) -> int:
    unlocked = 0
    for name in names:
        if _stopping(stop):
            logger.info("Shutdown started. Stopping unlock process.")
            break
        try:
            ids = list(queue.cache.unlock_messages(name, lock_type) or [])
        except Exception as err:
            logger.error("Error processing locks for queue '%s': %s", name, err)
            continue

        for message_id in ids:
            queue.auditor.store(
                AuditEntry(
                    id=message_id,
                    queue=name,
                    signal=AuditSignal.UNLOCK,
                    reason=lock_type.value,
                )
            )
        queue.metrics.add("housekeeper_unlock", len(ids), queue=name, lock_type=lock_type.value)
        unlocked += len(ids)
    return unlocked


def is_recovering(queue: Queue) -> bool:
    """True while a full cache recovery is running."""
    try:
        return queue.cache.get(RECOVERY_RUNNING) == "true"
    except Exception as err:
        logger.error("Error to get full recovery status: %s", err)
        raise


def recovery_messages_pool(queue: Queue) -> bool:
    """Copy the next batch of stored messages into the cache.

    Returns False once recovery has finished, True otherwise.
    """
    started = time.monotonic()
    try:
        breakpoint_value = queue.cache.get(RECOVERY_STORAGE_BREAKPOINT_KEY) or ""
    except Exception as err:
        logger.error("Error to get storage breakpoint: %s", err)
        return True

    if breakpoint_value == RECOVERY_FINISHED:
        return False

    try:
        recovering = is_recovering(queue)
    except Exception:
        return True

    if breakpoint_value == "" and not recovering and not _try_to_start_recovery(queue):
        return True

    try:
        recovery_breakpoint = queue.cache.get(RECOVERY_BREAKPOINT_KEY) or ""
    except Exception as err:
        logger.error("Error to get recovery breakpoint: %s", err)
        return True

    options = FindOptions(
        internal_filter=InternalFilter(
            internal_id_breakpoint_gt=breakpoint_value,
            internal_id_breakpoint_lte=recovery_breakpoint,
        ),
        projection={
            "id": 1,
            "score": 1,
            "queue": 1,
            "last_score": 1,
            "last_usage": 1,
            "lock_ms": 1,
        },
        sort={"_id": 1},
        limit=RECOVERY_BATCH_SIZE,
    )
    try:
        messages: list[Message] = list(queue.storage.find(options) or [])
    except Exception as err:
        logger.error("Error to get storage elements: %s", err)
        return True

    if messages:
        for message in messages:
            message.score = min(max(message.score, scores.MIN), scores.MAX)
        try:
            queue.add_messages_to_cache(*messages, reason="recovery")
        except Exception as err:
            logger.error("Error adding element: %s", err)
            return True
        _set_quietly(
            queue,
            RECOVERY_STORAGE_BREAKPOINT_KEY,
            queue.storage.get_string_internal_id(messages[-1]),
        )

    if len(messages) < RECOVERY_BATCH_SIZE:
        logger.info("Full recovery finished.")
        _set_quietly(queue, RECOVERY_RUNNING, "false")
        _set_quietly(queue, RECOVERY_STORAGE_BREAKPOINT_KEY, RECOVERY_FINISHED)

    logger.debug(
        "%d messages updated in %.3fs with %s breakpoint.",
        len(messages),
        time.monotonic() - started,
        breakpoint_value,
    )
    return True


def _try_to_start_recovery(queue: Queue) -> bool:
    logger.info("Starting full cache recovery.")
    try:
        queue.cache.set(RECOVERY_RUNNING, "true")
    except Exception as err:
        logger.error("Error to set full recovery status: %s", err)
        return False

    try:
        last = list(
            queue.storage.find(FindOptions(projection={"_id": 1}, sort={"_id": -1}, limit=1))
            or []
        )
    except Exception as err:
        logger.error("Error to get storage last element: %s", err)
        return False

    if not last:
        logger.info("Storage is empty. Finishing recovery.")
        _set_quietly(queue, RECOVERY_STORAGE_BREAKPOINT_KEY, RECOVERY_FINISHED)
        _set_quietly(queue, RECOVERY_RUNNING, "false")
        return False

    recovery_breakpoint = queue.storage.get_string_internal_id(last[0])
    logger.info("Storage last element key breakpoint: %s", recovery_breakpoint)
    _set_quietly(queue, RECOVERY_BREAKPOINT_KEY, recovery_breakpoint)
    return True


def remove_ttl_messages(
    queue: Queue, filter_date: datetime | None, stop: StopCheck = None
) -> bool:
    """Remove up to 10000 expired messages, oldest expiry first.

    Returns False when skipped because a recovery is running.
    """
    if is_recovering(queue):
        return False

    options = FindOptions(
        limit=TTL_BATCH_SIZE,
        internal_filter=InternalFilter(expiry_date=filter_date),
        projection={"id": 1, "queue": 1, "_id": 0},
        sort={"expiry_date": 1},
    )
    try:
        messages = list(queue.storage.find(options) or [])
    except Exception as err:
        logger.error("Error getting elements from queue: %s", err)
        raise

    by_queue: dict[str, list[str]] = {}
    for message in messages:
        by_queue.setdefault(message.queue, []).append(message.id)

    for name, ids in by_queue.items():
        if _stopping(stop):
            logger.info("Shutdown started. Stopping ttl elements removal.")
            break
        try:
            cache_removed, storage_removed = queue.remove(name, "TTL", *ids)
        except Exception as err:
            logger.error("Error removing %d elements from %s: %s", len(ids), name, err)
            raise
        queue.metrics.add("housekeeper_ttl_cache_removed", cache_removed, queue=name)
        queue.metrics.add("housekeeper_ttl_storage_removed", storage_removed, queue=name)

    return True


def remove_exceeding_messages(queue: Queue, stop: StopCheck = None) -> bool:
    """Trim every queue with a max_elements setting down to its limit.

    Returns False when skipped because a recovery is running.
    """
    if is_recovering(queue):
        return False

    try:
        configurations = list(queue.storage.list_queue_configurations() or [])
    except Exception as err:
        logger.error("Error listing queue names: %s", err)
        return True

    for configuration in configurations:
        if _stopping(stop):
            logger.info("Shutdown started. Stopping exceeding elements removal.")
            break
        with suppress(Exception):
            remove_exceeding_messages_from_queue(queue, configuration)

    return True


def remove_exceeding_messages_from_queue(
    queue: Queue, configuration: QueueConfiguration | None
) -> tuple[int, int]:
    """Remove the messages of one queue beyond its limit, earliest expiry first.

    Returns (cache_removed, storage_removed).
    """
    if configuration is None or configuration.max_elements <= 0 or not configuration.queue:
        return 0, 0

    name = configuration.queue

    comment = "housekeeper.removeExceedingMessagesFromQueue_1"
    try:
        total = queue.storage.count(
            FindOptions(internal_filter=InternalFilter(queue=name), comment=comment),
            CountOptions(comment=comment),
        )
    except Exception as err:
        logger.error("Error counting queue %s: %s", name, err)
        raise

    if total <= configuration.max_elements:
        return 0, 0

    diff = total - configuration.max_elements
    logger.debug("Removing %d elements from queue %s.", diff, name)

    comment = "housekeeper.removeExceedingMessagesFromQueue_2"
    try:
        messages = list(
            queue.storage.find(
                FindOptions(
                    limit=diff,
                    internal_filter=InternalFilter(queue=name),
                    projection={"id": 1, "_id": 0},
                    sort={"expiry_date": 1},
                    comment=comment,
                )
            )
            or []
        )
    except Exception as err:
        logger.error("Error getting %d elements from queue %s: %s", diff, name, err)
        raise

    ids = [message.id for message in messages]
    try:
        cache_removed, storage_removed = queue.remove(name, "MAX_ELEMENTS", *ids)
    except Exception as err:
        logger.error("Error removing %d elements from %s: %s", diff, name, err)
        raise

    queue.metrics.add("housekeeper_exceeding_cache_removed", cache_removed, queue=name)
    queue.metrics.add("housekeeper_exceeding_storage_removed", storage_removed, queue=name)
    return cache_removed, storage_removed


def compute_metrics(queue: Queue, stop: StopCheck = None) -> ElementMetrics | None:
    """Age of the oldest message and message count for every queue prefix.

    Returns None when the queue prefixes cannot be listed.
    """
    try:
        prefixes = list(queue.storage.list_queue_prefixes() or [])
    except Exception as err:
        logger.error("Error getting queue names: %s", err)
        return None

    result = ElementMetrics()
    for prefix in prefixes:
        if _stopping(stop):
            logger.info("Shutdown started. Stopping metrics computation.")
            break

        try:
            found = list(
                queue.storage.find(
                    FindOptions(
                        projection={"last_usage": 1, "_id": 0},
                        sort={"last_usage": 1},
                        limit=1,
                        internal_filter=InternalFilter(queue_prefix=prefix),
                    )
                )
                or []
            )
        except Exception as err:
            logger.error("Error getting queue %s oldest element: %s", prefix, err)
            continue

        if len(found) == 1 and found[0].last_usage is not None:
            result.oldest_element[prefix] = _elapsed_ms(found[0].last_usage)

        try:
            total = queue.count(FindOptions(internal_filter=InternalFilter(queue_prefix=prefix)))
        except Exception as err:
            logger.error("Error counting queue %s elements: %s", prefix, err)
            continue

        result.total_elements[prefix] = total

    return result