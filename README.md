# deckq

`deckq` is the core logic of a priority message queue. A message is kept in a
durable storage, and its id in a fast cache that orders the messages of each
queue by score. Pulls return the lowest scores first. The package keeps cache
and storage in step, applies the score rules, handles acknowledgements, locks
and timeouts, and provides the housekeeping jobs that keep queues healthy.

## What it does not do

`deckq` ships no storage or cache backend, no network server or API, and no
scheduler. You supply the backends as plain objects, and you decide when the
housekeeping jobs run.

## Installing

From a checkout:

```
pip install .
```

The only runtime dependency is `cachetools`.

## Backends

`Queue` works with any objects that have these methods.

Storage:

- `find(options)` returns a list of `Message`
- `count(find_options, count_options)` returns an int
- `insert(*messages)` returns `(inserted, updated)`
- `ack(message)`, `nack(message)`, `flush()`
- `remove(queue, *ids)` returns how many were removed
- `get_queue_configuration(queue)` returns a `QueueConfiguration` or `None`
- `edit_queue_configuration(configuration)`
- `list_queue_configurations()` and `list_queue_prefixes()`
- `get_string_internal_id(message)` returns the message's internal id as a string

Cache:

- `insert(queue, *messages)` returns the ids that went in
- `pull_messages(queue, n, min_score, max_score, ack_deadline_ms)` returns ids
- `make_available(message)` and `lock_message(message, lock_type)` return a bool
- `remove(queue, *ids)` returns how many were removed
- `timeout_messages(queue)` and `unlock_messages(queue, lock_type)` return ids
- `list_queues(pattern, pool)` returns queue names
- `get(key)`, `set(key, value)`, `flush()`

Auditor: `store(entry)`, called with an `AuditEntry`.

A backend reports a failure by raising an exception.

## Scores

```python
from deckq.score import (
    get_add_score, get_pull_min_score, get_pull_max_score,
    score_from_time, is_undefined, MIN, MAX,
)

get_add_score(0)         # current Unix time in milliseconds
get_add_score(-10)       # 0.0: negative scores become MIN
get_pull_max_score(0)    # None: no upper bound
get_pull_min_score(100)  # 100
is_undefined(-1)         # True
```

Scores run from `MIN` (0) to `MAX` (9007199254740992). `score_from_time`
converts a `datetime` to Unix milliseconds. A naive `datetime` is read as
local time.

## Working with a queue

```python
from deckq.configuration_service import QueueConfigurationService
from deckq.queue import Message, Queue

queue = Queue(auditor, storage, QueueConfigurationService(storage), cache)

queue.add_messages_to_storage(Message(id="1", queue="jobs"))
queue.add_messages_to_cache(Message(id="1", queue="jobs"))

for message in queue.pull("jobs", 10, None, None, 0):
    queue.ack(message, "done")
```

- `pull` returns a list sorted by score. The list is empty when nothing is
  available. Ids that the cache returns but storage no longer holds are looked
  up a second time. If they are still missing, they are audited as
  `MISSING_STORAGE` and removed from the cache.
- `ack` and `nack` lock the message when its `lock_ms` is positive. Otherwise
  they make it available again. `nack` resets the message's score to `MIN`
  first. Both return `False` for `None`.
- `remove(queue, reason, *ids)` removes from storage first, then from the
  cache. It returns `(cache_removed, storage_removed)`.
- `count`, `get_storage_messages`, `timeout_messages` and `flush` complete the
  set of operations.

Errors:

- A message without a queue or an id raises `QueueError`.
- A failed count raises `QueueError`.
- A failed cache insert raises `QueueError`.
- If a cache removal fails after the storage removal succeeded, `remove`
  raises `QueueError`. The error's `storage_removed` attribute holds the
  storage count.
- Other backend failures are raised as they are.

`Queue.metrics` is a `QueueMetrics`. It counts events, keyed by metric name
and labels, in its `counters`.

`QueueConfigurationService` reads queue configurations through a nine-minute
local cache. It stores an edit only when `max_elements` is non-zero and
differs from the cached value.

## Housekeeping

`deckq.housekeeper` holds the periodic jobs:

- `process_timeout_messages(queue, stop=None)` returns timed-out messages to
  their queues. It returns how many timed out.
- `process_lock_pool(queue, stop=None)` unlocks messages in the ack and nack
  lock pools. It returns how many were unlocked.
- `recovery_messages_pool(queue)` copies stored messages into the cache in
  batches of 4000. It returns `False` once recovery has finished.
- `is_recovering(queue)` reports whether a recovery is running.
- `remove_ttl_messages(queue, filter_date, stop=None)` removes up to 10000
  expired messages.
- `remove_exceeding_messages(queue, stop=None)` trims queues down to their
  `max_elements`. `remove_exceeding_messages_from_queue(queue, configuration)`
  does the same for a single queue.
- `compute_metrics(queue, stop=None)` returns an `ElementMetrics`. It holds,
  for each queue prefix, the age in milliseconds of the oldest message and the
  message count.

`remove_ttl_messages` and `remove_exceeding_messages` return `False` without
doing anything while a recovery is running.

`stop` is an optional callable. When it returns `True`, a job stops between
queues.

## Running the tests

```
pip install -e ".[test]"
pytest
```