"""
Partitioned, ordered event log.

Publishers append records to topics; consumers read them back per consumer
group and commit how far they got. This is the contract both backends
implement:

- InMemoryEventLog (this module): a single-process log for tests and the
  demo
- RedisStreamEventLog (event_driven/redis_log.py): a durable log shared by
  independently deployed services

Design decisions:
- A topic is split into a fixed number of partitions; the partition is
  chosen from the record key with crc32, so it is stable across processes
- Order is guaranteed within a partition only
- Each consumer group has a committed position per partition. A consumer
  that (re)connects starts from it, so records that were fetched but never
  committed are delivered again (at-least-once)
- Commits only ever move forward
"""

import asyncio
import logging
import threading
import time
import zlib
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol, Union

from shared.config import PipelineSettings
from shared.errors import TransientBrokerError

logger = logging.getLogger("event_log")


@dataclass(frozen=True)
class RecordMetadata:
    """Broker acknowledgment for an appended record."""
    topic: str
    partition: int
    offset: Union[int, str]


@dataclass(frozen=True)
class Record:
    """A record as read back by a consumer."""
    topic: str
    partition: int
    offset: Union[int, str]
    key: str
    value: bytes
    headers: dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"Record({self.topic}[{self.partition}]@{self.offset}, key={self.key})"


def partition_for(key: str, partitions: int) -> int:
    """Stable key -> partition mapping."""
    return zlib.crc32(key.encode("utf-8")) % partitions


class LogProducer(Protocol):
    def send(
        self, topic: str, key: str, value: bytes, headers: dict[str, str]
    ) -> RecordMetadata: ...


class LogConsumer(Protocol):
    async def connect(self) -> None: ...

    async def poll(self, max_records: int, timeout: float) -> list[Record]: ...

    async def commit(self, record: Record) -> None: ...

    def pause(self, partitions: Iterable[int]) -> None: ...

    def resume(self, partitions: Iterable[int]) -> None: ...

    async def close(self) -> None: ...


class EventLog(Protocol):
    """Factory for the producer and consumers of one broker."""

    def producer(self) -> LogProducer: ...

    def consumer(self, topic: str, group_id: str, consumer_name: str = "") -> LogConsumer: ...


# =============================================================================
# In-memory backend
# =============================================================================

class InMemoryEventLog:
    """
    In-process partitioned log.

    The log is its own producer. Every topic is created lazily on first use
    with ``partitions`` partitions. Records are never trimmed and only this
    process can reach them, so the log is meant for tests and demos.

    Example:
        log = InMemoryEventLog(partitions=3)
        meta = log.send("spread-events", key, value, {"eventType": "CREATED"})

        consumer = log.consumer("spread-events", group_id="notification-service")
        await consumer.connect()
        for record in await consumer.poll(max_records=10, timeout=0.5):
            ...
            await consumer.commit(record)
    """

    def __init__(self, partitions: int = 3):
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self.partitions = partitions
        self._topics: dict[str, list[list[Record]]] = {}
        # (group_id, topic, partition) -> next offset to read
        self._committed: dict[tuple[str, str, int], int] = {}
        self._lock = threading.Lock()

    def producer(self) -> "InMemoryEventLog":
        return self

    def consumer(self, topic: str, group_id: str, consumer_name: str = "") -> "InMemoryLogConsumer":
        return InMemoryLogConsumer(self, topic, group_id, consumer_name or group_id)

    def send(self, topic: str, key: str, value: bytes, headers: dict[str, str]) -> RecordMetadata:
        partition = partition_for(key, self.partitions)
        with self._lock:
            log = self._partitions(topic)[partition]
            record = Record(
                topic=topic,
                partition=partition,
                offset=len(log),
                key=key,
                value=value,
                headers=dict(headers),
            )
            log.append(record)
        logger.debug(f"Appended {record}")
        return RecordMetadata(topic=topic, partition=partition, offset=record.offset)

    # -------------------------------------------------------------------------
    # Inspection (tests, demo, health)
    # -------------------------------------------------------------------------

    def records(self, topic: str) -> list[Record]:
        """Every record of ``topic``, partition by partition."""
        with self._lock:
            return [record for log in self._partitions(topic) for record in log]

    def end_offset(self, topic: str, partition: int) -> int:
        with self._lock:
            return len(self._partitions(topic)[partition])

    def committed_offset(self, group_id: str, topic: str, partition: int) -> int:
        with self._lock:
            return self._committed.get((group_id, topic, partition), 0)

    def lag(self, group_id: str, topic: str) -> int:
        """Records appended but not yet committed by ``group_id``."""
        with self._lock:
            return sum(
                len(log) - self._committed.get((group_id, topic, partition), 0)
                for partition, log in enumerate(self._partitions(topic))
            )

    # -------------------------------------------------------------------------
    # Consumer support
    # -------------------------------------------------------------------------

    def _partitions(self, topic: str) -> list[list[Record]]:
        if topic not in self._topics:
            self._topics[topic] = [[] for _ in range(self.partitions)]
        return self._topics[topic]

    def _fetch(self, topic: str, positions: dict[int, int], paused: set[int], limit: int) -> list[Record]:
        batch: list[Record] = []
        with self._lock:
            for partition, log in enumerate(self._partitions(topic)):
                if partition in paused or len(batch) >= limit:
                    continue
                start = positions.get(partition, 0)
                taken = log[start:start + (limit - len(batch))]
                batch.extend(taken)
                positions[partition] = start + len(taken)
        return batch

    def _commit(self, group_id: str, topic: str, partition: int, next_offset: int) -> None:
        with self._lock:
            slot = (group_id, topic, partition)
            if next_offset > self._committed.get(slot, 0):
                self._committed[slot] = next_offset

    def _committed_positions(self, group_id: str, topic: str) -> dict[int, int]:
        with self._lock:
            return {
                partition: self._committed.get((group_id, topic, partition), 0)
                for partition in range(self.partitions)
            }


def create_event_log(settings: PipelineSettings) -> EventLog:
    """Build the backend selected by ``settings.broker_backend``."""
    if settings.broker_backend == "redis":
        from event_driven.redis_log import RedisStreamEventLog

        return RedisStreamEventLog(
            settings.redis_url,
            partitions=settings.partitions,
            maxlen=settings.stream_max_length,
            send_timeout=settings.send_timeout_seconds,
            lease_ttl=settings.partition_lease_seconds,
        )
    return InMemoryEventLog(partitions=settings.partitions)


class InMemoryLogConsumer:
    """One consumer-group member reading one topic of an InMemoryEventLog."""

    POLL_INTERVAL = 0.01

    def __init__(self, log: InMemoryEventLog, topic: str, group_id: str, consumer_name: str):
        self.log = log
        self.topic = topic
        self.group_id = group_id
        self.consumer_name = consumer_name
        self._positions: dict[int, int] = {}
        self._paused: set[int] = set()
        self._connected = False

    async def connect(self) -> None:
        self._positions = self.log._committed_positions(self.group_id, self.topic)
        self._paused.clear()
        self._connected = True
        logger.info(f"{self.consumer_name} joined {self.topic} at {self._positions}")

    async def poll(self, max_records: int, timeout: float) -> list[Record]:
        self._ensure_connected()
        deadline = time.monotonic() + timeout
        while True:
            batch = self.log._fetch(self.topic, self._positions, self._paused, max_records)
            remaining = deadline - time.monotonic()
            if batch or remaining <= 0:
                return batch
            await asyncio.sleep(min(self.POLL_INTERVAL, remaining))

    async def commit(self, record: Record) -> None:
        self._ensure_connected()
        self.log._commit(self.group_id, record.topic, record.partition, int(record.offset) + 1)

    def pause(self, partitions: Iterable[int]) -> None:
        self._paused.update(partitions)

    def resume(self, partitions: Iterable[int]) -> None:
        self._paused.difference_update(partitions)

    async def close(self) -> None:
        self._connected = False
        self._positions = {}

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise TransientBrokerError(f"{self.consumer_name} is not connected")
