"""
Redis Streams backend for the event log.

Each partition of a topic is its own stream, and a service's consumer group
maps onto a stream consumer group. Redis hands new entries of a stream to
whichever group member asks first. That would break per-partition order
across service instances, so each partition is owned through a lease:

- Every subscription joins the group under a unique member name
- A member reads only the partitions whose lease it holds
  (``SET <lease> <member> NX PX ttl``, renewed on every poll)
- On taking a partition over, the member claims all of the partition's
  pending entries (XAUTOCLAIM) and reads them before any new ones
- A member that finds its lease gone raises TransientBrokerError; the
  supervisor restarts the subscription with a clean slate
- Closing a member releases its leases so a standby takes over at once

A second instance of a service is a hot standby for partitions that are
already owned and picks up any partition nobody holds.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable
from uuid import uuid4

import redis
from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError, ResponseError

from event_driven.event_log import Record, RecordMetadata, partition_for
from shared.errors import TransientBrokerError

logger = logging.getLogger("redis_log")

HEADER_PREFIX = "h:"
CLAIM_BATCH = 100


def stream_name(topic: str, partition: int) -> str:
    """Each partition of a topic is its own stream."""
    return f"{topic}:{partition}"


def lease_name(topic: str, partition: int, group_id: str) -> str:
    return f"{stream_name(topic, partition)}:lease:{group_id}"


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisStreamEventLog:
    """
    Durable partitioned log on Redis Streams.

    Consumer groups map onto stream consumer groups, commits onto XACK.
    Partition ownership and takeover are described in the module docstring.
    """

    def __init__(
        self,
        url: str,
        *,
        partitions: int = 3,
        maxlen: int | None = 100_000,
        send_timeout: float = 5.0,
        lease_ttl: float = 10.0,
    ) -> None:
        self.url = url
        self.partitions = partitions
        self.maxlen = maxlen
        self.send_timeout = send_timeout
        self.lease_ttl = lease_ttl
        self._producer: RedisStreamProducer | None = None

    def producer(self) -> RedisStreamProducer:
        if self._producer is None:
            client = redis.Redis.from_url(
                self.url,
                socket_timeout=self.send_timeout,
                socket_connect_timeout=self.send_timeout,
            )
            self._producer = RedisStreamProducer(client, partitions=self.partitions, maxlen=self.maxlen)
        return self._producer

    def consumer(self, topic: str, group_id: str, consumer_name: str = "") -> RedisStreamConsumer:
        # Unique per subscription, so instances never share a pending list
        member = f"{consumer_name or group_id}-{uuid4().hex[:8]}"
        return RedisStreamConsumer(
            lambda: redis_asyncio.from_url(self.url),
            topic=topic,
            group_id=group_id,
            consumer_name=member,
            partitions=self.partitions,
            lease_ttl=self.lease_ttl,
        )


class RedisStreamProducer:
    """Append records with XADD."""

    def __init__(self, client: redis.Redis, *, partitions: int, maxlen: int | None) -> None:
        self.client = client
        self.partitions = partitions
        self.maxlen = maxlen

    def send(self, topic: str, key: str, value: bytes, headers: dict[str, str]) -> RecordMetadata:
        partition = partition_for(key, self.partitions)
        fields: dict[str, Any] = {"key": key, "value": value}
        fields.update({f"{HEADER_PREFIX}{name}": header for name, header in headers.items()})
        try:
            entry_id = self.client.xadd(
                name=stream_name(topic, partition),
                fields=fields,
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError as exc:
            raise TransientBrokerError(f"XADD to {topic} failed: {exc}") from exc
        return RecordMetadata(topic=topic, partition=partition, offset=_text(entry_id))


class RedisStreamConsumer:
    """One consumer-group member reading the partition streams it holds a lease on."""

    def __init__(
        self,
        client_factory,
        *,
        topic: str,
        group_id: str,
        consumer_name: str,
        partitions: int,
        lease_ttl: float = 10.0,
    ) -> None:
        self._client_factory = client_factory
        self.topic = topic
        self.group_id = group_id
        self.consumer_name = consumer_name
        self.partitions = partitions
        self.lease_ttl = lease_ttl
        self._client: Any = None
        self._paused: set[int] = set()
        # Owned partition -> XREADGROUP id: "0"/last id while draining the pending backlog, then ">"
        self._cursors: dict[int, str] = {}

    @property
    def owned_partitions(self) -> set[int]:
        return set(self._cursors)

    async def connect(self) -> None:
        self._client = self._client_factory()
        self._cursors = {}
        self._paused.clear()
        try:
            await self._client.ping()
            for partition in range(self.partitions):
                await self._ensure_group(stream_name(self.topic, partition))
            await self._refresh_leases()
        except RedisError as exc:
            await self.close()
            raise TransientBrokerError(f"cannot subscribe to {self.topic}: {exc}") from exc
        logger.info(
            f"{self.consumer_name} joined group {self.group_id} on {self.topic}, "
            f"owning partitions {sorted(self._cursors)}"
        )

    async def _ensure_group(self, name: str) -> None:
        try:
            await self._client.xgroup_create(name=name, groupname=self.group_id, id="0-0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" in str(exc):
                return
            raise

    # =========================================================================
    # Partition leases
    # =========================================================================

    async def _refresh_leases(self) -> None:
        """Renew the leases held, take over any partition nobody holds."""
        ttl_ms = max(1, int(self.lease_ttl * 1000))
        for partition in range(self.partitions):
            key = lease_name(self.topic, partition, self.group_id)
            if partition in self._cursors:
                owner = await self._client.get(key)
                if owner is None or _text(owner) != self.consumer_name:
                    del self._cursors[partition]
                    raise TransientBrokerError(
                        f"{self.consumer_name} lost its lease on {stream_name(self.topic, partition)}"
                    )
                await self._client.pexpire(key, ttl_ms)
            elif await self._client.set(key, self.consumer_name, nx=True, px=ttl_ms):
                await self._take_over(partition)

    async def _take_over(self, partition: int) -> None:
        """Claim every pending entry of the partition, then read those first."""
        name = stream_name(self.topic, partition)
        start, claimed = "0-0", 0
        while True:
            reply = await self._client.xautoclaim(
                name, self.group_id, self.consumer_name, min_idle_time=0, start_id=start, count=CLAIM_BATCH
            )
            start = _text(reply[0])
            claimed += len(reply[1])
            if start == "0-0":
                break
        self._cursors[partition] = "0"
        if claimed:
            logger.info(f"{self.consumer_name} took over {name} with {claimed} pending entries")
        else:
            logger.info(f"{self.consumer_name} took over {name}")

    async def _release_leases(self) -> None:
        for partition in list(self._cursors):
            key = lease_name(self.topic, partition, self.group_id)
            owner = await self._client.get(key)
            if owner is not None and _text(owner) == self.consumer_name:
                await self._client.delete(key)
        self._cursors = {}

    # =========================================================================
    # Reading and committing
    # =========================================================================

    async def poll(self, max_records: int, timeout: float) -> list[Record]:
        if self._client is None:
            raise TransientBrokerError(f"{self.consumer_name} is not connected")
        try:
            await self._refresh_leases()
        except RedisError as exc:
            raise TransientBrokerError(f"lease refresh on {self.topic} failed: {exc}") from exc
        streams = {
            stream_name(self.topic, partition): cursor
            for partition, cursor in sorted(self._cursors.items())
            if partition not in self._paused
        }
        if not streams:
            await asyncio.sleep(timeout)
            return []
        try:
            response = await self._client.xreadgroup(
                groupname=self.group_id,
                consumername=self.consumer_name,
                streams=streams,
                count=max_records,
                block=max(1, int(timeout * 1000)),
            )
        except RedisError as exc:
            raise TransientBrokerError(f"XREADGROUP on {self.topic} failed: {exc}") from exc

        records: list[Record] = []
        draining = {partition for partition, cursor in self._cursors.items() if cursor != ">"}
        seen: set[int] = set()
        for raw_stream, messages in _stream_items(response):
            partition = int(_text(raw_stream).rsplit(":", 1)[1])
            seen.add(partition)
            for entry_id, payload in messages:
                if not payload:
                    # Pending entry trimmed away by MAXLEN; nothing left to deliver
                    logger.warning(f"Pending entry {_text(entry_id)} on {_text(raw_stream)} was trimmed")
                    continue
                records.append(self._to_record(partition, _text(entry_id), payload))
            if partition in draining:
                self._cursors[partition] = _text(messages[-1][0]) if messages else ">"
        # A backlog stream that returned nothing at all is drained too
        for partition in draining - seen:
            if stream_name(self.topic, partition) in streams:
                self._cursors[partition] = ">"
        return records

    def _to_record(self, partition: int, entry_id: str, payload: dict) -> Record:
        fields = {_text(name): value for name, value in payload.items()}
        value = fields.get("value", b"")
        return Record(
            topic=self.topic,
            partition=partition,
            offset=entry_id,
            key=_text(fields.get("key", "")),
            value=value if isinstance(value, bytes) else str(value).encode("utf-8"),
            headers={
                name[len(HEADER_PREFIX):]: _text(header)
                for name, header in fields.items()
                if name.startswith(HEADER_PREFIX)
            },
        )

    async def commit(self, record: Record) -> None:
        if self._client is None:
            raise TransientBrokerError(f"{self.consumer_name} is not connected")
        try:
            await self._client.xack(stream_name(record.topic, record.partition), self.group_id, record.offset)
        except RedisError as exc:
            raise TransientBrokerError(f"XACK on {record} failed: {exc}") from exc

    def pause(self, partitions: Iterable[int]) -> None:
        self._paused.update(partitions)

    def resume(self, partitions: Iterable[int]) -> None:
        self._paused.difference_update(partitions)

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._release_leases()
        except RedisError as exc:
            logger.warning(f"{self.consumer_name} could not release its leases, they will expire: {exc}")
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.aclose()
            except RedisError as exc:
                logger.warning(f"Error closing Redis connection for {self.consumer_name}: {exc}")


def _stream_items(response: Any) -> list[tuple[Any, list]]:
    """XREADGROUP reply as (stream, messages) pairs."""
    if not response:
        return []
    if isinstance(response, dict):
        return list(response.items())
    return [(name, messages) for name, messages in response]


__all__ = ["RedisStreamEventLog", "RedisStreamProducer", "RedisStreamConsumer", "lease_name", "stream_name"]
