"""
Event publisher: commit-then-publish with a bounded send deadline.

Origin services call ``publish`` strictly after their own write has been
committed, never inside the same transaction. The publisher waits for the
broker acknowledgment for at most ``send_timeout`` seconds. If the send fails
or the deadline passes, the event is logged and dropped: the business
operation already succeeded and is never held hostage to broker health.

Tradeoffs:
- PRO: request latency is bounded and the write path never depends on the broker
- CON: a dropped publish means no downstream effect at all (no notification,
  no cascade) until some reconciliation runs. A transactional outbox would
  close the gap; the ``dropped`` counter makes it visible in the meantime.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Optional, Union
from uuid import UUID

from event_driven.event_log import LogProducer
from event_driven.events import DomainEvent, encode
from shared.errors import PublishError

logger = logging.getLogger("event_publisher")


@dataclass(frozen=True)
class Ack:
    """Broker acknowledgment for one published event."""
    event_id: UUID
    topic: str
    partition: int
    offset: Union[int, str]


class EventPublisher:
    """
    Appends domain events to their topics.

    Example:
        publisher = EventPublisher(event_log.producer(), send_timeout=5.0)

        spread = store.spreads.save(spread)          # commit first
        publisher.publish(SpreadCreated(...))        # then publish; never raises
    """

    def __init__(self, producer: LogProducer, send_timeout: float = 5.0, max_workers: int = 4):
        """
        Args:
            producer: Log producer the records are appended with
            send_timeout: Seconds to wait for the broker acknowledgment
            max_workers: Concurrent in-flight sends
        """
        self.producer = producer
        self.send_timeout = send_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="event-publisher")
        self._counter_lock = threading.Lock()
        self.published = 0
        self.dropped = 0

    def send(self, event: DomainEvent) -> Ack:
        """
        Append ``event`` and wait for the acknowledgment.

        Raises:
            PublishError: the broker rejected the send or did not answer in time
        """
        envelope = encode(event)
        try:
            future = self._executor.submit(
                self.producer.send, envelope.topic, envelope.key, envelope.value, envelope.headers
            )
        except RuntimeError as exc:
            # Executor already shut down by close()
            raise PublishError(f"publisher is closed, cannot send {event}", event=event) from exc
        try:
            metadata = future.result(timeout=self.send_timeout)
        except FuturesTimeoutError:
            future.cancel()
            raise PublishError(
                f"no acknowledgment for {event} within {self.send_timeout}s", event=event
            ) from None
        except Exception as exc:
            raise PublishError(f"send of {event} failed: {exc}", event=event) from exc

        return Ack(
            event_id=event.event_id,
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
        )

    def publish(self, event: DomainEvent) -> Optional[Ack]:
        """
        Fire-and-forget publish.

        Returns:
            The acknowledgment, or None if the event was dropped. Never raises
            PublishError: failures are logged and counted, not retried.
        """
        try:
            ack = self.send(event)
        except PublishError as exc:
            with self._counter_lock:
                self.dropped += 1
            logger.error(f"Dropped {event} on {event.topic}: {exc}")
            return None

        with self._counter_lock:
            self.published += 1
        logger.info(f"Published {event} to {ack.topic}[{ack.partition}]@{ack.offset}")
        return ack

    def close(self) -> None:
        """Stop accepting sends. In-flight sends are not waited for."""
        self._executor.shutdown(wait=False, cancel_futures=True)
