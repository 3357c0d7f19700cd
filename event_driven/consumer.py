"""
Supervised, ordered, at-least-once event consumer.

One EventConsumer runs per topic per subscribing service. It reads records
from the event log, decodes them, hands them to a handler and commits the
read position once the handler is done.

Processing contract:
- Records of one partition are handled strictly in order by that
  partition's worker task; partitions run concurrently
- Decoding and handlers run in a worker thread, never on the event loop
  that polls the log, so a slow handler or a huge payload does not stall
  other partitions
- A partition whose queue fills up is paused at the log and resumed once
  its worker catches up
- Undecodable records (unknown eventType, malformed payload) are logged,
  dead-lettered, committed and never retried
- Handler failures follow the consumer's ErrorPolicy:
    SKIP       log, dead-letter, commit, move on (availability first)
    REDELIVER  leave uncommitted and restart the subscription, so the record
               comes back from the committed position (completeness first;
               a poison record blocks its partition)

Supervision:
The whole subscription runs inside a tenacity retry loop with exponential
backoff (1s doubling up to 60s by default) and no attempt limit. A broker
outage degrades the service; it never kills the consumer. The backoff does
not reset once the subscription recovers. ``state`` exposes what the
supervisor is doing for health checks and operators.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_never,
    wait_exponential,
)

from event_driven.event_log import EventLog, LogConsumer, LogProducer, Record
from event_driven.events import DomainEvent, decode
from shared.config import PipelineSettings
from shared.errors import DecodeError, HandlerError, TransientBrokerError

logger = logging.getLogger("event_consumer")

# Type alias for event handler functions (run in a worker thread)
EventHandler = Callable[[DomainEvent], None]


class ErrorPolicy(str, Enum):
    """What a consumer does when its handler raises."""
    SKIP = "skip"
    REDELIVER = "redeliver"


class ConsumerStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    BACKING_OFF = "backing_off"
    STOPPED = "stopped"


@dataclass
class SupervisorState:
    """Observable state of one consumer's supervisor."""
    status: ConsumerStatus = ConsumerStatus.IDLE
    attempt: int = 0
    last_backoff: float = 0.0
    restarts: int = 0
    last_error: Optional[str] = None
    processed: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    backoff_history: deque = field(default_factory=lambda: deque(maxlen=100))

    def snapshot(self) -> dict:
        return {
            "status": self.status.value,
            "attempt": self.attempt,
            "last_backoff": self.last_backoff,
            "restarts": self.restarts,
            "last_error": self.last_error,
            "processed": self.processed,
            "skipped": self.skipped,
            "dead_lettered": self.dead_lettered,
            "backoff_history": list(self.backoff_history),
        }


class DeadLetterSink:
    """
    Copies skipped records to ``<topic><suffix>`` for forensics.

    The original key, value and headers are kept; the reason and the original
    coordinates are added as headers. Failing to dead-letter is logged and
    never raised, since the record is being skipped anyway.
    """

    def __init__(self, producer: LogProducer, suffix: str = ".DLT"):
        self.producer = producer
        self.suffix = suffix

    def topic_for(self, topic: str) -> str:
        return f"{topic}{self.suffix}"

    def send(self, record: Record, reason: str) -> bool:
        headers = dict(record.headers)
        headers.update({
            "dlt-reason": reason[:500],
            "dlt-original-topic": record.topic,
            "dlt-original-partition": str(record.partition),
            "dlt-original-offset": str(record.offset),
        })
        try:
            self.producer.send(self.topic_for(record.topic), record.key, record.value, headers)
        except Exception as exc:
            logger.error(f"Could not dead-letter {record}: {exc}")
            return False
        return True


class _PartitionWorker:
    """Handles the records of one partition, one at a time, in order."""

    def __init__(self, owner: "EventConsumer", consumer: LogConsumer, partition: int):
        self.owner = owner
        self.consumer = consumer
        self.partition = partition
        self.queue: asyncio.Queue = asyncio.Queue()
        self.halted = False
        self.busy = False
        self.paused = False
        self.task = asyncio.create_task(self._run(), name=f"{owner.name}-p{partition}")

    async def _run(self) -> None:
        while not self.halted:
            record = await self.queue.get()
            if self.halted:
                break
            self.busy = True
            try:
                await self.owner._process_record(self.consumer, record)
            finally:
                self.busy = False
            if self.paused and self.queue.qsize() <= self.owner.max_pending_per_partition // 2:
                self.consumer.resume([self.partition])
                self.paused = False

    def failure(self) -> Optional[BaseException]:
        if self.task.done() and not self.task.cancelled():
            return self.task.exception()
        return None


class EventConsumer:
    """
    A durable subscription to one topic, kept alive by a backoff supervisor.

    Example:
        consumer = EventConsumer(
            name="notifications-interpretations",
            event_log=log,
            topic=Topics.INTERPRETATION_EVENTS,
            group_id="notification-service",
            handler=notification_service.handle,
            error_policy=ErrorPolicy.SKIP,
            dead_letters=DeadLetterSink(log.producer()),
        )
        consumer.start()      # background task on the running loop
        ...
        await consumer.stop() # in-flight handlers finish, then the log is closed
    """

    def __init__(
        self,
        name: str,
        event_log: EventLog,
        topic: str,
        group_id: str,
        handler: EventHandler,
        *,
        error_policy: ErrorPolicy = ErrorPolicy.SKIP,
        dead_letters: Optional[DeadLetterSink] = None,
        backoff_initial: float = 1.0,
        backoff_max: float = 60.0,
        poll_timeout: float = 0.5,
        max_poll_records: int = 100,
        max_pending_per_partition: int = 100,
        shutdown_timeout: float = 10.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Args:
            name: Consumer name, used in logs and as the group member name
            event_log: Log to subscribe to
            topic: Topic to read
            group_id: Consumer group whose committed positions are used
            handler: Called with each decoded event, in a worker thread
            error_policy: SKIP or REDELIVER, see module docstring
            dead_letters: Where skipped records are copied (optional)
            backoff_initial: First supervisor backoff, in seconds
            backoff_max: Backoff cap, in seconds
            poll_timeout: Longest a single poll waits for records
            max_poll_records: Records fetched per poll
            max_pending_per_partition: Queue depth at which a partition is paused
            shutdown_timeout: How long stop() lets in-flight handlers run
            sleep: Replacement for the supervisor's backoff sleep (tests)
        """
        self.name = name
        self.event_log = event_log
        self.topic = topic
        self.group_id = group_id
        self.handler = handler
        self.error_policy = error_policy
        self.dead_letters = dead_letters
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.poll_timeout = poll_timeout
        self.max_poll_records = max_poll_records
        self.max_pending_per_partition = max_pending_per_partition
        self.shutdown_timeout = shutdown_timeout
        self._sleep = sleep or self._interruptible_sleep

        self.state = SupervisorState()
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        name: str,
        event_log: EventLog,
        topic: str,
        group_id: str,
        handler: EventHandler,
        settings: PipelineSettings,
        *,
        error_policy: ErrorPolicy = ErrorPolicy.SKIP,
        dead_letters: Optional[DeadLetterSink] = None,
    ) -> "EventConsumer":
        return cls(
            name,
            event_log,
            topic,
            group_id,
            handler,
            error_policy=error_policy,
            dead_letters=dead_letters,
            backoff_initial=settings.backoff_initial_seconds,
            backoff_max=settings.backoff_max_seconds,
            poll_timeout=settings.poll_timeout_seconds,
            max_poll_records=settings.max_poll_records,
            max_pending_per_partition=settings.max_pending_per_partition,
            shutdown_timeout=settings.shutdown_timeout_seconds,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Run the supervised subscription as a background task."""
        if self.running:
            logger.warning(f"{self.name} already started")
            return self._task
        self._stopping.clear()
        self._task = asyncio.create_task(self.run(), name=f"consumer-{self.name}")
        return self._task

    async def stop(self) -> None:
        """
        Stop polling, let in-flight handlers finish, close the subscription.

        Records fetched but not handled yet stay uncommitted and are
        redelivered on the next start.
        """
        self._stopping.set()
        task, self._task = self._task, None
        if task is None:
            return
        done, _ = await asyncio.wait({task}, timeout=self.shutdown_timeout + self.poll_timeout + 1.0)
        if not done:
            logger.warning(f"{self.name} did not stop in time, cancelling")
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"{self.name} stopped")

    async def run(self) -> None:
        """Supervisor loop: subscribe, and on any failure back off and resubscribe."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            wait=wait_exponential(
                multiplier=self.backoff_initial,
                min=self.backoff_initial,
                max=self.backoff_max,
            ),
            stop=stop_never,
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._subscribe_once()
        finally:
            self.state.status = ConsumerStatus.STOPPED

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        error = retry_state.outcome.exception() if retry_state.outcome else None

        self.state.status = ConsumerStatus.BACKING_OFF
        self.state.attempt = retry_state.attempt_number
        self.state.last_backoff = delay
        self.state.restarts += 1
        self.state.last_error = f"{type(error).__name__}: {error}" if error else None
        self.state.backoff_history.append(delay)

        if isinstance(error, (TransientBrokerError, HandlerError)):
            logger.warning(
                f"{self.name}: subscription failed (attempt {retry_state.attempt_number}), "
                f"retrying in {delay:.1f}s: {error}"
            )
        else:
            logger.error(
                f"{self.name}: unexpected failure (attempt {retry_state.attempt_number}), "
                f"retrying in {delay:.1f}s",
                exc_info=error,
            )

    async def _interruptible_sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # =========================================================================
    # Subscription
    # =========================================================================

    async def _subscribe_once(self) -> None:
        if self._stopping.is_set():
            return
        self.state.status = ConsumerStatus.CONNECTING
        consumer = self.event_log.consumer(self.topic, self.group_id, self.name)
        try:
            await consumer.connect()
            self.state.status = ConsumerStatus.RUNNING
            logger.info(f"{self.name} subscribed to {self.topic} as {self.group_id} ({self.error_policy.value})")
            await self._consume(consumer)
        finally:
            await consumer.close()

    async def _consume(self, consumer: LogConsumer) -> None:
        workers: dict[int, _PartitionWorker] = {}
        try:
            while not self._stopping.is_set():
                self._raise_worker_failure(workers)
                records = await consumer.poll(self.max_poll_records, self.poll_timeout)
                for record in records:
                    worker = workers.get(record.partition)
                    if worker is None:
                        worker = workers[record.partition] = _PartitionWorker(self, consumer, record.partition)
                    worker.queue.put_nowait(record)
                    if not worker.paused and worker.queue.qsize() >= self.max_pending_per_partition:
                        consumer.pause([record.partition])
                        worker.paused = True
            # Stopping: a handler failure that raced the stop request still counts
            self._raise_worker_failure(workers)
        finally:
            await self._drain(workers)

    @staticmethod
    def _raise_worker_failure(workers: dict[int, _PartitionWorker]) -> None:
        for worker in workers.values():
            failure = worker.failure()
            if failure is not None:
                raise failure

    async def _drain(self, workers: dict[int, _PartitionWorker]) -> None:
        """Let busy workers finish their current record; drop everything queued."""
        if not workers:
            return
        for worker in workers.values():
            worker.halted = True
            if not worker.busy:
                worker.task.cancel()
        tasks = [worker.task for worker in workers.values()]
        _, still_running = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
        for task in still_running:
            logger.warning(f"{self.name}: abandoning in-flight handler in {task.get_name()}")
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _decode_and_handle(self, record: Record) -> tuple[Optional[DomainEvent], Optional[Exception]]:
        """
        Worker-thread half of processing one record.

        Returns the decoded event (None when decoding failed) and the failure,
        if any. With no event the failure is the DecodeError; otherwise it
        came from the handler.
        """
        try:
            event = decode(record.value, record.headers)
        except DecodeError as exc:
            return None, exc
        try:
            self.handler(event)
        except Exception as exc:
            return event, exc
        return event, None

    async def _process_record(self, consumer: LogConsumer, record: Record) -> None:
        event, error = await asyncio.to_thread(self._decode_and_handle, record)

        if event is None:
            logger.warning(f"{self.name}: skipping undecodable {record}: {error}")
            await self._skip(consumer, record, f"decode: {error}")
            return

        if error is not None:
            if self.error_policy is ErrorPolicy.REDELIVER:
                logger.error(f"{self.name}: handler failed on {event}, leaving {record} for redelivery: {error}")
                raise HandlerError(f"handler failed on {record}: {error}", record=record) from error
            logger.error(f"{self.name}: handler failed on {event}, skipping {record}: {error}")
            await self._skip(consumer, record, f"handler: {type(error).__name__}: {error}")
            return

        await consumer.commit(record)
        self.state.processed += 1
        logger.debug(f"{self.name}: handled {event} from {record}")

    async def _skip(self, consumer: LogConsumer, record: Record, reason: str) -> None:
        if self.dead_letters is not None:
            if await asyncio.to_thread(self.dead_letters.send, record, reason):
                self.state.dead_lettered += 1
        await consumer.commit(record)
        self.state.skipped += 1
