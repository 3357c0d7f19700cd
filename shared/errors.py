"""
Error taxonomy for the event pipeline.

Each failure class has exactly one handling rule:

- TransientBrokerError: retried with backoff by the consumer supervisor,
  never retried by the publisher.
- PublishError: a send that failed or missed its deadline; logged and dropped.
- DecodeError: a record that cannot be turned into a domain event; logged,
  dead-lettered and skipped, never retried.
- HandlerError: a business or storage failure under the redeliver policy;
  the subscription restarts and the record is delivered again.
- BroadcastError: a live push that could not be written; always swallowed.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class TransientBrokerError(PipelineError):
    """The broker could not be reached, or rejected a send/poll/commit."""


class PublishError(PipelineError):
    """An event could not be appended to its topic within the send deadline."""

    def __init__(self, message: str, event: Any = None):
        super().__init__(message)
        self.event = event


class DecodeError(PipelineError):
    """A record's headers or value do not describe a known domain event."""


class HandlerError(PipelineError):
    """A handler failed on a record that must be redelivered."""

    def __init__(self, message: str, record: Any = None):
        super().__init__(message)
        self.record = record


class BroadcastError(PipelineError):
    """A live push to a user's channel failed."""


class ChannelWriteError(BroadcastError):
    """Writing to a single push channel failed (closed socket, timeout)."""

    def __init__(self, message: str, channel_id: Optional[str] = None):
        super().__init__(message)
        self.channel_id = channel_id
