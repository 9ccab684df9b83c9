"""File-change events for cache invalidation.

The workspace watcher (an external process) publishes JSON payloads on Redis
pub/sub channels derived from ``EventType``; the search service subscribes
and drops cached results that reference the changed file or language.

Key concepts
- "EventType" stable identifiers are versioned (``.v1`` suffix)
- ``EventPublisher`` composes channel names as ``{prefix}:{event_type}``
- ``EventSubscriber`` manages a map of event handlers and message dispatch
"""

import asyncio
import json
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis
import redis.asyncio as redis_async
import structlog

logger = structlog.get_logger("events")

DEFAULT_CHANNEL_PREFIX = "code_search_events"


class EventType(Enum):
    """Event types understood by the search service."""
    FILE_CHANGED = "workspace.file.changed.v1"
    LANGUAGE_REINDEXED = "workspace.language.reindexed.v1"


@dataclass
class BaseEvent:
    """Base event class.

    Child events set their ``event_type`` in ``__post_init__``.
    """
    timestamp: int
    event_type: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict())


@dataclass
class FileChangedEvent(BaseEvent):
    """Emitted when a watched source file is created, modified or deleted."""
    path: str
    language: Optional[str] = None
    change_type: str = "modified"

    def __post_init__(self):
        self.event_type = EventType.FILE_CHANGED.value
        if not self.timestamp:
            self.timestamp = int(time.time() * 1000)


@dataclass
class LanguageReindexedEvent(BaseEvent):
    """Emitted when every file of one language was re-indexed."""
    language: str

    def __post_init__(self):
        self.event_type = EventType.LANGUAGE_REINDEXED.value
        if not self.timestamp:
            self.timestamp = int(time.time() * 1000)


class EventPublisher:
    """Publishes events to Redis.

    Notes
    - Failures are retried with exponential backoff, then logged and re-raised.
    - Messages are serialized as JSON to keep consumers language-agnostic.
    """

    def __init__(self, redis_url: str, channel_prefix: str = DEFAULT_CHANNEL_PREFIX):
        self.redis_client = redis.from_url(redis_url)
        self.channel_prefix = channel_prefix

    def publish(self, event: BaseEvent) -> None:
        """Publish an event on the channel derived from its type."""
        max_retries = 3
        base_delay = 0.5

        for attempt in range(max_retries):
            try:
                channel = f"{self.channel_prefix}:{event.event_type}"
                self.redis_client.publish(channel, event.to_json())
                logger.info("Event published", event_type=event.event_type, channel=channel)
                return
            except Exception as e:
                if attempt == max_retries - 1:
                    logger.error(
                        "Failed to publish event after all retries",
                        event_type=event.event_type,
                        error=str(e)
                    )
                    raise

                delay = base_delay * (2 ** attempt)
                logger.warning(
                    "Event publish failed, retrying",
                    event_type=event.event_type,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(e)
                )
                time.sleep(delay)

    def publish_file_changed(
        self,
        path: str,
        language: Optional[str] = None,
        change_type: str = "modified"
    ) -> None:
        """Publish a file changed event."""
        self.publish(FileChangedEvent(
            timestamp=int(time.time() * 1000),
            event_type=EventType.FILE_CHANGED.value,
            path=path,
            language=language,
            change_type=change_type
        ))

    def publish_language_reindexed(self, language: str) -> None:
        """Publish a language reindexed event."""
        self.publish(LanguageReindexedEvent(
            timestamp=int(time.time() * 1000),
            event_type=EventType.LANGUAGE_REINDEXED.value,
            language=language
        ))


class EventSubscriber:
    """Subscribes to events from Redis.

    Maintains a mapping of ``event_type -> List[callables]``. When a message
    arrives, ``_handle_message`` decodes JSON and invokes each registered
    handler with the raw dictionary payload.
    """

    def __init__(self, redis_url: str, channel_prefix: str = DEFAULT_CHANNEL_PREFIX):
        self.redis_client = redis_async.from_url(redis_url, decode_responses=False)
        self.channel_prefix = channel_prefix
        self.handlers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = {}

    def subscribe(self, event_type: EventType, handler: Callable[[Dict[str, Any]], None]) -> None:
        """Subscribe to an event type."""
        self.handlers.setdefault(event_type.value, []).append(handler)
        logger.info(
            "Subscribed to event",
            event_type=event_type.value,
            handler=getattr(handler, "__name__", repr(handler))
        )

    async def start_listening(self) -> None:
        """Listen for events until cancelled.

        Meant to run as a background task; transient errors inside the loop
        are logged and the loop keeps going.
        """
        pubsub = self.redis_client.pubsub()

        try:
            channels = [
                f"{self.channel_prefix}:{event_type.value}"
                for event_type in EventType
            ]
            await pubsub.subscribe(*channels)
            logger.info("Started listening for events", channels=channels)

            while True:
                try:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=1.0
                    )
                    if message and message.get("type") == "message":
                        self._handle_message(message)

                    await asyncio.sleep(0.01)

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Error in event listener loop", error=str(e))
                    await asyncio.sleep(1.0)

        except asyncio.CancelledError:
            logger.info("Event listener cancelled")
            raise
        finally:
            try:
                await pubsub.aclose()
                logger.info("Event listener stopped")
            except Exception as e:
                logger.warning("Error closing pubsub", error=str(e))

    def _handle_message(self, message: Dict[str, Any]) -> None:
        """Handle incoming event message.

        Dispatch errors from individual handlers are logged and do not prevent
        other handlers from executing.
        """
        try:
            channel_raw = message.get("channel")
            data_raw = message.get("data")

            if isinstance(channel_raw, (bytes, bytearray)):
                channel = channel_raw.decode("utf-8")
            else:
                channel = str(channel_raw)

            if isinstance(data_raw, (bytes, bytearray)):
                payload = json.loads(data_raw.decode("utf-8"))
            else:
                payload = json.loads(data_raw)

            event_type = channel.split(":")[-1]

            if event_type not in self.handlers:
                logger.warning("No handlers for event type", event_type=event_type)
                return

            for handler in self.handlers[event_type]:
                try:
                    handler(payload)
                except Exception as e:
                    logger.error(
                        "Error handling event",
                        event_type=event_type,
                        handler=getattr(handler, "__name__", repr(handler)),
                        error=str(e)
                    )

        except (ValueError, TypeError) as e:
            logger.error("Error processing event message", error=str(e))

    async def close(self) -> None:
        """Close the Redis client used by the subscriber."""
        try:
            await self.redis_client.aclose()
        except Exception as e:
            logger.warning("Error closing redis client", error=str(e))


def create_event_publisher(redis_url: str, channel_prefix: str = DEFAULT_CHANNEL_PREFIX) -> EventPublisher:
    """Create an event publisher."""
    return EventPublisher(redis_url, channel_prefix)


def create_event_subscriber(redis_url: str, channel_prefix: str = DEFAULT_CHANNEL_PREFIX) -> EventSubscriber:
    """Create an event subscriber."""
    return EventSubscriber(redis_url, channel_prefix)
