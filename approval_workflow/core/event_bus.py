"""
Event bus implementation using AsyncIO queues.
In-process pub/sub for workflow lifecycle events.

Contract: emit() returns immediately. Every subscriber runs as an
independent unit of work; a failing subscriber is logged and never
reaches the emitter or the transition that produced the event.
"""

import asyncio
from typing import Callable, Awaitable, Dict, List, Union
from collections import defaultdict
import structlog

from approval_workflow.models.schemas import WorkflowEventPayload, WorkflowEventType
from approval_workflow.config.settings import settings

logger = structlog.get_logger()

WILDCARD = "*"

EventHandler = Callable[[WorkflowEventPayload], Awaitable[None]]


class EventBus:
    """
    Lightweight event bus using an asyncio queue.
    Supports per-type and wildcard subscribers.
    """

    def __init__(self, max_queue_size: int = None):
        self._queue: asyncio.Queue = asyncio.Queue(
            maxsize=max_queue_size or settings.event_bus_max_queue_size
        )
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._running = False
        self._processor_task: asyncio.Task = None
        self._emitted = 0
        self._dropped = 0
        self._handler_errors = 0

    def subscribe(
        self, event_type: Union[WorkflowEventType, str], handler: EventHandler
    ) -> Callable[[], None]:
        """
        Subscribe a handler to an event type, or to every event with "*".

        Returns a callable that removes the subscription.
        """
        key = _key(event_type)
        self._handlers[key].append(handler)
        logger.info(
            "event_handler_subscribed",
            event_type=key,
            handler=getattr(handler, "__name__", repr(handler)),
            total_handlers=len(self._handlers[key]),
        )

        def unsubscribe():
            handlers = self._handlers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)
                logger.info("event_handler_unsubscribed", event_type=key)

        return unsubscribe

    def emit(self, event: WorkflowEventPayload) -> bool:
        """
        Queue an event for delivery without waiting for subscribers.

        Returns False when the queue is full and the event was dropped.
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.error(
                "event_queue_full",
                event_type=event.event_type.value,
                event_id=event.event_id,
                entity_id=event.entity_id,
            )
            return False

        self._emitted += 1
        logger.debug(
            "event_published",
            event_type=event.event_type.value,
            event_id=event.event_id,
            queue_size=self._queue.qsize(),
        )
        return True

    async def start(self):
        """Start the event processor"""
        if self._running:
            logger.warning("event_bus_already_running")
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("event_bus_started")

    async def stop(self):
        """Stop the event processor"""
        if not self._running:
            return

        self._running = False

        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass

        logger.info("event_bus_stopped", pending_events=self._queue.qsize())

    async def wait_until_idle(self):
        """Block until every queued event has been handed to its subscribers"""
        await self._queue.join()

    async def _process_events(self):
        """
        Background task that drains the queue and fans each event out
        to its type subscribers plus wildcard subscribers.
        """
        logger.info("event_processor_started")

        while self._running:
            try:
                # Wait for event with timeout to allow clean shutdown
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                logger.info("event_processor_cancelled")
                break

            try:
                handlers = (
                    list(self._handlers.get(event.event_type.value, []))
                    + list(self._handlers.get(WILDCARD, []))
                )

                if not handlers:
                    logger.debug("no_handlers_for_event", event_type=event.event_type.value)
                    continue

                logger.debug(
                    "processing_event",
                    event_type=event.event_type.value,
                    event_id=event.event_id,
                    handlers=len(handlers),
                )

                await asyncio.gather(
                    *[self._run_handler(handler, event) for handler in handlers],
                    return_exceptions=True,
                )
            except asyncio.CancelledError:
                logger.info("event_processor_cancelled")
                break
            except Exception as e:
                logger.error("event_processor_error", error=str(e), exc_info=True)
            finally:
                self._queue.task_done()

        logger.info("event_processor_stopped")

    async def _run_handler(self, handler: EventHandler, event: WorkflowEventPayload):
        try:
            await handler(event)
        except Exception as e:
            self._handler_errors += 1
            logger.error(
                "event_handler_error",
                handler=getattr(handler, "__name__", repr(handler)),
                event_type=event.event_type.value,
                event_id=event.event_id,
                error=str(e),
                exc_info=True,
            )

    def get_stats(self) -> dict:
        """Get event bus statistics"""
        return {
            "running": self._running,
            "queue_size": self._queue.qsize(),
            "max_queue_size": self._queue.maxsize,
            "event_types": sorted(k for k, v in self._handlers.items() if v),
            "total_handlers": sum(len(handlers) for handlers in self._handlers.values()),
            "events_emitted": self._emitted,
            "events_dropped": self._dropped,
            "handler_errors": self._handler_errors,
        }


def _key(event_type: Union[WorkflowEventType, str]) -> str:
    if isinstance(event_type, WorkflowEventType):
        return event_type.value
    if event_type == WILDCARD:
        return WILDCARD
    return WorkflowEventType(event_type).value
