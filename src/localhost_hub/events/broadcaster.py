"""Event fan-out with bounded buffering.

Provides:
- Per-run ring buffer replayed to late run subscribers
- Per-subscriber bounded queues (drop oldest, then mark the gap)
- Subscriptions keyed by run id, workspace id, or everything
- Explicit unsubscribe tokens

All methods are called from the event loop thread. publish() is
synchronous so events of one run are queued in the order they happen.
"""

import asyncio
import itertools
import logging
from collections import OrderedDict, deque
from collections.abc import Iterable
from types import TracebackType
from typing import Self

from localhost_hub.events.events import Event, EventKind, TruncationMarker

logger = logging.getLogger(__name__)

DEFAULT_RUN_BUFFER_SIZE = 1000
DEFAULT_SUBSCRIBER_QUEUE_SIZE = 1000
DEFAULT_MAX_BUFFERED_RUNS = 200


class RunBuffer:
    """Bounded history of one run's events.

    When full, the oldest event is dropped and counted; snapshot() puts a
    TruncationMarker in front of the surviving events.
    """

    def __init__(self, run_id: str, maxlen: int) -> None:
        self.run_id = run_id
        self.maxlen = maxlen
        self.dropped = 0
        self._events: deque[Event] = deque()

    def __len__(self) -> int:
        return len(self._events)

    def append(self, event: Event) -> None:
        """Add an event, evicting the oldest when full."""
        if len(self._events) >= self.maxlen:
            self._events.popleft()
            self.dropped += 1
        self._events.append(event)

    def snapshot(self) -> list[Event]:
        """Buffered events, oldest first, preceded by a marker if truncated."""
        events = list(self._events)
        if self.dropped:
            marker = TruncationMarker(
                run_id=self.run_id,
                workspace_id=events[0].workspace_id if events else None,
                dropped=self.dropped,
            )
            events.insert(0, marker)
        return events


class Subscription:
    """One subscriber's channel.

    Iterate with ``async for`` or call get(). Iteration ends after
    unsubscribe() or broadcaster shutdown. If the subscriber falls behind,
    the oldest queued events are dropped and the next event received is a
    TruncationMarker counting them.

    Attributes:
        token: Unique token identifying the subscription.
        run_id: Only events of this run are delivered (if set).
        workspace_id: Only events of this workspace are delivered (if set).
        kinds: Only these event kinds are delivered (if set).

    """

    def __init__(
        self,
        broadcaster: "EventBroadcaster",
        token: int,
        run_id: str | None = None,
        workspace_id: str | None = None,
        kinds: frozenset[EventKind] | None = None,
        maxsize: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE,
    ) -> None:
        self.token = token
        self.run_id = run_id
        self.workspace_id = workspace_id
        self.kinds = kinds
        self.maxsize = maxsize
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=maxsize)
        self._dropped = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once unsubscribed or shut down."""
        return self._closed

    @property
    def pending(self) -> int:
        """Number of queued events not yet consumed."""
        return self._queue.qsize()

    def matches(self, event: Event) -> bool:
        """Check whether the event is routed to this subscription."""
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.run_id is not None and event.run_id != self.run_id:
            return False
        if self.workspace_id is not None and event.workspace_id != self.workspace_id:
            return False
        return True

    def deliver(self, event: Event) -> bool:
        """Queue an event without blocking.

        Returns:
            False if the subscription is closed.

        """
        if self._closed:
            return False
        self._put_dropping_oldest(event)
        return True

    def _put_dropping_oldest(self, item: Event | None) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self._dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self, timeout: float | None = None) -> Event | None:
        """Wait for the next event.

        Args:
            timeout: Seconds to wait; raises TimeoutError when exceeded.

        Returns:
            Next event, or None when the subscription has ended.

        """
        if self._dropped:
            dropped, self._dropped = self._dropped, 0
            return TruncationMarker(
                run_id=self.run_id,
                workspace_id=self.workspace_id,
                dropped=dropped,
            )
        if self._closed and self._queue.empty():
            return None
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self._closed:
            return
        self._broadcaster._remove(self.token)
        self._close()

    def _close(self) -> None:
        self._closed = True
        self._put_dropping_oldest(None)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.unsubscribe()


class EventBroadcaster:
    """Publish/subscribe hub for run and workspace events.

    Attributes:
        run_buffer_size: Events retained per run for replay.
        subscriber_queue_size: Queue bound for each subscriber.
        max_buffered_runs: Number of run buffers kept (oldest evicted).

    """

    def __init__(
        self,
        run_buffer_size: int = DEFAULT_RUN_BUFFER_SIZE,
        subscriber_queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE,
        max_buffered_runs: int = DEFAULT_MAX_BUFFERED_RUNS,
    ) -> None:
        self.run_buffer_size = run_buffer_size
        self.subscriber_queue_size = subscriber_queue_size
        self.max_buffered_runs = max_buffered_runs
        self._subscriptions: dict[int, Subscription] = {}
        self._buffers: OrderedDict[str, RunBuffer] = OrderedDict()
        self._tokens = itertools.count(1)
        self._published = 0

    @property
    def subscriber_count(self) -> int:
        """Number of live subscriptions."""
        return len(self._subscriptions)

    @property
    def published_count(self) -> int:
        """Total events published since creation."""
        return self._published

    def publish(self, event: Event) -> int:
        """Route an event to matching subscribers and buffer run events.

        Args:
            event: Event to publish.

        Returns:
            Number of subscriptions the event was delivered to.

        """
        self._published += 1
        if event.run_id is not None:
            self._buffer_for(event.run_id).append(event)

        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.matches(event) and subscription.deliver(event):
                delivered += 1
        return delivered

    def subscribe(
        self,
        *,
        run_id: str | None = None,
        workspace_id: str | None = None,
        kinds: Iterable[EventKind] | None = None,
        replay: bool = True,
    ) -> Subscription:
        """Open a subscription.

        Args:
            run_id: Restrict to one run.
            workspace_id: Restrict to one workspace.
            kinds: Restrict to these event kinds.
            replay: For run subscriptions, queue the run's buffered events
                before live ones.

        Returns:
            Subscription; call unsubscribe() (or use it as a context
            manager) when done.

        """
        subscription = Subscription(
            self,
            token=next(self._tokens),
            run_id=run_id,
            workspace_id=workspace_id,
            kinds=frozenset(kinds) if kinds is not None else None,
            maxsize=self.subscriber_queue_size,
        )
        if replay and run_id is not None and run_id in self._buffers:
            for event in self._buffers[run_id].snapshot():
                if subscription.matches(event) or isinstance(event, TruncationMarker):
                    subscription.deliver(event)

        self._subscriptions[subscription.token] = subscription
        logger.debug(
            "Subscription %d opened (run=%s, workspace=%s, total=%d)",
            subscription.token,
            run_id,
            workspace_id,
            len(self._subscriptions),
        )
        return subscription

    def history(self, run_id: str) -> list[Event]:
        """Buffered events of a run (with truncation marker if any)."""
        buffer = self._buffers.get(run_id)
        return buffer.snapshot() if buffer else []

    def discard_run(self, run_id: str) -> bool:
        """Drop a run's buffer. Returns True if one existed."""
        return self._buffers.pop(run_id, None) is not None

    def close(self) -> None:
        """End every subscription."""
        for subscription in list(self._subscriptions.values()):
            subscription._close()
        count = len(self._subscriptions)
        self._subscriptions.clear()
        logger.info("Event broadcaster closed, disconnected %d subscribers", count)

    def _remove(self, token: int) -> None:
        if self._subscriptions.pop(token, None) is not None:
            logger.debug("Subscription %d closed (remaining=%d)", token, len(self._subscriptions))

    def _buffer_for(self, run_id: str) -> RunBuffer:
        buffer = self._buffers.get(run_id)
        if buffer is None:
            buffer = RunBuffer(run_id, self.run_buffer_size)
            self._buffers[run_id] = buffer
            while len(self._buffers) > self.max_buffered_runs:
                evicted, _ = self._buffers.popitem(last=False)
                logger.debug("Evicted event buffer of run %s", evicted[:8])
        return buffer
