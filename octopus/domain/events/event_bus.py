"""
Per-run publish/subscribe.

Publishing appends the message to the run's log and fans it out to the
run's current subscribers. Subscriber failures are logged and never reach
the publisher, the log or the other subscribers.
"""

from typing import Callable, Dict, Optional, Tuple
import asyncio
import inspect
import threading
import structlog

from octopus.domain.context.state.run_repository import RunRepository
from octopus.domain.models.run_state import Message

logger = structlog.get_logger(__name__)

Handler = Callable[[Message], object]

_CLOSED = object()


class RunChannel:
    """Bounded queue subscription over one run's messages"""

    def __init__(self, run_id: str, maxsize: int = 256):
        self.run_id = run_id
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._closed = False

    def offer(self, message: Message):
        """Enqueue without blocking; the oldest queued message gives way when full"""

        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning("Channel full, dropped oldest message", run_id=self.run_id, dropped=self.dropped)
        self._queue.put_nowait(message)

    async def get(self) -> Optional[Message]:
        """Next message, or None once the channel is closed and drained"""

        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Message:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class EventBus:
    """Per-run event registry backed by the run repository"""

    def __init__(self, repository: RunRepository):
        self.repository = repository
        # run id -> immutable tuple, replaced wholesale under the lock
        self._subscribers: Dict[str, Tuple[Handler, ...]] = {}
        self._lock = threading.Lock()

    def subscribe(self, run_id: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for a run and return its unsubscribe function"""

        with self._lock:
            self._subscribers[run_id] = self._subscribers.get(run_id, ()) + (handler,)

        def unsubscribe():
            self._remove(run_id, handler)

        return unsubscribe

    def _remove(self, run_id: str, handler: Handler):
        with self._lock:
            remaining = tuple(h for h in self._subscribers.get(run_id, ()) if h is not handler)
            if remaining:
                self._subscribers[run_id] = remaining
            else:
                self._subscribers.pop(run_id, None)

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, ()))

    def open_channel(self, run_id: str, maxsize: int = 256) -> RunChannel:
        """Subscribe a bounded queue to a run"""

        channel = RunChannel(run_id, maxsize=maxsize)
        channel._unsubscribe = self.subscribe(run_id, channel.offer)
        return channel

    async def publish(self, run_id: str, message: Message) -> bool:
        """Append to the run log and notify subscribers; unknown runs are ignored"""

        run = self.repository.find(run_id)
        if run is None:
            logger.debug("Publish to unknown run ignored", run_id=run_id, type=message.type.value)
            return False

        run.log.append(message)

        for handler in self._subscribers.get(run_id, ()):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Subscriber failed",
                    run_id=run_id,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e)
                )
        return True
