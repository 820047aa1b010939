import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class _Subscriber:
    """One observer plus the queue that serializes deliveries to it."""

    def __init__(self, websocket):
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None


class NotificationHub:
    """Fan-out of JSON messages to every connected WebSocket.

    Each observer gets its own queue and sender task, so a slow or broken
    socket never delays or breaks delivery to the others. Messages reach a
    given observer in the order they were broadcast.
    """

    def __init__(self, greeting: Optional[Callable[[], Dict[str, Any]]] = None):
        self._subscribers: Dict[int, _Subscriber] = {}
        self._greeting = greeting

    @property
    def active_connections(self) -> List[Any]:
        return [sub.websocket for sub in self._subscribers.values()]

    async def connect(self, websocket, accept: bool = True):
        """Register an observer and send it the current device state."""
        if accept:
            await websocket.accept()
        self.register(websocket)

    def register(self, websocket):
        subscriber = _Subscriber(websocket)
        self._subscribers[id(websocket)] = subscriber
        if self._greeting is not None:
            subscriber.queue.put_nowait(json.dumps(self._greeting()))
        subscriber.task = asyncio.create_task(self._pump(subscriber))
        logger.info(f"WebSocket connected. Total connections: {len(self._subscribers)}")

    def disconnect(self, websocket):
        subscriber = self._subscribers.pop(id(websocket), None)
        if subscriber is None:
            return
        if subscriber.task is not None and subscriber.task is not asyncio.current_task():
            subscriber.task.cancel()
        # Release anyone waiting in flush()
        while not subscriber.queue.empty():
            subscriber.queue.get_nowait()
            subscriber.queue.task_done()
        logger.info(f"WebSocket disconnected. Total connections: {len(self._subscribers)}")

    async def send_personal_message(self, message: Dict[str, Any], websocket):
        subscriber = self._subscribers.get(id(websocket))
        if subscriber is not None:
            subscriber.queue.put_nowait(json.dumps(message))

    async def broadcast(self, message: Dict[str, Any]):
        """Queue ``message`` for every observer; never raises for delivery problems."""
        text = json.dumps(message)
        for subscriber in list(self._subscribers.values()):
            subscriber.queue.put_nowait(text)

    async def flush(self):
        """Wait until every queued message has been delivered or dropped."""
        await asyncio.gather(
            *(sub.queue.join() for sub in list(self._subscribers.values())),
        )

    async def close(self):
        for subscriber in list(self._subscribers.values()):
            self.disconnect(subscriber.websocket)

    async def _pump(self, subscriber: _Subscriber):
        while True:
            text = await subscriber.queue.get()
            try:
                await subscriber.websocket.send_text(text)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Dropping observer after failed delivery: %s", exc)
                self.disconnect(subscriber.websocket)
                return
            finally:
                subscriber.queue.task_done()

