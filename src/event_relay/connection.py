import asyncio, logging
from typing import Any, Callable, Dict, List, Optional

from attr import dataclass
from web3 import AsyncWeb3
from web3.providers import WebSocketProvider

LIFECYCLE_EVENTS = ("connect", "disconnect", "error")


class ConnectionLost(Exception):
    pass


@dataclass
class Subscription:
    id: str
    queue: asyncio.Queue


class ChainConnection:
    """
    Provider wrapper around web3's persistent WebSocket connection.

    web3 owns the socket and the JSON-RPC framing. This class only fans the
    subscription stream out to one queue per subscription id and tells the
    observers registered with `on()` about connect, disconnect and error
    occurrences. Nothing here reconnects: once the socket is gone every
    subscription queue receives a `ConnectionLost` and the connection stays
    closed.
    """

    error_delay = 1.0

    def __init__(self, url: str, w3: Optional[AsyncWeb3] = None):
        self.url = url
        self.w3 = w3 if w3 is not None else AsyncWeb3(WebSocketProvider(url))
        self._observers: Dict[str, List[Callable]] = {e: [] for e in LIFECYCLE_EVENTS}
        self._reader: Optional[asyncio.Task] = None
        self._opened = False
        self._closed = False
        self._closing = False
        self._subscribing = 0
        self._queues: Dict[str, asyncio.Queue] = {}
        self.log = logging.getLogger("provider")

    @property
    def connected(self) -> bool:
        return self._opened and not self._closed

    def on(self, event: str, callback: Callable) -> None:
        if event not in self._observers:
            raise ValueError(f"Unknown provider event: {event}")
        self._observers[event].append(callback)

    def _emit(self, event: str, *args) -> None:
        for callback in self._observers[event]:
            try:
                callback(*args)
            except Exception as e:
                self.log.exception(f"{event} observer failed: {e}")

    async def connect(self) -> None:
        try:
            await self.w3.provider.connect()
        except Exception as e:
            self._emit("error", e)
            raise
        self._opened = True
        self._closed = False
        self._emit("connect")
        self._reader = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        self._closing = True
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        if self._opened:
            self._opened = False
            await self.w3.provider.disconnect()

    async def subscribe(self, subscription_type: str, subscription_arg: Any = None) -> Subscription:
        if not self.connected:
            raise ConnectionLost(f"Not connected to {self.url}")
        self._subscribing += 1
        try:
            subscription_id = await self.w3.eth.subscribe(subscription_type, subscription_arg)
        finally:
            self._subscribing -= 1
        queue = self._queues.setdefault(subscription_id, asyncio.Queue())
        return Subscription(id=subscription_id, queue=queue)

    def _dispatch(self, response: Any) -> None:
        subscription_id = response.get("subscription") if isinstance(response, dict) else None
        if not isinstance(subscription_id, str):
            self._emit("error", ValueError(f"Unexpected subscription message: {response!r}"))
            return

        queue = self._queues.get(subscription_id)
        if queue is None:
            # the id of an in-flight eth_subscribe is only known once it returns
            if not self._subscribing:
                self.log.debug(f"Dropping message for unknown subscription {subscription_id}")
                return
            queue = self._queues.setdefault(subscription_id, asyncio.Queue())
        queue.put_nowait(response.get("result"))

    async def _still_connected(self) -> bool:
        try:
            return bool(await self.w3.provider.is_connected())
        except Exception:
            return False

    async def _read_loop(self) -> None:
        try:
            while not self._closing:
                try:
                    async for response in self.w3.socket.process_subscriptions():
                        self._dispatch(response)
                    return
                except Exception as e:
                    if self._closing:
                        return
                    self._emit("error", e)
                    if not await self._still_connected():
                        return
                    await asyncio.sleep(self.error_delay)
        finally:
            self._closed = True
            lost = ConnectionLost(f"Connection to {self.url} closed")
            for queue in self._queues.values():
                queue.put_nowait(lost)
            self._emit("disconnect")
