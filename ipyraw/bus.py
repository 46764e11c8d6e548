"Broadcast bus fanning inbound kernel messages out to independent listeners."
import asyncio, logging, threading
from collections import deque
from typing import Callable
from fastcore.basics import store_attr

log = logging.getLogger("ipyraw.bus")
_closed = object()


class Subscription:
    def __init__(self, bus: "ChannelBus", on_message: Callable, on_close: Callable|None=None):
        "Handle for one listener registered on `bus`."
        store_attr()
        self.active = True

    def unsubscribe(self):
        "Remove this listener; later calls are no-ops."
        if not self.active: return
        self.active = False
        self.bus._remove(self)

    def _deliver(self, msg):
        if not self.active: return
        try: self.on_message(msg)
        except Exception: log.exception("Bus listener raised; continuing delivery")

    def _close(self, exc: BaseException|None):
        if not self.active: return
        self.active = False
        if self.on_close is None: return
        try: self.on_close(exc)
        except Exception: log.exception("Bus close callback raised")


class ChannelBus:
    "Fan messages out in publish order to a snapshot of the current listeners."

    def __init__(self, name:str = "bus"):
        self.name = name
        self.lock = threading.Lock()
        self.subs: list[Subscription] = []
        self.closed = False
        self.close_exc = None

    def subscribe(self, on_message: Callable, on_close: Callable|None=None)->Subscription:
        "Register `on_message(msg)`; `on_close(exc)` runs once when the bus closes."
        sub = Subscription(self, on_message, on_close)
        with self.lock:
            if not self.closed:
                self.subs.append(sub)
                return sub
            exc = self.close_exc
        sub._close(exc)
        return sub

    def subscribe_async(self)->"AsyncSubscription":
        "Subscribe with an asyncio queue bound to the running loop; iterate it with `async for`."
        return AsyncSubscription(self)

    def _remove(self, sub: Subscription):
        with self.lock:
            try: self.subs.remove(sub)
            except ValueError: pass

    @property
    def listener_count(self)->int:
        with self.lock: return len(self.subs)

    def publish(self, msg):
        "Deliver `msg` to every current listener; a no-op once closed."
        with self.lock:
            if self.closed: return
            subs = list(self.subs)
        for sub in subs: sub._deliver(msg)

    def close(self, exc: BaseException|None=None):
        "Send the terminal signal to every listener and refuse further traffic."
        with self.lock:
            if self.closed: return
            self.closed = True
            self.close_exc = exc
            subs = list(self.subs)
            self.subs.clear()
        log.debug("%s closed with %d listener(s): %r", self.name, len(subs), exc)
        for sub in subs: sub._close(exc)


class ThreadBoundAsyncQueue:
    "Thread-safe put + asyncio get once bound to an event loop."

    def __init__(self):
        self.loop, self.q, self.pending, self.lock = None, None, deque(), threading.Lock()

    def bind(self, loop: asyncio.AbstractEventLoop):
        with self.lock:
            self.loop, self.q = loop, asyncio.Queue()
            for item in self.pending: self.q.put_nowait(item)
            self.pending.clear()

    def put(self, item):
        with self.lock:
            if self.q is None:
                self.pending.append(item)
                return
            loop, q = self.loop, self.q
        try: loop.call_soon_threadsafe(q.put_nowait, item)
        except RuntimeError: log.debug("Queue put after loop closed; dropping")

    async def get(self):
        if self.q is None: raise RuntimeError("queue not bound")
        return await self.q.get()


class AsyncSubscription:
    "Async iterator over bus messages; ends when the bus closes or `unsubscribe()` is called."

    def __init__(self, bus: ChannelBus):
        self.q = ThreadBoundAsyncQueue()
        try: self.q.bind(asyncio.get_running_loop())
        except RuntimeError: pass
        self.exc = None
        self.sub = bus.subscribe(self.q.put, self._on_close)

    def _on_close(self, exc: BaseException|None):
        self.exc = exc
        self.q.put(_closed)

    def unsubscribe(self):
        if not self.sub.active: return
        self.sub.unsubscribe()
        self.q.put(_closed)

    def __aiter__(self):
        if self.q.q is None: self.q.bind(asyncio.get_running_loop())
        return self

    async def __anext__(self):
        item = await self.q.get()
        if item is _closed: raise StopAsyncIteration
        return item
