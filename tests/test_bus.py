import asyncio, threading
from ipyraw.bus import ChannelBus, ThreadBoundAsyncQueue
from ipyraw.connection import ConnectionClosed
from .kernel_utils import status


def test_delivers_in_order_to_every_listener():
    bus = ChannelBus()
    a, b = [], []
    bus.subscribe(a.append)
    bus.subscribe(b.append)
    msgs = [status("busy"), status("idle"), status("busy")]
    for m in msgs: bus.publish(m)
    assert a == msgs
    assert b == msgs


def test_unsubscribe_twice_is_safe_and_isolated():
    bus = ChannelBus()
    a, b = [], []
    sa = bus.subscribe(a.append)
    bus.subscribe(b.append)
    sa.unsubscribe()
    sa.unsubscribe()
    bus.publish(status("idle"))
    assert a == []
    assert len(b) == 1
    assert bus.listener_count == 1


def test_raising_listener_does_not_block_others():
    bus = ChannelBus()
    seen = []
    def boom(msg): raise RuntimeError("listener failure")
    bus.subscribe(boom)
    bus.subscribe(seen.append)
    bus.publish(status("idle"))
    assert len(seen) == 1


def test_unsubscribe_during_delivery_skips_listener():
    bus = ChannelBus()
    seen = []
    holder = {}
    def first(msg): holder["second"].unsubscribe()
    bus.subscribe(first)
    holder["second"] = bus.subscribe(seen.append)
    bus.publish(status("idle"))
    assert seen == []


def test_no_persistence_for_late_listeners():
    bus = ChannelBus()
    bus.publish(status("idle"))
    seen = []
    bus.subscribe(seen.append)
    assert seen == []


def test_close_signals_once_and_stops_delivery():
    bus = ChannelBus()
    seen, closed = [], []
    sub = bus.subscribe(seen.append, closed.append)
    exc = ConnectionClosed("gone")
    bus.close(exc)
    bus.close(ConnectionClosed("again"))
    bus.publish(status("idle"))
    assert closed == [exc]
    assert seen == []
    assert not sub.active
    sub.unsubscribe()


def test_subscribe_after_close_gets_terminal_signal():
    bus = ChannelBus()
    exc = ConnectionClosed("gone")
    bus.close(exc)
    closed = []
    sub = bus.subscribe(lambda m: None, closed.append)
    assert closed == [exc]
    assert bus.listener_count == 0
    assert not sub.active


def test_publish_from_other_thread():
    bus = ChannelBus()
    seen = []
    bus.subscribe(seen.append)
    msgs = [status("busy") for _ in range(100)]
    t = threading.Thread(target=lambda: [bus.publish(m) for m in msgs])
    t.start()
    t.join()
    assert seen == msgs


def test_async_subscription_iterates_until_close():
    async def _run():
        bus = ChannelBus()
        sub = bus.subscribe_async()
        msgs = [status("busy"), status("idle")]
        def feed():
            for m in msgs: bus.publish(m)
            bus.close(ConnectionClosed("done"))
        threading.Thread(target=feed).start()
        got = [m async for m in sub]
        return msgs, got, sub
    msgs, got, sub = asyncio.run(_run())
    assert got == msgs
    assert isinstance(sub.exc, ConnectionClosed)


def test_async_subscription_unsubscribe_ends_iteration():
    async def _run():
        bus = ChannelBus()
        sub = bus.subscribe_async()
        bus.publish(status("busy"))
        sub.unsubscribe()
        bus.publish(status("idle"))
        return [m async for m in sub], bus.listener_count
    got, count = asyncio.run(_run())
    assert [m.content["execution_state"] for m in got] == ["busy"]
    assert count == 0


def test_async_subscription_keeps_messages_from_before_the_loop():
    bus = ChannelBus()
    sub = bus.subscribe_async()
    bus.publish(status("busy"))
    bus.publish(status("idle"))
    bus.close(ConnectionClosed("done"))
    async def _run(): return [m async for m in sub]
    assert [m.content["execution_state"] for m in asyncio.run(_run())] == ["busy", "idle"]


def test_queue_put_from_threads_while_binding():
    q = ThreadBoundAsyncQueue()
    async def _run():
        threads = [threading.Thread(target=lambda i=i: [q.put((i, j)) for j in range(200)]) for i in range(4)]
        for t in threads: t.start()
        q.bind(asyncio.get_running_loop())
        for t in threads: t.join()
        return [await asyncio.wait_for(q.get(), 5) for _ in range(800)]
    got = asyncio.run(_run())
    assert sorted(got) == sorted((i, j) for i in range(4) for j in range(200))
    assert not q.pending
