"""Request/reply correlation: send one request and decide when its turn is complete.

A turn completes when both the expected reply and an ``idle`` status have been
seen, in either order. ``shutdown_reply`` completes a turn on its own, since a
kernel that is shutting down may never publish another status.

By default only messages whose ``parent_header.msg_id`` is the request's own id
drive completion. ``match_parent=False`` restores matching by message type and
status content alone, under which two requests pending at once on the same
connection can complete each other.
"""
import asyncio, logging, threading, time
from concurrent.futures import Future, InvalidStateError, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from fastcore.foundation import L
from .bus import Subscription
from .connection import Connection, ConnectionClosed
from .message import Message, kernel_info_request
from .debug import envbool, envfloat

log = logging.getLogger("ipyraw.correlator")

STATUS = "status"
TERMINAL_REPLIES = ("shutdown_reply",)
request_verbs = ("execute", "inspect", "complete", "history", "is_complete", "kernel_info", "comm_info", "shutdown",
    "interrupt", "debug", "connect")
reply_types = {f"{verb}_request": f"{verb}_reply" for verb in request_verbs}


class RequestTimeout(TimeoutError):
    "A request did not reach its completion condition within the configured timeout."


def reply_type_for(msg_type:str)->str:
    "Reply type that completes `msg_type`, or `status` when only the idle signal is expected."
    return reply_types.get(msg_type, STATUS)


@dataclass
class PendingRequest:
    request: Message
    expected_reply_type:str
    match_parent: bool = True
    collected: list = field(default_factory=list)
    reply_found: bool = False
    idle_found: bool = False
    resolved: bool = False
    future: Future = field(default_factory=Future)
    subscription: Subscription|None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        if self.expected_reply_type == STATUS: self.reply_found = True

    def owns(self, msg: Message)->bool:
        return not self.match_parent or msg.parent_id == self.request.msg_id

    def observe(self, msg: Message):
        "Collect `msg` and apply the completion policy."
        if self.resolved: return
        self.collected.append(msg)
        if not self.owns(msg): return
        msg_type = msg.msg_type
        if msg_type in TERMINAL_REPLIES: return self.resolve()
        if msg_type == STATUS: self.idle_found = msg.content.get("execution_state") == "idle"
        elif msg_type == self.expected_reply_type: self.reply_found = True
        if self.reply_found and self.idle_found: self.resolve()

    def _settle(self, result=None, exc: BaseException|None=None):
        with self.lock:
            if self.resolved: return
            self.resolved = True
        self.release()
        try:
            if exc is None: self.future.set_result(result)
            else: self.future.set_exception(exc)
        except InvalidStateError: pass  # cancelled by an awaiting caller

    def resolve(self): self._settle(result=list(self.collected))

    def fail(self, exc: BaseException|None): self._settle(exc=exc or ConnectionClosed("message stream closed"))

    def release(self):
        sub, self.subscription = self.subscription, None
        if sub is not None: sub.unsubscribe()


class Correlator:
    def __init__(self, connection: Connection, timeout:float|None=None, match_parent: bool|None=None):
        "Send requests over `connection` and wait for each turn to complete."
        self.connection = connection
        self.timeout = timeout if timeout is not None else envfloat("IPYRAW_REQUEST_TIMEOUT", None)
        self.match_parent = match_parent if match_parent is not None else envbool("IPYRAW_MATCH_PARENT", True)

    def start(self, msg: Message, match_parent: bool|None=None)->PendingRequest:
        "Subscribe, then transmit `msg`; the returned request's `future` resolves to every message seen meanwhile."
        if match_parent is None: match_parent = self.match_parent
        pending = PendingRequest(msg, reply_type_for(msg.msg_type), match_parent)
        pending.subscription = self.connection.subscribe(pending.observe, pending.fail)
        if pending.resolved: return pending
        sent = self.connection.send_message(msg)
        if sent is None: pending.fail(ConnectionClosed("connection is not live"))
        else: pending.request = sent
        return pending

    def _timeout(self, timeout)->float|None: return self.timeout if timeout is ... else timeout

    def send(self, msg: Message, timeout=..., match_parent: bool|None=None)->list[Message]:
        "Send `msg` and block until its turn completes; raises `RequestTimeout` or `ConnectionClosed`."
        timeout = self._timeout(timeout)
        pending = self.start(msg, match_parent)
        try: return pending.future.result(timeout=timeout)
        except FutureTimeout:
            pending.fail(RequestTimeout(f"{msg.msg_type} not complete after {timeout}s"))
            raise RequestTimeout(f"{msg.msg_type} not complete after {timeout}s") from None

    async def asend(self, msg: Message, timeout=..., match_parent: bool|None=None)->list[Message]:
        "Async `send`: suspends until the turn completes, the timeout elapses, or the connection closes."
        timeout = self._timeout(timeout)
        pending = self.start(msg, match_parent)
        try: return await asyncio.wait_for(asyncio.wrap_future(pending.future), timeout)
        except asyncio.TimeoutError:
            pending.fail(RequestTimeout(f"{msg.msg_type} not complete after {timeout}s"))
            raise RequestTimeout(f"{msg.msg_type} not complete after {timeout}s") from None
        except asyncio.CancelledError:
            pending.fail(ConnectionClosed("request cancelled"))
            raise

    def wait_for_ready(self, timeout:float = 10, attempt:float = 1.0)->list[Message]:
        "Repeat `kernel_info_request` until one completes, absorbing the iopub subscription delay."
        end = time.monotonic() + timeout
        while (rem := end - time.monotonic()) > 0:
            try: return self.send(kernel_info_request(), timeout=min(attempt, rem), match_parent=True)
            except RequestTimeout: log.debug("kernel not ready; retrying kernel_info_request")
        raise RequestTimeout(f"kernel not ready after {timeout}s")


def filter_messages(collected: list[Message], msg_type:str|None=None, channel:str|None=None)->L:
    msgs = L(collected)
    if msg_type is not None: msgs = msgs.filter(lambda m: m.msg_type == msg_type)
    if channel is not None: msgs = msgs.filter(lambda m: m.channel == channel)
    return msgs


def find_reply(collected: list[Message], msg_type:str)->Message|None:
    "First collected message of `msg_type`, or None."
    return next((m for m in collected if m.msg_type == msg_type), None)
