import json, logging, os, queue, socket, tempfile, threading, time, uuid
from dataclasses import asdict, dataclass, replace
from fastcore.basics import store_attr
import zmq
from jupyter_client.session import Session
from .bus import ChannelBus, Subscription
from .message import Message
from .debug import envfloat, setup, tlog

log = logging.getLogger("ipyraw.connection")

port_names = dict(shell="shell_port", iopub="iopub_port", stdin="stdin_port", control="control_port", heartbeat="hb_port")
socket_types = dict(shell=zmq.DEALER, control=zmq.DEALER, stdin=zmq.DEALER, iopub=zmq.SUB)


class ConnectError(RuntimeError):
    "A channel socket could not be created or connected."


class ConnectionClosed(RuntimeError):
    "The connection was disposed, or its kernel died, before a request completed."


@dataclass(frozen=True)
class ConnectionInfo:
    transport:str = "tcp"
    ip:str = "127.0.0.1"
    shell_port:int = 0
    iopub_port:int = 0
    stdin_port:int = 0
    control_port:int = 0
    hb_port:int = 0
    key:str = ""
    signature_scheme:str = "hmac-sha256"
    kernel_name:str = "python3"
    version: float|str = 5.1

    @classmethod
    def from_dict(cls, data: dict)->"ConnectionInfo":
        key = data.get("key", "")
        if isinstance(key, bytes): key = key.decode()
        return cls(transport=data.get("transport", "tcp"), ip=data.get("ip", "127.0.0.1"), shell_port=int(data["shell_port"]),
            iopub_port=int(data["iopub_port"]), stdin_port=int(data["stdin_port"]), control_port=int(data["control_port"]),
            hb_port=int(data["hb_port"]), key=key, signature_scheme=data.get("signature_scheme", "hmac-sha256"),
            kernel_name=data.get("kernel_name", ""), version=data.get("version", 5.1))

    @classmethod
    def from_file(cls, path:str)->"ConnectionInfo":
        "Load connection info from JSON connection file at `path`."
        with open(path, encoding="utf-8") as f: return cls.from_dict(json.load(f))

    @classmethod
    def new(cls, ip:str = "127.0.0.1", transport:str = "tcp", key:str|None=None, **kwargs)->"ConnectionInfo":
        "Connection info with a fresh key and free local ports for every channel."
        if key is None: key = str(uuid.uuid4())
        info = cls(transport=transport, ip=ip, key=key, **kwargs)
        if transport != "tcp": return info.with_ports(1)
        sockets = []
        try:
            for _ in port_names:
                sock = socket.socket()
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, b"\0" * 8)
                sock.bind((ip, 0))
                sockets.append(sock)
            ports = [sock.getsockname()[1] for sock in sockets]
        finally:
            for sock in sockets: sock.close()
        return replace(info, **dict(zip(port_names.values(), ports)))

    def with_ports(self, start:int)->"ConnectionInfo":
        "Consecutive ports from `start`: stdin, shell, iopub, hb, control."
        return replace(self, stdin_port=start, shell_port=start + 1, iopub_port=start + 2, hb_port=start + 3, control_port=start + 4)

    def port(self, channel:str)->int: return getattr(self, port_names[channel])

    def addr(self, channel:str)->str:
        "ZeroMQ endpoint for `channel`."
        port = self.port(channel)
        if self.transport == "tcp": return f"tcp://{self.ip}:{port}"
        return f"{self.transport}://{self.ip}-{port}"

    def to_dict(self)->dict: return asdict(self)

    def write(self, path:str|None=None)->str:
        "Write the connection file (owner read/write only) and return its path."
        if path is None: path = os.path.join(tempfile.gettempdir(), f"tmp_{int(time.time() * 1000)}_{os.getpid()}_k.json")
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f: json.dump(self.to_dict(), f, indent=2)
        return path

    def validate(self):
        if self.transport not in ("tcp", "ipc"): raise ConnectError(f"unsupported transport {self.transport!r}")
        for channel in port_names:
            port = self.port(channel)
            if not 0 < port < 65536: raise ConnectError(f"invalid {channel} port {port!r}")


class HeartbeatThread(threading.Thread):
    def __init__(self, context: zmq.Context, addr:str, sock: zmq.Socket, interval:float = 1.0):
        "Ping the kernel heartbeat every `interval` seconds on a REQ socket."
        super().__init__(daemon=True, name="heartbeat-thread")
        store_attr()
        self.stop_event = threading.Event()
        self.beating = True
        self.missed = 0

    def _new_socket(self)->zmq.Socket:
        sock = self.context.socket(zmq.REQ)
        sock.linger = 0
        sock.connect(self.addr)
        return sock

    def _ping(self, poller: zmq.Poller)->bool:
        "Send one ping and wait up to `interval` for the echo."
        self.sock.send(b"ping")
        deadline = time.monotonic() + self.interval
        while not self.stop_event.is_set() and (rem := deadline - time.monotonic()) > 0:
            events = dict(poller.poll(min(100, int(rem * 1000) + 1)))
            if events.get(self.sock, 0) & zmq.POLLIN:
                self.sock.recv()
                self.stop_event.wait(max(0.0, deadline - time.monotonic()))
                return True
        return False

    def run(self):
        poller = zmq.Poller()
        poller.register(self.sock, zmq.POLLIN)
        try:
            while not self.stop_event.is_set():
                if self._ping(poller):
                    self.beating, self.missed = True, 0
                    continue
                if self.stop_event.is_set(): break
                self.missed += 1
                if self.beating: log.warning("Kernel heartbeat missed at %s", self.addr)
                self.beating = False
                # a REQ socket that lost its reply cannot send again
                poller.unregister(self.sock)
                self.sock.close(0)
                self.sock = self._new_socket()
                poller.register(self.sock, zmq.POLLIN)
        finally: self.sock.close(0)

    def stop(self): self.stop_event.set()


class ChannelIOThread(threading.Thread):
    "Sole owner of the shell/control/stdin/iopub sockets: drains the outbox and publishes inbound messages."

    def __init__(self, sockets: dict, session: Session, publish, poll_ms:int = 50, on_fail=None):
        super().__init__(daemon=True, name="channel-io")
        store_attr()
        self.stop_event = threading.Event()
        self.outbox = queue.Queue()

    def send(self, msg: Message): self.outbox.put(msg)

    def _drain_outbox(self):
        while True:
            try: msg = self.outbox.get_nowait()
            except queue.Empty: return
            sock = self.sockets.get(msg.channel)
            if sock is None:
                log.warning("Cannot send %s on channel %s", msg.msg_type, msg.channel)
                continue
            tlog(log, "send", msg)
            try: self.session.send(sock, msg.to_dict())
            except zmq.ZMQError as exc: log.error("%s send error: %s", msg.channel, exc)

    def _recv(self, channel:str, sock: zmq.Socket):
        while True:
            try: _idents, raw = self.session.recv(sock, mode=zmq.NOBLOCK)
            except ValueError as err:
                if "Duplicate Signature" not in str(err): log.warning("Bad message on %s: %s", channel, err)
                continue
            except zmq.ZMQError as exc:
                log.debug("%s recv error: %s", channel, exc)
                return
            if raw is None: return
            try: msg = Message.from_dict(raw, channel)
            except (ValueError, TypeError, AttributeError) as err:
                log.warning("Dropping malformed %s message: %s", channel, err)
                continue
            tlog(log, "recv", msg)
            self.publish(msg)

    def run(self):
        poller = zmq.Poller()
        for sock in self.sockets.values(): poller.register(sock, zmq.POLLIN)
        try:
            while not self.stop_event.is_set():
                self._drain_outbox()
                events = dict(poller.poll(self.poll_ms))
                for channel, sock in self.sockets.items():
                    if self.stop_event.is_set(): break
                    if events.get(sock, 0) & zmq.POLLIN: self._recv(channel, sock)
            self._drain_outbox()
        except Exception as exc:
            log.exception("Channel IO thread failed")
            if self.on_fail is not None: self.on_fail(ConnectionClosed(f"channel IO failed: {exc!r}"))
        finally:
            for sock in self.sockets.values():
                try: sock.close()
                except zmq.ZMQError: pass

    def stop(self): self.stop_event.set()


class Connection:
    "Client side of one kernel: channel sockets, session identity and the inbound message bus."

    def __init__(self, context: zmq.Context|None=None, hb_interval:float|None=None, poll_ms:int|None=None):
        self.context = context or zmq.Context.instance()
        self.hb_interval = hb_interval if hb_interval is not None else envfloat("IPYRAW_HB_INTERVAL", 1.0)
        self.poll_ms = poll_ms if poll_ms is not None else int(envfloat("IPYRAW_POLL_MS", 50))
        self.lock = threading.RLock()
        self.info = None
        self.session = None
        self.io = None
        self.hb = None
        self.generation = 0
        self.bus = ChannelBus("bus-0")
        self.bus.close(ConnectionClosed("not connected"))

    @property
    def live(self)->bool: return self.io is not None

    @property
    def session_id(self)->str|None: return None if self.session is None else self.session.session

    @property
    def is_beating(self)->bool:
        hb = self.hb
        return hb is not None and hb.beating

    def _socket(self, channel:str, info: ConnectionInfo, session: Session)->zmq.Socket:
        sock = self.context.socket(socket_types.get(channel, zmq.REQ))
        sock.linger = 1000
        if channel in ("shell", "control", "stdin"): sock.identity = session.bsession
        sock.connect(info.addr(channel))
        if channel == "iopub": sock.setsockopt(zmq.SUBSCRIBE, b"")
        return sock

    def connect(self, info: ConnectionInfo):
        "Open one socket per channel and start a fresh session; raises `ConnectError` on failure."
        setup()
        if isinstance(info, dict): info = ConnectionInfo.from_dict(info)
        with self.lock:
            if self.live: raise ConnectError("already connected; dispose() first")
            info.validate()
            session = Session(key=info.key.encode(), signature_scheme=info.signature_scheme)
            sockets = {}
            try:
                for channel in ("shell", "control", "stdin", "iopub", "heartbeat"): sockets[channel] = self._socket(channel, info, session)
            except zmq.ZMQError as exc:
                for sock in sockets.values(): sock.close(0)
                raise ConnectError(f"cannot connect to {info.addr(channel)}: {exc}") from exc
            hb_sock = sockets.pop("heartbeat")
            hb_sock.linger = 0
            self.generation += 1
            self.info, self.session = info, session
            self.bus = ChannelBus(f"bus-{self.generation}")
            generation = self.generation
            self.io = ChannelIOThread(sockets, session, self.bus.publish, self.poll_ms, lambda exc: self.dispose(generation, exc))
            self.hb = HeartbeatThread(self.context, info.addr("heartbeat"), hb_sock, self.hb_interval)
            self.io.start()
            self.hb.start()
        log.debug("Connected to %s kernel at %s (session %s)", info.kernel_name, info.ip, session.session)

    def subscribe(self, on_message, on_close=None)->Subscription: return self.bus.subscribe(on_message, on_close)

    def send_message(self, msg: Message)->Message|None:
        "Queue `msg` on its channel, stamping the session if unset; a silent no-op when not live."
        with self.lock:
            io, session = self.io, self.session
        if io is None:
            log.debug("send_message(%s) on closed connection ignored", msg.msg_type)
            return None
        msg = msg.with_session(session.session)
        io.send(msg)
        return msg

    def dispose(self, generation:int|None=None, exc: BaseException|None=None):
        "Close sockets and end the message stream; idempotent and never raises."
        with self.lock:
            if generation is not None and generation != self.generation: return
            io, hb, bus = self.io, self.hb, self.bus
            self.io = self.hb = self.session = None
        if io is None and hb is None: return
        bus.close(exc or ConnectionClosed("connection disposed"))
        current = threading.current_thread()
        for thread in (hb, io):
            if thread is None: continue
            try:
                thread.stop()
                if thread is not current: thread.join(timeout=2)
            except Exception as err: log.debug("Error stopping %s: %s", thread.name, err)
        log.debug("Connection disposed")

    def __enter__(self): return self

    def __exit__(self, *exc): self.dispose()
