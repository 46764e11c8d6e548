import logging
from contextlib import contextmanager
from .connection import Connection, ConnectionInfo
from .correlator import Correlator, filter_messages, find_reply
from .message import Message, execute_request, inspect_request, complete_request, kernel_info_request, shutdown_request
from .process import KernelProcess

log = logging.getLogger("ipyraw.client")


class RawKernel:
    "A kernel subprocess with its raw connection and correlator, started and stopped as one unit."

    def __init__(self, argv: list[str]|None=None, env: dict|None=None, timeout=..., match_parent: bool|None=None,
        ready_timeout:float|None = 30, ip:str = "127.0.0.1", kernel_name:str = "python3"):
        self.argv, self.env, self.ip, self.kernel_name = argv, env, ip, kernel_name
        self.ready_timeout = ready_timeout
        self.connection = Connection()
        self.correlator = Correlator(self.connection, None if timeout is ... else timeout, match_parent)
        self.process = None
        self.info = None

    def start(self, start_port:int|None=None, info: ConnectionInfo|None=None)->"RawKernel":
        "Write a connection file, spawn the kernel, connect and wait until it answers `kernel_info_request`."
        if self.process is not None: raise RuntimeError("kernel already started")
        if info is None:
            info = ConnectionInfo.new(ip=self.ip, kernel_name=self.kernel_name)
            if start_port is not None: info = info.with_ports(start_port)
        self.info = info
        self.process = KernelProcess(self.argv, self.env).start(info)
        try:
            self.connection.connect(info)
            self.process.attach(self.connection)
            if self.ready_timeout: self.correlator.wait_for_ready(self.ready_timeout)
        except BaseException:
            self.stop()
            raise
        return self

    def stop(self, timeout:float = 5):
        "Kill the kernel, remove its connection file and dispose the connection."
        if self.process is not None:
            self.process.kill()
            if not self.process.wait(timeout): log.warning("Kernel process %s did not exit", self.process.pid)
            self.process.cleanup()
            self.process = None
        self.connection.dispose()

    def restart(self, start_port:int|None=None)->"RawKernel":
        "Stop, then start a new kernel on a new connection generation."
        self.stop()
        return self.start(start_port)

    @property
    def session_id(self)->str|None: return self.connection.session_id

    def request(self, msg: Message, timeout=...)->list[Message]: return self.correlator.send(msg, timeout)

    async def arequest(self, msg: Message, timeout=...)->list[Message]: return await self.correlator.asend(msg, timeout)

    def execute(self, code:str, timeout=..., **kwargs)->list[Message]: return self.request(execute_request(code, **kwargs), timeout)

    def inspect(self, code:str, cursor_pos:int|None=None, timeout=...)->list[Message]:
        return self.request(inspect_request(code, cursor_pos), timeout)

    def complete(self, code:str, cursor_pos:int|None=None, timeout=...)->list[Message]:
        return self.request(complete_request(code, cursor_pos), timeout)

    def kernel_info(self, timeout=...)->list[Message]: return self.request(kernel_info_request(), timeout)

    def shutdown(self, restart: bool = False, timeout=...)->list[Message]: return self.request(shutdown_request(restart), timeout)

    def __enter__(self): return self if self.process is not None else self.start()

    def __exit__(self, *exc): self.stop()


@contextmanager
def start_kernel(**kwargs):
    "Start a `RawKernel`, yield it, and always stop it."
    start_port = kwargs.pop("start_port", None)
    kernel = RawKernel(**kwargs)
    try: yield kernel.start(start_port)
    finally: kernel.stop()


def execute_result(collected: list[Message])->str|None:
    "`text/plain` of the first `execute_result`, if any."
    msg = find_reply(collected, "execute_result")
    return None if msg is None else msg.content.get("data", {}).get("text/plain")


def stream_text(collected: list[Message], name:str = "stdout")->str:
    streams = filter_messages(collected, "stream").filter(lambda m: m.content.get("name") == name)
    return "".join(m.content.get("text", "") for m in streams)


def error_text(collected: list[Message])->str|None:
    msg = find_reply(collected, "error")
    return None if msg is None else f"{msg.content.get('ename')}: {msg.content.get('evalue')}"
