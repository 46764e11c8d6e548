import logging, os, subprocess, sys, threading
from fastcore.basics import store_attr
from .connection import ConnectionInfo

log = logging.getLogger("ipyraw.process")

default_argv = (sys.executable, "-m", "ipykernel_launcher", "-f", "{connection_file}")


class OutputThread(threading.Thread):
    def __init__(self, stream, label:str, level:int):
        "Log each line of `stream` at `level` until EOF."
        super().__init__(daemon=True, name=f"kernel-{label}")
        store_attr()

    def run(self):
        try:
            for line in iter(self.stream.readline, ""):
                line = line.rstrip("\n")
                if line: log.log(self.level, "[kernel %s] %s", self.label, line)
        except (OSError, ValueError) as exc: log.debug("%s reader stopped: %s", self.label, exc)
        finally:
            try: self.stream.close()
            except OSError: pass


class KernelProcess:
    "Own one kernel subprocess; run exit callbacks exactly once when it ends."

    def __init__(self, argv: list[str]|tuple|None=None, env: dict|None=None, cwd:str|None=None):
        self.argv = list(argv or default_argv)
        store_attr("env,cwd")
        self.proc = None
        self.connection_file = None
        self.wrote_file = False
        self.lock = threading.Lock()
        self.callbacks = []
        self.exited, self.finished = threading.Event(), threading.Event()
        self.threads = []

    def start(self, info: ConnectionInfo|str)->"KernelProcess":
        "Spawn the kernel for `info` (written to a connection file) or an existing connection file path."
        if self.proc is not None: raise RuntimeError("kernel process already started")
        if isinstance(info, ConnectionInfo):
            self.connection_file = info.write()
            self.wrote_file = True
        else: self.connection_file = str(info)
        argv = [arg.replace("{connection_file}", self.connection_file) for arg in self.argv]
        env = dict(os.environ) | dict(self.env or {})
        log.debug("Starting kernel: %s", argv)
        self.proc = subprocess.Popen(argv, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
            env=env, cwd=self.cwd, text=True, errors="replace")
        self.threads = [OutputThread(self.proc.stdout, "stdout", logging.INFO), OutputThread(self.proc.stderr, "stderr", logging.WARNING),
            threading.Thread(target=self._wait, daemon=True, name="kernel-waiter")]
        for t in self.threads: t.start()
        return self

    @property
    def pid(self)->int|None: return None if self.proc is None else self.proc.pid

    @property
    def returncode(self)->int|None: return None if self.proc is None else self.proc.returncode

    @property
    def is_alive(self)->bool: return self.proc is not None and not self.exited.is_set()

    def _wait(self):
        code = self.proc.wait()
        log.info("Kernel process %s exited with code %s", self.proc.pid, code)
        with self.lock:
            self.exited.set()
            callbacks, self.callbacks = self.callbacks, []
        for cb in callbacks: self._run_callback(cb)
        self.finished.set()

    def _run_callback(self, cb):
        try: cb()
        except Exception: log.exception("Kernel exit callback failed")

    def on_exit(self, callback):
        "Run `callback()` once the process has exited; immediately if it already has."
        with self.lock:
            if not self.exited.is_set():
                self.callbacks.append(callback)
                return
        self._run_callback(callback)

    def attach(self, connection):
        "Dispose `connection` when the kernel exits, unless it has since reconnected elsewhere."
        generation = connection.generation
        self.on_exit(lambda: connection.dispose(generation=generation))
        return connection

    def wait(self, timeout:float|None=None)->bool:
        "Wait for exit and for exit callbacks to finish; returns False on timeout."
        if self.proc is None: return True
        return self.finished.wait(timeout)

    def kill(self):
        "Best-effort kill; a no-op when never started or already exited."
        proc = self.proc
        if proc is None or proc.poll() is not None: return
        try: proc.kill()
        except OSError as exc: log.debug("kill failed: %s", exc)

    def cleanup(self):
        "Remove the connection file if this process wrote it."
        if not self.wrote_file: return
        self.wrote_file = False
        try: os.remove(self.connection_file)
        except OSError as exc: log.debug("Could not remove %s: %s", self.connection_file, exc)
