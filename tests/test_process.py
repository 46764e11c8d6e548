import logging, os, sys, threading
import pytest
from ipyraw.client import RawKernel
from ipyraw.connection import Connection, ConnectionClosed, ConnectionInfo
from ipyraw.message import execute_request
from ipyraw.process import KernelProcess
from .kernel_utils import FAKE_KERNEL_ARGV, TIMEOUT, wait_until


def _script(code:str)->list[str]: return [sys.executable, "-c", code, "{connection_file}"]


def test_exit_callbacks_run_once():
    info = ConnectionInfo.new()
    proc = KernelProcess(_script("import sys; sys.exit(3)"))
    calls = []
    proc.on_exit(lambda: calls.append("a"))
    proc.start(info)
    assert proc.wait(TIMEOUT)
    assert calls == ["a"]
    assert proc.returncode == 3
    assert not proc.is_alive
    proc.on_exit(lambda: calls.append("late"))
    assert calls == ["a", "late"]
    proc.cleanup()


def test_connection_file_substituted_and_cleaned_up(tmp_path):
    out = tmp_path / "argv.txt"
    proc = KernelProcess([sys.executable, "-c", "import sys; open(sys.argv[2], 'w').write(sys.argv[1])", "{connection_file}", str(out)])
    proc.start(ConnectionInfo.new())
    assert proc.wait(TIMEOUT)
    path = out.read_text()
    assert path == proc.connection_file
    assert ConnectionInfo.from_file(path).key
    proc.cleanup()
    assert not os.path.exists(path)
    proc.cleanup()


def test_existing_connection_file_is_kept(tmp_path):
    path = ConnectionInfo.new().write(str(tmp_path / "kernel.json"))
    proc = KernelProcess(_script("pass")).start(path)
    assert proc.wait(TIMEOUT)
    proc.cleanup()
    assert os.path.exists(path)


def test_start_twice_rejected():
    proc = KernelProcess(_script("import time; time.sleep(30)")).start(ConnectionInfo.new())
    try:
        with pytest.raises(RuntimeError): proc.start(ConnectionInfo.new())
    finally:
        proc.kill()
        proc.wait(TIMEOUT)
        proc.cleanup()


def test_kill_is_safe_before_start_and_after_exit():
    proc = KernelProcess(_script("pass"))
    proc.kill()
    assert proc.wait(0)
    assert proc.pid is None and not proc.is_alive
    proc.start(ConnectionInfo.new())
    assert proc.wait(TIMEOUT)
    proc.kill()
    proc.cleanup()


def test_kill_running_process():
    proc = KernelProcess(_script("import time; time.sleep(30)")).start(ConnectionInfo.new())
    assert proc.is_alive
    proc.kill()
    assert proc.wait(TIMEOUT)
    assert proc.returncode != 0
    proc.cleanup()


def test_output_is_logged(caplog):
    caplog.set_level(logging.INFO, logger="ipyraw.process")
    proc = KernelProcess(_script("import sys; print('to stdout'); print('to stderr', file=sys.stderr)"))
    proc.start(ConnectionInfo.new())
    assert proc.wait(TIMEOUT)
    for t in proc.threads: t.join(timeout=2)
    proc.cleanup()
    records = {r.getMessage(): r.levelno for r in caplog.records}
    assert records["[kernel stdout] to stdout"] == logging.INFO
    assert records["[kernel stderr] to stderr"] == logging.WARNING


def test_failing_callback_does_not_stop_others():
    proc = KernelProcess(_script("pass"))
    calls = []
    def boom(): raise RuntimeError("callback failure")
    proc.on_exit(boom)
    proc.on_exit(lambda: calls.append(1))
    proc.start(ConnectionInfo.new())
    assert proc.wait(TIMEOUT)
    assert calls == [1]
    proc.cleanup()


def test_attach_disposes_connection_on_exit():
    info = ConnectionInfo.new()
    conn = Connection()
    conn.connect(info)
    proc = KernelProcess(_script("import time; time.sleep(0.2)"))
    proc.attach(conn)
    proc.start(info)
    assert proc.wait(TIMEOUT)
    assert not conn.live
    assert conn.bus.closed
    proc.cleanup()


def test_exit_of_old_process_leaves_new_generation_alone():
    conn = Connection()
    conn.connect(ConnectionInfo.new())
    old = KernelProcess(_script("import sys; sys.stdin.read()"))
    old.attach(conn)
    conn.dispose()
    conn.connect(ConnectionInfo.new())
    try:
        old.start(ConnectionInfo.new())
        assert old.wait(TIMEOUT)
        assert conn.live
    finally:
        conn.dispose()
        old.cleanup()


def test_kernel_death_unblocks_pending_request():
    kernel = RawKernel(FAKE_KERNEL_ARGV, env=dict(FAKE_KERNEL_NO_IDLE="1"), timeout=None, ready_timeout=None)
    kernel.start()
    result = {}
    def run():
        try: kernel.request(execute_request("1"))
        except ConnectionClosed as exc: result["exc"] = exc
    t = threading.Thread(target=run)
    try:
        t.start()
        wait_until(lambda: kernel.connection.bus.listener_count > 0, err="request never subscribed")
        kernel.process.kill()
        t.join(timeout=TIMEOUT)
        assert not t.is_alive()
        assert isinstance(result.get("exc"), ConnectionClosed)
    finally: kernel.stop()
