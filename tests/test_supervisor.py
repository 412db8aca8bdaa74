import os
import stat
import time

import pytest

from edgerelay.errors import FatalProvisionError, ProvisionError
from edgerelay.supervisor import BackendProcessHandle, ProcessSupervisor, State, classify_line


def script(tmp_path, name, body):
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def supervisor(argv, **kw):
    kw.setdefault("restart_delay", 0.01)
    kw.setdefault("spawn_retry_delay", 0.01)
    kw.setdefault("startup_grace", 0.2)
    return ProcessSupervisor("test", lambda: [str(a) for a in argv], **kw)


def test_starts_idle():
    sup = supervisor(["/bin/true"])
    assert sup.state is State.IDLE
    assert sup.restarts == 0
    assert sup.handle is None


def test_crash_loop_ends_in_failed(tmp_path):
    exe = script(tmp_path, "crash.sh", "echo booting\nexit 3")
    prepared = []
    sup = supervisor([exe], max_restarts=5, prepare=lambda: prepared.append(1))
    sup.start()
    assert sup.wait_for(State.FAILED, timeout=15)
    assert sup.restarts == 5
    assert sup.launches == 6
    assert len(prepared) == 6
    assert sup.last_exit == "code 3"
    assert sup.handle.returncode == 3
    sup.stop(grace=1)
    assert sup.state is State.FAILED


def test_zero_restart_bound_fails_on_first_exit(tmp_path):
    exe = script(tmp_path, "crash.sh", "exit 1")
    sup = supervisor([exe], max_restarts=0)
    sup.start()
    assert sup.wait_for(State.FAILED, timeout=10)
    assert sup.restarts == 0
    assert sup.launches == 1


def test_missing_executable_counts_against_bound(tmp_path):
    sup = supervisor([tmp_path / "does-not-exist"], max_restarts=2)
    sup.start()
    assert sup.wait_for(State.FAILED, timeout=10)
    assert sup.restarts == 2
    assert sup.launches == 0
    assert sup.last_exit.startswith("SpawnError")


def test_provision_failure_in_prepare_is_retried(tmp_path):
    exe = script(tmp_path, "ok.sh", "exec sleep 30")
    calls = []

    def prepare():
        calls.append(1)
        if len(calls) < 3:
            raise ProvisionError("mirror down")

    sup = supervisor([exe], prepare=prepare, max_restarts=5)
    sup.start()
    try:
        assert sup.wait_for(State.RUNNING, timeout=10)
        assert sup.restarts == 2
        assert sup.launches == 1
    finally:
        sup.stop(grace=2)


def test_directory_collision_in_prepare_fails_at_once(tmp_path):
    exe = script(tmp_path, "ok.sh", "exec sleep 30")
    calls = []

    def prepare():
        calls.append(1)
        raise FatalProvisionError(f"{tmp_path} is a directory")

    sup = supervisor([exe], prepare=prepare, max_restarts=5)
    sup.start()
    assert sup.wait_for(State.FAILED, timeout=5)
    sup.stop(grace=1)
    assert calls == [1]
    assert sup.restarts == 0
    assert sup.launches == 0
    assert sup.last_exit.startswith("FatalProvisionError")
    assert sup.state is State.FAILED


def test_running_then_stop(tmp_path):
    exe = script(tmp_path, "svc.sh", "echo listening\nexec sleep 30")
    sup = supervisor([exe])
    sup.start()
    assert sup.wait_for(State.RUNNING, timeout=10)
    pid = sup.handle.pid
    snap = sup.snapshot()
    assert snap["state"] == "running"
    assert snap["pid"] == pid
    sup.stop(grace=2)
    assert sup.state is State.STOPPED
    assert sup.handle.process.poll() is not None
    assert sup.restarts == 0
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_stop_kills_process_ignoring_term(tmp_path):
    exe = script(tmp_path, "stubborn.sh", "trap '' TERM\nwhile true; do sleep 0.1; done")
    sup = supervisor([exe])
    sup.start()
    assert sup.wait_for(State.RUNNING, timeout=10)
    started = time.monotonic()
    sup.stop(grace=0.5)
    assert time.monotonic() - started < 5
    assert sup.state is State.STOPPED
    assert sup.handle.process.returncode is not None


def test_stop_during_restart_delay(tmp_path):
    exe = script(tmp_path, "crash.sh", "exit 1")
    sup = supervisor([exe], restart_delay=30)
    sup.start()
    assert sup.wait_for(State.RESTARTING, timeout=10)
    started = time.monotonic()
    sup.stop(grace=1)
    assert time.monotonic() - started < 5
    assert sup.state is State.STOPPED
    assert sup.launches == 1


def test_restart_after_unexpected_exit(tmp_path):
    marker = tmp_path / "ran-once"
    exe = script(tmp_path, "flaky.sh",
                 f'if [ -f "{marker}" ]; then exec sleep 30; fi\ntouch "{marker}"\nexit 7')
    sup = supervisor([exe], max_restarts=3)
    sup.start()
    try:
        assert sup.wait_for(State.RUNNING, timeout=10)
        assert sup.restarts == 1
        assert sup.launches == 2
        assert sup.last_exit == "code 7"
    finally:
        sup.stop(grace=2)


def test_exit_by_signal_is_named(tmp_path):
    exe = script(tmp_path, "svc.sh", "exec sleep 30")
    sup = supervisor([exe], max_restarts=0)
    sup.start()
    assert sup.wait_for(State.RUNNING, timeout=10)
    sup.handle.process.kill()
    assert sup.wait_for(State.FAILED, timeout=10)
    assert sup.last_exit == "signal SIGKILL"


def test_chatty_backend_does_not_block(tmp_path):
    exe = script(tmp_path, "chatty.sh",
                 "i=0\nwhile [ $i -lt 20000 ]; do echo \"line $i\"; echo \"err $i\" >&2; i=$((i+1)); done\nexec sleep 30")
    sup = supervisor([exe], startup_grace=0.1)
    sup.start()
    try:
        assert sup.wait_for(State.RUNNING, timeout=10)
        # the pumps keep draining; the process must reach its final sleep, not stall on a full pipe
        deadline = time.monotonic() + 20
        while time.monotonic() < deadline:
            with open(f"/proc/{sup.handle.pid}/cmdline", "rb") as f:
                if b"sleep" in f.read():
                    break
            time.sleep(0.1)
        else:
            pytest.fail("backend stalled writing output")
    finally:
        sup.stop(grace=2)


@pytest.mark.parametrize("line,cat", [
    ("Xray 26.2.6 started", "DEBUG"),
    ("[Warning] core: something odd", "WARNING"),
    ("[Error] failed to listen on 127.0.0.1:3000", "ERROR"),
    ("panic: runtime error", "ERROR"),
    ("dial tcp: connection FAILED", "ERROR"),
])
def test_classify_line(line, cat):
    assert classify_line(line) == cat


def test_handle_describes_exit():
    class P:
        pid = 42
    h = BackendProcessHandle(P())
    h.returncode = 0
    assert h.describe_exit() == "code 0"
    h.returncode = -15
    assert h.exit_signal == "SIGTERM"
    assert h.describe_exit() == "signal SIGTERM"
