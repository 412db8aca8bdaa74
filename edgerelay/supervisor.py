"""Lifecycle supervision for one backend executable.

A single control thread drives the state machine, so launch/exit/restart
steps for one supervisor never overlap:

    IDLE -> STARTING -> RUNNING -> EXITED -> RESTARTING -> STARTING -> ...
                                         \\-> FAILED   (restart bound reached)
    any state -> STOPPED                   (explicit stop)
"""
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .errors import FatalProvisionError, ProvisionError, SpawnError
from .log import log


class State(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    RESTARTING = "restarting"
    FAILED = "failed"
    STOPPED = "stopped"

_ERROR_WORDS = ("error", "failed", "panic", "fatal")
_WARN_WORDS = ("warn",)


def classify_line(line: str) -> str:
    """Map one line of backend output to a log category."""
    low = line.lower()
    if any(w in low for w in _ERROR_WORDS):
        return "ERROR"
    if any(w in low for w in _WARN_WORDS):
        return "WARNING"
    return "DEBUG"


@dataclass
class BackendProcessHandle:
    process: subprocess.Popen
    started_at: float = field(default_factory=time.time)
    returncode: Optional[int] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exit_signal(self) -> Optional[str]:
        if self.returncode is None or self.returncode >= 0:
            return None
        try:
            return signal.Signals(-self.returncode).name
        except ValueError:
            return f"SIG{-self.returncode}"

    def describe_exit(self) -> str:
        sig = self.exit_signal
        return f"signal {sig}" if sig else f"code {self.returncode}"


class ProcessSupervisor:
    def __init__(self, name: str, command: Callable[[], List[str]],
                 prepare: Optional[Callable[[], None]] = None,
                 max_restarts: int = 5, restart_delay: float = 10.0,
                 spawn_retry_delay: float = 5.0, startup_grace: float = 1.0,
                 cwd=None, env=None):
        self.name = name
        self.command = command
        self.prepare = prepare
        self.max_restarts = max_restarts
        self.restart_delay = restart_delay
        self.spawn_retry_delay = spawn_retry_delay
        self.startup_grace = startup_grace
        self.cwd = cwd
        self.env = env

        self.state = State.IDLE
        self.restarts = 0
        self.launches = 0
        self.handle: Optional[BackendProcessHandle] = None
        self.last_exit: Optional[str] = None

        self.lock = threading.Lock()
        self.stop_event = threading.Event()
        self.state_changed = threading.Condition(self.lock)
        self._thread: Optional[threading.Thread] = None

    # ── public API ──────────────────────────────────────────────────────────
    def start(self):
        with self.lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name=f"supervisor-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, grace: float = 5.0):
        """Terminate the process (if any) and end supervision. Idempotent."""
        self.stop_event.set()
        with self.lock:
            handle = self.handle
        if handle is not None and handle.process.poll() is None:
            log(f"[{self.name}] stopping pid {handle.pid}", "PROCESS")
            try:
                handle.process.terminate()
            except OSError:
                pass
            try:
                handle.process.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                log(f"[{self.name}] did not exit within {grace:.0f}s, killing", "WARNING")
                handle.process.kill()
                handle.process.wait()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=grace + 1)
        with self.lock:
            if self.state is not State.FAILED:
                self._set(State.STOPPED)

    def wait_for(self, *states: State, timeout: Optional[float] = None) -> bool:
        with self.state_changed:
            return self.state_changed.wait_for(lambda: self.state in states, timeout=timeout)

    def snapshot(self) -> dict:
        with self.lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "pid": self.handle.pid if self.handle else None,
                "restarts": self.restarts,
                "last_exit": self.last_exit,
            }

    # ── control loop ────────────────────────────────────────────────────────
    def _set(self, state: State):
        # caller holds self.lock; FAILED and STOPPED are final
        if self.state in (State.FAILED, State.STOPPED):
            return
        self.state = state
        self.state_changed.notify_all()

    def _run(self):
        while not self.stop_event.is_set():
            delay = self._launch_once()
            if delay is None or self.stop_event.is_set():
                break
            with self.lock:
                if self.restarts >= self.max_restarts:
                    self._set(State.FAILED)
                    log(f"[{self.name}] gave up after {self.restarts} restart(s); last exit: {self.last_exit}", "ERROR")
                    return
                self.restarts += 1
                self._set(State.RESTARTING)
            log(f"[{self.name}] restart {self.restarts}/{self.max_restarts} in {delay:.1f}s", "WARNING")
            if self.stop_event.wait(delay):
                break

    def _launch_once(self) -> Optional[float]:
        """Run one STARTING -> ... -> EXITED cycle; returns the delay before the
        next try, or None when retrying cannot help."""
        with self.lock:
            self._set(State.STARTING)
        try:
            if self.prepare:
                self.prepare()
            handle = self._spawn()
        except FatalProvisionError as e:
            with self.lock:
                self.last_exit = f"{type(e).__name__}: {e}"
                self._set(State.FAILED)
            log(f"[{self.name}] cannot be provisioned: {e}", "ERROR")
            return None
        except (SpawnError, ProvisionError, OSError) as e:
            with self.lock:
                self.last_exit = f"{type(e).__name__}: {e}"
                self._set(State.EXITED)
            log(f"[{self.name}] launch failed: {e}", "ERROR")
            return self.spawn_retry_delay

        pumps = [
            threading.Thread(target=self._pump, args=(handle.process.stdout,), daemon=True),
            threading.Thread(target=self._pump, args=(handle.process.stderr,), daemon=True),
        ]
        for t in pumps:
            t.start()

        try:
            handle.process.wait(timeout=self.startup_grace)
        except subprocess.TimeoutExpired:
            with self.lock:
                if self.state is State.STARTING:
                    self._set(State.RUNNING)
            log(f"[{self.name}] running (pid {handle.pid})", "SUCCESS")

        rc = handle.process.wait()
        for t in pumps:
            t.join(timeout=1)
        with self.lock:
            handle.returncode = rc
            self.last_exit = handle.describe_exit()
            self._set(State.EXITED)
        if not self.stop_event.is_set():
            log(f"[{self.name}] exited with {self.last_exit}", "WARNING")
        return self.restart_delay

    def _spawn(self) -> BackendProcessHandle:
        argv = self.command()
        with self.lock:
            if self.stop_event.is_set():
                raise SpawnError("supervisor is stopping")
            try:
                proc = subprocess.Popen(
                    argv, cwd=self.cwd, env=self.env,
                    stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                    text=True, bufsize=1, errors="replace",
                )
            except OSError as e:
                raise SpawnError(f"{argv[0]}: {e}") from e
            self.launches += 1
            self.handle = BackendProcessHandle(proc)
        log(f"[{self.name}] launched {' '.join(argv[:2])} (pid {proc.pid})", "PROCESS")
        return self.handle

    def _pump(self, stream):
        # Drain continuously so the child never blocks on a full pipe.
        if stream is None:
            return
        try:
            for line in stream:
                line = line.rstrip()
                if line:
                    log(f"[{self.name}] {line}", classify_line(line))
        except (OSError, ValueError):
            pass
        finally:
            try:
                stream.close()
            except OSError:
                pass
