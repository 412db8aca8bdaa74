"""Boot sequence and process entry point.

Order: config -> listener -> (background) provision + supervisors -> wait for
a termination signal -> stop listener -> drain bridges -> stop supervisors.
"""
import signal
import sys
import threading
import time
from typing import List, Optional

from .backend import (
    TUNNEL_EXE, XRAY_EXE, tunnel_command, tunnel_sources, write_backend_config,
    write_tunnel_files, xray_command, xray_sources,
)
from .config import ServiceConfig, load_config
from .errors import ConfigValidationError, FatalProvisionError, ProvisionError
from .log import log, set_level
from .provision import ProvisionTask, Provisioner
from .relay import make_relay_server
from .status import build_descriptor, create_app
from .supervisor import ProcessSupervisor


class _ServerThread(threading.Thread):
    def __init__(self, srv):
        super().__init__(name="listener", daemon=True)
        self._srv = srv
        self.port = srv.port
    def run(self):
        self._srv.serve_forever()
    def shutdown(self):
        try:
            self._srv.shutdown()
            self._srv.server_close()
        except OSError:
            pass


class RelayService:
    def __init__(self, cfg: ServiceConfig, provisioner: Optional[Provisioner] = None,
                 boot_backoff: float = 5.0):
        self.cfg = cfg
        self.provisioner = provisioner or Provisioner()
        self.boot_backoff = boot_backoff
        self.started_at = time.time()
        self.app = create_app(cfg, self.started_at)
        self.supervisors: List[ProcessSupervisor] = []
        self.shutdown_event = threading.Event()
        self.exit_code = 0
        self.server = None
        self._server_thread = None
        self._boot_thread = None
        self._lock = threading.Lock()

    # ── tasks & supervisors ─────────────────────────────────────────────────
    def backend_task(self) -> ProvisionTask:
        return ProvisionTask(
            sources=xray_sources(self.cfg),
            target=self.cfg.work_dir / XRAY_EXE,
            attempts=self.cfg.download_attempts,
            timeout=self.cfg.download_timeout,
            member=XRAY_EXE,
        )

    def tunnel_task(self) -> ProvisionTask:
        return ProvisionTask(
            sources=tunnel_sources(),
            target=self.cfg.work_dir / TUNNEL_EXE,
            attempts=self.cfg.download_attempts,
            timeout=self.cfg.download_timeout,
        )

    def _supervisor(self, name, task: ProvisionTask, command, write_files) -> ProcessSupervisor:
        def prepare():
            # Cheap when the binary is already on disk.
            self.provisioner.provision(task)
            write_files(self.cfg)
        return ProcessSupervisor(
            name, lambda: command(self.cfg), prepare=prepare,
            max_restarts=self.cfg.max_restarts,
            restart_delay=self.cfg.restart_delay,
            spawn_retry_delay=self.cfg.spawn_retry_delay,
            cwd=str(self.cfg.work_dir),
        )

    def _provision_with_rounds(self, task: ProvisionTask):
        for rnd in range(1, self.cfg.boot_rounds + 1):
            try:
                return self.provisioner.provision(task)
            except FatalProvisionError:
                raise
            except ProvisionError as e:
                log(f"Provisioning {task.target.name} failed (round {rnd}/{self.cfg.boot_rounds}): {e.cause or e}", "ERROR")
                if rnd == self.cfg.boot_rounds or self.shutdown_event.wait(rnd * self.boot_backoff):
                    raise

    # ── lifecycle ───────────────────────────────────────────────────────────
    def boot(self):
        try:
            tasks = [(XRAY_EXE, self.backend_task(), xray_command, write_backend_config)]
            if self.cfg.tunnel_enabled:
                tasks.append((TUNNEL_EXE, self.tunnel_task(), tunnel_command, write_tunnel_files))
            for _, task, _, _ in tasks:
                self._provision_with_rounds(task)
        except ProvisionError as e:
            log(f"Boot failed: {e}", "ERROR")
            self.exit_code = 1
            self.shutdown_event.set()
            return
        for name, task, command, write_files in tasks:
            with self._lock:
                if self.shutdown_event.is_set():
                    return
                sup = self._supervisor(name, task, command, write_files)
                self.supervisors.append(sup)
                sup.start()

    def start_listener(self):
        self.server = make_relay_server(self.cfg, self.app)
        self._server_thread = _ServerThread(self.server)
        self._server_thread.start()
        self._print_startup(self._server_thread.port)

    def start(self):
        self.start_listener()
        self._boot_thread = threading.Thread(target=self.boot, name="boot", daemon=True)
        self._boot_thread.start()

    def stop(self):
        self.shutdown_event.set()
        if self._server_thread:
            self._server_thread.shutdown()
        # bridges get their drain window while the backend is still up
        if self.server is not None:
            registry = self.server.router.registry
            if not registry.drain(self.cfg.drain_seconds):
                log(f"Closing {len(registry)} bridge(s) still open", "WARNING")
                registry.close_all()
        with self._lock:
            supervisors = list(self.supervisors)
        for sup in supervisors:
            sup.stop(grace=self.cfg.stop_grace)

    def _print_startup(self, port: int):
        cfg = self.cfg
        log(f"Listening on http://{cfg.bind}:{port}", "SUCCESS")
        log(f"Relay path {cfg.relay_path} ({cfg.transport.value}) -> 127.0.0.1:{cfg.backend_port}", "INFO")
        log(f"Subscription: https://{cfg.public_domain}/{cfg.sub_path}", "INFO")
        log(f"Descriptor: {build_descriptor(cfg)}", "DEBUG")


def main(environ=None) -> int:
    try:
        cfg = load_config(environ)
    except ConfigValidationError as e:
        log(f"Invalid configuration: {e}", "ERROR")
        return 1
    set_level(cfg.log_level)

    service = RelayService(cfg)

    def _graceful_exit(signum=None, frame=None):
        try:
            name = signal.Signals(signum).name
        except (TypeError, ValueError):
            name = str(signum)
        log(f"Received {name}, shutting down…", "INFO")
        service.shutdown_event.set()

    signal.signal(signal.SIGINT, _graceful_exit)
    signal.signal(signal.SIGTERM, _graceful_exit)

    try:
        service.start()
    except OSError as e:
        log(f"Cannot bind {cfg.bind}:{cfg.port}: {e}", "ERROR")
        return 1

    while not service.shutdown_event.wait(1.0):
        pass
    service.stop()
    log("Stopped.", "INFO")
    return service.exit_code


if __name__ == "__main__":
    sys.exit(main())
