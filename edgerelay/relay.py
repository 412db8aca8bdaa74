"""Public listener: classify each request and bridge relay paths to the backend.

The listener is werkzeug's threaded WSGI server with a request handler that
looks at the parsed request line and headers before WSGI dispatch. Relay
paths never reach Flask; every other path never reaches the backend.
"""
import base64
import hashlib
import socket
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlsplit

from werkzeug.serving import WSGIRequestHandler, make_server

from .config import HandshakeMode, ServiceConfig
from .errors import BackendUnavailableError, BridgeIOError
from .log import log

BUFFER_SIZE = 64 * 1024
MAX_HEAD_B = 64 * 1024
WS_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"


class ConnectionStyle(str, Enum):
    PLAIN = "plain"
    UPGRADE = "upgrade"
    TUNNEL = "tunnel"


def is_relay_path(target: str, relay_path: str) -> bool:
    path = urlsplit(target).path or "/"
    return path == relay_path or path.startswith(relay_path.rstrip("/") + "/")


def wants_upgrade(headers) -> bool:
    if not headers.get("Upgrade"):
        return False
    tokens = [t.strip().lower() for t in headers.get("Connection", "").split(",")]
    return "upgrade" in tokens


def classify(target: str, headers, relay_path: str) -> ConnectionStyle:
    if not is_relay_path(target, relay_path):
        return ConnectionStyle.PLAIN
    if wants_upgrade(headers):
        return ConnectionStyle.UPGRADE
    return ConnectionStyle.TUNNEL


def websocket_accept(key: str) -> str:
    digest = hashlib.sha1((key.strip() + WS_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def build_request_head(method: str, target: str, version: str, headers, client_ip: str) -> bytes:
    """Re-serialize the parsed request so the backend sees the client's own handshake."""
    lines = [f"{method} {target} {version}"]
    forwarded = None
    for k, v in headers.items():
        if k.lower() == "x-forwarded-for":
            forwarded = v
            continue
        lines.append(f"{k}: {v}")
    lines.append(f"X-Forwarded-For: {forwarded + ', ' + client_ip if forwarded else client_ip}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


def read_response_head(sock: socket.socket) -> Tuple[bytes, bytes]:
    """Read up to the blank line ending a response head; returns (head, leftover)."""
    buf = b""
    while b"\r\n\r\n" not in buf:
        if len(buf) > MAX_HEAD_B:
            raise BridgeIOError("backend response head too large")
        chunk = sock.recv(4096)
        if not chunk:
            raise BridgeIOError("backend closed before answering the handshake")
        buf += chunk
    head, _, rest = buf.partition(b"\r\n\r\n")
    return head + b"\r\n\r\n", rest


class Bridge:
    """Two unidirectional copies that share one close-both action."""

    def __init__(self, client: socket.socket, client_reader, backend: socket.socket, bufsize: int = BUFFER_SIZE):
        self.client = client
        self.client_reader = client_reader
        self.backend = backend
        self.bufsize = bufsize
        self.bytes_up = 0
        self.bytes_down = 0
        self.error: Optional[BridgeIOError] = None
        self._closed = False
        self._lock = threading.Lock()

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for s in (self.client, self.backend):
            try:
                s.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

    def _read_client(self, n):
        return self.client_reader.read1(n)

    def _copy(self, read, dst: socket.socket, upstream: bool):
        try:
            while True:
                data = read(self.bufsize)
                if not data:
                    break
                dst.sendall(data)
                if upstream:
                    self.bytes_up += len(data)
                else:
                    self.bytes_down += len(data)
        except (OSError, ValueError) as e:
            if not self._closed:
                direction = "client->backend" if upstream else "backend->client"
                self.error = BridgeIOError(f"{direction}: {e}")
        finally:
            self.close()

    def run(self):
        down = threading.Thread(target=self._copy, args=(self.backend.recv, self.client, False), daemon=True)
        down.start()
        try:
            self._copy(self._read_client, self.backend, True)
            down.join()
        finally:
            self.backend.close()


class BridgeRegistry:
    def __init__(self):
        self._active = set()
        self._cond = threading.Condition()

    def __len__(self):
        with self._cond:
            return len(self._active)

    @contextmanager
    def track(self, bridge: Bridge):
        with self._cond:
            self._active.add(bridge)
        try:
            yield bridge
        finally:
            with self._cond:
                self._active.discard(bridge)
                self._cond.notify_all()

    def drain(self, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._active, timeout=timeout)

    def close_all(self):
        with self._cond:
            active = list(self._active)
        for b in active:
            b.close()


class RelayRouter:
    def __init__(self, cfg: ServiceConfig, connect_timeout: float = 5.0):
        self.relay_path = cfg.relay_path
        self.backend_addr = ("127.0.0.1", cfg.backend_port)
        self.handshake_mode = cfg.handshake_mode
        self.connect_timeout = connect_timeout
        self.registry = BridgeRegistry()

    def classify(self, target: str, headers) -> ConnectionStyle:
        return classify(target, headers, self.relay_path)

    def open_backend(self) -> socket.socket:
        try:
            sock = socket.create_connection(self.backend_addr, timeout=self.connect_timeout)
        except OSError as e:
            raise BackendUnavailableError(f"backend {self.backend_addr[0]}:{self.backend_addr[1]} unavailable: {e}") from e
        sock.settimeout(None)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        return sock

    def relay(self, handler: "RelayRequestHandler", style: ConnectionStyle):
        client_ip = handler.client_address[0]
        try:
            backend = self.open_backend()
        except BackendUnavailableError as e:
            log(f"{style.value} {handler.path} from {client_ip} dropped: {e}", "WARNING")
            return

        try:
            backend.sendall(build_request_head(
                handler.command, handler.path, handler.request_version, handler.headers, client_ip))
            key = handler.headers.get("Sec-WebSocket-Key")
            if (style is ConnectionStyle.UPGRADE and key
                    and self.handshake_mode is HandshakeMode.SYNTHESIZE):
                head, leftover = read_response_head(backend)
                status = head.split(b"\r\n", 1)[0]
                if status.split(b" ")[1:2] != [b"101"]:
                    raise BridgeIOError(f"backend refused the upgrade: {status.decode('latin-1')}")
                handler.connection.sendall(
                    b"HTTP/1.1 101 Switching Protocols\r\n"
                    b"Upgrade: websocket\r\n"
                    b"Connection: Upgrade\r\n"
                    b"Sec-WebSocket-Accept: " + websocket_accept(key).encode("ascii") + b"\r\n\r\n"
                    + leftover)
        except (OSError, BridgeIOError) as e:
            log(f"{style.value} {handler.path} from {client_ip} handshake failed: {e}", "WARNING")
            backend.close()
            return

        bridge = Bridge(handler.connection, handler.rfile, backend)
        log(f"{style.value} bridge open for {client_ip} {handler.path}", "DEBUG")
        with self.registry.track(bridge):
            bridge.run()
        if bridge.error is not None:
            log(f"bridge for {client_ip} closed on error: {bridge.error}", "DEBUG")
        log(f"{style.value} bridge closed for {client_ip} (up {bridge.bytes_up}B, down {bridge.bytes_down}B)", "DEBUG")


class RelayRequestHandler(WSGIRequestHandler):
    router: RelayRouter = None

    def run_wsgi(self):
        style = self.router.classify(self.path, self.headers)
        if style is ConnectionStyle.PLAIN:
            return super().run_wsgi()
        self.close_connection = True
        self.router.relay(self, style)

    def log(self, type, message, *args):
        cat = {"info": "DEBUG", "warning": "WARNING", "error": "ERROR"}.get(type, "INFO")
        text = message % args if args else message
        log(f"{self.address_string()} {text}", cat)


def make_relay_server(cfg: ServiceConfig, app, router: Optional[RelayRouter] = None, host=None, port=None):
    router = router or RelayRouter(cfg)
    handler = type("BoundRelayRequestHandler", (RelayRequestHandler,), {"router": router})
    srv = make_server(host or cfg.bind, cfg.port if port is None else port, app,
                      threaded=True, request_handler=handler)
    srv.router = router
    return srv
