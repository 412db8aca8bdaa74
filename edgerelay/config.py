"""Process-wide configuration.

The environment (plus an optional .env file) is read once by ``load_config``
and frozen into a ``ServiceConfig`` that every component receives explicitly.
"""
import json
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigValidationError
from .log import LEVELS

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)

DEFAULT_UUID = "9afd1229-b893-40c1-84dd-51e7ce204913"
DEFAULT_XRAY_VERSION = "v26.2.6"
DEFAULT_XRAY_MIRRORS = ("https://github.com/XTLS/Xray-core/releases/download",)


class TransportStyle(str, Enum):
    WS = "ws"
    XHTTP = "xhttp"


class HandshakeMode(str, Enum):
    FORWARD = "forward"
    SYNTHESIZE = "synthesize"


DEFAULT_RELAY_PATHS = {
    TransportStyle.WS: "/speed",
    TransportStyle.XHTTP: "/xhttp",
}


@dataclass(frozen=True)
class ServiceConfig:
    uuid: str = DEFAULT_UUID
    port: int = 8080
    backend_port: int = 3000
    domain: str = "localhost"
    sub_path: str = "sub"
    work_dir: Path = Path("./bin_core")
    log_level: str = "info"
    transport: TransportStyle = TransportStyle.WS
    relay_path: str = "/speed"
    cdn_port: int = 443
    name: str = "edge-relay"
    max_restarts: int = 5
    restart_delay: float = 10.0
    spawn_retry_delay: float = 5.0
    stop_grace: float = 5.0
    drain_seconds: float = 3.0
    xray_version: str = DEFAULT_XRAY_VERSION
    xray_mirrors: Tuple[str, ...] = DEFAULT_XRAY_MIRRORS
    bin_url: str = ""
    download_attempts: int = 3
    download_timeout: float = 30.0
    boot_rounds: int = 3
    handshake_mode: HandshakeMode = HandshakeMode.FORWARD
    argo_auth: str = ""
    argo_domain: str = ""
    bind: str = "0.0.0.0"

    @property
    def public_domain(self) -> str:
        return self.argo_domain or self.domain

    @property
    def tunnel_enabled(self) -> bool:
        return bool(self.argo_auth)


def _int(env: Mapping[str, str], key: str, default: int, lo: int = 0, hi: Optional[int] = None) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        val = int(raw)
    except ValueError:
        raise ConfigValidationError(f"{key} must be an integer, got {raw!r}")
    if val < lo or (hi is not None and val > hi):
        raise ConfigValidationError(f"{key}={val} out of range")
    return val


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        val = float(raw)
    except ValueError:
        raise ConfigValidationError(f"{key} must be a number, got {raw!r}")
    if val < 0:
        raise ConfigValidationError(f"{key} must not be negative")
    return val


def _choice(enum_cls, env: Mapping[str, str], key: str, default):
    raw = (env.get(key) or "").strip().lower()
    if not raw:
        return default
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigValidationError(f"{key} must be one of: {allowed}")


def validate_uuid(token: str) -> str:
    token = (token or "").strip()
    if not UUID_RE.match(token):
        raise ConfigValidationError(f"UUID {token!r} is not a canonical UUID")
    return token.lower()


def prepare_work_dir(path: Path) -> Path:
    if path.exists() and not path.is_dir():
        raise ConfigValidationError(f"working directory {path} exists and is not a directory")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigValidationError(f"cannot create working directory {path}: {e}")
    if not os.access(path, os.W_OK):
        raise ConfigValidationError(f"working directory {path} is not writable")
    return path


def _relay_path(raw: str, transport: TransportStyle) -> str:
    raw = (raw or "").strip()
    if not raw:
        return DEFAULT_RELAY_PATHS[transport]
    path = "/" + raw.strip("/")
    if path == "/":
        raise ConfigValidationError("RELAY_PATH cannot be the root path")
    return path


def load_config(environ: Optional[Mapping[str, str]] = None, dotenv_path=None) -> ServiceConfig:
    if environ is None:
        load_dotenv(dotenv_path)
        environ = os.environ
    env = environ

    transport = _choice(TransportStyle, env, "TRANSPORT", TransportStyle.WS)

    log_level = (env.get("LOG_LEVEL") or "info").strip().lower()
    if log_level not in LEVELS:
        raise ConfigValidationError(f"LOG_LEVEL must be one of: {', '.join(LEVELS)}")

    sub_path = (env.get("SUB_PATH") or "sub").strip().lstrip("/") or "sub"
    relay_path = _relay_path(env.get("RELAY_PATH", ""), transport)
    if "/" + sub_path == relay_path:
        raise ConfigValidationError("SUB_PATH and RELAY_PATH must differ")

    mirrors = tuple(m.strip().rstrip("/") for m in (env.get("XRAY_MIRRORS") or "").split(",") if m.strip())

    domain = (env.get("DOMAIN") or env.get("RAILWAY_STATIC_URL") or "localhost").strip()

    cfg = ServiceConfig(
        uuid=validate_uuid(env.get("UUID") or DEFAULT_UUID),
        port=_int(env, "PORT", 8080, 1, 65535),
        backend_port=_int(env, "BACKEND_PORT", 3000, 1, 65535),
        domain=domain,
        sub_path=sub_path,
        work_dir=Path(env.get("FILE_PATH") or "./bin_core").expanduser().resolve(),
        log_level=log_level,
        transport=transport,
        relay_path=relay_path,
        cdn_port=_int(env, "CDN_PORT", 443, 1, 65535),
        name=(env.get("NAME") or "edge-relay").strip(),
        max_restarts=_int(env, "MAX_RESTARTS", 5),
        restart_delay=_float(env, "RESTART_DELAY", 10.0),
        spawn_retry_delay=_float(env, "SPAWN_RETRY_DELAY", 5.0),
        stop_grace=_float(env, "STOP_GRACE", 5.0),
        drain_seconds=_float(env, "DRAIN_SECONDS", 3.0),
        xray_version=(env.get("XRAY_VERSION") or DEFAULT_XRAY_VERSION).strip(),
        xray_mirrors=mirrors or DEFAULT_XRAY_MIRRORS,
        bin_url=(env.get("BIN_URL") or "").strip(),
        download_attempts=_int(env, "DOWNLOAD_ATTEMPTS", 3, 1),
        download_timeout=_float(env, "DOWNLOAD_TIMEOUT", 30.0),
        boot_rounds=_int(env, "BOOT_ROUNDS", 3, 1),
        handshake_mode=_choice(HandshakeMode, env, "HANDSHAKE_MODE", HandshakeMode.FORWARD),
        argo_auth=(env.get("ARGO_AUTH") or "").strip(),
        argo_domain=(env.get("ARGO_DOMAIN") or "").strip(),
        bind=(env.get("BIND") or "0.0.0.0").strip(),
    )
    if "TunnelSecret" in cfg.argo_auth:
        try:
            json.loads(cfg.argo_auth)
        except ValueError:
            raise ConfigValidationError("ARGO_AUTH credential document is not valid JSON")
        if not cfg.argo_domain:
            raise ConfigValidationError("ARGO_DOMAIN is required with a tunnel credential document")
    if cfg.backend_port == cfg.port:
        raise ConfigValidationError("BACKEND_PORT must differ from PORT")
    prepare_work_dir(cfg.work_dir)
    return cfg
