"""Backend (xray) and companion tunnel (cloudflared) settings.

Everything here is a pure function of ServiceConfig apart from the two
``write_*`` helpers, which the supervisor calls before every launch.
"""
import json
import platform
from pathlib import Path
from typing import List, Optional

from .config import ServiceConfig, TransportStyle
from .errors import FatalProvisionError

XRAY_EXE = "xray"
TUNNEL_EXE = "cloudflared"
CONFIG_NAME = "config.json"

# CPU architecture -> (xray release asset, cloudflared asset)
_ASSETS = {
    "x86_64":  ("Xray-linux-64.zip", "cloudflared-linux-amd64"),
    "amd64":   ("Xray-linux-64.zip", "cloudflared-linux-amd64"),
    "aarch64": ("Xray-linux-arm64-v8a.zip", "cloudflared-linux-arm64"),
    "arm64":   ("Xray-linux-arm64-v8a.zip", "cloudflared-linux-arm64"),
}

CLOUDFLARED_BASE = "https://github.com/cloudflare/cloudflared/releases/latest/download/"


def _assets(machine: Optional[str] = None):
    arch = (machine or platform.machine()).lower()
    try:
        return _ASSETS[arch]
    except KeyError:
        raise FatalProvisionError(f"no release asset for architecture {arch!r}")


def xray_sources(cfg: ServiceConfig, machine: Optional[str] = None) -> List[str]:
    """Candidate download locations for the backend, in priority order."""
    asset = _assets(machine)[0]
    urls = []
    if cfg.bin_url:
        urls.append(cfg.bin_url)
    for base in cfg.xray_mirrors:
        urls.append(f"{base}/{cfg.xray_version}/{asset}")
    return urls


def tunnel_sources(machine: Optional[str] = None) -> List[str]:
    return [CLOUDFLARED_BASE + _assets(machine)[1]]


def build_backend_config(cfg: ServiceConfig) -> dict:
    if cfg.transport is TransportStyle.XHTTP:
        stream = {
            "network": "xhttp",
            "xhttpSettings": {"path": cfg.relay_path, "mode": "auto"},
        }
    else:
        stream = {
            "network": "ws",
            "wsSettings": {"path": cfg.relay_path},
        }
    stream["sockopt"] = {"tcpFastOpen": True}

    return {
        "log": {"loglevel": cfg.log_level},
        "inbounds": [{
            "listen": "127.0.0.1",
            "port": cfg.backend_port,
            "protocol": "vless",
            "settings": {"clients": [{"id": cfg.uuid, "level": 0}], "decryption": "none"},
            "streamSettings": stream,
            "sniffing": {"enabled": True, "destOverride": ["http", "tls", "quic"]},
        }],
        "outbounds": [
            {
                "protocol": "freedom",
                "settings": {"domainStrategy": "UseIPv4"},
                "streamSettings": {"sockopt": {"tcpFastOpen": True}},
            },
            {"protocol": "blackhole", "tag": "block"},
        ],
    }


def write_backend_config(cfg: ServiceConfig) -> Path:
    path = cfg.work_dir / CONFIG_NAME
    path.write_text(json.dumps(build_backend_config(cfg), indent=2))
    return path


def xray_command(cfg: ServiceConfig) -> List[str]:
    return [str(cfg.work_dir / XRAY_EXE), "run", "-c", str(cfg.work_dir / CONFIG_NAME)]


# ─────────────────────────────────────────────────────────────────────────────
# Companion tunnel
# ─────────────────────────────────────────────────────────────────────────────
def _tunnel_credentials(cfg: ServiceConfig) -> Optional[dict]:
    if "TunnelSecret" not in cfg.argo_auth:
        return None
    try:
        return json.loads(cfg.argo_auth)
    except json.JSONDecodeError:
        raise ValueError("ARGO_AUTH looks like a credential file but is not valid JSON")


def write_tunnel_files(cfg: ServiceConfig) -> Optional[Path]:
    """Write tunnel.json/tunnel.yml when ARGO_AUTH is a credential document."""
    creds = _tunnel_credentials(cfg)
    if creds is None:
        return None
    tunnel_id = creds.get("TunnelID", "")
    cred_path = cfg.work_dir / "tunnel.json"
    yml_path = cfg.work_dir / "tunnel.yml"
    cred_path.write_text(json.dumps(creds))
    yml_path.write_text(
        f"tunnel: {tunnel_id}\n"
        f"credentials-file: {cred_path}\n"
        "protocol: http2\n"
        "\n"
        "ingress:\n"
        f"  - hostname: {cfg.argo_domain}\n"
        f"    service: http://localhost:{cfg.port}\n"
        "    originRequest:\n"
        "      noTLSVerify: true\n"
        "  - service: http_status:404\n"
    )
    return yml_path


def tunnel_command(cfg: ServiceConfig) -> List[str]:
    exe = str(cfg.work_dir / TUNNEL_EXE)
    base = [exe, "tunnel", "--edge-ip-version", "auto", "--no-autoupdate"]
    if _tunnel_credentials(cfg) is not None:
        return base + ["--config", str(cfg.work_dir / "tunnel.yml"), "run"]
    return base + ["run", "--token", cfg.argo_auth]
