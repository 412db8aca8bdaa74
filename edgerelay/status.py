"""Status page, health check and subscription descriptor.

None of these handlers look at the backend process; they answer the same way
whether it is running, restarting or gone.
"""
import base64
import html
import time
from urllib.parse import quote

from flask import Flask, Response, jsonify
from flask_cors import CORS

from .config import ServiceConfig, TransportStyle


def build_descriptor(cfg: ServiceConfig) -> str:
    host = cfg.public_domain
    params = [
        "encryption=none",
        "security=tls",
        f"sni={host}",
        "fp=chrome",
        f"type={cfg.transport.value}",
        f"host={host}",
        f"path={quote(cfg.relay_path, safe='')}",
    ]
    if cfg.transport is TransportStyle.XHTTP:
        params.append("mode=auto")
    return f"vless://{cfg.uuid}@{host}:{cfg.cdn_port}?{'&'.join(params)}#{quote(cfg.name)}"


def encode_descriptor(cfg: ServiceConfig) -> str:
    return base64.b64encode(build_descriptor(cfg).encode("utf-8")).decode("ascii")


def format_uptime(seconds: float) -> str:
    seconds = int(max(0, seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    mins, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {mins}m"
    if hours:
        return f"{hours}h {mins}m {secs}s"
    return f"{mins}m {secs}s"


def render_status_page(cfg: ServiceConfig, uptime: float) -> str:
    host = html.escape(cfg.public_domain)
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>{html.escape(cfg.name)}</title>
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', monospace;
           background: #404040; color: #f5f5f5; display: flex;
           align-items: center; justify-content: center; min-height: 100vh; margin: 0; }}
    .box {{ background: #080808; padding: 2rem; max-width: 520px; text-align: center; }}
    code {{ background: rgba(255,255,255,0.1); padding: 0.2rem 0.4rem; }}
  </style>
</head>
<body>
  <div class="box">
    <h1>Status: Active</h1>
    <p>Uptime: {format_uptime(uptime)}</p>
    <p>Address: <code>{host}:{cfg.cdn_port}</code></p>
    <p>Subscription: <code>/{html.escape(cfg.sub_path)}</code></p>
  </div>
</body>
</html>
"""


def create_app(cfg: ServiceConfig, started_at: float = None) -> Flask:
    started = time.time() if started_at is None else started_at
    app = Flask(__name__)
    CORS(app, resources={r"/*": {"origins": "*"}})

    @app.route("/", methods=["GET"])
    def index():
        return Response(render_status_page(cfg, time.time() - started), mimetype="text/html")

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "uptime": round(time.time() - started, 3)})

    def subscription():
        return Response(encode_descriptor(cfg), mimetype="text/plain")

    app.add_url_rule(f"/{cfg.sub_path}", "subscription", subscription, methods=["GET"])
    return app
